r"""Penalized-likelihood fitting of spatial GLMMs.

Model
-----
For observation :math:`i` at location :math:`s_i` and time :math:`t_i`

.. math::

    \eta_i = X_i \beta + \omega(s_i) + \epsilon_{t_i}(s_i)

where :math:`\omega` is a spatial Matérn field and :math:`\epsilon_t` are
independent spatiotemporal fields, both represented at mesh knots and
projected with barycentric weights. The response family turns :math:`\eta`
into a likelihood; with a calibration table the family is the plate
standard-curve response of :mod:`ednafit.fitting.calibration`.

Estimation
----------
Random effects are whitened (knot values are ``L z`` with ``z ~ N(0, I)``)
and the joint mode of fixed and random effects is found with scipy
L-BFGS-B on the penalized objective

.. math::

    -\log p(y \mid \theta) + \tfrac12 \lVert z \rVert^2

using hand-written gradients. The joint covariance of all parameters is the
inverse of a finite-difference Hessian of that objective; it feeds standard
errors, delta-method report values and simulations with parameter
uncertainty. Field hyperparameters come from :class:`FieldConfig`.
"""

from __future__ import annotations

import logging
import re
import typing
from dataclasses import dataclass

import numpy as np
import pandas as pd
from lmfit import Parameters  # type: ignore[import-untyped]
from scipy import linalg, optimize, sparse, stats
from uncertainties import ufloat  # type: ignore[import-untyped]

from ednafit.fitting.calibration import (
    COEF_NAMES,
    PlatePrior,
    StandardCurve,
    gated_response,
)
from ednafit.fitting.data_structures import (
    Block,
    FieldConfig,
    FitControl,
    ParameterLayout,
)
from ednafit.fitting.errors import (
    ConfigurationError,
    ConvergenceError,
    InsufficientDataError,
)
from ednafit.fitting.families import Family, get_family

if typing.TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from ednafit.ednafit_types import ArrayDict, ArrayF, ArrayI
    from ednafit.fitting.mesh import Mesh

logger = logging.getLogger(__name__)

INTERCEPT = "intercept"


def _param_name(block: str, label: str) -> str:
    """Identifier-safe lmfit parameter name."""
    name = label if block == "b" or label.startswith(block) else f"{block}_{label}"
    return re.sub(r"\W+", "_", name).strip("_")


def design_matrix(data: pd.DataFrame, covariates: Sequence[str]) -> ArrayF:
    """Intercept plus covariate columns.

    Raises
    ------
    ConfigurationError
        If covariates are missing or not finite.
    """
    missing = [c for c in covariates if c not in data.columns]
    if missing:
        msg = f"Covariate columns {missing} not found in data."
        raise ConfigurationError(msg)
    cols = [np.ones(len(data))] + [data[c].to_numpy(dtype=float) for c in covariates]
    x = np.column_stack(cols)
    if not np.all(np.isfinite(x)):
        msg = "Covariates contain non-finite values."
        raise ConfigurationError(msg)
    return x


@dataclass
class SpatialModel:
    """Compiled model: response, design, projection, family and layout."""

    y: ArrayF
    X: ArrayF
    A: sparse.csr_matrix | None
    time_idx: ArrayI
    n_times: int
    family: Family
    layout: ParameterLayout
    chol_o: ArrayF | None = None
    chol_e: ArrayF | None = None

    def family_params(self, theta: ArrayF) -> ArrayDict:
        """Family blocks of `theta`."""
        parts = self.layout.split(theta)
        return {b.name: parts[b.name] for b in self.family.blocks}

    def components(
        self,
        theta: ArrayF,
        X: ArrayF | None = None,  # noqa: N803
        A: sparse.csr_matrix | None = None,  # noqa: N803
        time_idx: ArrayI | None = None,
    ) -> ArrayDict:
        """Linear predictor and its parts at `theta`.

        Without `X`, `A` and `time_idx` the fitted data are used.
        """
        parts = self.layout.split(theta)
        if X is None:
            X, A, time_idx = self.X, self.A, self.time_idx  # noqa: N806
        n = len(X)
        est_non_rf = X @ parts["b"]
        omega = np.zeros(n)
        eps = np.zeros(n)
        if "omega_s" in self.layout and A is not None and self.chol_o is not None:
            omega = A @ (self.chol_o @ parts["omega_s"])
        if "epsilon_st" in self.layout and A is not None and self.chol_e is not None:
            nodes = parts["epsilon_st"].reshape(self.n_times, -1) @ self.chol_e.T
            eps = (A @ nodes.T)[np.arange(n), time_idx]
        return {
            "est": est_non_rf + omega + eps,
            "est_non_rf": est_non_rf,
            "est_rf": omega + eps,
            "omega_s": omega,
            "epsilon_st": eps,
        }

    def data_nll(self, theta: ArrayF) -> tuple[float, ArrayF]:
        """Negative log-likelihood of the data and its gradient."""
        eta = self.components(theta)["est"]
        nll, g_eta, g_fam = self.family.nll(self.y, eta, self.family_params(theta))
        grad = np.zeros(self.layout.size)
        grad[self.layout["b"]] = self.X.T @ g_eta
        if "omega_s" in self.layout and self.A is not None:
            grad[self.layout["omega_s"]] = self.chol_o.T @ (self.A.T @ g_eta)  # type: ignore[union-attr]
        if "epsilon_st" in self.layout and self.A is not None:
            g_t = np.zeros((len(eta), self.n_times))
            g_t[np.arange(len(eta)), self.time_idx] = g_eta
            grad[self.layout["epsilon_st"]] = ((self.A.T @ g_t).T @ self.chol_e).ravel()
        for name, g in g_fam.items():
            grad[self.layout[name]] = g
        return nll, grad

    def objective(self, theta: ArrayF) -> tuple[float, ArrayF]:
        """Penalized objective: data NLL plus standard normal random effects."""
        nll, grad = self.data_nll(theta)
        rnd = self.layout.random_mask
        nll += 0.5 * float(theta[rnd] @ theta[rnd])
        grad[rnd] += theta[rnd]
        return nll, grad


def finite_difference_hessian(
    fun_grad: Callable[[ArrayF], tuple[float, ArrayF]],
    theta: ArrayF,
    step: float = 1e-5,
) -> ArrayF:
    """Symmetrized central differences of an analytic gradient."""
    p = len(theta)
    hess = np.empty((p, p))
    for j in range(p):
        h = step * max(1.0, abs(theta[j]))
        tp, tm = theta.copy(), theta.copy()
        tp[j] += h
        tm[j] -= h
        hess[:, j] = (fun_grad(tp)[1] - fun_grad(tm)[1]) / (2.0 * h)
    return 0.5 * (hess + hess.T)


def delta_method(
    fn: Callable[[ArrayF], ArrayF], theta: ArrayF, cov: ArrayF, step: float = 1e-6
) -> tuple[ArrayF, ArrayF]:
    """Estimate and delta-method standard error of a vector function.

    Examples
    --------
    >>> est, se = delta_method(lambda t: 2 * t, np.array([1.0]), np.eye(1))
    >>> float(est[0]), round(float(se[0]), 6)
    (2.0, 2.0)
    """
    est = np.asarray(fn(theta), dtype=float)
    jac = np.empty((est.size, theta.size))
    for j in range(theta.size):
        h = step * max(1.0, abs(theta[j]))
        tp, tm = theta.copy(), theta.copy()
        tp[j] += h
        tm[j] -= h
        jac[:, j] = (np.asarray(fn(tp)) - np.asarray(fn(tm))) / (2.0 * h)
    var = np.einsum("ij,jk,ik->i", jac, cov, jac)
    return est, np.sqrt(np.clip(var, 0.0, None))


def _invert_hessian(hess: ArrayF) -> tuple[ArrayF, bool]:
    """Covariance from the Hessian; pseudo-inverse when not positive definite."""
    try:
        factor = linalg.cho_factor(hess)
    except linalg.LinAlgError:
        logger.warning("Hessian is not positive definite; using pseudo-inverse.")
        return np.linalg.pinv(hess), False
    return linalg.cho_solve(factor, np.eye(len(hess))), True


@dataclass
class SpatialFit:
    """Fitted spatial model.

    The fit is read-only: parameter vectors and covariance are frozen
    arrays, and diagnostics derive everything they need from them.

    Attributes
    ----------
    model : SpatialModel
        The compiled model.
    data : pd.DataFrame
        Observation table used for the fit.
    mesh : Mesh | None
        Spatial mesh (None without fields).
    theta : ArrayF
        Joint mode of fixed and whitened random effects.
    cov : ArrayF
        Joint covariance (inverse Hessian).
    opt : optimize.OptimizeResult
        Raw optimizer result.
    pd_hessian : bool
        Whether the Hessian was positive definite.
    response : str
        Response column.
    covariates : tuple[str, ...]
        Covariate columns.
    time : str | None
        Time column.
    time_levels : ArrayF
        Sorted time levels.
    field : FieldConfig
        Field options used.
    """

    model: SpatialModel
    data: pd.DataFrame
    mesh: Mesh | None
    theta: ArrayF
    cov: ArrayF
    opt: optimize.OptimizeResult
    pd_hessian: bool
    response: str
    covariates: tuple[str, ...]
    time: str | None
    time_levels: ArrayF
    field: FieldConfig

    def __post_init__(self) -> None:
        """Freeze arrays."""
        self.theta.setflags(write=False)
        self.cov.setflags(write=False)

    @property
    def family(self) -> Family:
        """Response family."""
        return self.model.family

    @property
    def layout(self) -> ParameterLayout:
        """Parameter layout."""
        return self.model.layout

    @property
    def y(self) -> ArrayF:
        """Response used in the fit (sentinel-gated for Ct)."""
        return self.model.y

    @property
    def std_errors(self) -> ArrayF:
        """Marginal standard errors of all parameters."""
        return np.sqrt(np.clip(np.diag(self.cov), 0.0, None))

    def linear_predictor(self, theta: ArrayF | None = None) -> ArrayF:
        """Linear predictor on the fitted data."""
        return self.model.components(self.theta if theta is None else theta)["est"]

    def _fixed_rows(self) -> list[tuple[str, str, float, float]]:
        se = self.std_errors
        rows = []
        for block in self.layout.blocks:
            if block.random:
                continue
            s = self.layout[block.name]
            labels = block.labels or (
                (block.name,)
                if block.size == 1
                else tuple(str(i) for i in range(block.size))
            )
            rows.extend(
                (block.name, str(lbl), float(v), float(e))
                for lbl, v, e in zip(labels, self.theta[s], se[s], strict=True)
            )
        return rows

    @property
    def params(self) -> Parameters:
        """Fixed effects as lmfit Parameters with stderr."""
        params = Parameters()
        for block, label, value, err in self._fixed_rows():
            name = _param_name(block, label)
            params.add(name, value=value)
            params[name].stderr = err if np.isfinite(err) else None
        return params

    def tidy(self, effects: str = "fixed", conf_level: float = 0.95) -> pd.DataFrame:
        """Estimates table.

        Parameters
        ----------
        effects : str
            "fixed" for fixed effects, "ran_pars" for dispersion and field
            parameters. Log-scale parameters are reported on the natural
            scale with delta-method errors.
        conf_level : float
            Wald interval level.

        Returns
        -------
        pd.DataFrame
            Columns term, estimate, std_error, conf_low, conf_high.
        """
        if effects not in ("fixed", "ran_pars"):
            msg = f"effects must be 'fixed' or 'ran_pars', got {effects!r}."
            raise ConfigurationError(msg)
        z = stats.norm.ppf(0.5 + conf_level / 2.0)
        rows = []
        for block, label, value, err in self._fixed_rows():
            is_log = block.startswith("ln_")
            if (effects == "ran_pars") != is_log:
                continue
            if is_log:
                lo, hi = np.exp(value - z * err), np.exp(value + z * err)
                rows.append((block[3:], np.exp(value), np.exp(value) * err, lo, hi))
            else:
                term = label if block == "b" else f"{block}.{label}"
                rows.append((term, value, err, value - z * err, value + z * err))
        if effects == "ran_pars":
            if self.field.spatial == "on" or self.field.spatiotemporal != "off":
                rows.append(("range", self.field.range, np.nan, np.nan, np.nan))
            if self.field.spatial == "on":
                rows.append(("sigma_O", self.field.sigma_o, np.nan, np.nan, np.nan))
            if self.field.spatiotemporal != "off":
                rows.append(("sigma_E", self.field.sigma_e, np.nan, np.nan, np.nan))
        return pd.DataFrame(
            rows, columns=["term", "estimate", "std_error", "conf_low", "conf_high"]
        )

    def random_effects(self) -> pd.DataFrame:
        """Random-effect estimates.

        For calibrated fits: the four standard-curve coefficients per plate.
        Otherwise: the spatial field at the mesh knots.
        """
        if isinstance(self.family, StandardCurve):
            coef = self.family.coefficients(self.model.family_params(self.theta))
            out = pd.DataFrame(coef, columns=list(COEF_NAMES), index=self.family.plates)
            out.index.name = "plate"
            return out
        if "omega_s" in self.layout and self.mesh is not None:
            z = self.theta[self.layout["omega_s"]]
            omega = self.model.chol_o @ z  # type: ignore[union-attr]
            return pd.DataFrame(
                {"X": self.mesh.knots[:, 0], "Y": self.mesh.knots[:, 1], "omega_s": omega}
            )
        return pd.DataFrame()

    def report(self, *, se: bool = False) -> pd.DataFrame:
        """Derived quantities, optionally with delta-method standard errors.

        Calibrated fits report `ct_pred` and `det_logit` for every standards
        record; other families report the linear predictor `est` per
        observation.
        """
        reporter = getattr(self.family, "report", None)
        if reporter is not None:
            base = self.family.standards.copy()  # type: ignore[attr-defined]

            def values(theta: ArrayF) -> ArrayDict:
                return typing.cast(
                    "ArrayDict", reporter(self.model.family_params(theta))
                )

        else:
            base = self.data.copy()

            def values(theta: ArrayF) -> ArrayDict:
                return {"est": self.linear_predictor(theta)}

        theta = np.array(self.theta)
        for name in values(theta):
            if se:
                est, err = delta_method(lambda t, k=name: values(t)[k], theta, self.cov)
                base[name] = est
                base[f"{name}_se"] = err
            else:
                base[name] = values(theta)[name]
        return base

    def time_index(self, data: pd.DataFrame) -> ArrayI:
        """Index of each row's time level."""
        if self.time is None:
            return np.zeros(len(data), dtype=np.intp)
        if self.time not in data.columns:
            msg = f"Time column '{self.time}' not found in data."
            raise ConfigurationError(msg)
        levels = {v: i for i, v in enumerate(self.time_levels.tolist())}
        values = data[self.time].tolist()
        unknown = sorted({v for v in values if v not in levels})
        if unknown:
            msg = f"Time levels {unknown} were not in the fitted data."
            raise ConfigurationError(msg)
        return np.array([levels[v] for v in values], dtype=np.intp)

    def predict(self, newdata: pd.DataFrame | None = None) -> pd.DataFrame:
        """Latent estimates for the fitted data or a new table.

        Returns
        -------
        pd.DataFrame
            Input columns plus est, est_non_rf, est_rf, omega_s, epsilon_st
            and est_response (the mean on the response scale; copies per
            microlitre for calibrated fits).
        """
        if newdata is None:
            out = self.data.copy()
            comp = self.model.components(np.array(self.theta))
        else:
            out = newdata.copy()
            x = design_matrix(newdata, self.covariates)
            a = (
                self.mesh.project(newdata)
                if self.mesh is not None and self.field.has_field
                else None
            )
            comp = self.model.components(
                np.array(self.theta), X=x, A=a, time_idx=self.time_index(newdata)
            )
        for key in ("est", "est_non_rf", "est_rf", "omega_s", "epsilon_st"):
            out[key] = comp[key]
        out["est_response"] = self.family.inverse_link(comp["est"])
        return out

    def sanity(self) -> dict[str, bool | float]:
        """Quality flags, separate from the hard convergence check."""
        _, grad = self.model.objective(np.array(self.theta))
        se = self.std_errors[self.layout.fixed_mask]
        return {
            "converged": bool(self.opt.success),
            "max_gradient": float(np.max(np.abs(grad))),
            "pd_hessian": self.pd_hessian,
            "se_finite": bool(np.all(np.isfinite(se) & (se > 0))),
        }

    def pprint(self) -> str:
        """Brief summary of the fixed effects."""
        lines = [
            f"Spatial fit ({self.family.name}), n = {len(self.y)}, "
            f"{self.family.link} link"
        ]
        for row in self.tidy().itertuples(index=False):
            if np.isfinite(row.std_error) and row.std_error > 0:
                lines.append(f"  {row.term} = {ufloat(row.estimate, row.std_error):.2u}")
            else:
                lines.append(f"  {row.term} = {row.estimate:.3g}")
        return "\n".join(lines)


def _time_levels(
    data: pd.DataFrame, time: str | None, field: FieldConfig
) -> tuple[ArrayI, ArrayF]:
    if time is None:
        if field.spatiotemporal != "off":
            msg = "Spatiotemporal fields need a `time` column."
            raise ConfigurationError(msg, ["Pass time='year' (or similar)."])
        return np.zeros(len(data), dtype=np.intp), np.array([0])
    if time not in data.columns:
        msg = f"Time column '{time}' not found in data."
        raise ConfigurationError(msg)
    levels, idx = np.unique(data[time].to_numpy(), return_inverse=True)
    return idx.astype(np.intp), levels


def fit_spatial(  # noqa: PLR0913
    data: pd.DataFrame,
    mesh: Mesh | None = None,
    *,
    response: str = "ct",
    family: str | Family | None = None,
    standards: pd.DataFrame | None = None,
    covariates: Sequence[str] = (),
    time: str | None = None,
    field: FieldConfig | None = None,
    control: FitControl | None = None,
    plate_prior: PlatePrior | None = None,
    detected: str = "detected",
) -> SpatialFit:
    """Fit a spatial GLMM, optionally calibrated by qPCR standards.

    Parameters
    ----------
    data : pd.DataFrame
        Observation table with response, coordinate and covariate columns.
    mesh : Mesh | None
        Spatial mesh; required when a field is on.
    response : str
        Response column (Ct for calibrated fits).
    family : str | Family | None
        Response family. Defaults to the standard-curve response when
        `standards` is given, Gaussian otherwise.
    standards : pd.DataFrame | None
        Calibration table with `plate` and `known_conc_ul` columns.
    covariates : Sequence[str]
        Covariate columns of the latent linear predictor.
    time : str | None
        Time column (needed for spatiotemporal fields).
    field : FieldConfig | None
        Field options.
    control : FitControl | None
        Optimizer options.
    plate_prior : PlatePrior | None
        Population covariance of the plate coefficients.
    detected : str
        Detection indicator column for Ct responses.

    Returns
    -------
    SpatialFit
        The fitted model.

    Raises
    ------
    ConfigurationError
        If tables or mesh cannot define the model (raised before fitting).
    InsufficientDataError
        If there are fewer observations than fixed effects.
    ConvergenceError
        If the optimizer stops away from a stationary point.
    """
    field = field or FieldConfig()
    control = control or FitControl()
    if response not in data.columns:
        msg = f"Response column '{response}' not found in data."
        raise ConfigurationError(msg)
    if field.has_field and mesh is None:
        msg = "A mesh is required when spatial or spatiotemporal fields are on."
        raise ConfigurationError(msg, ["Build one with make_mesh(data, n_knots=...)."])
    x = design_matrix(data, covariates)
    time_idx, time_levels = _time_levels(data, time, field)
    a = mesh.project(data) if mesh is not None and field.has_field else None

    if standards is not None:
        if family is not None:
            msg = "A calibration table implies the standard-curve response."
            raise ConfigurationError(msg, ["Drop `family` when passing `standards`."])
        if "plate" not in data.columns:
            msg = "Observations need a 'plate' column to use standards."
            raise ConfigurationError(msg)
        fam: Family = StandardCurve(
            standards, data["plate"], plate_prior, response, detected
        )
        y = gated_response(data, response, detected)
    else:
        fam = get_family(family or "gaussian")
        y = data[response].to_numpy(dtype=float)
    fam.validate(y)
    if len(y) <= x.shape[1]:
        msg = "Not enough observations for the number of fixed effects."
        raise InsufficientDataError(msg)

    blocks = [Block("b", x.shape[1], labels=(INTERCEPT, *covariates))]
    chol_o = chol_e = None
    if mesh is not None and field.spatial == "on":
        blocks.append(Block("omega_s", mesh.n_knots, random=True, field=True))
        chol_o = mesh.cholesky(field.range, field.sigma_o)
    if mesh is not None and field.spatiotemporal == "iid":
        blocks.append(
            Block("epsilon_st", len(time_levels) * mesh.n_knots, random=True, field=True)
        )
        chol_e = mesh.cholesky(field.range, field.sigma_e)
    blocks.extend(fam.blocks)
    layout = ParameterLayout(blocks)
    model = SpatialModel(
        y, x, a, time_idx, len(time_levels), fam, layout, chol_o, chol_e
    )

    theta0 = np.zeros(layout.size)
    theta0[layout["b"].start] = fam.initial_eta(y)
    for name, value in fam.initial_params(y).items():
        theta0[layout[name]] = value
    logger.info(
        "Fitting %s model: %d observations, %d parameters (%d random).",
        fam.name, len(y), layout.size, int(layout.random_mask.sum()),
    )  # fmt: skip
    opt = optimize.minimize(
        model.objective,
        theta0,
        jac=True,
        method="L-BFGS-B",
        options={"maxiter": control.maxiter, "ftol": 1e-12, "gtol": 1e-8},
    )
    f, grad = model.objective(opt.x)
    max_grad = float(np.max(np.abs(grad)))
    if not opt.success and max_grad > control.grad_tol * max(1.0, abs(f)):
        raise ConvergenceError(str(opt.message), max_grad, int(opt.nit))
    logger.info(
        "Optimizer stopped after %d iterations: %s (objective %.4f, max|g| %.2e).",
        opt.nit, opt.message, f, max_grad,
    )  # fmt: skip
    hess = finite_difference_hessian(model.objective, opt.x, control.hessian_step)
    cov, pd_hessian = _invert_hessian(hess)
    return SpatialFit(
        model=model,
        data=data.reset_index(drop=True).copy(),
        mesh=mesh,
        theta=np.array(opt.x),
        cov=cov,
        opt=opt,
        pd_hessian=pd_hessian,
        response=response,
        covariates=tuple(covariates),
        time=time,
        time_levels=time_levels,
        field=field,
    )
