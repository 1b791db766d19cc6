r"""qPCR standard curves and the calibrated eDNA response.

Every plate carries two regressions on a log concentration :math:`x`:

.. math::

    \mathrm{Ct} \mid \mathrm{detected} &\sim N(c_p + d_p x, \sigma_{Ct}) \\
    \Pr(\mathrm{detected}) &= \mathrm{logit}^{-1}(a_p + b_p x)

For standards :math:`x = \log(\mathrm{known\_conc\_ul})` is known; for field
samples :math:`x` is the latent log-density :math:`\eta` of the spatial model,
so the standards calibrate the plate coefficients used to estimate it.

A Ct of ``NON_DETECT`` (0.0) marks a failed amplification and is only ever
set when the detection indicator is False.
"""

from __future__ import annotations

import functools
import logging
import typing
from dataclasses import dataclass, field

import lmfit  # type: ignore[import-untyped]
import numpy as np
import pandas as pd
from lmfit import Parameters  # type: ignore[import-untyped]
from lmfit.minimizer import MinimizerResult  # type: ignore[import-untyped]
from scipy import linalg, special, stats

from ednafit.fitting.data_structures import Block
from ednafit.fitting.errors import (
    ConfigurationError,
    InsufficientDataError,
    InvalidDataError,
)
from ednafit.fitting.families import LOG_2PI, Family

if typing.TYPE_CHECKING:
    from ednafit.ednafit_types import ArrayDict, ArrayF, ArrayI, ArrayMask

NON_DETECT = 0.0
COEF_NAMES = ("ct_intercept", "ct_slope", "det_intercept", "det_slope")
REQUIRED_STANDARD_COLS = ("plate", "known_conc_ul")
DET_BOUND = 20.0  # Bound on per-plate logistic coefficients (separation).
MIN_DETECTED = 3

logger = logging.getLogger(__name__)


def detection_indicator(
    frame: pd.DataFrame, response: str = "ct", detected: str = "detected"
) -> ArrayMask:
    """Detection indicator of each row.

    Uses the `detected` column when present; otherwise a row is detected when
    its Ct is present and not the sentinel.

    Raises
    ------
    InvalidDataError
        If a row flagged as detected has no Ct value.
    """
    ct = frame[response].to_numpy(dtype=float)
    if detected in frame.columns:
        det = frame[detected].to_numpy(dtype=bool)
        if np.any(det & ~np.isfinite(ct)):
            msg = f"Rows flagged as '{detected}' have missing '{response}'."
            raise InvalidDataError(msg)
        return det
    return np.isfinite(ct) & (ct != NON_DETECT)


def gated_response(
    frame: pd.DataFrame, response: str = "ct", detected: str = "detected"
) -> ArrayF:
    """Ct values with non-detections set to the sentinel."""
    det = detection_indicator(frame, response, detected)
    return np.where(det, frame[response].to_numpy(dtype=float), NON_DETECT)


def generate_ct(
    x: ArrayF, coefs: ArrayF, ct_sd: float, rng: np.random.Generator
) -> tuple[ArrayF, ArrayMask, ArrayF, ArrayF]:
    """Draw Ct values and detections from per-record plate coefficients.

    Parameters
    ----------
    x : ArrayF
        Log concentration (or latent log-density) per record.
    coefs : ArrayF
        Plate coefficients per record, shape (n, 4) ordered as `COEF_NAMES`.
    ct_sd : float
        Gaussian Ct noise.
    rng : np.random.Generator
        Random generator.

    Returns
    -------
    tuple[ArrayF, ArrayMask, ArrayF, ArrayF]
        Ct (sentinel when not detected), detection indicator, detection
        probability and the uniform draw compared against it.
    """
    ct = rng.normal(coefs[:, 0] + coefs[:, 1] * x, ct_sd)
    p_detect = special.expit(coefs[:, 2] + coefs[:, 3] * x)
    u_detect = rng.uniform(size=len(x))
    detected = u_detect < p_detect
    return np.where(detected, ct, NON_DETECT), detected, p_detect, u_detect


def validate_standards(standards: pd.DataFrame, response: str = "ct") -> None:
    """Check the columns and values a calibration table must have.

    Raises
    ------
    ConfigurationError
        If required columns are missing or concentrations are not positive.
    """
    missing = [c for c in (*REQUIRED_STANDARD_COLS, response) if c not in standards]
    if missing:
        msg = f"Standards table is missing columns {missing}."
        raise ConfigurationError(
            msg, [f"Standards need {[*REQUIRED_STANDARD_COLS, response]}."]
        )
    conc = standards["known_conc_ul"].to_numpy(dtype=float)
    if not np.all(np.isfinite(conc) & (conc > 0)):
        msg = "'known_conc_ul' must be strictly positive and finite."
        raise ConfigurationError(msg)
    if standards["plate"].isna().any():
        msg = "Standards table has missing plate identifiers."
        raise ConfigurationError(msg)


def _default_ct_cov() -> ArrayF:
    return np.array([[2.0, 0.0], [0.0, 0.05]])


def _default_det_cov() -> ArrayF:
    return np.array([[2.0, 0.0], [0.0, 0.5]])


@dataclass(frozen=True)
class PlatePrior:
    """Population covariance of the plate coefficients.

    The quantitative (Ct) and logistic (detection) pairs are independent of
    each other; each pair has its own 2x2 covariance.
    """

    ct_cov: ArrayF = field(default_factory=_default_ct_cov)
    det_cov: ArrayF = field(default_factory=_default_det_cov)

    @property
    def cov(self) -> ArrayF:
        """Block-diagonal 4x4 covariance ordered as `COEF_NAMES`."""
        return linalg.block_diag(
            np.asarray(self.ct_cov, dtype=float), np.asarray(self.det_cov, dtype=float)
        )

    def cholesky(self) -> ArrayF:
        """Lower Cholesky factor of `cov`."""
        try:
            return np.linalg.cholesky(self.cov)
        except np.linalg.LinAlgError as exc:
            msg = "Plate covariance must be positive definite."
            raise ConfigurationError(msg) from exc


# --- Classic per-plate standard curves (lmfit) ---


def _ct_residuals(params: Parameters, x: ArrayF, y: ArrayF) -> ArrayF:
    return y - (params["ct_intercept"].value + params["ct_slope"].value * x)


def _det_nll(params: Parameters, x: ArrayF, det: ArrayF) -> float:
    lin = params["det_intercept"].value + params["det_slope"].value * x
    return float(np.sum(np.logaddexp(0.0, lin) - det * lin))


@dataclass
class StandardCurveFit:
    """Per-plate standard curve fitted in two independent parts.

    Attributes
    ----------
    ct : MinimizerResult
        Least-squares fit of the linear Ct curve on detected records.
    det : MinimizerResult
        Bounded maximum-likelihood logistic fit of the detections.
    n_detected : int
        Detected records used by the Ct curve.
    """

    ct: MinimizerResult
    det: MinimizerResult
    n_detected: int

    @property
    def coefs(self) -> dict[str, float]:
        """The four coefficients plus the Ct residual SD."""
        out = {
            name: float(res.params[name].value)
            for res in (self.ct, self.det)
            for name in res.params
        }
        resid = np.asarray(self.ct.residual, dtype=float)
        out["ct_sigma"] = float(np.sqrt(np.mean(resid**2)))
        return out


def fit_standard_curve(
    standards: pd.DataFrame, response: str = "ct", detected: str = "detected"
) -> StandardCurveFit:
    """Fit the Ct and detection curves of a single plate.

    Parameters
    ----------
    standards : pd.DataFrame
        Calibration records of one plate.
    response : str
        Ct column.
    detected : str
        Detection column (optional in `standards`).

    Returns
    -------
    StandardCurveFit
        The two lmfit results.

    Raises
    ------
    InsufficientDataError
        If fewer than 3 records are detected at 2 distinct concentrations.

    Examples
    --------
    >>> conc = np.repeat([0.1, 1.0, 10.0, 100.0], 3)
    >>> ct = 36.0 - 1.5 * np.log(conc)
    >>> df = pd.DataFrame({"plate": "a1", "known_conc_ul": conc, "ct": ct})
    >>> round(fit_standard_curve(df).coefs["ct_slope"], 3)
    -1.5
    """
    validate_standards(standards, response)
    x = np.log(standards["known_conc_ul"].to_numpy(dtype=float))
    det = detection_indicator(standards, response, detected)
    y = standards[response].to_numpy(dtype=float)
    if det.sum() < MIN_DETECTED or np.unique(x[det]).size < 2:  # noqa: PLR2004
        msg = "Not enough detected standards for a Ct curve."
        raise InsufficientDataError(msg)
    slope, intercept = np.polyfit(x[det], y[det], 1)
    ct_params = Parameters()
    ct_params.add("ct_intercept", value=intercept)
    ct_params.add("ct_slope", value=slope)
    ct_res = lmfit.minimize(_ct_residuals, ct_params, args=(x[det], y[det]))
    det_params = Parameters()
    det_params.add("det_intercept", value=0.0, min=-DET_BOUND, max=DET_BOUND)
    det_params.add("det_slope", value=1.0, min=-DET_BOUND, max=DET_BOUND)
    det_res = lmfit.minimize(
        _det_nll, det_params, args=(x, det.astype(float)), method="lbfgsb"
    )
    return StandardCurveFit(ct_res, det_res, int(det.sum()))


def fit_standard_curves(
    standards: pd.DataFrame, response: str = "ct", detected: str = "detected"
) -> pd.DataFrame:
    """Fit a standard curve for every plate.

    Plates without enough detections get NaN coefficients and a warning.

    Returns
    -------
    pd.DataFrame
        Indexed by plate; columns `COEF_NAMES`, `ct_sigma` and `n_detected`.
    """
    validate_standards(standards, response)
    rows = {}
    for plate, group in standards.groupby(standards["plate"].astype(str)):
        try:
            sfit = fit_standard_curve(group, response, detected)
        except InsufficientDataError:
            logger.warning("Plate %s: not enough detected standards.", plate)
            rows[plate] = dict.fromkeys((*COEF_NAMES, "ct_sigma"), np.nan) | {
                "n_detected": 0
            }
            continue
        rows[plate] = sfit.coefs | {"n_detected": sfit.n_detected}
    curves = pd.DataFrame.from_dict(rows, orient="index")
    curves.index.name = "plate"
    return curves


def back_calculate(
    observations: pd.DataFrame,
    curves: pd.DataFrame,
    response: str = "ct",
    detected: str = "detected",
) -> ArrayF:
    """Two-step log concentration of field samples from per-plate curves.

    Detected samples are inverted through their plate's Ct curve; the rest
    are NaN, since a non-detection carries no Ct to invert.
    """
    det = detection_indicator(observations, response, detected)
    plate_curves = curves.reindex(observations["plate"].astype(str))
    intercept = plate_curves["ct_intercept"].to_numpy(dtype=float)
    slope = plate_curves["ct_slope"].to_numpy(dtype=float)
    ct = observations[response].to_numpy(dtype=float)
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(det, (ct - intercept) / slope, np.nan)


# --- Calibrated response family for the spatial model ---


class StandardCurve(Family):
    """Calibrated eDNA response: plate curves evaluated at the latent field.

    Parameters
    ----------
    standards : pd.DataFrame
        Calibration table with `plate`, `known_conc_ul` and Ct columns.
    obs_plates : pd.Series | ArrayF
        Plate of every field observation.
    prior : PlatePrior | None
        Population covariance of plate coefficients.
    response : str
        Ct column name in the standards.
    detected : str
        Detection column name in the standards (optional).

    Raises
    ------
    ConfigurationError
        If the standards are malformed or observation plates are absent from
        the standards.
    """

    name = "standard_curve"
    link = "log"

    def __init__(
        self,
        standards: pd.DataFrame,
        obs_plates: pd.Series | ArrayF,
        prior: PlatePrior | None = None,
        response: str = "ct",
        detected: str = "detected",
    ) -> None:
        validate_standards(standards, response)
        self.response = response
        self.detected = detected
        self.standards = standards.reset_index(drop=True)
        std_plates = self.standards["plate"].astype(str)
        self.plates = np.array(sorted(std_plates.unique()))
        index = {p: i for i, p in enumerate(self.plates)}
        obs = pd.Series(np.asarray(obs_plates)).astype(str)
        unknown = sorted(set(obs) - set(index))
        if unknown:
            msg = f"Observation plates without standards: {unknown[:10]}"
            raise ConfigurationError(
                msg, ["Every field plate needs calibration records."]
            )
        self.obs_plate_idx: ArrayI = obs.map(index).to_numpy(dtype=np.intp)
        self.std_plate_idx: ArrayI = std_plates.map(index).to_numpy(dtype=np.intp)
        self.std_x = np.log(self.standards["known_conc_ul"].to_numpy(dtype=float))
        self.std_y = gated_response(self.standards, response, detected)
        self.prior = prior or PlatePrior()
        self._chol = self.prior.cholesky()

    def inverse_link(self, eta: ArrayF) -> ArrayF:
        """Copies per microlitre from the latent log-density."""
        return np.exp(eta)

    @property
    def n_plates(self) -> int:
        """Number of plates."""
        return len(self.plates)

    @property
    def blocks(self) -> list[Block]:
        """Population means, whitened plate deviations and log Ct SD."""
        re_labels = tuple(f"{c}[{p}]" for p in self.plates for c in COEF_NAMES)
        return [
            Block("plate_mean", 4, labels=COEF_NAMES),
            Block("plate_re", 4 * self.n_plates, random=True, labels=re_labels),
            Block("ln_sigma_ct", 1),
        ]

    def coefficients(self, params: ArrayDict) -> ArrayF:
        """Plate coefficients, shape (n_plates, 4)."""
        u = params["plate_re"].reshape(self.n_plates, 4)
        return params["plate_mean"] + u @ self._chol.T

    def _curves(
        self, x: ArrayF, pidx: ArrayI, coef: ArrayF
    ) -> tuple[ArrayF, ArrayF, ArrayF]:
        c = coef[pidx]
        return c, c[:, 0] + c[:, 1] * x, c[:, 2] + c[:, 3] * x

    def _curve_nll(
        self, x: ArrayF, pidx: ArrayI, y: ArrayF, coef: ArrayF, ln_sigma: float
    ) -> tuple[float, ArrayF, ArrayF, float]:
        sigma = np.exp(ln_sigma)
        c, mean_ct, lin_det = self._curves(x, pidx, coef)
        det = y != NON_DETECT
        g_lin = special.expit(lin_det) - det
        r = np.where(det, (y - mean_ct) / sigma, 0.0)
        g_mean = -r / sigma
        nll = np.sum(np.logaddexp(0.0, lin_det) - det * lin_det) + np.sum(
            np.where(det, 0.5 * r**2 + ln_sigma + 0.5 * LOG_2PI, 0.0)
        )
        g_x = g_lin * c[:, 3] + g_mean * c[:, 1]
        g_coef = np.column_stack([g_mean, g_mean * x, g_lin, g_lin * x])
        g_ln_sigma = float(np.sum(np.where(det, 1.0 - r**2, 0.0)))
        return float(nll), g_x, g_coef, g_ln_sigma

    def nll(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[float, ArrayF, ArrayDict]:
        """Field and standards NLL with gradients."""
        coef = self.coefficients(params)
        ln_sigma = float(params["ln_sigma_ct"][0])
        f_obs, g_eta, gc_obs, gs_obs = self._curve_nll(
            eta, self.obs_plate_idx, y, coef, ln_sigma
        )
        f_std, _, gc_std, gs_std = self._curve_nll(
            self.std_x, self.std_plate_idx, self.std_y, coef, ln_sigma
        )
        g_coef = np.zeros((self.n_plates, 4))
        np.add.at(g_coef, self.obs_plate_idx, gc_obs)
        np.add.at(g_coef, self.std_plate_idx, gc_std)
        grads = {
            "plate_mean": g_coef.sum(axis=0),
            "plate_re": (g_coef @ self._chol).ravel(),
            "ln_sigma_ct": np.array([gs_obs + gs_std]),
        }
        return f_obs + f_std, g_eta, grads

    def validate(self, y: ArrayF) -> None:
        """Ct must be finite (sentinel for non-detections)."""
        super().validate(y)
        if len(y) != len(self.obs_plate_idx):
            msg = "Response length does not match the observation plates."
            raise InvalidDataError(msg)

    def initial_params(self, y: ArrayF) -> ArrayDict:  # noqa: ARG002
        """Start from the median per-plate standard curves."""
        return {k: v.copy() for k, v in self._start.items()}

    @functools.cached_property
    def _start(self) -> ArrayDict:
        curves = fit_standard_curves(self.standards, self.response, self.detected)
        curves = curves.reindex(self.plates)
        per_plate = curves[list(COEF_NAMES)].to_numpy(dtype=float)
        mean = np.nanmedian(per_plate, axis=0)
        per_plate = np.where(np.isfinite(per_plate), per_plate, mean)
        u = linalg.solve_triangular(self._chol, (per_plate - mean).T, lower=True).T
        sigma = float(np.nanmedian(curves["ct_sigma"]))
        sigma = sigma if np.isfinite(sigma) and sigma > 0 else 1.0
        return {
            "plate_mean": mean,
            "plate_re": u.ravel(),
            "ln_sigma_ct": np.array([np.log(sigma)]),
        }

    def initial_eta(self, y: ArrayF) -> float:
        """Mean inverse-calibrated Ct of detected field samples."""
        params = self.initial_params(y)
        coef = self.coefficients(params)[self.obs_plate_idx]
        det = y != NON_DETECT
        if not det.any():
            return float(self.std_x.min())
        return float(np.mean((y[det] - coef[det, 0]) / coef[det, 1]))

    def simulate(
        self, eta: ArrayF, params: ArrayDict, rng: np.random.Generator
    ) -> ArrayF:
        """Ct draws with the sentinel for simulated non-detections."""
        coef = self.coefficients(params)[self.obs_plate_idx]
        sigma = float(np.exp(params["ln_sigma_ct"][0]))
        ct, _, _, _ = generate_ct(eta, coef, sigma, rng)
        return ct

    def cdf_bounds(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[ArrayF, ArrayF]:
        """Non-detections sit below every Ct: (0, 1 - p) or 1 - p + p * Phi."""
        coef = self.coefficients(params)
        _, mean_ct, lin_det = self._curves(eta, self.obs_plate_idx, coef)
        sigma = float(np.exp(params["ln_sigma_ct"][0]))
        q = special.expit(-lin_det)
        det = y != NON_DETECT
        upper = np.where(det, q + (1.0 - q) * stats.norm.cdf(y, mean_ct, sigma), q)
        lower = np.where(det, upper, 0.0)
        return lower, upper

    def report(self, params: ArrayDict) -> dict[str, ArrayF]:
        """Derived per-standards-record quantities."""
        coef = self.coefficients(params)
        _, ct_pred, det_logit = self._curves(self.std_x, self.std_plate_idx, coef)
        return {"ct_pred": ct_pred, "det_logit": det_logit}
