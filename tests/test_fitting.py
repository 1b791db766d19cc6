"""Test the spatial fitting engine."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from lmfit import Parameters  # type: ignore[import-untyped]

from ednafit.fitting.calibration import COEF_NAMES
from ednafit.fitting.core import (
    SpatialFit,
    delta_method,
    design_matrix,
    finite_difference_hessian,
    fit_spatial,
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
from ednafit.fitting.mesh import Mesh
from ednafit.testing.synthetic import (
    EdnaData,
    PlatePopulation,
    make_edna_dataset,
    make_spatial_dataset,
)


class TestConfiguration:
    """Configuration objects."""

    def test_field_modes(self) -> None:
        """Unknown modes and non-positive hyperparameters are rejected."""
        with pytest.raises(ConfigurationError):
            FieldConfig(spatial="maybe")
        with pytest.raises(ConfigurationError):
            FieldConfig(spatiotemporal="ar1")
        with pytest.raises(ConfigurationError):
            FieldConfig(range=-1.0)
        assert not FieldConfig(spatial="off").has_field
        assert FieldConfig(spatial="off", spatiotemporal="iid").has_field

    def test_switched_off_field_sd(self) -> None:
        """Only SDs of fields that are on are checked."""
        assert FieldConfig(spatiotemporal="off", sigma_e=0.0).sigma_e == 0.0
        assert not FieldConfig(spatial="off", sigma_o=0.0, range=0.0).has_field
        with pytest.raises(ConfigurationError, match="sigma_e"):
            FieldConfig(spatiotemporal="iid", sigma_e=0.0)
        with pytest.raises(ConfigurationError, match="sigma_o"):
            FieldConfig(sigma_o=-1.0)

    def test_layout(self) -> None:
        """Blocks split the flat vector and masks follow the flags."""
        lay = ParameterLayout([
            Block("b", 2, labels=("intercept", "depth")),
            Block("omega_s", 3, random=True, field=True),
            Block("ln_phi", 1),
        ])
        assert lay.size == 6
        assert "omega_s" in lay
        assert lay["ln_phi"] == slice(5, 6)
        np.testing.assert_array_equal(lay.random_mask, [0, 0, 1, 1, 1, 0])
        np.testing.assert_array_equal(lay.fixed_mask, ~lay.random_mask)
        assert lay.labels() == [
            "intercept", "depth", "omega_s[0]", "omega_s[1]", "omega_s[2]", "ln_phi",
        ]  # fmt: skip

    def test_duplicate_blocks(self) -> None:
        """Block names must be unique."""
        with pytest.raises(ConfigurationError):
            ParameterLayout([Block("b", 1), Block("b", 2)])


class TestInputValidation:
    """Problems reported before any optimization."""

    def test_missing_response(self, gaussian_data: tuple[pd.DataFrame, Mesh]) -> None:
        """The response column must exist."""
        data, mesh = gaussian_data
        with pytest.raises(ConfigurationError, match="Response column"):
            fit_spatial(data, mesh, response="density")

    def test_field_needs_mesh(self, gaussian_data: tuple[pd.DataFrame, Mesh]) -> None:
        """A field without a mesh is a configuration error."""
        data, _ = gaussian_data
        with pytest.raises(ConfigurationError, match="mesh is required"):
            fit_spatial(data, None, response="observed")

    def test_missing_covariate(self, gaussian_data: tuple[pd.DataFrame, Mesh]) -> None:
        """Covariates must exist."""
        data, mesh = gaussian_data
        with pytest.raises(ConfigurationError, match="Covariate"):
            fit_spatial(data, mesh, response="observed", covariates=["depth"])

    def test_spatiotemporal_needs_time(
        self, gaussian_data: tuple[pd.DataFrame, Mesh]
    ) -> None:
        """IID spatiotemporal fields need a time column."""
        data, mesh = gaussian_data
        field = FieldConfig(spatiotemporal="iid")
        with pytest.raises(ConfigurationError, match="time"):
            fit_spatial(data, mesh, response="observed", field=field)

    def test_family_and_standards(self, edna_data: EdnaData) -> None:
        """Standards imply the calibrated family."""
        with pytest.raises(ConfigurationError):
            fit_spatial(
                edna_data.observations, edna_data.mesh,
                standards=edna_data.standards, family="gaussian",
            )  # fmt: skip

    def test_plates_without_standards(self, edna_data: EdnaData) -> None:
        """Observation plates absent from the standards."""
        obs = edna_data.observations.assign(plate="NOPE")
        with pytest.raises(ConfigurationError, match="without standards"):
            fit_spatial(obs, edna_data.mesh, standards=edna_data.standards)

    def test_standards_without_concentration(self, edna_data: EdnaData) -> None:
        """Standards need known concentrations."""
        std = edna_data.standards.drop(columns="known_conc_ul")
        with pytest.raises(ConfigurationError, match="missing columns"):
            fit_spatial(edna_data.observations, edna_data.mesh, standards=std)

    def test_observations_without_plate(self, edna_data: EdnaData) -> None:
        """Calibrated fits need the plate of each sample."""
        obs = edna_data.observations.drop(columns="plate")
        with pytest.raises(ConfigurationError, match="plate"):
            fit_spatial(obs, edna_data.mesh, standards=edna_data.standards)

    def test_insufficient_data(self) -> None:
        """Fewer observations than fixed effects."""
        data = pd.DataFrame({"y": [1.0], "X": [0.0], "Y": [0.0]})
        with pytest.raises(InsufficientDataError):
            fit_spatial(data, response="y", field=FieldConfig(spatial="off"))

    def test_no_convergence(self, gaussian_data: tuple[pd.DataFrame, Mesh]) -> None:
        """Stopping after one iteration away from the mode raises."""
        data, mesh = gaussian_data
        with pytest.raises(ConvergenceError) as excinfo:
            fit_spatial(
                data, mesh, response="observed", control=FitControl(maxiter=1)
            )
        assert excinfo.value.n_iter <= 1
        assert excinfo.value.max_gradient > 0


def _population_mean_error(
    n_plates: int, seeds: tuple[int, ...] = (0, 1, 2, 3)
) -> float:
    """Average standardized error of the fitted population Ct line."""
    pop = PlatePopulation()
    scale = np.sqrt(np.diag(pop.ct_cov))
    errors = []
    for seed in seeds:
        data = make_edna_dataset(
            seed, n_plates=n_plates, n_replicates=1, n_locations=60, ct_sd=0.3,
            n_knots=10, population=pop,
        )  # fmt: skip
        sfit = fit_spatial(
            data.observations, data.mesh, standards=data.standards,
            field=FieldConfig(range=0.3, sigma_o=1.0), plate_prior=pop.prior(),
        )  # fmt: skip
        mean = sfit.theta[sfit.layout["plate_mean"]][:2]
        errors.append(np.sum(np.abs(mean - pop.ct_mean) / scale))
    return float(np.mean(errors))


@pytest.mark.parametrize(("small", "large"), [(3, 30), (5, 40)])
def test_population_mean_consistent(small: int, large: int) -> None:
    """More plates bring the population Ct line closer to the truth."""
    err_small = _population_mean_error(small)
    err_large = _population_mean_error(large)
    assert err_large < err_small
    assert err_large < 1.0


class TestCalibratedFit:
    """Calibrated fit of synthetic eDNA data."""

    def test_recovers_population_mean(
        self, edna_fit: SpatialFit, edna_data: EdnaData
    ) -> None:
        """Population Ct line is close to the plates' average line."""
        mean = edna_fit.theta[edna_fit.layout["plate_mean"]]
        true_mean = edna_data.plate_coefs.mean().to_numpy()
        assert mean[0] == pytest.approx(true_mean[0], abs=0.3)
        assert mean[1] == pytest.approx(true_mean[1], abs=0.05)
        assert mean[0] == pytest.approx(36.0, abs=1.0)
        assert mean[1] == pytest.approx(-1.5, abs=0.2)

    def test_plate_coefficients(self, edna_fit: SpatialFit, edna_data: EdnaData) -> None:
        """Four coefficients per plate close to the truth for the Ct line."""
        re = edna_fit.random_effects()
        assert list(re.columns) == list(COEF_NAMES)
        assert len(re) == 8
        truth = edna_data.plate_coefs.loc[re.index]
        np.testing.assert_allclose(re["ct_slope"], truth["ct_slope"], atol=0.1)
        np.testing.assert_allclose(re["ct_intercept"], truth["ct_intercept"], atol=0.6)

    def test_latent_field(self, edna_fit: SpatialFit, edna_data: EdnaData) -> None:
        """Latent log-density tracks the simulated eta."""
        est = edna_fit.predict()["est"].to_numpy()
        eta = edna_data.observations["eta"].to_numpy()
        assert np.corrcoef(est, eta)[0, 1] > 0.8
        assert edna_fit.tidy().set_index("term").loc["intercept", "estimate"] == (
            pytest.approx(1.0, abs=1.0)
        )

    def test_ct_sigma(self, edna_fit: SpatialFit) -> None:
        """Ct noise is reported on the natural scale."""
        ran = edna_fit.tidy("ran_pars").set_index("term")
        assert ran.loc["sigma_ct", "estimate"] == pytest.approx(0.3, abs=0.1)
        assert ran.loc["range", "estimate"] == 0.3

    def test_report(self, edna_fit: SpatialFit) -> None:
        """ct_pred and det_logit per standards record, with delta-method SEs."""
        rep = edna_fit.report(se=True)
        assert len(rep) == len(edna_fit.family.standards)  # type: ignore[attr-defined]
        for col in ("ct_pred", "ct_pred_se", "det_logit", "det_logit_se"):
            assert col in rep.columns
        assert (rep["ct_pred_se"] > 0).all()
        det = rep["detected"].to_numpy()
        resid = rep.loc[det, "ct"] - rep.loc[det, "ct_pred"]
        assert resid.abs().mean() < 0.5

    def test_sanity(self, edna_fit: SpatialFit) -> None:
        """The mode is a stationary point with a usable covariance."""
        flags = edna_fit.sanity()
        assert flags["pd_hessian"]
        assert flags["se_finite"]
        assert flags["max_gradient"] < 0.1


class TestGaussianFit:
    """Plain Gaussian spatial fit."""

    def test_estimates(self, gaussian_fit: SpatialFit) -> None:
        """Intercept and observation SD near the truth."""
        fixed = gaussian_fit.tidy().set_index("term")
        assert fixed.loc["intercept", "estimate"] == pytest.approx(0.5, abs=1.0)
        ran = gaussian_fit.tidy("ran_pars").set_index("term")
        assert ran.loc["sigma", "estimate"] == pytest.approx(0.3, abs=0.1)
        assert {"range", "sigma_O"} <= set(ran.index)
        finite = ran.dropna()
        assert (finite["conf_low"] < finite["estimate"]).all()

    def test_tidy_invalid(self, gaussian_fit: SpatialFit) -> None:
        """Only fixed and ran_pars tables exist."""
        with pytest.raises(ConfigurationError):
            gaussian_fit.tidy("random")

    def test_params(self, gaussian_fit: SpatialFit) -> None:
        """Fixed effects as lmfit Parameters with stderr."""
        params = gaussian_fit.params
        assert isinstance(params, Parameters)
        assert set(params) == {"intercept", "ln_sigma"}
        assert params["intercept"].stderr > 0

    def test_frozen(self, gaussian_fit: SpatialFit) -> None:
        """Estimates cannot be modified in place."""
        with pytest.raises(ValueError, match="read-only"):
            gaussian_fit.theta[0] = 1.0
        with pytest.raises(ValueError, match="read-only"):
            gaussian_fit.cov[0, 0] = 1.0

    def test_predict_newdata(self, gaussian_fit: SpatialFit) -> None:
        """Predictions at the fitted locations match the fitted values."""
        new = gaussian_fit.data.head(5)
        pred = gaussian_fit.predict(new)
        np.testing.assert_allclose(pred["est"], gaussian_fit.predict()["est"][:5])
        np.testing.assert_allclose(pred["est"], pred["est_non_rf"] + pred["est_rf"])
        assert (pred["epsilon_st"] == 0).all()
        np.testing.assert_allclose(pred["est_response"], pred["est"])

    def test_random_effects_at_knots(self, gaussian_fit: SpatialFit) -> None:
        """Without standards the spatial field is returned at the knots."""
        re = gaussian_fit.random_effects()
        assert list(re.columns) == ["X", "Y", "omega_s"]
        assert len(re) == gaussian_fit.mesh.n_knots  # type: ignore[union-attr]

    def test_pprint(self, gaussian_fit: SpatialFit) -> None:
        """Summary lists every fixed effect."""
        text = gaussian_fit.pprint()
        assert text.startswith("Spatial fit (gaussian)")
        assert "identity link" in text
        assert "intercept" in text

    def test_objective_gradient(self, gaussian_fit: SpatialFit) -> None:
        """Analytic objective gradient matches central differences."""
        theta = np.array(gaussian_fit.theta) + 0.05
        _, grad = gaussian_fit.model.objective(theta)
        h = 1e-6
        for j in (0, 3, len(theta) - 1):
            tp, tm = theta.copy(), theta.copy()
            tp[j] += h
            tm[j] -= h
            num = (
                gaussian_fit.model.objective(tp)[0] - gaussian_fit.model.objective(tm)[0]
            ) / (2 * h)
            assert grad[j] == pytest.approx(num, rel=1e-4, abs=1e-4)


def test_covariate_and_no_field() -> None:
    """A fixed-effects-only Gaussian regression recovers its slope."""
    rng = np.random.default_rng(2)
    depth = rng.normal(size=150)
    data = pd.DataFrame({"depth": depth, "y": 1.0 + 0.7 * depth + rng.normal(0, 0.2, 150)})
    sfit = fit_spatial(data, response="y", covariates=["depth"],
                       field=FieldConfig(spatial="off"))  # fmt: skip
    fixed = sfit.tidy().set_index("term")
    assert fixed.loc["depth", "estimate"] == pytest.approx(0.7, abs=0.05)
    assert sfit.mesh is None
    assert sfit.random_effects().empty


def test_spatiotemporal_fit() -> None:
    """IID spatiotemporal fields with a time column."""
    data, mesh = make_spatial_dataset(
        120, family="poisson", n_times=3, sigma_o=0.5, sigma_e=0.5, seed=9, n_knots=12
    )
    field = FieldConfig(spatiotemporal="iid", range=0.3, sigma_o=0.5, sigma_e=0.5)
    sfit = fit_spatial(data, mesh, response="observed", family="poisson",
                       time="time", field=field)  # fmt: skip
    assert sfit.layout.block("epsilon_st").size == 3 * mesh.n_knots
    pred = sfit.predict()
    assert pred["epsilon_st"].abs().sum() > 0
    ran = sfit.tidy("ran_pars").set_index("term")
    assert {"range", "sigma_O", "sigma_E"} <= set(ran.index)
    with pytest.raises(ConfigurationError, match="Time levels"):
        sfit.predict(data.head(2).assign(time=7))


def test_design_matrix() -> None:
    """Intercept first; non-finite covariates are rejected."""
    df = pd.DataFrame({"a": [1.0, 2.0]})
    np.testing.assert_array_equal(design_matrix(df, ["a"]), [[1, 1], [1, 2]])
    with pytest.raises(ConfigurationError):
        design_matrix(df.assign(a=[1.0, np.nan]), ["a"])


def test_hessian_and_delta_method() -> None:
    """Quadratic objective: exact Hessian and linear delta method."""
    a = np.array([[2.0, 0.5], [0.5, 1.0]])

    def fun_grad(t: np.ndarray) -> tuple[float, np.ndarray]:
        return 0.5 * float(t @ a @ t), a @ t

    hess = finite_difference_hessian(fun_grad, np.array([0.3, -0.2]))
    np.testing.assert_allclose(hess, a, atol=1e-6)
    est, se = delta_method(lambda t: t[:1] + t[1:], np.zeros(2), np.linalg.inv(a))
    cov = np.linalg.inv(a)
    assert est[0] == 0.0
    assert se[0] == pytest.approx(np.sqrt(cov.sum()), rel=1e-6)


def test_response_scale_predictions(
    poisson_fit: SpatialFit, edna_fit: SpatialFit
) -> None:
    """Log-link fits report the exponentiated estimate."""
    pred = poisson_fit.predict()
    np.testing.assert_allclose(pred["est_response"], np.exp(pred["est"]))
    assert "log link" in poisson_fit.pprint()
    conc = edna_fit.predict()
    np.testing.assert_allclose(conc["est_response"], np.exp(conc["est"]))
