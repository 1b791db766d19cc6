"""Residual diagnostics for fitted spatial models.

Residuals come in a closed set of modes, each a small frozen dataclass, and
are all produced by :func:`compute_residuals`:

- :class:`QuantileResiduals`: randomized quantile residuals at the estimate.
- :class:`MCMCResiduals`: randomized quantile residuals recomputed at each
  PyMC posterior draw of the random effects (fixed effects at the
  estimate) and averaged per observation.
- :class:`SimulationResiduals`: simulation-based (DHARMa-style) residuals
  from conditional simulations.
- :class:`JointUncertaintyResiduals`: the same, with parameters drawn from
  their joint MVN uncertainty and/or new random fields for every replicate.

None of them modify the fit. Residuals that come out non-finite (a PIT of
exactly 0 or 1) are kept in `values` and can be dropped with
:meth:`ResidualResult.finite`.
"""

from __future__ import annotations

import logging
import typing
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats as sp_stats

from ednafit.fitting.bayes import random_effect_draws, sample_random_effects
from ednafit.fitting.simulation import simulate

if typing.TYPE_CHECKING:
    import arviz as az

    from ednafit.ednafit_types import ArrayF, Statistic
    from ednafit.fitting.core import SpatialFit

logger = logging.getLogger(__name__)

# Statistical thresholds
OUTLIER_THRESHOLD_3SIGMA = 3.0
OUTLIER_RATE_THRESHOLD = 0.05
BIAS_P_VALUE_THRESHOLD = 0.01
NORMALITY_P_VALUE_THRESHOLD = 0.01


@dataclass(frozen=True)
class QuantileResiduals:
    """Randomized quantile residuals at the estimated parameters."""


@dataclass(frozen=True)
class MCMCResiduals:
    """Quantile residuals averaged over posterior draws of the random effects.

    Attributes
    ----------
    n_draws : int
        Posterior draws to sample; residuals are averaged over them.
    tune : int
        NUTS tuning iterations.
    draws : ArrayF | None
        Precomputed random-effect draws, shape (n_draws, n_random); skips
        sampling when given.
    """

    n_draws: int = 1
    tune: int = 250
    draws: ArrayF | None = None


@dataclass(frozen=True)
class SimulationResiduals:
    """Simulation-based residuals from `n_sims` conditional simulations."""

    n_sims: int = 100


@dataclass(frozen=True)
class JointUncertaintyResiduals:
    """Simulation residuals that propagate parameter and field uncertainty.

    Attributes
    ----------
    n_sims : int
        Number of simulated response vectors.
    mle_mvn : bool
        Draw all parameters from MVN(estimate, covariance) per replicate.
    new_fields : bool
        Draw new random fields per replicate.
    """

    n_sims: int = 100
    mle_mvn: bool = True
    new_fields: bool = False


ResidualMode = (
    QuantileResiduals
    | MCMCResiduals
    | SimulationResiduals
    | JointUncertaintyResiduals
)


@dataclass(frozen=True)
class ResidualResult:
    """Residuals and what was needed to compute them.

    Attributes
    ----------
    mode : ResidualMode
        The mode that produced the residuals.
    values : ArrayF
        One residual per observation, on the standard normal scale.
    observed : ArrayF
        Response used by the fit.
    simulated : ArrayF | None
        Simulated responses (n_obs, n_sims) for simulation modes.
    trace : az.InferenceData | None
        Posterior for the MCMC mode when sampled here.
    draws_values : ArrayF | None
        Quantile residuals per posterior draw (n_obs, n_draws) for the MCMC
        mode; `values` is their mean over draws.
    """

    mode: ResidualMode
    values: ArrayF
    observed: ArrayF
    simulated: ArrayF | None = None
    trace: az.InferenceData | None = None
    draws_values: ArrayF | None = None

    def finite(self) -> ArrayF:
        """Residuals without non-finite entries."""
        return self.values[np.isfinite(self.values)]

    @property
    def n_dropped(self) -> int:
        """Number of non-finite residuals."""
        return int(np.sum(~np.isfinite(self.values)))


def quantile_residuals(
    lower: ArrayF, upper: ArrayF, rng: np.random.Generator
) -> ArrayF:
    """Normal quantiles of a uniform draw between CDF bounds.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> quantile_residuals(np.array([0.5]), np.array([0.5]), rng)
    array([0.])
    """
    u = lower + (upper - lower) * rng.uniform(size=np.shape(lower))
    return np.asarray(sp_stats.norm.ppf(u), dtype=float)


def dharma_residuals(
    observed: ArrayF, simulated: ArrayF, rng: np.random.Generator
) -> ArrayF:
    """Scaled residuals from simulations, returned on the normal scale.

    Each observation's PIT is the share of simulations below it, with ties
    (always possible for counts and the Ct sentinel) broken uniformly.

    Parameters
    ----------
    observed : ArrayF
        Observed responses, shape (n_obs,).
    simulated : ArrayF
        Simulated responses, shape (n_obs, n_sims).
    rng : np.random.Generator
        Random generator for the tie-breaking draws.

    Returns
    -------
    ArrayF
        Normal quantiles of the PIT values (always finite).
    """
    y = observed[:, None]
    below = np.sum(simulated < y, axis=1)
    ties = np.sum(simulated == y, axis=1)
    u = (below + rng.uniform(size=len(observed)) * (ties + 1)) / (
        simulated.shape[1] + 1
    )
    return np.asarray(sp_stats.norm.ppf(u), dtype=float)


def _fit_quantile_residuals(
    fit: SpatialFit, theta: ArrayF, y: ArrayF, rng: np.random.Generator
) -> ArrayF:
    eta = fit.linear_predictor(theta)
    lower, upper = fit.family.cdf_bounds(y, eta, fit.model.family_params(theta))
    return quantile_residuals(lower, upper, rng)


def _mcmc_residuals(
    fit: SpatialFit,
    mode: MCMCResiduals,
    y: ArrayF,
    rng: np.random.Generator,
    seed: int | None,
) -> tuple[ArrayF, ArrayF, az.InferenceData | None]:
    """Quantile residuals per random-effect draw and their mean."""
    trace = None
    if mode.draws is None:
        trace = sample_random_effects(fit, mode.n_draws, tune=mode.tune, seed=seed)
        draws = random_effect_draws(trace)
    else:
        draws = np.atleast_2d(np.asarray(mode.draws, dtype=float))
    per_draw = np.empty((len(y), len(draws)))
    for j, re in enumerate(draws):
        theta = np.array(fit.theta)
        theta[fit.layout.random_mask] = re
        per_draw[:, j] = _fit_quantile_residuals(fit, theta, y, rng)
    return per_draw.mean(axis=1), per_draw, trace


def compute_residuals(
    fit: SpatialFit,
    mode: ResidualMode | None = None,
    *,
    seed: int | None = None,
) -> ResidualResult:
    """Residuals of a fitted model.

    Parameters
    ----------
    fit : SpatialFit
        Fitted model (not modified).
    mode : ResidualMode | None
        Residual mode; quantile residuals by default.
    seed : int | None
        Seed for every random step (uniform draws, simulations, sampler).

    Returns
    -------
    ResidualResult
        Residuals, observed response and mode-specific extras.

    Raises
    ------
    TypeError
        If `mode` is not one of the residual modes.
    """
    mode = mode or QuantileResiduals()
    rng = np.random.default_rng(seed)
    y = np.array(fit.y)
    if isinstance(mode, QuantileResiduals):
        values = _fit_quantile_residuals(fit, np.array(fit.theta), y, rng)
        result = ResidualResult(mode, values, y)
    elif isinstance(mode, MCMCResiduals):
        values, per_draw, trace = _mcmc_residuals(fit, mode, y, rng, seed)
        result = ResidualResult(mode, values, y, trace=trace, draws_values=per_draw)
    elif isinstance(mode, SimulationResiduals | JointUncertaintyResiduals):
        flags = (
            {"mle_mvn": mode.mle_mvn, "new_fields": mode.new_fields}
            if isinstance(mode, JointUncertaintyResiduals)
            else {}
        )
        sims = simulate(fit, mode.n_sims, rng=rng, **flags)
        result = ResidualResult(mode, dharma_residuals(y, sims, rng), y, simulated=sims)
    else:
        msg = f"Unknown residual mode {type(mode).__name__}."
        raise TypeError(msg)
    if result.n_dropped:
        logger.warning("%d non-finite residuals.", result.n_dropped)
    logger.info("Computed %s for %d observations.", type(mode).__name__, len(y))
    return result


def qq_points(residuals: ArrayF) -> tuple[ArrayF, ArrayF]:
    """Theoretical and sample quantiles of the finite residuals."""
    r = np.sort(residuals[np.isfinite(residuals)])
    n = len(r)
    theoretical = sp_stats.norm.ppf((np.arange(1, n + 1) - 0.5) / n)
    return np.asarray(theoretical, dtype=float), r


def zero_proportion(values: ArrayF) -> ArrayF:
    """Share of zeros (or Ct non-detections) along the first axis.

    Examples
    --------
    >>> zero_proportion(np.array([0.0, 1.0, 0.0, 3.0]))
    array(0.5)
    """
    return np.asarray(np.mean(np.asarray(values) == 0.0, axis=0))


@dataclass(frozen=True)
class StatisticCheck:
    """Observed summary against its simulated distribution.

    Attributes
    ----------
    observed : float
        Statistic of the observed response.
    simulated : ArrayF
        Statistic of every simulated response vector.
    p_value : float
        Two-sided predictive p-value.
    """

    observed: float
    simulated: ArrayF
    p_value: float

    @property
    def ratio(self) -> float:
        """Observed over mean simulated statistic."""
        return float(self.observed / np.mean(self.simulated))


def compare_statistic(
    observed: ArrayF,
    simulated: ArrayF,
    statistic: Statistic = zero_proportion,
) -> StatisticCheck:
    """Compare a summary of the observed response to simulations.

    Parameters
    ----------
    observed : ArrayF
        Observed responses, shape (n_obs,).
    simulated : ArrayF
        Simulated responses, shape (n_obs, n_sims).
    statistic : Statistic
        Column-wise summary; zero proportion by default.

    Returns
    -------
    StatisticCheck
        Observed and simulated values with the predictive p-value.
    """
    obs = float(statistic(observed))
    sim = np.asarray(statistic(simulated), dtype=float)
    p = 2.0 * min(np.mean(sim >= obs), np.mean(sim <= obs))
    return StatisticCheck(obs, sim, float(min(p, 1.0)))


def residual_dataframe(fit: SpatialFit, result: ResidualResult) -> pd.DataFrame:
    """Fitted data with the latent estimate and the residual of each row."""
    out = fit.predict()
    out["observed"] = result.observed
    out["residual"] = result.values
    return out


def residual_statistics(df: pd.DataFrame, by: str = "plate") -> pd.DataFrame:
    """Residual statistics by group.

    Parameters
    ----------
    df : pd.DataFrame
        Residual DataFrame (from `residual_dataframe`).
    by : str
        Grouping column; a single group "all" when missing.

    Returns
    -------
    pd.DataFrame
        Statistics by group: mean, std, median, mad, outlier_count,
        n_points, outlier_rate.
    """

    def outlier_count(x: ArrayF) -> int:
        """Count points beyond ±3-sigma deviations."""
        return int((np.abs(x) > OUTLIER_THRESHOLD_3SIGMA).sum())

    finite = df[np.isfinite(df["residual"])]
    keys = finite[by] if by in finite.columns else pd.Series("all", index=finite.index)
    summary = finite.groupby(keys)["residual"].agg(
        mean="mean",
        std="std",
        median="median",
        mad=lambda x: sp_stats.median_abs_deviation(x, nan_policy="omit"),
        outlier_count=outlier_count,
        n_points="count",
    )
    summary_df = typing.cast("pd.DataFrame", summary)
    summary_df["outlier_rate"] = summary_df["outlier_count"] / summary_df["n_points"]
    return summary_df


def validate_residuals(residuals: ArrayF) -> dict[str, bool]:
    """Check residuals against the standard normal they should follow.

    Checks:
    - Systematic bias (mean significantly different from 0)
    - Outliers (more than 5% beyond ±3-sigma)
    - Normality (Kolmogorov-Smirnov against N(0, 1))

    Failed checks are logged as warnings.

    Examples
    --------
    >>> r = np.random.default_rng(1).standard_normal(500)
    >>> validate_residuals(r)["normality_ok"]
    True
    """
    r = residuals[np.isfinite(residuals)]
    checks = {"bias_ok": True, "outliers_ok": True, "normality_ok": True}
    if len(r) < 2:  # noqa: PLR2004
        return checks

    _t_stat, p_value = sp_stats.ttest_1samp(r, 0.0)
    checks["bias_ok"] = bool(p_value > BIAS_P_VALUE_THRESHOLD)
    if not checks["bias_ok"]:
        logger.warning("Systematic bias (mean=%.3f, p=%.4f).", r.mean(), p_value)

    outlier_rate = float(np.mean(np.abs(r) > OUTLIER_THRESHOLD_3SIGMA))
    checks["outliers_ok"] = outlier_rate < OUTLIER_RATE_THRESHOLD
    if not checks["outliers_ok"]:
        logger.warning("High outlier rate: %.1f%% beyond ±3-sigma.", 100 * outlier_rate)

    ks = sp_stats.kstest(r, "norm")
    checks["normality_ok"] = bool(ks.pvalue > NORMALITY_P_VALUE_THRESHOLD)
    if not checks["normality_ok"]:
        logger.warning("Residuals depart from N(0, 1) (KS p=%.4f).", ks.pvalue)
    return checks
