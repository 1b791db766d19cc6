"""Simulate new responses from a fitted spatial model.

Two optional sources of extra randomness can be layered on the plain
conditional simulation (parameters at their estimate, fitted fields):

- ``mle_mvn``: all parameters are drawn from the multivariate normal
  approximation of their joint uncertainty.
- ``new_fields``: the spatial and spatiotemporal fields are redrawn from
  their prior instead of reusing the fitted ones.

When both are on, the field draw replaces the field part of the MVN draw and
the two draws are independent.
"""

from __future__ import annotations

import logging
import typing

import numpy as np

if typing.TYPE_CHECKING:
    from ednafit.ednafit_types import ArrayF
    from ednafit.fitting.core import SpatialFit

logger = logging.getLogger(__name__)


def mvn_factor(cov: ArrayF) -> ArrayF:
    """Square-root factor of a covariance, tolerant of tiny negative eigenvalues."""
    w, v = np.linalg.eigh(cov)
    return v * np.sqrt(np.clip(w, 0.0, None))


def draw_parameters(
    fit: SpatialFit,
    rng: np.random.Generator,
    *,
    mle_mvn: bool = False,
    new_fields: bool = False,
    factor: ArrayF | None = None,
) -> ArrayF:
    """One parameter vector for simulation."""
    theta = np.array(fit.theta)
    if mle_mvn:
        if factor is None:
            factor = mvn_factor(fit.cov)
        theta += factor @ rng.standard_normal(theta.size)
    if new_fields:
        fmask = fit.layout.field_mask
        theta[fmask] = rng.standard_normal(int(fmask.sum()))
    return theta


def simulate(
    fit: SpatialFit,
    n_sims: int = 1,
    *,
    seed: int | None = None,
    rng: np.random.Generator | None = None,
    mle_mvn: bool = False,
    new_fields: bool = False,
) -> ArrayF:
    """Simulate response vectors from a fitted model.

    Parameters
    ----------
    fit : SpatialFit
        Fitted model (not modified).
    n_sims : int
        Number of simulated response vectors.
    seed : int | None
        Seed used when `rng` is not given.
    rng : np.random.Generator | None
        Random generator (overrides `seed`).
    mle_mvn : bool
        Draw parameters from their joint MVN uncertainty for every replicate.
    new_fields : bool
        Draw new spatial/spatiotemporal fields for every replicate.

    Returns
    -------
    ArrayF
        Simulated responses, shape (n_obs, n_sims). Calibrated fits return Ct
        with the non-detection sentinel.

    Raises
    ------
    ValueError
        If `n_sims` is smaller than 1.
    """
    if n_sims < 1:
        msg = f"n_sims must be at least 1, got {n_sims}."
        raise ValueError(msg)
    if rng is None:
        rng = np.random.default_rng(seed)
    if new_fields and not fit.layout.field_mask.any():
        logger.warning("new_fields requested but the model has no random field.")
    factor = mvn_factor(fit.cov) if mle_mvn else None
    sims = np.empty((len(fit.y), n_sims))
    for k in range(n_sims):
        theta = draw_parameters(
            fit, rng, mle_mvn=mle_mvn, new_fields=new_fields, factor=factor
        )
        eta = fit.linear_predictor(theta)
        sims[:, k] = fit.family.simulate(eta, fit.model.family_params(theta), rng)
    logger.debug(
        "Simulated %d replicates (mle_mvn=%s, new_fields=%s).",
        n_sims, mle_mvn, new_fields,
    )  # fmt: skip
    return sims
