"""Posterior draws of random effects with PyMC.

Fixed effects stay at their penalized-likelihood estimate while NUTS samples
the whitened random effects (fields and plate deviations). The data
log-likelihood and its gradient come from the model's own numpy code through
a black-box pytensor Op; the standard normal prior of the whitened effects is
declared in PyMC.
"""

from __future__ import annotations

import logging
import typing

import arviz as az
import numpy as np
import pymc as pm  # type: ignore[import-untyped]
import pytensor.tensor as pt
from pytensor.graph.basic import Apply
from pytensor.graph.op import Op

from ednafit.fitting.errors import ConfigurationError

if typing.TYPE_CHECKING:
    from ednafit.ednafit_types import ArrayF
    from ednafit.fitting.core import SpatialFit

logger = logging.getLogger(__name__)

RE_NAME = "re"


class _RandomEffectsLogLike:
    """Data log-likelihood as a function of the random effects only."""

    def __init__(self, fit: SpatialFit) -> None:
        self.fit = fit
        self.mask = fit.layout.random_mask
        self.theta = np.array(fit.theta)

    def __call__(self, re: ArrayF) -> tuple[float, ArrayF]:
        theta = self.theta.copy()
        theta[self.mask] = re
        nll, grad = self.fit.model.data_nll(theta)
        return -nll, -grad[self.mask]


class LogLikeGrad(Op):
    """Gradient of the black-box log-likelihood."""

    def __init__(self, loglike: _RandomEffectsLogLike) -> None:
        self.loglike = loglike

    def make_node(self, re: typing.Any) -> Apply:
        """Vector in, vector out."""
        re = pt.as_tensor_variable(re)
        return Apply(self, [re], [re.type()])

    def perform(
        self, node: Apply, inputs: list[ArrayF], outputs: list[list[ArrayF]]  # noqa: ARG002
    ) -> None:
        """Evaluate the gradient in numpy."""
        _, grad = self.loglike(np.asarray(inputs[0], dtype=float))
        outputs[0][0] = grad


class LogLike(Op):
    """Black-box data log-likelihood with an analytic gradient."""

    def __init__(self, loglike: _RandomEffectsLogLike) -> None:
        self.loglike = loglike
        self.grad_op = LogLikeGrad(loglike)

    def make_node(self, re: typing.Any) -> Apply:
        """Vector in, scalar out."""
        re = pt.as_tensor_variable(re)
        return Apply(self, [re], [pt.dscalar()])

    def perform(
        self, node: Apply, inputs: list[ArrayF], outputs: list[list[ArrayF]]  # noqa: ARG002
    ) -> None:
        """Evaluate the log-likelihood in numpy."""
        ll, _ = self.loglike(np.asarray(inputs[0], dtype=float))
        outputs[0][0] = np.asarray(ll)

    def grad(self, inputs: list[typing.Any], output_grads: list[typing.Any]) -> list[typing.Any]:
        """Chain rule through the gradient Op."""
        return [output_grads[0] * self.grad_op(inputs[0])]


def sample_random_effects(
    fit: SpatialFit,
    n_draws: int = 1,
    *,
    tune: int = 250,
    seed: int | None = None,
) -> az.InferenceData:
    """Sample the random effects with fixed effects held at their estimate.

    Parameters
    ----------
    fit : SpatialFit
        Fitted model (not modified).
    n_draws : int
        Posterior draws kept after tuning.
    tune : int
        NUTS tuning iterations.
    seed : int | None
        Sampler seed.

    Returns
    -------
    az.InferenceData
        Posterior with variable ``re`` of shape (chain, draw, n_random).

    Raises
    ------
    ConfigurationError
        If the model has no random effects.
    """
    mask = fit.layout.random_mask
    if not mask.any():
        msg = "The model has no random effects to sample."
        raise ConfigurationError(msg)
    loglike = LogLike(_RandomEffectsLogLike(fit))
    start = np.array(fit.theta)[mask]
    with pm.Model():
        re = pm.Normal(RE_NAME, mu=0.0, sigma=1.0, shape=int(mask.sum()))
        pm.Potential("loglike", loglike(re))
        trace: az.InferenceData = pm.sample(
            draws=n_draws,
            tune=tune,
            chains=1,
            cores=1,
            initvals={RE_NAME: start},
            random_seed=seed,
            progressbar=False,
            compute_convergence_checks=False,
            return_inferencedata=True,
        )
    logger.info("Sampled %d random-effect draws after %d tuning steps.", n_draws, tune)
    return trace


def random_effect_draws(trace: az.InferenceData) -> ArrayF:
    """Flatten posterior random effects to (n_draws, n_random)."""
    values = np.asarray(trace.posterior[RE_NAME].values, dtype=float)
    return values.reshape(-1, values.shape[-1])
