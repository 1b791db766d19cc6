r"""Response families for the spatial model.

Each family maps the linear predictor :math:`\eta` to a distribution for the
response and provides, by hand, the negative log-likelihood together with its
gradient with respect to :math:`\eta` and to the family's own parameters.
Family parameters that must be positive are optimized on the log scale and
their block names start with ``ln_``.

For residual diagnostics a family also returns the CDF bounds
:math:`(F(y^-), F(y))` of each observation; for continuous responses the two
bounds coincide, for discrete ones a uniform draw between them gives the
randomized quantile residual.
"""

from __future__ import annotations

import typing

import numpy as np
from scipy import special, stats

from ednafit.fitting.data_structures import Block
from ednafit.fitting.errors import ConfigurationError, InvalidDataError

if typing.TYPE_CHECKING:
    from ednafit.ednafit_types import ArrayDict, ArrayF

LOG_2PI = np.log(2.0 * np.pi)


class Family:
    """Base class for response families."""

    name: str = "family"
    link: str = "identity"
    discrete: bool = False

    @property
    def blocks(self) -> list[Block]:
        """Parameter blocks owned by the family."""
        return []

    def inverse_link(self, eta: ArrayF) -> ArrayF:
        """Map the linear predictor to the mean."""
        return eta

    def initial_eta(self, y: ArrayF) -> float:
        """Starting value for the intercept."""
        return float(np.mean(y))

    def initial_params(self, y: ArrayF) -> ArrayDict:  # noqa: ARG002
        """Starting values for the family blocks."""
        return {}

    def validate(self, y: ArrayF) -> None:
        """Raise InvalidDataError if `y` is outside the support."""
        if not np.all(np.isfinite(y)):
            msg = f"{self.name}: response contains non-finite values."
            raise InvalidDataError(msg)

    def nll(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[float, ArrayF, ArrayDict]:
        """Negative log-likelihood and its gradients.

        Parameters
        ----------
        y : ArrayF
            Observed response.
        eta : ArrayF
            Linear predictor.
        params : ArrayDict
            Family parameter blocks.

        Returns
        -------
        tuple[float, ArrayF, ArrayDict]
            Total NLL, gradient w.r.t. `eta`, gradients w.r.t. `params`.
        """
        raise NotImplementedError

    def simulate(
        self, eta: ArrayF, params: ArrayDict, rng: np.random.Generator
    ) -> ArrayF:
        """Draw one response vector."""
        raise NotImplementedError

    def cdf_bounds(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[ArrayF, ArrayF]:
        """Lower and upper CDF values at each observation."""
        raise NotImplementedError


class Gaussian(Family):
    """Normal response with identity link."""

    name = "gaussian"

    @property
    def blocks(self) -> list[Block]:
        """Log residual SD."""
        return [Block("ln_sigma", 1)]

    def initial_params(self, y: ArrayF) -> ArrayDict:
        """Log of the response SD."""
        sd = float(np.std(y)) or 1.0
        return {"ln_sigma": np.array([np.log(sd)])}

    def nll(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[float, ArrayF, ArrayDict]:
        """Gaussian NLL."""
        ln_sigma = params["ln_sigma"][0]
        sigma = np.exp(ln_sigma)
        r = (y - eta) / sigma
        nll = float(np.sum(0.5 * r**2 + ln_sigma + 0.5 * LOG_2PI))
        return nll, -r / sigma, {"ln_sigma": np.array([np.sum(1.0 - r**2)])}

    def simulate(
        self, eta: ArrayF, params: ArrayDict, rng: np.random.Generator
    ) -> ArrayF:
        """Normal draws around `eta`."""
        return rng.normal(eta, np.exp(params["ln_sigma"][0]))

    def cdf_bounds(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[ArrayF, ArrayF]:
        """Continuous: both bounds are the CDF."""
        u = stats.norm.cdf(y, loc=eta, scale=np.exp(params["ln_sigma"][0]))
        return u, u


class _CountFamily(Family):
    """Shared helpers for log-link count families."""

    link = "log"
    discrete = True

    def inverse_link(self, eta: ArrayF) -> ArrayF:
        """Exponential mean."""
        return np.exp(eta)

    def initial_eta(self, y: ArrayF) -> float:
        """Log of the mean count."""
        return float(np.log(max(np.mean(y), 1e-2)))

    def validate(self, y: ArrayF) -> None:
        """Counts must be non-negative integers."""
        super().validate(y)
        if np.any(y < 0) or np.any(y != np.round(y)):
            msg = f"{self.name}: response must be non-negative integer counts."
            raise InvalidDataError(msg)


class Poisson(_CountFamily):
    """Poisson counts with log link."""

    name = "poisson"

    def nll(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict  # noqa: ARG002
    ) -> tuple[float, ArrayF, ArrayDict]:
        """Poisson NLL."""
        mu = np.exp(eta)
        nll = float(np.sum(mu - y * eta + special.gammaln(y + 1.0)))
        return nll, mu - y, {}

    def simulate(
        self, eta: ArrayF, params: ArrayDict, rng: np.random.Generator  # noqa: ARG002
    ) -> ArrayF:
        """Poisson draws."""
        return rng.poisson(np.exp(eta)).astype(float)

    def cdf_bounds(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict  # noqa: ARG002
    ) -> tuple[ArrayF, ArrayF]:
        """F(y - 1) and F(y)."""
        mu = np.exp(eta)
        return stats.poisson.cdf(y - 1, mu), stats.poisson.cdf(y, mu)


class NBinom2(_CountFamily):
    r"""Negative binomial with quadratic variance :math:`\mu + \mu^2 / \phi`."""

    name = "nbinom2"

    @property
    def blocks(self) -> list[Block]:
        """Log dispersion."""
        return [Block("ln_phi", 1)]

    def initial_params(self, y: ArrayF) -> ArrayDict:
        """Moment estimate of phi, clipped to a sane range."""
        m, v = float(np.mean(y)), float(np.var(y))
        phi = m**2 / (v - m) if v > m else 10.0
        return {"ln_phi": np.array([np.log(np.clip(phi, 1e-2, 1e2))])}

    def nll(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[float, ArrayF, ArrayDict]:
        """NB2 NLL."""
        ln_phi = params["ln_phi"][0]
        phi = np.exp(ln_phi)
        mu = np.exp(eta)
        log_phi_mu = np.logaddexp(ln_phi, eta)
        ll = (
            special.gammaln(y + phi)
            - special.gammaln(phi)
            - special.gammaln(y + 1.0)
            + phi * (ln_phi - log_phi_mu)
            + y * (eta - log_phi_mu)
        )
        g_eta = -phi * (y - mu) / (phi + mu)
        dll_dphi = (
            special.digamma(y + phi)
            - special.digamma(phi)
            + ln_phi
            - log_phi_mu
            + 1.0
            - (phi + y) / (phi + mu)
        )
        g_ln_phi = -phi * np.sum(dll_dphi)
        return float(-np.sum(ll)), g_eta, {"ln_phi": np.array([g_ln_phi])}

    @staticmethod
    def _prob(eta: ArrayF, params: ArrayDict) -> tuple[float, ArrayF]:
        phi = float(np.exp(params["ln_phi"][0]))
        return phi, phi / (phi + np.exp(eta))

    def simulate(
        self, eta: ArrayF, params: ArrayDict, rng: np.random.Generator
    ) -> ArrayF:
        """Negative binomial draws (failures before `phi` successes)."""
        phi, p = self._prob(eta, params)
        return rng.negative_binomial(phi, p).astype(float)

    def cdf_bounds(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict
    ) -> tuple[ArrayF, ArrayF]:
        """F(y - 1) and F(y)."""
        phi, p = self._prob(eta, params)
        return stats.nbinom.cdf(y - 1, phi, p), stats.nbinom.cdf(y, phi, p)


class Binomial(Family):
    """Bernoulli presence/absence with logit link."""

    name = "binomial"
    link = "logit"
    discrete = True

    def inverse_link(self, eta: ArrayF) -> ArrayF:
        """Logistic mean."""
        return special.expit(eta)

    def initial_eta(self, y: ArrayF) -> float:
        """Logit of the prevalence."""
        return float(special.logit(np.clip(np.mean(y), 0.01, 0.99)))

    def validate(self, y: ArrayF) -> None:
        """Response must be 0/1."""
        super().validate(y)
        if not np.all(np.isin(y, (0.0, 1.0))):
            msg = "binomial: response must be 0 or 1."
            raise InvalidDataError(msg)

    def nll(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict  # noqa: ARG002
    ) -> tuple[float, ArrayF, ArrayDict]:
        """Bernoulli NLL."""
        nll = float(np.sum(np.logaddexp(0.0, eta) - y * eta))
        return nll, special.expit(eta) - y, {}

    def simulate(
        self, eta: ArrayF, params: ArrayDict, rng: np.random.Generator  # noqa: ARG002
    ) -> ArrayF:
        """Bernoulli draws."""
        return (rng.uniform(size=eta.shape) < special.expit(eta)).astype(float)

    def cdf_bounds(
        self, y: ArrayF, eta: ArrayF, params: ArrayDict  # noqa: ARG002
    ) -> tuple[ArrayF, ArrayF]:
        """(0, 1 - p) for zeros and (1 - p, 1) for ones."""
        q = special.expit(-eta)
        return np.where(y > 0, q, 0.0), np.where(y > 0, 1.0, q)


FAMILIES: dict[str, type[Family]] = {
    "gaussian": Gaussian,
    "poisson": Poisson,
    "nbinom2": NBinom2,
    "binomial": Binomial,
}


def get_family(family: str | Family) -> Family:
    """Return a family instance from its name (or the instance itself).

    Examples
    --------
    >>> get_family("nbinom2").name
    'nbinom2'
    """
    if isinstance(family, Family):
        return family
    try:
        return FAMILIES[family]()
    except KeyError:
        msg = f"Unknown family {family!r}."
        raise ConfigurationError(msg, [f"Use one of {sorted(FAMILIES)}."]) from None
