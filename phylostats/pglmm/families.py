"""
Response families and link functions for PGLMM.

Each Family defines:
- A variance function V(μ) relating variance to the mean
- A default link function g(μ) mapping the mean to the linear predictor
- A deviance function for the conditional fit
- A log-likelihood function
- An initialization function for the working-response iterations

Binomial responses are proportions y/m with prior weights m (the number
of trials); binary data is the special case m = 1. The zero-inflated
families add a structural-zero probability π:

    P(y = 0) = π + (1 - π) f(0 | μ),    P(y = k) = (1 - π) f(k | μ),  k > 0

Each Link defines:
- g(μ) → η  (link)
- g⁻¹(η) → μ  (inverse link)
- dμ/dη  (derivative of inverse link, for working weights)

References:
    McCullagh, P., & Nelder, J. A. (1989). Generalized Linear Models (2nd ed.)
    Lambert, D. (1992). Zero-inflated Poisson regression, with an
    application to defects in manufacturing. Technometrics, 34(1), 1-14.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import numpy as np
from numpy.typing import NDArray
from scipy.special import gammaln

from phylostats.core.exceptions import ValidationError


# =====================================================================
# Link functions
# =====================================================================

class Link(ABC):
    """Abstract link function g(μ) mapping mean to linear predictor."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def link(self, mu: NDArray) -> NDArray:
        """g(μ) → η."""
        ...

    @abstractmethod
    def linkinv(self, eta: NDArray) -> NDArray:
        """g⁻¹(η) → μ."""
        ...

    @abstractmethod
    def mu_eta(self, eta: NDArray) -> NDArray:
        """dμ/dη = (g⁻¹)'(η)."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class IdentityLink(Link):
    """Identity link: g(μ) = μ. Default for Gaussian family."""

    @property
    def name(self) -> str:
        return 'identity'

    def link(self, mu: NDArray) -> NDArray:
        return mu.copy()

    def linkinv(self, eta: NDArray) -> NDArray:
        return eta.copy()

    def mu_eta(self, eta: NDArray) -> NDArray:
        return np.ones_like(eta)


class LogitLink(Link):
    """Logit link: g(μ) = log(μ/(1-μ)). Default for Binomial family."""

    @property
    def name(self) -> str:
        return 'logit'

    def link(self, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return np.log(mu / (1 - mu))

    def linkinv(self, eta: NDArray) -> NDArray:
        eta = np.clip(eta, -500, 500)
        return 1.0 / (1.0 + np.exp(-eta))

    def mu_eta(self, eta: NDArray) -> NDArray:
        eta = np.clip(eta, -500, 500)
        p = 1.0 / (1.0 + np.exp(-eta))
        return np.maximum(p * (1.0 - p), 1e-10)


class LogLink(Link):
    """Log link: g(μ) = log(μ). Default for Poisson family."""

    @property
    def name(self) -> str:
        return 'log'

    def link(self, mu: NDArray) -> NDArray:
        return np.log(np.maximum(mu, 1e-10))

    def linkinv(self, eta: NDArray) -> NDArray:
        eta = np.clip(eta, -500, 500)
        return np.exp(eta)

    def mu_eta(self, eta: NDArray) -> NDArray:
        eta = np.clip(eta, -500, 500)
        return np.maximum(np.exp(eta), 1e-10)


_LINK_CLASSES: dict[str, type[Link]] = {
    'identity': IdentityLink,
    'logit': LogitLink,
    'log': LogLink,
}


def _resolve_link(link: str | Link | None, default: Link) -> Link:
    """Resolve a link argument to a Link instance."""
    if link is None:
        return default
    if isinstance(link, Link):
        return link
    if isinstance(link, str):
        cls = _LINK_CLASSES.get(link.lower())
        if cls is None:
            valid = ', '.join(sorted(_LINK_CLASSES.keys()))
            raise ValidationError(f"Unknown link: {link!r}. Valid links: {valid}")
        return cls()
    raise ValidationError(f"link must be str or Link, got {type(link).__name__}")


# =====================================================================
# Family base class
# =====================================================================

class Family(ABC):
    """
    Response family specification.

    Defines the relationship between the mean and variance of the
    response distribution, along with a link function.
    """

    zero_inflated: bool = False

    def __init__(self, link: str | Link | None = None):
        self._link = _resolve_link(link, self._default_link())

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def _default_link(self) -> Link:
        ...

    @property
    def link(self) -> Link:
        return self._link

    @property
    def is_gaussian(self) -> bool:
        return False

    @abstractmethod
    def variance(self, mu: NDArray) -> NDArray:
        """Variance function V(μ)."""
        ...

    @abstractmethod
    def deviance(self, y: NDArray, mu: NDArray, wt: NDArray) -> float:
        """Total deviance: 2 * Σ wt_i * d(y_i, μ_i)."""
        ...

    @abstractmethod
    def initialize(self, y: NDArray) -> NDArray:
        """Starting μ from y, inside the valid range of the link."""
        ...

    @abstractmethod
    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float = 1.0
    ) -> float:
        """Conditional log-likelihood Σ log f(y_i | μ_i)."""
        ...

    def validate_response(self, y: NDArray, wt: NDArray) -> None:
        """Check that y lies in the support of the family."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(link={self._link.name!r})"


class _ZeroInflated(ABC):
    """Mixin for zero-inflated count families."""

    zero_inflated = True

    @abstractmethod
    def zero_probability(self, mu: NDArray, wt: NDArray) -> NDArray:
        """f(0 | μ) of the non-inflated distribution."""

    def zero_posterior(
        self, y: NDArray, mu: NDArray, wt: NDArray, pi: float
    ) -> NDArray:
        """Posterior probability that each observation is a structural zero.

        τ_i = π / (π + (1 - π) f(0 | μ_i)) for y_i = 0, and 0 otherwise.
        """
        f0 = self.zero_probability(mu, wt)
        tau = pi / np.maximum(pi + (1.0 - pi) * f0, 1e-300)
        return np.where(y == 0, tau, 0.0)

    def zi_log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, pi: float
    ) -> float:
        """Marginal log-likelihood of the zero-inflated mixture."""
        pi = float(np.clip(pi, 0.0, 1.0 - 1e-12))
        f0 = self.zero_probability(mu, wt)
        pointwise = self._pointwise_log_likelihood(y, mu, wt)
        zero = np.log(np.maximum(pi + (1.0 - pi) * f0, 1e-300))
        positive = np.log1p(-pi) + pointwise
        return float(np.sum(np.where(y == 0, zero, positive)))


# =====================================================================
# Concrete families
# =====================================================================

class Gaussian(Family):
    """Gaussian (Normal) family. Default link: identity.

    V(μ) = 1
    Deviance = Σ wt_i * (y_i - μ_i)²
    """

    @property
    def name(self) -> str:
        return 'gaussian'

    @property
    def is_gaussian(self) -> bool:
        return True

    def _default_link(self) -> Link:
        return IdentityLink()

    def variance(self, mu: NDArray) -> NDArray:
        return np.ones_like(mu)

    def initialize(self, y: NDArray) -> NDArray:
        return y.copy()

    def deviance(self, y: NDArray, mu: NDArray, wt: NDArray) -> float:
        return float(np.sum(wt * (y - mu) ** 2))

    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float = 1.0
    ) -> float:
        n = float(np.sum(wt > 0))
        rss = float(np.sum(wt * (y - mu) ** 2))
        return -0.5 * (rss / dispersion + n * np.log(2 * np.pi * dispersion))


class Binomial(Family):
    """Binomial family on proportions y/m with weights m. Default link: logit.

    V(μ) = μ(1-μ)
    Deviance = 2 * Σ m_i * [y_i log(y_i/μ_i) + (1-y_i) log((1-y_i)/(1-μ_i))]
    """

    @property
    def name(self) -> str:
        return 'binomial'

    def _default_link(self) -> Link:
        return LogitLink()

    def variance(self, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return mu * (1.0 - mu)

    def initialize(self, y: NDArray) -> NDArray:
        return (y + 0.5) / 2.0

    def validate_response(self, y: NDArray, wt: NDArray) -> None:
        if np.any(y < 0) or np.any(y > 1):
            raise ValidationError(
                f"{self.name}: responses must be proportions in [0, 1] "
                f"(successes / trials)"
            )

    def deviance(self, y: NDArray, mu: NDArray, wt: NDArray) -> float:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        with np.errstate(divide='ignore', invalid='ignore'):
            term1 = np.where(y > 0, y * np.log(y / mu), 0.0)
            term2 = np.where(y < 1, (1 - y) * np.log((1 - y) / (1 - mu)), 0.0)
        return 2.0 * float(np.sum(wt * (term1 + term2)))

    def _pointwise_log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray
    ) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        k = np.round(y * wt)
        log_choose = gammaln(wt + 1) - gammaln(k + 1) - gammaln(wt - k + 1)
        return log_choose + k * np.log(mu) + (wt - k) * np.log(1 - mu)

    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float = 1.0
    ) -> float:
        return float(np.sum(self._pointwise_log_likelihood(y, mu, wt)))


class Poisson(Family):
    """Poisson family. Default link: log.

    V(μ) = μ
    Deviance = 2 * Σ wt_i * [y_i log(y_i/μ_i) - (y_i - μ_i)]
    """

    @property
    def name(self) -> str:
        return 'poisson'

    def _default_link(self) -> Link:
        return LogLink()

    def variance(self, mu: NDArray) -> NDArray:
        return np.maximum(mu, 1e-10)

    def initialize(self, y: NDArray) -> NDArray:
        return np.maximum(y, 0.1)

    def validate_response(self, y: NDArray, wt: NDArray) -> None:
        if np.any(y < 0) or np.any(y != np.round(y)):
            raise ValidationError(
                f"{self.name}: responses must be non-negative integers"
            )

    def deviance(self, y: NDArray, mu: NDArray, wt: NDArray) -> float:
        mu = np.maximum(mu, 1e-10)
        with np.errstate(divide='ignore', invalid='ignore'):
            term = np.where(y > 0, y * np.log(y / mu), 0.0)
        return 2.0 * float(np.sum(wt * (term - (y - mu))))

    def _pointwise_log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray
    ) -> NDArray:
        mu = np.maximum(mu, 1e-10)
        return wt * (y * np.log(mu) - mu - gammaln(y + 1))

    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float = 1.0
    ) -> float:
        return float(np.sum(self._pointwise_log_likelihood(y, mu, wt)))


class ZIBinomial(_ZeroInflated, Binomial):
    """Zero-inflated binomial family. f(0 | μ) = (1 - μ)^m."""

    @property
    def name(self) -> str:
        return 'zi_binomial'

    def zero_probability(self, mu: NDArray, wt: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return np.exp(wt * np.log1p(-mu))


class ZIPoisson(_ZeroInflated, Poisson):
    """Zero-inflated Poisson family. f(0 | μ) = exp(-μ)."""

    @property
    def name(self) -> str:
        return 'zi_poisson'

    def zero_probability(self, mu: NDArray, wt: NDArray) -> NDArray:
        return np.exp(-np.maximum(mu, 1e-10))


# =====================================================================
# Family name → class mapping + resolver
# =====================================================================

_FAMILY_CLASSES: dict[str, type[Family]] = {
    'gaussian': Gaussian,
    'binomial': Binomial,
    'poisson': Poisson,
    'zi_binomial': ZIBinomial,
    'zi_poisson': ZIPoisson,
}


def resolve_family(family: str | Family) -> Family:
    """Resolve a family argument to a Family instance.

    Args:
        family: Either a string name ('gaussian', 'binomial', 'poisson',
                'zi_binomial', 'zi_poisson') or a Family instance
                (passed through).

    Raises:
        ValidationError: If the name is not recognized or the argument is
            neither a string nor a Family.
    """
    if isinstance(family, Family):
        return family
    if isinstance(family, str):
        cls = _FAMILY_CLASSES.get(family.lower())
        if cls is None:
            valid = ', '.join(sorted(_FAMILY_CLASSES.keys()))
            raise ValidationError(
                f"Unknown family: {family!r}. Valid families: {valid}"
            )
        return cls()
    raise ValidationError(
        f"family must be str or Family, got {type(family).__name__}"
    )
