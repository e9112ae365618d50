"""
Marginal deviance computation for PGLMM.

The deviance is the objective the outer optimizer minimizes over the
variance parameters. Both forms work on the dense marginal covariance

    V = D + Σ_k θ_k² K_k

where K_k are the observation-level structure matrices of the random
terms and D is diagonal.

Gaussian (σ² profiled out, D = I, θ_k = σ_k / σ):

    ML:   d(θ) = log|V*| + n × [1 + log(2π × r/n)]
    REML: d(θ) = log|V*| + log|X'V*⁻¹X| + (n-p) × [1 + log(2π × r/(n-p))]

Fixed dispersion (working problem of the quasi-likelihood iterations,
D = diag(1/w), θ_k = σ_k):

    ML:   d(θ) = log|V| + r + n log(2π)
    REML: d(θ) = log|V| + log|X'V⁻¹X| + r + (n-p) log(2π)

with r = (y - Xβ̂)'V⁻¹(y - Xβ̂) at the GLS estimate β̂. In both cases the
log-likelihood is -d/2.

References:
    Ives, A. R., & Helmus, M. R. (2011). Generalized linear mixed models
    for phylogenetic analyses of community structure.
    Ecological Monographs, 81(3), 511-525.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from phylostats.core.compute.linalg import CholeskyFactor, GLSResult, cholesky, gls
from phylostats.core.config import DEFAULT_RCOND_THRESHOLD


@dataclass(frozen=True)
class MarginalFit:
    """GLS fit of the marginal model at fixed variance parameters.

    Attributes:
        theta: Variance parameters.
        factor: Cholesky factor of V.
        gls: GLS solution (β̂, residuals, V⁻¹ residuals).
        scale: σ̂² (profiled Gaussian) or 1.0 (fixed dispersion).
        deviance: -2 × (restricted) log-likelihood.
    """
    theta: NDArray
    factor: CholeskyFactor
    gls: GLSResult
    scale: float
    deviance: float

    @property
    def beta(self) -> NDArray:
        return self.gls.beta

    @property
    def vcov(self) -> NDArray:
        """Covariance of β̂: scale × (X'V⁻¹X)⁻¹."""
        return self.scale * self.gls.xtvx.inverse()

    def conditional_modes(self, structures: Sequence[NDArray]) -> list[NDArray]:
        """Per-term conditional modes θ_k² K_k V⁻¹ (y - Xβ̂), observation scale."""
        return [
            (t * t) * (K @ self.gls.vinv_residuals)
            for t, K in zip(self.theta, structures)
        ]


def marginal_covariance(
    theta: NDArray,
    structures: Sequence[NDArray],
    residual_diag: NDArray | None = None,
) -> NDArray:
    """V = D + Σ θ_k² K_k, with D = I when residual_diag is None."""
    n = structures[0].shape[0]
    if residual_diag is None:
        V = np.eye(n)
    else:
        V = np.diag(residual_diag)
    for t, K in zip(theta, structures):
        if t != 0.0:
            V += (t * t) * K
    return V


def fit_profiled(
    theta: NDArray,
    X: NDArray,
    y: NDArray,
    structures: Sequence[NDArray],
    reml: bool = True,
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD,
) -> MarginalFit:
    """Gaussian fit with the residual variance profiled out.

    Raises:
        SingularCovarianceError: If V* or X'V*⁻¹X is singular.
    """
    n, p = X.shape
    theta = np.asarray(theta, dtype=np.float64)
    V = marginal_covariance(theta, structures)
    factor = cholesky(V, name='V', rcond_threshold=rcond_threshold)
    fit = gls(X, y, factor, rcond_threshold=rcond_threshold)

    r = max(fit.quad, 1e-300)
    if reml:
        df = n - p
        dev = (factor.logdet
               + fit.xtvx.logdet
               + df * (1.0 + np.log(2.0 * np.pi * r / df)))
    else:
        df = n
        dev = factor.logdet + n * (1.0 + np.log(2.0 * np.pi * r / n))

    return MarginalFit(
        theta=theta,
        factor=factor,
        gls=fit,
        scale=r / df,
        deviance=float(dev),
    )


def fit_fixed_scale(
    theta: NDArray,
    X: NDArray,
    z: NDArray,
    structures: Sequence[NDArray],
    residual_diag: NDArray,
    reml: bool = True,
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD,
) -> MarginalFit:
    """Fit of the working problem z ~ N(Xβ, diag(1/w) + Σ θ_k² K_k).

    Raises:
        SingularCovarianceError: If V or X'V⁻¹X is singular.
    """
    n, p = X.shape
    theta = np.asarray(theta, dtype=np.float64)
    V = marginal_covariance(theta, structures, residual_diag)
    factor = cholesky(V, name='V', rcond_threshold=rcond_threshold)
    fit = gls(X, z, factor, rcond_threshold=rcond_threshold)

    if reml:
        dev = factor.logdet + fit.xtvx.logdet + fit.quad + (n - p) * np.log(2.0 * np.pi)
    else:
        dev = factor.logdet + fit.quad + n * np.log(2.0 * np.pi)

    return MarginalFit(
        theta=theta,
        factor=factor,
        gls=fit,
        scale=1.0,
        deviance=float(dev),
    )


def profiled_deviance(
    theta: NDArray,
    X: NDArray,
    y: NDArray,
    structures: Sequence[NDArray],
    reml: bool = True,
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD,
) -> float:
    """Profiled REML (or ML) deviance of the Gaussian model at θ."""
    return fit_profiled(theta, X, y, structures, reml, rcond_threshold).deviance


def quasi_deviance(
    theta: NDArray,
    X: NDArray,
    z: NDArray,
    structures: Sequence[NDArray],
    residual_diag: NDArray,
    reml: bool = True,
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD,
) -> float:
    """REML (or ML) deviance of the working problem at θ."""
    return fit_fixed_scale(
        theta, X, z, structures, residual_diag, reml, rcond_threshold
    ).deviance
