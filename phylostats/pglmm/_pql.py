"""
Penalized quasi-likelihood (PQL) for non-Gaussian PGLMM.

For a non-Gaussian response the marginal likelihood has no closed form.
PQL linearizes the model around the current fit and treats the result
as a Gaussian PGLMM with known residual variances:

    1. Working weights:  w = π_w × (dμ/dη)² / V(μ)
    2. Pseudo-data:      z = η + (y - μ) / (dμ/dη)
    3. Marginal model:   z ~ N(Xβ, diag(1/w) + Σ σ_k² K_k)
    4. Inner loop (σ fixed): GLS for β, conditional modes
       b = Σ σ_k² K_k V⁻¹(z - Xβ), η = Xβ + b, μ = g⁻¹(η);
       repeat 1-4 until β stabilizes
    5. Outer loop: re-estimate σ by minimizing the REML (or ML) deviance
       of the working problem

The outer loop stops when the relative change of both β and σ falls
below the tolerance, or at the iteration cap (non-fatal).

Zero-inflated families add an EM step at the top of every outer
iteration: the posterior probability τ_i that a zero is structural,
π = mean(τ), and prior weights π_w = m (1 - τ).

References:
    Breslow, N. E., & Clayton, D. G. (1993). Approximate inference in
    generalized linear mixed models. JASA, 88(421), 9-25.
    Ives, A. R., & Helmus, M. R. (2011). Generalized linear mixed models
    for phylogenetic analyses of community structure.
    Ecological Monographs, 81(3), 511-525.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import partial

import numpy as np
from numpy.typing import NDArray

from phylostats.core.compute.optimize import minimize
from phylostats.core.config import FitControl
from phylostats.core.exceptions import FitCancelledError
from phylostats.pglmm._deviance import MarginalFit, fit_fixed_scale, quasi_deviance
from phylostats.pglmm.design import PGLMMDesign

logger = logging.getLogger(__name__)

_MIN_WEIGHT = 1e-6


@dataclass(frozen=True)
class PQLResult:
    """Result of the PQL iterations.

    Attributes:
        fit: Marginal fit of the final working problem.
        z: Final pseudo-data (n,).
        residual_diag: Final working residual variances 1/w (n,).
        mu: Fitted values on the response scale (n,).
        eta: Linear predictor Xβ + Σ b_k (n,).
        random_effects: Conditional modes per term (observation scale).
        zi_probability: Structural-zero probability, or None.
        converged: Whether the outer loop met the tolerance.
        n_iter: Number of outer iterations.
    """
    fit: MarginalFit
    z: NDArray
    residual_diag: NDArray
    mu: NDArray
    eta: NDArray
    random_effects: list[NDArray]
    zi_probability: float | None
    converged: bool
    n_iter: int


def _relative_change(new: NDArray, old: NDArray) -> float:
    scale = max(float(np.linalg.norm(old)), 1e-8)
    return float(np.linalg.norm(new - old)) / scale


def _working_problem(design: PGLMMDesign, mu, eta, prior):
    link = design.family.link
    mu_eta = link.mu_eta(eta)
    w = prior * mu_eta ** 2 / design.family.variance(mu)
    w = np.maximum(w, _MIN_WEIGHT)
    z = eta + (design.y - mu) / mu_eta
    return z, 1.0 / w


def _initial_zi_probability(design: PGLMMDesign, mu: NDArray) -> float:
    observed = float(np.mean(design.y == 0))
    expected = float(np.mean(design.family.zero_probability(mu, design.weights)))
    return float(np.clip(observed - expected, 0.05, 0.95))


def solve_pql(
    design: PGLMMDesign,
    control: FitControl,
    cancel: threading.Event | None = None,
) -> PQLResult:
    """Fit a non-Gaussian PGLMM by penalized quasi-likelihood.

    Args:
        design: Validated design with a non-Gaussian family.
        control: Tolerances and iteration caps.
        cancel: Event checked at every objective evaluation.

    Returns:
        PQLResult at the last outer iteration.

    Raises:
        SingularCovarianceError: If the working covariance is singular.
        FitCancelledError: If cancel is set.
    """
    family = design.family
    link = family.link
    X, structures = design.X, design.structures
    q = len(structures)

    mu = family.initialize(design.y)
    eta = link.link(mu)
    theta = np.full(q, 0.5)
    beta = np.zeros(design.p)
    prior = design.weights.copy()
    pi = _initial_zi_probability(design, mu) if family.zero_inflated else None
    bounds = [(0.0, None)] * q

    converged = False
    for outer in range(1, control.max_iter + 1):
        if cancel is not None and cancel.is_set():
            raise FitCancelledError(f"PQL cancelled at iteration {outer}")

        if family.zero_inflated:
            tau = family.zero_posterior(design.y, mu, design.weights, pi)
            pi = float(np.mean(tau))
            prior = design.weights * (1.0 - tau)

        beta_outer = beta.copy()
        for inner in range(1, control.inner_max_iter + 1):
            z, residual_diag = _working_problem(design, mu, eta, prior)
            fit = fit_fixed_scale(
                theta, X, z, structures, residual_diag,
                reml=design.reml, rcond_threshold=control.rcond_threshold,
            )
            b = fit.conditional_modes(structures)
            eta = X @ fit.beta + np.sum(b, axis=0)
            mu = link.linkinv(eta)
            change = _relative_change(fit.beta, beta)
            beta = fit.beta
            if change < control.tol:
                break

        z, residual_diag = _working_problem(design, mu, eta, prior)
        objective = partial(
            quasi_deviance,
            X=X, z=z, structures=structures, residual_diag=residual_diag,
            reml=design.reml, rcond_threshold=control.rcond_threshold,
        )
        outcome = minimize(
            objective,
            theta,
            bounds,
            method=control.optimizer,
            tol=control.optimizer_tol,
            max_iter=control.optimizer_max_iter,
            cancel=cancel,
        )
        theta_change = _relative_change(outcome.x, theta)
        beta_change = _relative_change(beta, beta_outer)
        theta = outcome.x

        logger.debug(
            "PQL iteration %d: beta change %.3g, sigma change %.3g, "
            "quasi-deviance %.6g",
            outer, beta_change, theta_change, outcome.fun,
        )

        if beta_change < control.tol and theta_change < control.tol:
            converged = True
            break

    z, residual_diag = _working_problem(design, mu, eta, prior)
    fit = fit_fixed_scale(
        theta, X, z, structures, residual_diag,
        reml=design.reml, rcond_threshold=control.rcond_threshold,
    )
    b = fit.conditional_modes(structures)
    eta = X @ fit.beta + np.sum(b, axis=0)
    mu = link.linkinv(eta)

    return PQLResult(
        fit=fit,
        z=z,
        residual_diag=residual_diag,
        mu=mu,
        eta=eta,
        random_effects=b,
        zi_probability=pi,
        converged=converged,
        n_iter=outer,
    )
