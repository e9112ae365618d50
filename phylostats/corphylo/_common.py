"""
Common data types for cor-phylo.

Contains the frozen parameter payloads that go inside Result[P] envelopes
and the bootstrap interval table.

References:
    Zheng, L., Ives, A. R., Garland, T., et al. (2009). New multivariate
    tests for phylogenetic signal and trait correlations applied to
    ecophysiological phenotypes of nine Manglietia species.
    Functional Ecology, 23(6), 1059-1069.
"""

from __future__ import annotations

from dataclasses import dataclass

from numpy.typing import NDArray

from phylostats.core.config import FitControl


@dataclass(frozen=True)
class CorPhyloSettings:
    """Fit options carried by a solution so that it can be refit.

    Attributes:
        reml: REML (True) or ML (False) objective.
        constrain_d: Map d onto (0, 1) with a logistic transform.
        lower_d: Lower bound for d.
        control: Optimizer settings.
    """
    reml: bool
    constrain_d: bool
    lower_d: float
    control: FitControl


@dataclass(frozen=True)
class CorPhyloBootstrap:
    """Percentile bootstrap intervals for a cor-phylo fit.

    Attributes:
        alpha: 1 - confidence level.
        corrs_lower, corrs_upper: Interval bounds of the correlations (p, p).
        d_lower, d_upper: Interval bounds of the signal parameters (p,).
        B_lower, B_upper: Interval bounds of the coefficients (k,).
        corrs: Replicate correlation estimates (r, p, p).
        d: Replicate signal estimates (r, p).
        B: Replicate coefficient estimates (r, k).
        n_reps: Number of replicates requested.
        n_failed: Replicates excluded (error or non-convergence).
        representative_cause: First recorded failure, or None.
    """
    alpha: float
    corrs_lower: NDArray
    corrs_upper: NDArray
    d_lower: NDArray
    d_upper: NDArray
    B_lower: NDArray
    B_upper: NDArray
    corrs: NDArray
    d: NDArray
    B: NDArray
    n_reps: int
    n_failed: int
    representative_cause: str | None


@dataclass(frozen=True)
class CorPhyloParams:
    """
    Parameter payload for a fitted cor-phylo model.

    Correlations, signal parameters and R refer to the standardized
    traits on the standardized tree; coefficients are reported on the
    original scale of traits and covariates.
    """
    # Trait correlation
    corrs: NDArray                     # correlation matrix (p, p)
    cov_matrix: NDArray                # R = L'L on the standardized scale (p, p)
    d: NDArray                         # phylogenetic signal per trait (p,)

    # Regression coefficients
    B: NDArray                         # (k,)
    B_names: tuple[str, ...]
    B_se: NDArray                      # (k,)
    B_z: NDArray                       # (k,)
    B_p: NDArray                       # two-sided normal p-values (k,)
    B_cov: NDArray                     # (k, k)

    # Model fit
    log_likelihood: float
    aic: float
    bic: float
    reml: bool
    n_species: int
    n_traits: int
    trait_names: tuple[str, ...]

    # Convergence and conditioning
    converged: bool
    n_iter: int
    rcond_V: float
    rcond_UVU: float

    # Internal
    par: NDArray                       # optimizer parameter vector

    # Optional parametric bootstrap intervals
    bootstrap: CorPhyloBootstrap | None = None
