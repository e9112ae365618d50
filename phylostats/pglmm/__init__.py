"""
Phylogenetic generalized linear mixed models (PGLMM).

Public API:
    pglmm()              — fit a Gaussian (REML/ML) or non-Gaussian (PQL) PGLMM
    parse_random_terms() — parse a random-effects formula into terms
    simple(), structured(), nested(), crossed() — build terms directly
    GaussianEstimator, PQLEstimator, resolve_estimator — estimation strategies
    PGLMMSolution        — result wrapper
"""

from phylostats.pglmm._terms import (
    RandomTerm, TermKind, ResolvedTerm,
    simple, structured, nested, crossed,
    parse_random_terms, resolve_terms,
)
from phylostats.pglmm.design import PGLMMDesign
from phylostats.pglmm.families import (
    Family, Gaussian, Binomial, Poisson, ZIBinomial, ZIPoisson, resolve_family,
)
from phylostats.pglmm.solvers import (
    pglmm, GaussianEstimator, PQLEstimator, resolve_estimator, profile_lrt,
)
from phylostats.pglmm.solution import PGLMMSolution

__all__ = [
    "pglmm",
    "PGLMMSolution",
    "PGLMMDesign",
    # Terms
    "RandomTerm",
    "TermKind",
    "ResolvedTerm",
    "simple",
    "structured",
    "nested",
    "crossed",
    "parse_random_terms",
    "resolve_terms",
    # Families
    "Family",
    "Gaussian",
    "Binomial",
    "Poisson",
    "ZIBinomial",
    "ZIPoisson",
    "resolve_family",
    # Estimators
    "GaussianEstimator",
    "PQLEstimator",
    "resolve_estimator",
    "profile_lrt",
]
