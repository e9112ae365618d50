"""
Shared compute infrastructure for phylostats.

This module provides the numerical optimization layer used by both
estimators: dense Cholesky-based linear algebra with singularity
detection, bounded multi-start minimization, and timing utilities.

Submodules:
    linalg: Cholesky factorization, GLS, eigenvalue checks
    optimize: Bounded minimization with penalties and cancellation
    timing: Execution timing utilities
"""

from phylostats.core.compute.linalg import (
    CholeskyFactor,
    GLSResult,
    cholesky,
    gls,
    min_eigenvalue,
)
from phylostats.core.compute.optimize import OptimizeOutcome, minimize
from phylostats.core.compute.timing import Timer

__all__ = [
    # Linear algebra
    "CholeskyFactor",
    "GLSResult",
    "cholesky",
    "gls",
    "min_eigenvalue",
    # Optimization
    "OptimizeOutcome",
    "minimize",
    # Timing
    "Timer",
]
