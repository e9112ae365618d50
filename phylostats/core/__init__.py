"""
Core infrastructure for phylostats.

This module provides shared abstractions, utilities, and numeric kernels
used by all domain-specific submodules (covariance, pglmm, corphylo).

Key components:
    protocols: Estimator protocol (pluggable estimation strategies)
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    config: FitControl tolerances and iteration caps
    compute: Linear algebra, optimization, timing
"""

from phylostats.core.protocols import Estimator
from phylostats.core.result import Result
from phylostats.core.config import FitControl
from phylostats.core.exceptions import (
    PhyloStatsError,
    ValidationError,
    DimensionError,
    ConstructionError,
    SpecError,
    NumericalError,
    SingularCovarianceError,
    InvalidCorrelationError,
    InsufficientReplicatesError,
    FitCancelledError,
    ConvergenceWarning,
)

__all__ = [
    # Protocols
    "Estimator",
    # Result
    "Result",
    # Configuration
    "FitControl",
    # Exceptions
    "PhyloStatsError",
    "ValidationError",
    "DimensionError",
    "ConstructionError",
    "SpecError",
    "NumericalError",
    "SingularCovarianceError",
    "InvalidCorrelationError",
    "InsufficientReplicatesError",
    "FitCancelledError",
    "ConvergenceWarning",
]
