"""
Exception hierarchy for phylostats.

All exceptions inherit from PhyloStatsError to allow catching any
library-specific error. Domain-specific exceptions should inherit from
the appropriate base class here.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages are actionable with actual vs expected values
    - Never catch and re-raise with less information
"""


class PhyloStatsError(Exception):
    """Base exception for all phylostats errors."""
    pass


class ValidationError(PhyloStatsError):
    """
    Input validation failed.

    Raised when user-provided inputs fail validation checks.
    """
    pass


class DimensionError(ValidationError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when array shapes don't match expected dimensions or
    when multiple arrays have inconsistent shapes.
    """
    pass


class ConstructionError(ValidationError):
    """
    A covariance matrix could not be built from the given inputs.

    Raised for malformed trees (negative or missing branch lengths,
    duplicate tip labels), tip/species set mismatches, and grouping
    factors that cannot carry a structured covariance (a single level).

    Attributes:
        missing: Labels expected but not found, if applicable
        extra: Labels found but not expected, if applicable
    """

    def __init__(
        self,
        message: str,
        missing: tuple[str, ...] = (),
        extra: tuple[str, ...] = (),
    ):
        super().__init__(message)
        self.missing = tuple(missing)
        self.extra = tuple(extra)


class SpecError(ValidationError):
    """
    A model or random-term specification is malformed.

    Raised before any optimization begins: bad term syntax, unknown
    grouping factor or covariate names, covariance matrices that do not
    match the levels of their grouping factor, duplicate terms.
    """
    pass


class NumericalError(PhyloStatsError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation.
    """
    pass


class SingularCovarianceError(NumericalError):
    """
    Covariance matrix is singular, nearly singular or not positive definite.

    Raised when a Cholesky factorization fails or its reciprocal condition
    estimate falls below the configured threshold. In a PGLMM fit this
    usually signals mis-specified nesting or duplicated terms.

    Attributes:
        matrix_name: Name/description of the problematic matrix
        rcond: Reciprocal condition estimate, if available
    """

    def __init__(
        self,
        message: str,
        matrix_name: str | None = None,
        rcond: float | None = None,
    ):
        super().__init__(message)
        self.matrix_name = matrix_name
        self.rcond = rcond


class InvalidCorrelationError(NumericalError):
    """
    An estimated correlation matrix is not a valid correlation matrix.

    The cor-phylo parameterization makes this impossible for well-formed
    input, so this error indicates a defect rather than bad data.

    Attributes:
        min_eigenvalue: Smallest eigenvalue of the offending matrix
    """

    def __init__(self, message: str, min_eigenvalue: float | None = None):
        super().__init__(message)
        self.min_eigenvalue = min_eigenvalue


class InsufficientReplicatesError(PhyloStatsError):
    """
    Too many bootstrap replicates failed to produce usable estimates.

    Attributes:
        n_failed: Number of failed replicates
        n_reps: Number of replicates requested
        representative_cause: Message of the first recorded failure
    """

    def __init__(
        self,
        message: str,
        n_failed: int,
        n_reps: int,
        representative_cause: str | None = None,
    ):
        super().__init__(message)
        self.n_failed = n_failed
        self.n_reps = n_reps
        self.representative_cause = representative_cause


class FitCancelledError(PhyloStatsError):
    """A fit or bootstrap batch was cancelled through its cancel event."""
    pass


class ConvergenceWarning(RuntimeWarning):
    """
    Iterative estimation stopped at its iteration cap.

    Non-fatal: the best estimate is still returned, with converged=False
    in the parameter payload.
    """
    pass
