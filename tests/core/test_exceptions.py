"""
Tests for the phylostats exception hierarchy.

Validates:
    - Inheritance chain (all exceptions catchable via PhyloStatsError)
    - Diagnostic attributes on ConstructionError, SingularCovarianceError,
      InvalidCorrelationError, InsufficientReplicatesError
    - ConvergenceWarning is a RuntimeWarning, not an exception
"""

import pytest

from phylostats.core.exceptions import (
    ConstructionError,
    ConvergenceWarning,
    DimensionError,
    FitCancelledError,
    InsufficientReplicatesError,
    InvalidCorrelationError,
    NumericalError,
    PhyloStatsError,
    SingularCovarianceError,
    SpecError,
    ValidationError,
)


# ═══════════════════════════════════════════════════════════════════════
# Inheritance hierarchy
# ═══════════════════════════════════════════════════════════════════════


class TestInheritance:
    """Every exception is catchable via PhyloStatsError."""

    @pytest.mark.parametrize("cls", [
        ValidationError, DimensionError, ConstructionError, SpecError,
        NumericalError, SingularCovarianceError, InvalidCorrelationError,
        FitCancelledError,
    ])
    def test_catchable_as_base(self, cls):
        with pytest.raises(PhyloStatsError):
            raise cls("failure")

    @pytest.mark.parametrize("cls", [DimensionError, ConstructionError, SpecError])
    def test_input_errors_are_validation_errors(self, cls):
        assert issubclass(cls, ValidationError)

    @pytest.mark.parametrize("cls", [SingularCovarianceError, InvalidCorrelationError])
    def test_numeric_errors_are_numerical_errors(self, cls):
        assert issubclass(cls, NumericalError)

    def test_insufficient_replicates_is_base_error(self):
        err = InsufficientReplicatesError("too many failures", n_failed=6, n_reps=10)
        assert isinstance(err, PhyloStatsError)
        assert not isinstance(err, ValidationError)

    def test_convergence_warning_is_runtime_warning(self):
        assert issubclass(ConvergenceWarning, RuntimeWarning)
        assert not issubclass(ConvergenceWarning, PhyloStatsError)


# ═══════════════════════════════════════════════════════════════════════
# Diagnostic attributes
# ═══════════════════════════════════════════════════════════════════════


class TestAttributes:

    def test_construction_error_defaults(self):
        err = ConstructionError("bad tree")
        assert err.missing == ()
        assert err.extra == ()
        assert str(err) == "bad tree"

    def test_construction_error_labels(self):
        err = ConstructionError("mismatch", missing=["a", "b"], extra=["z"])
        assert err.missing == ("a", "b")
        assert err.extra == ("z",)

    def test_singular_covariance_error(self):
        err = SingularCovarianceError("singular", matrix_name="V", rcond=1e-15)
        assert err.matrix_name == "V"
        assert err.rcond == 1e-15

    def test_singular_covariance_error_defaults(self):
        err = SingularCovarianceError("singular")
        assert err.matrix_name is None
        assert err.rcond is None

    def test_invalid_correlation_error(self):
        err = InvalidCorrelationError("not PSD", min_eigenvalue=-0.3)
        assert err.min_eigenvalue == -0.3

    def test_insufficient_replicates_error(self):
        err = InsufficientReplicatesError(
            "7 of 10 failed", n_failed=7, n_reps=10,
            representative_cause="SingularCovarianceError: V",
        )
        assert err.n_failed == 7
        assert err.n_reps == 10
        assert err.representative_cause.startswith("SingularCovarianceError")
        assert "7 of 10" in str(err)
