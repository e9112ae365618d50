"""Tests for input validators."""

import numpy as np
import pytest

from phylostats.core.exceptions import DimensionError, ValidationError
from phylostats.core.validation import (
    check_array, check_at_least, check_column_rank, check_consistent_length,
    check_finite, check_labels, check_min_samples, check_no_zero_variance_columns,
    check_open_interval, check_unique, check_vector, check_2d,
)


class TestCheckArray:

    def test_int_converted_to_float(self):
        arr = check_array([1, 2, 3], 'x')
        assert arr.dtype == np.float64

    def test_bool_converted(self):
        arr = check_array([True, False], 'x')
        assert arr.dtype == np.float64

    def test_strings_rejected(self):
        with pytest.raises(ValidationError, match="x"):
            check_array(['a', 'b'], 'x')

    def test_mixed_rejected(self):
        with pytest.raises(ValidationError):
            check_array([1, 'a', None], 'x')


class TestChecks:

    def test_finite(self):
        with pytest.raises(ValidationError, match="1 NaN"):
            check_finite(np.array([1.0, np.nan]), 'y')

    def test_2d(self):
        with pytest.raises(DimensionError):
            check_2d(np.ones(3), 'X')

    def test_consistent_length(self):
        with pytest.raises(DimensionError, match="y=3, X=4"):
            check_consistent_length(np.ones(3), np.ones((4, 2)), names=('y', 'X'))

    def test_min_samples(self):
        with pytest.raises(ValidationError, match="at least 3"):
            check_min_samples(np.ones(2), 3, 'y')

    def test_zero_variance(self):
        X = np.column_stack([np.arange(5.0), np.ones(5)])
        with pytest.raises(ValidationError, match=r"\[1\]"):
            check_no_zero_variance_columns(X, 'traits')

    def test_rank(self):
        x = np.arange(6.0)
        with pytest.raises(ValidationError, match="rank-deficient"):
            check_column_rank(np.column_stack([x, 2 * x]), 'X')


class TestCheckLabels:

    def test_strings(self):
        assert check_labels(['a', 'b'], 'sp') == ('a', 'b')

    def test_integer_codes_become_strings(self):
        assert check_labels(np.array([1, 2, 1]), 'site') == ('1', '2', '1')

    def test_2d_rejected(self):
        with pytest.raises(DimensionError):
            check_labels([['a', 'b']], 'sp')


class TestDomainChecks:

    def test_vector(self):
        arr = check_vector([1, 2, 3], 'se', 3)
        assert arr.dtype == np.float64
        with pytest.raises(ValidationError, match="se has 3 values, expected 4"):
            check_vector([1, 2, 3], 'se', 4)
        with pytest.raises(ValidationError, match="non-finite"):
            check_vector([1.0, np.inf], 'se')
        with pytest.raises(DimensionError):
            check_vector(np.ones((2, 2)), 'se')

    def test_unique(self):
        check_unique(('a', 'b'), 'species')
        with pytest.raises(ValidationError, match=r"duplicate species: \['a'\]"):
            check_unique(('a', 'b', 'a'), 'species')

    def test_open_interval(self):
        check_open_interval(0.05, 'alpha')
        for bad in (0.0, 1.0, 1.5):
            with pytest.raises(ValidationError, match=r"alpha must be in \(0, 1\)"):
                check_open_interval(bad, 'alpha')

    def test_at_least(self):
        check_at_least(0, 0, 'boot')
        with pytest.raises(ValidationError, match="n_jobs must be >= 1, got 0"):
            check_at_least(0, 1, 'n_jobs')
