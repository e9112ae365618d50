"""
Input validators shared by the PGLMM and cor-phylo designs.

Every check raises at once with the offending parameter name and value.
Nothing is silently repaired: integer and boolean arrays become float64,
labels become strings, and everything else is rejected.
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray
from typing import Any, Sequence

from phylostats.core.exceptions import ValidationError, DimensionError


def check_array(
    array: ArrayLike,
    name: str,
) -> NDArray[np.floating[Any]]:
    """
    Convert input to a float64 array.

    Raises:
        ValidationError: If the input is ragged, mixed or non-numeric.
    """
    try:
        result = np.asarray(array)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{name}: cannot convert to array: {e}") from e

    if result.dtype == object:
        raise ValidationError(
            f"{name}: converted to object dtype, indicating mixed types or non-numeric data"
        )
    if result.dtype == bool:
        return result.astype(np.float64)
    if not np.issubdtype(result.dtype, np.number):
        raise ValidationError(
            f"{name}: non-numeric dtype {result.dtype}, expected numeric data"
        )
    return result.astype(np.float64, copy=False)


def check_finite(array: NDArray[np.floating[Any]], name: str) -> None:
    """
    Reject NaN and Inf.

    Raises:
        ValidationError: If array contains non-finite values
    """
    if not np.all(np.isfinite(array)):
        n_nan = int(np.sum(np.isnan(array)))
        n_inf = int(np.sum(np.isinf(array)))
        raise ValidationError(
            f"{name}: contains non-finite values ({n_nan} NaN, {n_inf} Inf)"
        )


def _check_ndim(array: NDArray, ndim: int, name: str) -> None:
    if array.ndim != ndim:
        raise DimensionError(
            f"{name}: expected {ndim}D array, got {array.ndim}D with shape {array.shape}"
        )


def check_1d(array: NDArray[np.floating[Any]], name: str) -> None:
    _check_ndim(array, 1, name)


def check_2d(array: NDArray[np.floating[Any]], name: str) -> None:
    _check_ndim(array, 2, name)


def check_vector(
    values: ArrayLike,
    name: str,
    n: int | None = None,
) -> NDArray[np.floating[Any]]:
    """
    Finite float64 vector, optionally of length n.

    Per-observation inputs (responses, trials, standard errors, single
    covariates) all go through this check.

    Raises:
        ValidationError: On non-numeric or non-finite values, or a
            length other than n.
        DimensionError: If values are not one-dimensional.
    """
    arr = check_array(values, name)
    check_1d(arr, name)
    check_finite(arr, name)
    if n is not None and arr.shape[0] != n:
        raise ValidationError(f"{name} has {arr.shape[0]} values, expected {n}")
    return arr


def check_consistent_length(
    *arrays: NDArray[np.floating[Any]],
    names: tuple[str, ...]
) -> None:
    """
    Same first dimension for all arrays.

    Raises:
        ValueError: If the number of names does not match the arrays.
        DimensionError: If arrays have inconsistent lengths
    """
    if len(arrays) != len(names):
        raise ValueError(
            f"Number of arrays ({len(arrays)}) must match number of names ({len(names)})"
        )
    lengths = [arr.shape[0] for arr in arrays]
    if len(set(lengths)) > 1:
        details = ", ".join(f"{name}={length}" for name, length in zip(names, lengths))
        raise DimensionError(f"Inconsistent lengths: {details}")


def check_min_samples(array: NDArray[np.floating[Any]], min_samples: int, name: str) -> None:
    n = array.shape[0]
    if n < min_samples:
        raise ValidationError(
            f"{name}: requires at least {min_samples} samples, got {n}"
        )


def check_no_zero_variance_columns(X: NDArray[np.floating[Any]], name: str) -> None:
    """
    Reject constant columns.

    Traits and covariates are standardized by their standard deviation,
    so a constant column cannot be used.

    Raises:
        ValidationError: If any column has zero variance
    """
    zero_var_cols = np.where(np.var(X, axis=0) == 0)[0]
    if len(zero_var_cols) > 0:
        raise ValidationError(
            f"{name}: columns {zero_var_cols.tolist()} have zero variance (constant)"
        )


def check_column_rank(X: NDArray[np.floating[Any]], name: str) -> None:
    """
    Full column rank, so that X'V⁻¹X is invertible.

    Raises:
        ValidationError: If matrix is rank-deficient
    """
    p = X.shape[1]
    rank = np.linalg.matrix_rank(X)
    if rank < p:
        raise ValidationError(
            f"{name}: rank-deficient (rank={rank}, expected={p}). "
            f"This indicates perfect multicollinearity."
        )


def check_labels(labels: ArrayLike, name: str) -> tuple[str, ...]:
    """
    Convert a sequence of level labels to a tuple of strings.

    Labels are compared as strings everywhere in phylostats, so integer
    and string codes for the same level are interchangeable.

    Raises:
        DimensionError: If labels are not one-dimensional
    """
    arr = np.asarray(labels)
    if arr.ndim != 1:
        raise DimensionError(
            f"{name}: expected 1D labels, got {arr.ndim}D with shape {arr.shape}"
        )
    return tuple(str(v) for v in arr.tolist())


def check_unique(labels: Sequence[str], name: str) -> None:
    """
    Raises:
        ValidationError: Naming up to ten duplicated labels.
    """
    if len(set(labels)) != len(labels):
        dupes = sorted({s for s in labels if labels.count(s) > 1})
        raise ValidationError(f"duplicate {name}: {dupes[:10]}")


def check_open_interval(value: float, name: str, lower: float = 0.0, upper: float = 1.0) -> None:
    """Require lower < value < upper."""
    if not lower < value < upper:
        raise ValidationError(f"{name} must be in ({lower:g}, {upper:g}), got {value}")


def check_at_least(value: int, minimum: int, name: str) -> None:
    """Require an integer count of at least minimum."""
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}")
