"""
Labelled, immutable covariance matrices.

A CovarianceMatrix is built once and then shared by reference between
random-effect terms, estimators and bootstrap replicates. Its values are
held in a private read-only copy, so no consumer can mutate it; every
transform returns a new instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from phylostats.core.exceptions import ConstructionError

_SYMMETRY_RTOL = 1e-8


@dataclass(frozen=True, eq=False)
class CovarianceMatrix:
    """Symmetric covariance matrix indexed by labels.

    Attributes:
        values: (n, n) read-only float64 array.
        labels: n unique labels (species, sites, ...), row/column order.
        name: Name used in term names and error messages.
    """
    values: NDArray
    labels: tuple[str, ...]
    name: str = 'cov'
    _index: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        values = np.array(self.values, dtype=np.float64, copy=True)
        labels = tuple(str(lab) for lab in self.labels)

        if values.ndim != 2 or values.shape[0] != values.shape[1]:
            raise ConstructionError(
                f"{self.name}: covariance must be square, got shape {values.shape}"
            )
        if values.shape[0] != len(labels):
            raise ConstructionError(
                f"{self.name}: {values.shape[0]} rows but {len(labels)} labels"
            )
        if len(set(labels)) != len(labels):
            dupes = sorted({lab for lab in labels if labels.count(lab) > 1})
            raise ConstructionError(
                f"{self.name}: duplicate labels {dupes}"
            )
        if not np.all(np.isfinite(values)):
            raise ConstructionError(f"{self.name}: contains non-finite values")
        scale = max(float(np.max(np.abs(values))), 1.0)
        if np.max(np.abs(values - values.T)) > _SYMMETRY_RTOL * scale:
            raise ConstructionError(f"{self.name}: covariance is not symmetric")

        values = 0.5 * (values + values.T)
        values.setflags(write=False)
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'labels', labels)
        object.__setattr__(
            self, '_index', {lab: i for i, lab in enumerate(labels)}
        )

    @property
    def n(self) -> int:
        """Number of labels."""
        return len(self.labels)

    def indices(self, levels: Sequence[str]) -> NDArray:
        """Row index of each label in levels.

        Raises:
            ConstructionError: If any label is not in this matrix.
        """
        missing = sorted({str(lev) for lev in levels} - self._index.keys())
        if missing:
            raise ConstructionError(
                f"{self.name}: labels not found in covariance: {missing[:10]}"
                + (" ..." if len(missing) > 10 else ""),
                missing=tuple(missing),
            )
        return np.array([self._index[str(lev)] for lev in levels], dtype=np.intp)

    def take(self, labels: Sequence[str]) -> CovarianceMatrix:
        """New matrix re-indexed (and possibly subset) by explicit lookup."""
        idx = self.indices(labels)
        return CovarianceMatrix(
            values=self.values[np.ix_(idx, idx)],
            labels=tuple(str(lab) for lab in labels),
            name=self.name,
        )

    def with_values(self, values: NDArray, name: str | None = None) -> CovarianceMatrix:
        """New matrix with the same labels and different values."""
        return CovarianceMatrix(
            values=values,
            labels=self.labels,
            name=self.name if name is None else name,
        )

    def __repr__(self) -> str:
        return f"CovarianceMatrix(name={self.name!r}, n={self.n})"
