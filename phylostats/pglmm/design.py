"""
Design validation for PGLMM.

PGLMMDesign validates and organizes the inputs of a fit: the response y,
the fixed effects matrix X, the resolved random-effect terms, the family
and the prior weights (binomial trials).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray

from phylostats.core.exceptions import SpecError, ValidationError
from phylostats.core.validation import (
    check_array, check_finite, check_2d, check_vector,
    check_consistent_length, check_min_samples, check_column_rank,
)
from phylostats.pglmm._terms import ResolvedTerm
from phylostats.pglmm.families import Family


@dataclass(frozen=True)
class PGLMMDesign:
    """Validated design for a PGLMM.

    Attributes:
        y: Response vector (n,). Proportions for binomial families.
        X: Fixed effects design matrix (n, p).
        terms: Resolved random-effect terms.
        family: Response family.
        reml: REML (True) or ML (False) objective.
        weights: Prior weights (n,); the number of trials for binomial.
        coefficient_names: Names of the p fixed effects.
        n: Number of observations.
        p: Number of fixed effect columns.
    """
    y: NDArray
    X: NDArray
    terms: tuple[ResolvedTerm, ...]
    family: Family
    reml: bool
    weights: NDArray
    coefficient_names: tuple[str, ...]
    n: int
    p: int

    @property
    def structures(self) -> list[NDArray]:
        """Structure matrices K_k in term order."""
        return [t.K for t in self.terms]

    @property
    def term_names(self) -> tuple[str, ...]:
        return tuple(t.name for t in self.terms)

    @staticmethod
    def validate(
        y: ArrayLike,
        X: ArrayLike,
        terms: Sequence[ResolvedTerm],
        family: Family,
        *,
        reml: bool = True,
        trials: ArrayLike | None = None,
        coefficient_names: Sequence[str] | None = None,
    ) -> 'PGLMMDesign':
        """Validate inputs and create a PGLMMDesign.

        Args:
            y: Response vector. For binomial families with trials, the
                number of successes.
            X: Fixed effects design matrix. If 1-D, treated as a single
                column (include an intercept column explicitly).
            terms: Resolved random-effect terms.
            family: Response family.
            reml: REML (True) or ML (False).
            trials: Number of binomial trials per observation.
            coefficient_names: Names of the columns of X.

        Returns:
            Validated PGLMMDesign.

        Raises:
            ValidationError: On invalid inputs.
            DimensionError: On inconsistent shapes.
            SpecError: If there are no random terms, or trials are given
                for a non-binomial family.
        """
        y = np.array(check_vector(y, 'y'), dtype=np.float64)
        check_min_samples(y, 3, 'y')
        n = y.shape[0]

        X = check_array(X, 'X')
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        check_2d(X, 'X')
        check_finite(X, 'X')
        X = np.array(X, dtype=np.float64)
        check_consistent_length(y, X, names=('y', 'X'))
        p = X.shape[1]
        if p >= n:
            raise ValidationError(
                f"X has {p} columns but only {n} observations"
            )
        check_column_rank(X, 'X')

        if not terms:
            raise SpecError("at least one random term is required")
        for term in terms:
            if term.K.shape != (n, n):
                raise ValidationError(
                    f"term {term.name!r}: structure matrix has shape "
                    f"{term.K.shape}, expected ({n}, {n})"
                )

        weights = np.ones(n, dtype=np.float64)
        if trials is not None:
            if not family.name.endswith('binomial'):
                raise SpecError(
                    f"trials are only meaningful for binomial families, "
                    f"got family {family.name!r}"
                )
            weights = check_vector(trials, 'trials', n)
            if np.any(weights < 1) or np.any(weights != np.round(weights)):
                raise ValidationError("trials must be positive integers")
            if np.any(y < 0) or np.any(y > weights) or np.any(y != np.round(y)):
                raise ValidationError(
                    "with trials, y must hold integer successes in [0, trials]"
                )
            y = y / weights

        family.validate_response(y, weights)

        if coefficient_names is None:
            names = _make_coef_names(X)
        else:
            names = tuple(str(c) for c in coefficient_names)
            if len(names) != p:
                raise ValidationError(
                    f"coefficient_names has {len(names)} entries, expected {p}"
                )

        y.setflags(write=False)
        X.setflags(write=False)
        return PGLMMDesign(
            y=y,
            X=X,
            terms=tuple(terms),
            family=family,
            reml=reml,
            weights=weights,
            coefficient_names=names,
            n=n,
            p=p,
        )


def _make_coef_names(X: NDArray) -> tuple[str, ...]:
    """Default coefficient names: '(Intercept)' for a constant first column."""
    p = X.shape[1]
    if np.all(X[:, 0] == 1.0):
        return ('(Intercept)',) + tuple(f'X{i}' for i in range(1, p))
    return tuple(f'X{i}' for i in range(1, p + 1))
