"""
Fit control settings.

Every estimator takes its tolerances and iteration caps from a frozen
FitControl. There is no global configuration: pass a FitControl (or the
individual keyword arguments of the public entry points) per call.

Defaults:
    - PGLMM: L-BFGS-B on the variance parameters, relative tolerance
      1e-6 for the quasi-likelihood outer loop
    - cor-phylo: Nelder-Mead, relative tolerance 1e-6, 1000 iterations
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from phylostats.core.exceptions import ValidationError


# Reciprocal condition below which a Cholesky factor is treated as singular.
DEFAULT_RCOND_THRESHOLD = 1e-12

# Objective value returned for infeasible or singular parameter vectors
# during a penalized search.
PENALTY_VALUE = 1e10

_OPTIMIZERS = ('L-BFGS-B', 'Nelder-Mead', 'Powell', 'TNC')


@dataclass(frozen=True)
class FitControl:
    """Tolerances and iteration caps for one fit.

    Attributes:
        tol: Relative convergence tolerance of outer iterations
            (PQL loop) and of the optimizer objective.
        max_iter: Maximum number of outer iterations (PQL).
        inner_max_iter: Maximum number of inner iterations (PQL β/b update).
        optimizer: scipy.optimize.minimize method.
        optimizer_tol: Tolerance passed to the optimizer.
        optimizer_max_iter: Iteration cap passed to the optimizer.
        rcond_threshold: Reciprocal condition below which covariance
            matrices are singular.
    """
    tol: float = 1e-6
    max_iter: int = 100
    inner_max_iter: int = 50
    optimizer: str = 'L-BFGS-B'
    optimizer_tol: float = 1e-8
    optimizer_max_iter: int = 500
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD

    def __post_init__(self) -> None:
        if self.tol <= 0:
            raise ValidationError(f"tol must be > 0, got {self.tol}")
        if self.optimizer_tol <= 0:
            raise ValidationError(
                f"optimizer_tol must be > 0, got {self.optimizer_tol}"
            )
        for field_name in ('max_iter', 'inner_max_iter', 'optimizer_max_iter'):
            value = getattr(self, field_name)
            if value < 1:
                raise ValidationError(f"{field_name} must be >= 1, got {value}")
        if self.optimizer not in _OPTIMIZERS:
            raise ValidationError(
                f"optimizer must be one of {_OPTIMIZERS}, got {self.optimizer!r}"
            )
        if not 0 < self.rcond_threshold < 1:
            raise ValidationError(
                f"rcond_threshold must be in (0, 1), got {self.rcond_threshold}"
            )

    @classmethod
    def for_pglmm(cls, **overrides) -> FitControl:
        """Defaults for PGLMM fits."""
        return replace(cls(), **overrides)

    @classmethod
    def for_cor_phylo(cls, **overrides) -> FitControl:
        """Defaults for cor-phylo fits (Nelder-Mead, reltol 1e-6)."""
        base = cls(
            optimizer='Nelder-Mead',
            optimizer_tol=1e-6,
            optimizer_max_iter=1000,
            rcond_threshold=1e-10,
        )
        return replace(base, **overrides)
