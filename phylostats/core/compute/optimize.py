"""
Bounded nonlinear minimization shared by the PGLMM and cor-phylo estimators.

Thin layer over scipy.optimize.minimize that adds what both estimators
need from their inner loop:

    - multiple starting points, best objective kept
    - box constraints (variance parameters are bounded below by 0)
    - optional conversion of SingularCovarianceError into a penalty value,
      so a search can back away from singular regions
    - cooperative cancellation checked at every objective evaluation
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize as scipy_minimize

from phylostats.core.config import PENALTY_VALUE
from phylostats.core.exceptions import FitCancelledError, SingularCovarianceError

logger = logging.getLogger(__name__)

Bounds = Sequence[tuple[float | None, float | None]]


@dataclass(frozen=True)
class OptimizeOutcome:
    """Outcome of a (multi-start) minimization.

    Attributes:
        x: Parameter estimate.
        fun: Objective value at x.
        converged: Optimizer success flag of the best run.
        n_iter: Optimizer iterations of the best run.
        n_eval: Objective evaluations over all runs.
        message: Optimizer message of the best run.
    """
    x: NDArray
    fun: float
    converged: bool
    n_iter: int
    n_eval: int
    message: str


class _Objective:
    """Objective wrapper: counts evaluations, handles penalties and cancel."""

    def __init__(
        self,
        objective: Callable[[NDArray], float],
        penalize_singular: bool,
        cancel: threading.Event | None,
    ):
        self._objective = objective
        self._penalize_singular = penalize_singular
        self._cancel = cancel
        self.n_eval = 0
        self.n_penalized = 0

    def __call__(self, x: NDArray) -> float:
        if self._cancel is not None and self._cancel.is_set():
            raise FitCancelledError(
                f"optimization cancelled after {self.n_eval} evaluations"
            )
        self.n_eval += 1
        try:
            value = float(self._objective(x))
        except SingularCovarianceError as e:
            if not self._penalize_singular:
                raise
            self.n_penalized += 1
            logger.debug("penalized evaluation at %s: %s", x, e)
            return PENALTY_VALUE
        if not np.isfinite(value):
            self.n_penalized += 1
            return PENALTY_VALUE
        return value


def _options(method: str, tol: float, max_iter: int) -> dict:
    if method == 'L-BFGS-B':
        return {'maxiter': max_iter, 'ftol': tol, 'gtol': tol * 10}
    if method == 'Nelder-Mead':
        return {'maxiter': max_iter, 'xatol': tol, 'fatol': tol}
    if method == 'Powell':
        return {'maxiter': max_iter, 'xtol': tol, 'ftol': tol}
    return {'maxfun': max_iter, 'ftol': tol}


def _clip_to_bounds(x: NDArray, bounds: Bounds | None) -> NDArray:
    if bounds is None:
        return x
    lo = np.array([-np.inf if b[0] is None else b[0] for b in bounds])
    hi = np.array([np.inf if b[1] is None else b[1] for b in bounds])
    return np.clip(x, lo, hi)


def minimize(
    objective: Callable[[NDArray], float],
    x0: NDArray,
    bounds: Bounds | None = None,
    *,
    method: str = 'L-BFGS-B',
    tol: float = 1e-8,
    max_iter: int = 500,
    starts: Sequence[NDArray] | None = None,
    penalize_singular: bool = False,
    cancel: threading.Event | None = None,
) -> OptimizeOutcome:
    """Minimize an objective under box constraints.

    Args:
        objective: Function of the parameter vector returning a scalar.
        x0: Primary starting point.
        bounds: Per-parameter (lower, upper) pairs; None means unbounded.
        method: scipy.optimize.minimize method.
        tol: Optimizer tolerance.
        max_iter: Optimizer iteration cap per start.
        starts: Additional starting points; the best run is kept.
        penalize_singular: If True, a SingularCovarianceError raised by
            the objective is replaced by a large penalty value. If False
            it propagates.
        cancel: Event checked before every evaluation.

    Returns:
        OptimizeOutcome for the best start.

    Raises:
        FitCancelledError: If cancel is set during the search.
        SingularCovarianceError: If the objective raises it and
            penalize_singular is False.
    """
    wrapped = _Objective(objective, penalize_singular, cancel)
    candidates = [np.asarray(x0, dtype=np.float64)]
    if starts is not None:
        candidates.extend(np.asarray(s, dtype=np.float64) for s in starts)

    best = None
    for start in candidates:
        start = _clip_to_bounds(start, bounds)
        res = scipy_minimize(
            wrapped,
            start,
            method=method,
            bounds=bounds,
            options=_options(method, tol, max_iter),
        )
        logger.debug(
            "%s from %s: fun=%.6g success=%s nit=%s",
            method, start, res.fun, res.success, getattr(res, 'nit', None),
        )
        if best is None or res.fun < best.fun:
            best = res

    if wrapped.n_penalized:
        logger.debug("%d evaluations penalized", wrapped.n_penalized)

    return OptimizeOutcome(
        x=np.asarray(best.x, dtype=np.float64),
        fun=float(best.fun),
        converged=bool(best.success),
        n_iter=int(getattr(best, 'nit', 0)),
        n_eval=wrapped.n_eval,
        message=str(best.message),
    )
