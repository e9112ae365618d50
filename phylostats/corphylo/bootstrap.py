"""
Parametric bootstrap for cor-phylo.

bootstrap() returns a lazy, finite iterator of replicate outcomes. Each
replicate simulates traits from the fitted model on the standardized
scale,

    vec(X*) = U B̂ + chol(V̂) ε,    ε ~ N(0, I),

maps them back to the original trait scale, and refits with the same
species, tree, covariates and measurement errors, starting from the
fitted parameters. Failed replicates are reported as outcomes, not
raised; boot_ci() excludes them and aggregates percentile intervals.

Replicates draw from independent child streams of one SeedSequence, so
results do not depend on n_jobs or scheduling order.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator

import numpy as np
from numpy.typing import NDArray

from phylostats.core.exceptions import (
    FitCancelledError, InsufficientReplicatesError, PhyloStatsError,
    ValidationError,
)
from phylostats.core.validation import check_at_least, check_open_interval
from phylostats.corphylo._common import CorPhyloBootstrap
from phylostats.corphylo._likelihood import (
    StandardizedProblem, evaluate, standardize_problem,
)
from phylostats.corphylo.solution import CorPhyloSolution
from phylostats.corphylo.solvers import CorPhyloEstimator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplicateOutcome:
    """One bootstrap replicate.

    Attributes:
        index: Replicate number, 0-based.
        solution: The refit, or None if it raised.
        failure: Why the replicate is unusable, or None.
    """
    index: int
    solution: CorPhyloSolution | None
    failure: str | None

    @property
    def ok(self) -> bool:
        return self.failure is None


class BootstrapReplicates:
    """Finite, non-restartable iterator over ReplicateOutcome in index order."""

    def __init__(self, outcomes: Iterator[ReplicateOutcome], n_reps: int):
        self._outcomes = outcomes
        self._n_reps = n_reps

    def __len__(self) -> int:
        return self._n_reps

    def __iter__(self) -> 'BootstrapReplicates':
        return self

    def __next__(self) -> ReplicateOutcome:
        return next(self._outcomes)

    @property
    def n_reps(self) -> int:
        return self._n_reps


class _Simulator:
    """Draws replicate trait matrices from a fitted model.

    Everything here is read-only after construction and shared by the
    worker threads.
    """

    def __init__(self, solution: CorPhyloSolution):
        design, settings = solution.design, solution.settings
        self._prob: StandardizedProblem = standardize_problem(design)
        fit = evaluate(
            solution.params.par, self._prob, settings.reml,
            settings.constrain_d, settings.lower_d,
            settings.control.rcond_threshold,
        )
        self._mean = self._prob.UU @ fit.gls.beta
        self._factor = fit.factor

    def draw(self, rng: np.random.Generator) -> NDArray:
        prob = self._prob
        eps = rng.standard_normal(self._mean.shape[0])
        x_std = self._mean + self._factor.half_multiply(eps)
        x_std = x_std.reshape((prob.n, prob.p), order='F')
        return prob.x_mean + prob.x_sd * x_std


def bootstrap(
    solution: CorPhyloSolution,
    n_reps: int,
    *,
    seed: int | np.random.SeedSequence | None = None,
    n_jobs: int = 1,
    cancel: threading.Event | None = None,
) -> BootstrapReplicates:
    """Parametric bootstrap replicates of a cor-phylo fit.

    Args:
        solution: Fitted cor-phylo model.
        n_reps: Number of replicates (>= 1).
        seed: Seed or SeedSequence; child streams are spawned from it.
        n_jobs: Worker threads. 1 runs replicates lazily in order.
        cancel: Event checked before each replicate.

    Returns:
        BootstrapReplicates of length n_reps.

    Raises:
        ValidationError: If n_reps < 1 or n_jobs < 1.
        FitCancelledError: While iterating, if cancel is set.
    """
    check_at_least(n_reps, 1, 'n_reps')
    check_at_least(n_jobs, 1, 'n_jobs')

    ss = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    children = ss.spawn(n_reps)
    simulator = _Simulator(solution)

    def run(index: int) -> ReplicateOutcome:
        if cancel is not None and cancel.is_set():
            raise FitCancelledError(f"bootstrap cancelled at replicate {index}")
        return _replicate(index, solution, simulator, children[index], cancel)

    if n_jobs == 1:
        outcomes = (run(i) for i in range(n_reps))
    else:
        outcomes = _run_threaded(run, n_reps, n_jobs)
    return BootstrapReplicates(outcomes, n_reps)


def _run_threaded(run, n_reps: int, n_jobs: int) -> Iterator[ReplicateOutcome]:
    with ThreadPoolExecutor(max_workers=n_jobs) as pool:
        futures = [pool.submit(run, i) for i in range(n_reps)]
        try:
            for future in futures:
                yield future.result()
        finally:
            for future in futures:
                future.cancel()


def _replicate(
    index: int,
    solution: CorPhyloSolution,
    simulator: _Simulator,
    seed: np.random.SeedSequence,
    cancel: threading.Event | None,
) -> ReplicateOutcome:
    rng = np.random.default_rng(seed)
    estimator = CorPhyloEstimator(
        solution.settings, start=solution.params.par, cancel=cancel, warn=False,
    )
    try:
        design = solution.design.with_traits(simulator.draw(rng))
        result = estimator.solve(design)
    except FitCancelledError:
        raise
    except (PhyloStatsError, np.linalg.LinAlgError) as e:
        failure = f"{type(e).__name__}: {e}"
        logger.debug("bootstrap replicate %d failed: %s", index, failure)
        return ReplicateOutcome(index=index, solution=None, failure=failure)

    refit = CorPhyloSolution(
        _result=result, _design=design, _settings=solution.settings,
    )
    if not refit.converged:
        logger.debug("bootstrap replicate %d did not converge", index)
        return ReplicateOutcome(index=index, solution=refit, failure="did not converge")
    return ReplicateOutcome(index=index, solution=refit, failure=None)


def boot_ci(
    replicates: BootstrapReplicates,
    *,
    alpha: float = 0.05,
    max_fail_frac: float = 0.5,
) -> CorPhyloBootstrap:
    """Percentile intervals from bootstrap replicates.

    Consumes the iterator. Replicates that raised or did not converge
    are excluded.

    Args:
        replicates: Output of bootstrap().
        alpha: 1 - confidence level.
        max_fail_frac: Largest tolerated fraction of failed replicates.

    Returns:
        CorPhyloBootstrap.

    Raises:
        ValidationError: If alpha or max_fail_frac is out of range.
        InsufficientReplicatesError: If more than max_fail_frac of the
            replicates failed, or none succeeded.
    """
    check_open_interval(alpha, 'alpha')
    if not 0 <= max_fail_frac <= 1:
        raise ValidationError(
            f"max_fail_frac must be in [0, 1], got {max_fail_frac}"
        )

    n_reps = len(replicates)
    good = []
    n_failed = 0
    cause = None
    for outcome in replicates:
        if outcome.ok:
            good.append(outcome.solution)
            continue
        n_failed += 1
        if cause is None:
            cause = outcome.failure

    if not good or n_failed > max_fail_frac * n_reps:
        raise InsufficientReplicatesError(
            f"{n_failed} of {n_reps} bootstrap replicates failed "
            f"(max_fail_frac={max_fail_frac}); first cause: {cause}",
            n_failed=n_failed,
            n_reps=n_reps,
            representative_cause=cause,
        )
    if n_failed:
        logger.debug("%d of %d bootstrap replicates excluded", n_failed, n_reps)

    corrs = np.stack([s.corrs for s in good])
    d = np.stack([s.d for s in good])
    B = np.stack([s.B for s in good])
    q = [alpha / 2.0, 1.0 - alpha / 2.0]

    corrs_lower, corrs_upper = np.quantile(corrs, q, axis=0)
    d_lower, d_upper = np.quantile(d, q, axis=0)
    B_lower, B_upper = np.quantile(B, q, axis=0)

    return CorPhyloBootstrap(
        alpha=alpha,
        corrs_lower=corrs_lower,
        corrs_upper=corrs_upper,
        d_lower=d_lower,
        d_upper=d_upper,
        B_lower=B_lower,
        B_upper=B_upper,
        corrs=corrs,
        d=d,
        B=B,
        n_reps=n_reps,
        n_failed=n_failed,
        representative_cause=cause,
    )
