"""
Tests for the cor-phylo parametric bootstrap.

Validates:
    - Replicate iterator: length, index order, single pass
    - Reproducibility for a seed, independent of n_jobs
    - Failure accounting and InsufficientReplicatesError
    - Cancellation
    - Intervals attached by cor_phylo(boot=...)
    - Coverage of the correlation interval (slow)
"""

import os
import threading

import numpy as np
import pytest

from phylostats.core.config import FitControl
from phylostats.core.exceptions import (
    ConvergenceWarning, FitCancelledError, InsufficientReplicatesError,
    ValidationError,
)
from phylostats.covariance import simulate_coalescent_tree
from phylostats.corphylo import (
    BootstrapReplicates, ReplicateOutcome, boot_ci, bootstrap, cor_phylo,
)


RUN_SLOW = bool(os.environ.get('PHYLOSTATS_RUN_SLOW'))


@pytest.fixture
def fit(small_traits):
    d = small_traits
    return cor_phylo(d['traits'], d['species'], d['tree'])


def _outcomes(items):
    return BootstrapReplicates(iter(items), len(items))


class TestReplicates:

    def test_invalid_counts(self, fit):
        with pytest.raises(ValidationError, match="n_reps"):
            bootstrap(fit, 0)
        with pytest.raises(ValidationError, match="n_jobs"):
            bootstrap(fit, 3, n_jobs=0)

    def test_length_and_order(self, fit):
        reps = bootstrap(fit, 4, seed=1)
        assert len(reps) == 4
        outcomes = list(reps)
        assert [o.index for o in outcomes] == [0, 1, 2, 3]
        for o in outcomes:
            assert isinstance(o, ReplicateOutcome)
            if o.ok:
                assert o.solution.design.species == fit.design.species

    def test_single_pass(self, fit):
        reps = bootstrap(fit, 2, seed=1)
        assert iter(reps) is reps
        assert len(list(reps)) == 2
        assert list(reps) == []

    def test_replicates_differ_from_fit(self, fit):
        (outcome,) = list(bootstrap(fit, 1, seed=5))
        assert not np.array_equal(outcome.solution.design.X, fit.design.X)

    def test_same_seed_same_replicates(self, fit):
        first = [o.solution.corrs for o in bootstrap(fit, 3, seed=9)]
        second = [o.solution.corrs for o in bootstrap(fit, 3, seed=9)]
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a, b)

    def test_independent_of_n_jobs(self, fit):
        serial = list(bootstrap(fit, 4, seed=3, n_jobs=1))
        threaded = list(bootstrap(fit, 4, seed=3, n_jobs=2))
        assert [o.index for o in threaded] == [0, 1, 2, 3]
        for a, b in zip(serial, threaded):
            assert a.failure == b.failure
            np.testing.assert_array_equal(a.solution.design.X, b.solution.design.X)
            np.testing.assert_allclose(a.solution.corrs, b.solution.corrs, rtol=1e-10)


class TestBootCI:

    def test_all_failed(self):
        reps = _outcomes([
            ReplicateOutcome(index=i, solution=None,
                             failure="SingularCovarianceError: V is singular")
            for i in range(3)
        ])
        with pytest.raises(InsufficientReplicatesError) as exc:
            boot_ci(reps)
        assert exc.value.n_failed == 3
        assert exc.value.n_reps == 3
        assert exc.value.representative_cause.startswith("SingularCovarianceError")

    def test_failures_excluded(self, fit):
        reps = _outcomes([
            ReplicateOutcome(index=0, solution=fit, failure=None),
            ReplicateOutcome(index=1, solution=None, failure="boom"),
            ReplicateOutcome(index=2, solution=fit, failure=None),
        ])
        table = boot_ci(reps)
        assert table.n_reps == 3
        assert table.n_failed == 1
        assert table.representative_cause == "boom"
        assert table.corrs.shape == (2, 2, 2)
        np.testing.assert_allclose(table.corrs_lower, fit.corrs)
        np.testing.assert_allclose(table.B_upper, fit.B)

    def test_too_many_failures(self, fit):
        reps = _outcomes([
            ReplicateOutcome(index=0, solution=fit, failure=None),
            ReplicateOutcome(index=1, solution=None, failure="a"),
            ReplicateOutcome(index=2, solution=None, failure="b"),
        ])
        with pytest.raises(InsufficientReplicatesError) as exc:
            boot_ci(reps)
        assert exc.value.representative_cause == "a"

    def test_fail_fraction_threshold(self, fit):
        reps = _outcomes([
            ReplicateOutcome(index=0, solution=fit, failure=None),
            ReplicateOutcome(index=1, solution=None, failure="a"),
            ReplicateOutcome(index=2, solution=None, failure="b"),
        ])
        table = boot_ci(reps, max_fail_frac=0.7)
        assert table.n_failed == 2

    @pytest.mark.parametrize("kwargs", [{'alpha': 0.0}, {'max_fail_frac': 1.5}])
    def test_invalid_arguments(self, fit, kwargs):
        reps = _outcomes([ReplicateOutcome(index=0, solution=fit, failure=None)])
        with pytest.raises(ValidationError):
            boot_ci(reps, **kwargs)

    def test_non_converged_refits_fail(self, small_traits):
        d = small_traits
        control = FitControl.for_cor_phylo(optimizer_max_iter=1)
        with pytest.warns(ConvergenceWarning):
            capped = cor_phylo(d['traits'], d['species'], d['tree'], control=control)
        assert not capped.converged
        assert "WARNING: Model did not converge" in capped.summary()

        reps = bootstrap(capped, 3, seed=0)
        with pytest.raises(InsufficientReplicatesError) as exc:
            boot_ci(reps)
        assert exc.value.n_failed == 3
        assert exc.value.representative_cause is not None


class TestCancellation:

    @pytest.mark.parametrize("n_jobs", [1, 2])
    def test_cancelled(self, fit, n_jobs):
        cancel = threading.Event()
        reps = bootstrap(fit, 3, seed=0, n_jobs=n_jobs, cancel=cancel)
        cancel.set()
        with pytest.raises(FitCancelledError):
            list(reps)


class TestCorPhyloBoot:

    def test_intervals_attached(self, small_traits):
        d = small_traits
        result = cor_phylo(d['traits'], d['species'], d['tree'], boot=8, seed=3)
        boot = result.bootstrap
        assert boot is not None
        assert boot.n_reps == 8
        assert boot.alpha == 0.05
        assert np.all(boot.corrs_lower <= boot.corrs_upper)
        assert np.all(boot.d_lower <= boot.d_upper)
        assert np.all(boot.B_lower <= boot.B_upper)
        assert boot.B.shape == (8 - boot.n_failed, 2)
        assert repr(result).endswith("bootstrap=yes)")
        assert "Bootstrap 95% intervals" in result.summary()

    def test_with_bootstrap_returns_new_solution(self, fit):
        reps = _outcomes([ReplicateOutcome(index=0, solution=fit, failure=None)])
        updated = fit.with_bootstrap(boot_ci(reps))
        assert fit.bootstrap is None
        assert updated.bootstrap is not None
        np.testing.assert_array_equal(updated.corrs, fit.corrs)

    @pytest.mark.skipif(not RUN_SLOW, reason="set PHYLOSTATS_RUN_SLOW=1 to run")
    def test_interval_coverage(self, rng, simulate_traits):
        tree = simulate_coalescent_tree(50, seed=13)
        rho = 0.7
        species, sims = simulate_traits(
            rng, tree, [[1.0, rho], [rho, 1.0]], [0.3, 0.95], n_sims=100,
        )
        covered = 0
        for i, X in enumerate(sims):
            result = cor_phylo(
                {'a': X[:, 0], 'b': X[:, 1]}, species, tree,
                boot=100, boot_alpha=0.1, seed=i, n_jobs=4,
            )
            boot = result.bootstrap
            covered += boot.corrs_lower[0, 1] <= rho <= boot.corrs_upper[0, 1]
        assert covered >= 85
