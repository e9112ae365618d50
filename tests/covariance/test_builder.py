"""
Tests for the Covariance Builder.

Validates:
    - Brownian-motion covariance of a known tree, ordering and PSD
    - Tree validation errors (tips, branch lengths, species mismatch)
    - Nested masking, idempotence and single-level rejection
    - Ornstein-Uhlenbeck limits
    - standardize / repulsion / from_matrix / from_distance
"""

import numpy as np
import pytest
from Bio.Phylo.BaseTree import Tree

from phylostats.core.compute.linalg import min_eigenvalue
from phylostats.core.exceptions import ConstructionError
from phylostats.covariance import (
    CovarianceMatrix,
    build_from_tree,
    build_nested,
    from_distance,
    from_matrix,
    is_ultrametric,
    ou_cross_covariance,
    ou_transform,
    read_newick,
    repulsion,
    simulate_coalescent_tree,
    standardize,
    tip_labels,
)


# Shared path lengths of the small_tree fixture, tips A..E
EXPECTED = np.array([
    [1.0, 0.6, 0.0, 0.0, 0.0],
    [0.6, 1.0, 0.0, 0.0, 0.0],
    [0.0, 0.0, 1.0, 0.8, 0.3],
    [0.0, 0.0, 0.8, 1.0, 0.3],
    [0.0, 0.0, 0.3, 0.3, 1.0],
])


class TestBuildFromTree:

    def test_known_tree(self, small_tree):
        cov = build_from_tree(small_tree)
        assert cov.labels == ('A', 'B', 'C', 'D', 'E')
        np.testing.assert_allclose(cov.values, EXPECTED, atol=1e-12)

    def test_accepts_parsed_tree(self, small_tree):
        tree = read_newick(small_tree)
        assert isinstance(tree, Tree)
        cov = build_from_tree(tree)
        np.testing.assert_allclose(cov.values, EXPECTED, atol=1e-12)

    def test_species_order(self, small_tree):
        order = ['E', 'C', 'A', 'D', 'B']
        cov = build_from_tree(small_tree, order)
        assert cov.labels == tuple(order)
        idx = [4, 2, 0, 3, 1]
        np.testing.assert_allclose(cov.values, EXPECTED[np.ix_(idx, idx)], atol=1e-12)

    def test_values_read_only(self, small_tree):
        cov = build_from_tree(small_tree)
        with pytest.raises(ValueError):
            cov.values[0, 0] = 5.0

    def test_coalescent_tree_positive_definite(self, coalescent_tree):
        cov = build_from_tree(coalescent_tree)
        assert cov.n == 30
        np.testing.assert_allclose(cov.values, cov.values.T)
        assert min_eigenvalue(cov.values) > -1e-10

    def test_non_ultrametric_diagonal(self):
        cov = build_from_tree("((A:1,B:2):1,C:0.5);")
        np.testing.assert_allclose(np.diag(cov.values), [2.0, 3.0, 0.5])
        assert cov.values[0, 1] == pytest.approx(1.0)
        assert not is_ultrametric("((A:1,B:2):1,C:0.5);")

    def test_species_mismatch(self, small_tree):
        with pytest.raises(ConstructionError) as exc:
            build_from_tree(small_tree, ['A', 'B', 'C', 'D', 'X'])
        assert exc.value.missing == ('X',)
        assert exc.value.extra == ('E',)

    def test_duplicate_tips(self):
        with pytest.raises(ConstructionError, match="duplicate"):
            build_from_tree("((A:1,A:1):1,B:2);")

    def test_negative_branch_length(self):
        with pytest.raises(ConstructionError, match="negative"):
            build_from_tree("((A:-1,B:1):1,C:2);")

    def test_missing_branch_length(self):
        with pytest.raises(ConstructionError, match="no length"):
            build_from_tree("((A,B):1,C:2);")

    def test_not_a_tree(self):
        with pytest.raises(ConstructionError):
            build_from_tree(42)


class TestBuildNested:

    def test_masks_across_groups(self, small_tree):
        cov = build_from_tree(small_tree)
        nested = build_nested(cov, ['g1', 'g1', 'g2', 'g2', 'g1'])
        assert nested.values[0, 1] == pytest.approx(0.6)
        assert nested.values[2, 3] == pytest.approx(0.8)
        assert nested.values[2, 4] == 0.0
        np.testing.assert_allclose(np.diag(nested.values), np.diag(cov.values))

    def test_idempotent(self, small_tree):
        cov = build_from_tree(small_tree)
        groups = ['g1', 'g2', 'g1', 'g2', 'g2']
        once = build_nested(cov, groups)
        twice = build_nested(once, groups)
        np.testing.assert_array_equal(once.values, twice.values)

    def test_mapping_groups(self, small_tree):
        cov = build_from_tree(small_tree)
        groups = {'A': 'x', 'B': 'x', 'C': 'y', 'D': 'y', 'E': 'y'}
        nested = build_nested(cov, groups)
        assert nested.values[0, 2] == 0.0
        assert nested.values[2, 4] == pytest.approx(0.3)

    def test_single_level_rejected(self, small_tree):
        cov = build_from_tree(small_tree)
        with pytest.raises(ConstructionError, match="at least 2 levels"):
            build_nested(cov, ['g'] * 5)

    def test_misaligned_groups(self, small_tree):
        cov = build_from_tree(small_tree)
        with pytest.raises(ConstructionError):
            build_nested(cov, ['g1', 'g2'])


class TestOrnsteinUhlenbeck:

    def test_d_one_is_brownian(self, small_tree):
        cov = build_from_tree(small_tree)
        np.testing.assert_allclose(ou_transform(cov, 1.0).values, cov.values)

    def test_d_near_one_is_continuous(self, small_tree):
        cov = build_from_tree(small_tree)
        np.testing.assert_allclose(
            ou_transform(cov, 1.0 - 1e-9).values, cov.values, rtol=1e-6, atol=1e-8,
        )

    def test_small_d_removes_covariance(self, small_tree):
        cov = build_from_tree(small_tree)
        ou = ou_transform(cov, 1e-6).values
        np.testing.assert_allclose(np.diag(ou), 1.0, rtol=1e-6)
        # tips at depth 1: C[a, b] = d^(2(1 - s)) (1 - d^(2s)) / (1 - d^2)
        d = 1e-6
        expected = d ** (2.0 * (1.0 - EXPECTED)) * (1.0 - d ** (2.0 * EXPECTED)) / (1.0 - d ** 2)
        np.testing.assert_allclose(ou, expected, rtol=1e-8, atol=1e-15)
        off = ~np.eye(5, dtype=bool)
        # closest pair (C, D) shares 0.8 of the depth: d^0.4 ≈ 4e-3
        assert np.max(np.abs(ou[off])) < 1e-2
        smaller = ou_transform(cov, 1e-9).values
        assert np.all(np.abs(smaller[off]) <= np.abs(ou[off]))

    def test_cross_covariance_transpose(self, small_tree):
        V = build_from_tree(small_tree).values
        np.testing.assert_allclose(
            ou_cross_covariance(V, 0.3, 0.8),
            ou_cross_covariance(V, 0.8, 0.3).T,
            rtol=1e-12,
        )

    def test_invalid_d(self, small_tree):
        cov = build_from_tree(small_tree)
        with pytest.raises(ConstructionError):
            ou_transform(cov, 0.0)


class TestTransforms:

    def test_standardize_unit_determinant(self, coalescent_tree):
        cov = standardize(build_from_tree(coalescent_tree))
        sign, logdet = np.linalg.slogdet(cov.values)
        assert sign > 0
        assert logdet == pytest.approx(0.0, abs=1e-8)

    def test_repulsion_proportional_to_inverse(self, small_tree):
        cov = build_from_tree(small_tree)
        rep = repulsion(cov)
        inv = np.linalg.inv(cov.values)
        with np.errstate(divide='ignore', invalid='ignore'):
            ratio = rep.values / inv
        finite = np.abs(inv) > 1e-8
        np.testing.assert_allclose(ratio[finite], ratio[finite][0], rtol=1e-8)
        assert rep.name.endswith('@repulsion')

    def test_from_matrix_rejects_non_psd(self):
        with pytest.raises(ConstructionError, match="positive semi-definite"):
            from_matrix([[1.0, 2.0], [2.0, 1.0]], ['a', 'b'])

    def test_from_matrix_rejects_asymmetric(self):
        with pytest.raises(ConstructionError, match="symmetric"):
            from_matrix([[1.0, 0.5], [0.1, 1.0]], ['a', 'b'])

    def test_from_distance(self):
        D = np.array([[0.0, 1.0, 2.0], [1.0, 0.0, 1.0], [2.0, 1.0, 0.0]])
        cov = from_distance(D, ['s1', 's2', 's3'], scale=2.0)
        np.testing.assert_allclose(cov.values, np.exp(-D / 2.0))
        assert cov.name == 'spatial'

    def test_from_distance_bad_scale(self):
        with pytest.raises(ConstructionError):
            from_distance(np.zeros((2, 2)), ['a', 'b'], scale=-1.0)


class TestCovarianceMatrix:

    def test_take_and_indices(self, small_tree):
        cov = build_from_tree(small_tree)
        sub = cov.take(['C', 'D'])
        np.testing.assert_allclose(sub.values, [[1.0, 0.8], [0.8, 1.0]])
        np.testing.assert_array_equal(cov.indices(['E', 'A']), [4, 0])

    def test_unknown_label(self, small_tree):
        cov = build_from_tree(small_tree)
        with pytest.raises(ConstructionError) as exc:
            cov.indices(['A', 'Z'])
        assert exc.value.missing == ('Z',)

    def test_duplicate_labels(self):
        with pytest.raises(ConstructionError):
            CovarianceMatrix(values=np.eye(2), labels=('a', 'a'))

    def test_input_not_aliased(self):
        values = np.eye(3)
        cov = CovarianceMatrix(values=values, labels=('a', 'b', 'c'))
        values[0, 0] = 9.0
        assert cov.values[0, 0] == 1.0


class TestTreeHelpers:

    def test_simulated_tree_is_ultrametric(self):
        tree = simulate_coalescent_tree(12, seed=3)
        assert len(tip_labels(tree)) == 12
        assert is_ultrametric(tree)

    def test_simulation_reproducible(self):
        a = build_from_tree(simulate_coalescent_tree(10, seed=11))
        b = build_from_tree(simulate_coalescent_tree(10, seed=11))
        np.testing.assert_array_equal(a.values, b.values)
        assert a.labels == b.labels

    def test_custom_labels(self):
        tree = simulate_coalescent_tree(3, seed=1, labels=['x', 'y', 'z'])
        assert sorted(tip_labels(tree)) == ['x', 'y', 'z']
