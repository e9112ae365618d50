"""
Shared fixtures for cor-phylo tests.

Traits are simulated on the standardized tree (max 1, determinant 1)
from the model the estimator fits: block (i, j) of the trait covariance
is R_ij times the Ornstein-Uhlenbeck cross-covariance for d_i, d_j.
"""

import numpy as np
import pytest

from phylostats.covariance import (
    build_from_tree, ou_cross_covariance, simulate_coalescent_tree,
    standardize, tip_labels,
)


def _simulate_traits(rng, tree, R, d, *, mean=None, sd=None, n_sims=1):
    species = tip_labels(tree)
    V = standardize(build_from_tree(tree, species)).values
    n, p = V.shape[0], len(d)
    R = np.asarray(R, dtype=float)

    C = np.empty((n * p, n * p))
    for i in range(p):
        for j in range(p):
            C[i * n:(i + 1) * n, j * n:(j + 1) * n] = (
                R[i, j] * ou_cross_covariance(V, d[i], d[j])
            )
    L = np.linalg.cholesky(C + 1e-10 * np.eye(n * p))

    mean = np.zeros(p) if mean is None else np.asarray(mean, dtype=float)
    sd = np.ones(p) if sd is None else np.asarray(sd, dtype=float)
    sims = []
    for _ in range(n_sims):
        x = (L @ rng.standard_normal(n * p)).reshape((n, p), order='F')
        sims.append(mean + sd * x)
    return species, sims if n_sims > 1 else sims[0]


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def simulate_traits():
    """Factory: (rng, tree, R, d, mean=, sd=, n_sims=) → (species, X)."""
    return _simulate_traits


@pytest.fixture
def correlated_traits(rng):
    """Two traits on 50 species, correlation 0.7, d = (0.9, 0.6)."""
    tree = simulate_coalescent_tree(50, seed=21)
    species, X = _simulate_traits(
        rng, tree, [[1.0, 0.7], [0.7, 1.0]], [0.9, 0.6],
        mean=[3.0, -1.0], sd=[2.0, 0.5],
    )
    return {
        'tree': tree,
        'species': species,
        'traits': {'mass': X[:, 0], 'metab': X[:, 1]},
        'rho': 0.7,
        'mean': np.array([3.0, -1.0]),
    }


@pytest.fixture
def small_traits(rng):
    """Two traits on 20 species, for bootstrap tests."""
    tree = simulate_coalescent_tree(20, seed=4)
    species, X = _simulate_traits(
        rng, tree, [[1.0, 0.5], [0.5, 1.0]], [0.8, 0.8],
    )
    return {
        'tree': tree,
        'species': species,
        'traits': {'x': X[:, 0], 'y': X[:, 1]},
    }
