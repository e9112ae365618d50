"""
pytest configuration and shared fixtures.
"""

import numpy as np
import pytest

from phylostats.covariance import simulate_coalescent_tree


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)


@pytest.fixture
def small_tree():
    """Five-species ultrametric tree of height 1."""
    return "((A:0.4,B:0.4):0.6,((C:0.2,D:0.2):0.5,E:0.7):0.3);"


@pytest.fixture
def coalescent_tree():
    """30-tip coalescent tree."""
    return simulate_coalescent_tree(30, seed=7)
