"""
Shared fixtures for PGLMM tests.

Community data: species on a coalescent tree observed at every site,
with a phylogenetic species effect, an independent species effect, a
site effect and a site-level environmental covariate.
"""

import numpy as np
import pytest

from phylostats.covariance import (
    build_from_tree, simulate_coalescent_tree, standardize, tip_labels,
)


def _simulate(
    rng,
    n_sp,
    n_site,
    *,
    beta=(1.0, 0.5),
    sd_phylo=1.0,
    sd_sp=0.5,
    sd_site=0.7,
    sd_slope=0.0,
    tree_seed=5,
):
    tree = simulate_coalescent_tree(n_sp, seed=tree_seed)
    species = np.array(tip_labels(tree))
    V = standardize(build_from_tree(tree)).values
    b_phylo = sd_phylo * (np.linalg.cholesky(V) @ rng.standard_normal(n_sp))
    b_sp = sd_sp * rng.standard_normal(n_sp)
    b_slope = sd_slope * rng.standard_normal(n_sp)
    b_site = sd_site * rng.standard_normal(n_site)
    env_site = rng.standard_normal(n_site)

    sp_idx = np.repeat(np.arange(n_sp), n_site)
    site_idx = np.tile(np.arange(n_site), n_sp)
    env = env_site[site_idx]
    x = rng.standard_normal(n_sp * n_site)

    eta = (beta[0] + beta[1] * x + b_phylo[sp_idx] + b_sp[sp_idx]
           + b_site[site_idx] + b_slope[sp_idx] * env)
    X = np.column_stack([np.ones(sp_idx.shape[0]), x])

    return {
        'tree': tree,
        'X': X,
        'eta': eta,
        'data': {
            'sp': species[sp_idx],
            'site': np.array([f"site{j}" for j in site_idx]),
            'env': env,
        },
        'beta': np.asarray(beta),
        'n_sp': n_sp,
        'n_site': n_site,
    }


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def community_gaussian(rng):
    """25 species × 8 sites, Gaussian response with residual SD 0.5."""
    d = _simulate(rng, 25, 8)
    d['y'] = d['eta'] + 0.5 * rng.standard_normal(d['eta'].shape[0])
    d['sigma2'] = 0.25
    return d


@pytest.fixture
def community_binary(rng):
    """20 species × 10 sites, presence/absence."""
    d = _simulate(rng, 20, 10, beta=(-0.2, 1.0), sd_phylo=1.0, sd_sp=0.3, sd_site=0.3)
    p = 1.0 / (1.0 + np.exp(-d['eta']))
    d['y'] = (rng.random(p.shape[0]) < p).astype(float)
    return d


@pytest.fixture
def community_counts(rng):
    """20 species × 10 sites, Poisson abundances."""
    d = _simulate(rng, 20, 10, beta=(0.5, 0.4), sd_phylo=0.5, sd_sp=0.2, sd_site=0.3)
    d['y'] = rng.poisson(np.exp(d['eta'])).astype(float)
    return d


@pytest.fixture
def community_zi_counts(rng):
    """Poisson abundances with 30% structural zeros."""
    d = _simulate(rng, 20, 10, beta=(1.0, 0.4), sd_phylo=0.5, sd_sp=0.2, sd_site=0.3)
    counts = rng.poisson(np.exp(d['eta'])).astype(float)
    structural = rng.random(counts.shape[0]) < 0.3
    d['y'] = np.where(structural, 0.0, counts)
    d['zi'] = 0.3
    return d


@pytest.fixture
def simulate_community():
    """Factory for custom community sizes."""
    return _simulate
