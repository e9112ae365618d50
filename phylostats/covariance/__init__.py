"""
Covariance Builder: structured covariance matrices for phylogenies,
groupings and spatial distances.

Public API:
    CovarianceMatrix   — labelled, immutable covariance matrix
    build_from_tree()  — Brownian-motion covariance of a phylogeny
    build_nested()     — block-diagonal masking by a grouping factor
    ou_transform()     — Ornstein-Uhlenbeck transform of a BM covariance
    standardize()      — scale to max 1 and determinant 1
    repulsion()        — standardized inverse covariance
    from_matrix()      — validated explicit covariance
    from_distance()    — exponential-decay covariance from distances
"""

from phylostats.covariance._common import CovarianceMatrix
from phylostats.covariance.builder import (
    build_from_tree,
    build_nested,
    ou_transform,
    ou_cross_covariance,
    standardize,
    repulsion,
    from_matrix,
    from_distance,
)
from phylostats.covariance.tree import (
    read_newick,
    tip_labels,
    is_ultrametric,
    simulate_coalescent_tree,
)

__all__ = [
    "CovarianceMatrix",
    "build_from_tree",
    "build_nested",
    "ou_transform",
    "ou_cross_covariance",
    "standardize",
    "repulsion",
    "from_matrix",
    "from_distance",
    "read_newick",
    "tip_labels",
    "is_ultrametric",
    "simulate_coalescent_tree",
]
