"""
phylostats: phylogenetic comparative statistics for Python.

Mixed models and trait correlations for species data related by a
phylogeny.

Submodules:
    covariance: Covariance matrices from trees, groupings and distances
    pglmm: Phylogenetic generalized linear mixed models
    corphylo: Trait correlations with phylogenetic signal
"""

__version__ = "0.1.0"

from phylostats import covariance
from phylostats import pglmm
from phylostats import corphylo

__all__ = [
    "__version__",
    "covariance",
    "pglmm",
    "corphylo",
]
