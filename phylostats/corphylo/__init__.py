"""
Correlations among traits with phylogenetic signal (cor-phylo).

Public API:
    cor_phylo()  — fit trait correlations, signal parameters and coefficients
    bootstrap()  — lazy parametric bootstrap replicates of a fit
    boot_ci()    — percentile intervals from bootstrap replicates
    CorPhyloSolution, CorPhyloEstimator — result wrapper and estimator
"""

from phylostats.corphylo._common import (
    CorPhyloBootstrap, CorPhyloParams, CorPhyloSettings,
)
from phylostats.corphylo.design import CorPhyloDesign
from phylostats.corphylo.solution import CorPhyloSolution
from phylostats.corphylo.solvers import (
    cor_phylo, CorPhyloEstimator, correlation_from_covariance,
)
from phylostats.corphylo.bootstrap import (
    bootstrap, boot_ci, BootstrapReplicates, ReplicateOutcome,
)

__all__ = [
    "cor_phylo",
    "CorPhyloSolution",
    "CorPhyloDesign",
    "CorPhyloEstimator",
    "CorPhyloParams",
    "CorPhyloSettings",
    "CorPhyloBootstrap",
    "correlation_from_covariance",
    # Bootstrap
    "bootstrap",
    "boot_ci",
    "BootstrapReplicates",
    "ReplicateOutcome",
]
