"""
Result envelope returned by every phylostats estimator.

An estimator's solve() returns Result[P], where P is the frozen payload
of its domain (PGLMMParams, CorPhyloParams). The solution classes wrap
the envelope and add accessors and summaries; they never modify it.
"""

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

P = TypeVar('P')


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable output of one fit.

    Attributes:
        params: Domain payload (coefficients, variances, correlations)
        info: Method, convergence and conditioning diagnostics
        timing: Seconds per Timer section, or None if not measured
        backend_name: Estimator backend, e.g. 'cpu_reml', 'cpu_pql',
            'cpu_corphylo'
        warnings: Messages of the ConvergenceWarnings emitted by the fit

    Examples:
        >>> Result(
        ...     params=PGLMMParams(...),
        ...     info={'method': 'REML', 'converged': True, 'n_iter': 23},
        ...     timing={'total_seconds': 0.5, 'optimization': 0.4},
        ...     backend_name='cpu_reml'
        ... )
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)
