"""
Core protocols for phylostats.

These define structural interfaces that estimators must satisfy.
We use Protocol (structural typing) rather than ABC (nominal typing) so
that estimators living outside this package (for example a Bayesian
solver) can be plugged in without inheriting from anything here.

Design Principles:
    - Minimal contracts: prescribe only what's truly universal
    - Type-safe: use generics to preserve type information through pipelines
"""

from typing import Protocol, TypeVar, runtime_checkable

# Type variables for generic payloads
P = TypeVar('P', covariant=True)  # Parameter payload type
D = TypeVar('D', contravariant=True)  # Design type


@runtime_checkable
class Estimator(Protocol[D, P]):
    """
    Protocol for estimation strategies.

    Each estimator knows how to take a validated, domain-specific design
    and produce a domain-specific parameter payload wrapped in a Result.

    Estimators are stateless: all configuration is passed via the design
    or at construction time. This makes them easy to test and swap.

    Type Parameters:
        D: The design type this estimator accepts
        P: The parameter payload type this estimator produces
    """

    @property
    def name(self) -> str:
        """
        Estimator identifier.

        Convention: '{device}_{algorithm}'
        Examples: 'cpu_gaussian', 'cpu_pql', 'cpu_corphylo'
        """
        ...

    def solve(self, design: D) -> 'Result[P]':
        """
        Execute the estimation.

        Args:
            design: Validated design

        Returns:
            Result envelope containing parameter payload and metadata

        Raises:
            SingularCovarianceError: If a covariance matrix is singular
            ValidationError: If design is invalid for this estimator
        """
        ...
