"""
Design validation for cor-phylo.

CorPhyloDesign validates and organizes the inputs: the trait matrix
(one row per species), the phylogenetic covariance aligned to those
species, per-trait covariates and per-trait measurement standard errors.
All arrays are kept on their original scale; standardization happens in
the likelihood module.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from Bio.Phylo.BaseTree import Clade, Tree

from phylostats.core.exceptions import ConstructionError, ValidationError
from phylostats.core.validation import (
    check_array, check_finite, check_1d, check_2d, check_labels,
    check_consistent_length, check_min_samples, check_unique, check_vector,
    check_no_zero_variance_columns, check_column_rank,
)
from phylostats.covariance._common import CovarianceMatrix
from phylostats.covariance.builder import build_from_tree


@dataclass(frozen=True)
class CorPhyloDesign:
    """Validated design for cor-phylo.

    Attributes:
        X: Traits (n, p), original scale.
        U: Covariates per trait, each (n, k_j); k_j may be 0.
        M: Measurement standard errors (n, p); zeros where not given.
        Vphy: Phylogenetic covariance aligned to species (n, n).
        species: Species labels, row order.
        trait_names: Names of the p traits.
        covariate_names: Covariate names per trait.
        n: Number of species.
        p: Number of traits.
    """
    X: NDArray
    U: tuple[NDArray, ...]
    M: NDArray
    Vphy: NDArray
    species: tuple[str, ...]
    trait_names: tuple[str, ...]
    covariate_names: tuple[tuple[str, ...], ...]
    n: int
    p: int

    @property
    def coefficient_names(self) -> tuple[str, ...]:
        """'<trait>_0' for intercepts and '<trait>_<covariate>' for slopes."""
        names = []
        for trait, covs in zip(self.trait_names, self.covariate_names):
            names.append(f"{trait}_0")
            names.extend(f"{trait}_{c}" for c in covs)
        return tuple(names)

    def with_traits(self, X: NDArray) -> 'CorPhyloDesign':
        """Same design with a new trait matrix (used by the bootstrap)."""
        X = np.array(X, dtype=np.float64)
        if X.shape != self.X.shape:
            raise ValidationError(
                f"traits have shape {X.shape}, expected {self.X.shape}"
            )
        check_finite(X, 'traits')
        check_no_zero_variance_columns(X, 'traits')
        X.setflags(write=False)
        return replace(self, X=X)

    @staticmethod
    def validate(
        traits: Mapping[str, ArrayLike] | ArrayLike,
        species: ArrayLike,
        phy: Tree | Clade | str | CovarianceMatrix,
        *,
        covariates: Mapping[str, Any] | None = None,
        meas_errors: Mapping[str, ArrayLike] | None = None,
        trait_names: Sequence[str] | None = None,
    ) -> 'CorPhyloDesign':
        """Validate inputs and create a CorPhyloDesign.

        Args:
            traits: Mapping trait name → values (n,), or an (n, p) array.
            species: Species label of each row (n,), unique.
            phy: Bio.Phylo tree, Newick string or CovarianceMatrix whose
                labels are exactly the species.
            covariates: Mapping trait name → covariates for that trait:
                a mapping covariate name → values (n,), or an array
                (n,) / (n, k).
            meas_errors: Mapping trait name → measurement standard
                errors (n,).
            trait_names: Names for the columns of an array of traits.

        Returns:
            Validated CorPhyloDesign.

        Raises:
            ValidationError: On invalid values, duplicate species or
                unknown trait names.
            DimensionError: On inconsistent shapes.
            ConstructionError: If the tree or covariance does not match
                the species.
        """
        if isinstance(traits, Mapping):
            names = tuple(str(k) for k in traits)
            columns = [check_array(v, f"traits[{k!r}]") for k, v in traits.items()]
            for name, col in zip(names, columns):
                check_1d(col, f"traits[{name!r}]")
            check_consistent_length(*columns, names=names)
            X = np.column_stack(columns) if columns else np.empty((0, 0))
        else:
            X = check_array(traits, 'traits')
            check_2d(X, 'traits')
            if trait_names is None:
                names = tuple(f"trait{j + 1}" for j in range(X.shape[1]))
            else:
                names = tuple(str(t) for t in trait_names)
        X = np.array(X, dtype=np.float64)

        if X.ndim != 2 or X.shape[1] < 2:
            raise ValidationError(
                f"traits: need at least 2 traits, got {X.shape[1] if X.ndim == 2 else 0}"
            )
        if len(names) != X.shape[1]:
            raise ValidationError(
                f"trait_names has {len(names)} entries, expected {X.shape[1]}"
            )
        check_unique(names, 'trait names')
        check_finite(X, 'traits')
        check_min_samples(X, 3, 'traits')
        check_no_zero_variance_columns(X, 'traits')
        n, p = X.shape

        labels = check_labels(species, 'species')
        if len(labels) != n:
            raise ValidationError(
                f"species has {len(labels)} labels, expected {n} (one per row)"
            )
        check_unique(labels, 'species')

        Vphy = _phylo_covariance(phy, labels)

        U = []
        cov_names = []
        covariates = {} if covariates is None else dict(covariates)
        unknown = sorted(set(str(k) for k in covariates) - set(names))
        if unknown:
            raise ValidationError(f"covariates given for unknown traits {unknown}")
        for trait in names:
            Uj, cnames = _trait_covariates(covariates.get(trait), trait, n)
            U.append(Uj)
            cov_names.append(cnames)

        M = np.zeros((n, p), dtype=np.float64)
        meas_errors = {} if meas_errors is None else dict(meas_errors)
        unknown = sorted(set(str(k) for k in meas_errors) - set(names))
        if unknown:
            raise ValidationError(
                f"measurement errors given for unknown traits {unknown}"
            )
        for j, trait in enumerate(names):
            if trait not in meas_errors:
                continue
            se = check_vector(meas_errors[trait], f"meas_errors[{trait!r}]", n)
            if np.any(se < 0):
                raise ValidationError(
                    f"meas_errors[{trait!r}]: standard errors must be >= 0"
                )
            M[:, j] = se

        for arr in (X, M, Vphy, *U):
            arr.setflags(write=False)

        return CorPhyloDesign(
            X=X,
            U=tuple(U),
            M=M,
            Vphy=Vphy,
            species=labels,
            trait_names=names,
            covariate_names=tuple(cov_names),
            n=n,
            p=p,
        )


def _phylo_covariance(phy: Any, labels: tuple[str, ...]) -> NDArray:
    """Covariance aligned to species by explicit label lookup."""
    if isinstance(phy, CovarianceMatrix):
        extra = tuple(sorted(set(phy.labels) - set(labels)))
        missing = tuple(sorted(set(labels) - set(phy.labels)))
        if missing or extra:
            raise ConstructionError(
                f"covariance labels and species do not match: "
                f"{len(missing)} species not in covariance {list(missing[:10])}, "
                f"{len(extra)} labels not in species {list(extra[:10])}",
                missing=missing,
                extra=extra,
            )
        cov = phy.take(labels)
    else:
        cov = build_from_tree(phy, labels)
    return np.array(cov.values)


def _trait_covariates(spec: Any, trait: str, n: int) -> tuple[NDArray, tuple[str, ...]]:
    if spec is None:
        return np.empty((n, 0), dtype=np.float64), ()
    if isinstance(spec, Mapping):
        cnames = tuple(str(k) for k in spec)
        cols = []
        for k, v in spec.items():
            cols.append(check_vector(v, f"covariates[{trait!r}][{k!r}]"))
        U = np.column_stack(cols) if cols else np.empty((n, 0))
    else:
        U = check_array(spec, f"covariates[{trait!r}]")
        if U.ndim == 1:
            U = U.reshape(-1, 1)
        check_2d(U, f"covariates[{trait!r}]")
        cnames = tuple(f"cov{j + 1}" for j in range(U.shape[1]))

    U = np.array(U, dtype=np.float64)
    if U.shape[0] != n:
        raise ValidationError(
            f"covariates[{trait!r}] has {U.shape[0]} rows, expected {n}"
        )
    if U.shape[1] == 0:
        return U, ()
    check_finite(U, f"covariates[{trait!r}]")
    check_no_zero_variance_columns(U, f"covariates[{trait!r}]")
    check_column_rank(U, f"covariates[{trait!r}]")
    return U, cnames
