"""
Covariance Builder: dense covariance matrices from trees, groupings,
explicit matrices and distances.

All functions are pure: inputs are never modified and every result is a
newly allocated CovarianceMatrix.

References:
    Felsenstein, J. (1985). Phylogenies and the comparative method.
    The American Naturalist, 125(1), 1-15.
    Zheng, L., Ives, A. R., Garland, T., et al. (2009). New multivariate
    tests for phylogenetic signal and trait correlations applied to
    ecophysiological phenotypes of nine Manglietia species.
    Functional Ecology, 23(6), 1059-1069.
"""

from __future__ import annotations

from typing import Iterator, Mapping, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from Bio.Phylo.BaseTree import Clade, Tree

from phylostats.core.compute.linalg import cholesky, min_eigenvalue
from phylostats.core.exceptions import ConstructionError, SingularCovarianceError
from phylostats.core.validation import check_labels
from phylostats.covariance._common import CovarianceMatrix
from phylostats.covariance.tree import as_tree, clade_depths


def _postorder(root: Clade) -> Iterator[Clade]:
    stack = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            yield node
            continue
        stack.append((node, True))
        for child in reversed(node.clades):
            stack.append((child, False))


def build_from_tree(
    tree: Tree | Clade | str,
    species_order: Sequence[str] | None = None,
    *,
    name: str = 'phylo',
) -> CovarianceMatrix:
    """Brownian-motion covariance of a phylogeny.

    Entry (i, j) is the path length from the root to the most recent
    common ancestor of tips i and j; the diagonal holds root-to-tip
    lengths. Computed in one post-order pass: at each internal node,
    every pair of tips that descends from two different children gets
    that node's depth.

    Args:
        tree: Bio.Phylo tree, root Clade or Newick string.
        species_order: Row/column order of the result. Must contain
            exactly the tip labels of the tree. Defaults to tree order.
        name: Name of the resulting matrix.

    Returns:
        CovarianceMatrix labelled by species.

    Raises:
        ConstructionError: On unnamed or duplicate tips, fewer than two
            tips, missing or negative branch lengths, or a species set
            that does not match the tips.
    """
    tree = as_tree(tree)
    tips = tree.get_terminals()

    if any(t.name is None for t in tips):
        raise ConstructionError("tree has unnamed tips")
    names = [str(t.name) for t in tips]
    n = len(names)
    if n < 2:
        raise ConstructionError(f"tree must have at least 2 tips, got {n}")
    if len(set(names)) != n:
        dupes = sorted({s for s in names if names.count(s) > 1})
        raise ConstructionError(f"duplicate tip labels: {dupes}")

    if species_order is not None:
        order = [str(s) for s in species_order]
        if len(set(order)) != len(order):
            raise ConstructionError("species_order contains duplicates")
        missing = tuple(sorted(set(order) - set(names)))
        extra = tuple(sorted(set(names) - set(order)))
        if missing or extra:
            raise ConstructionError(
                f"tree tips and species do not match: "
                f"{len(missing)} species not in tree {list(missing[:10])}, "
                f"{len(extra)} tips not in species {list(extra[:10])}",
                missing=missing,
                extra=extra,
            )

    depths = clade_depths(tree)
    tip_index = {id(t): i for i, t in enumerate(tips)}
    V = np.zeros((n, n), dtype=np.float64)

    members: dict[int, NDArray] = {}
    for clade in _postorder(tree.root):
        key = id(clade)
        if not clade.clades:
            i = tip_index[key]
            V[i, i] = depths[key]
            members[key] = np.array([i], dtype=np.intp)
            continue
        child_sets = [members.pop(id(c)) for c in clade.clades]
        d = depths[key]
        for a in range(len(child_sets)):
            for b in range(a + 1, len(child_sets)):
                V[np.ix_(child_sets[a], child_sets[b])] = d
                V[np.ix_(child_sets[b], child_sets[a])] = d
        members[key] = np.concatenate(child_sets)

    cov = CovarianceMatrix(values=V, labels=tuple(names), name=name)
    if species_order is not None:
        cov = cov.take([str(s) for s in species_order])
    return cov


def build_nested(
    base_cov: CovarianceMatrix,
    group_levels: Sequence[str] | Mapping[str, str] | ArrayLike,
    *,
    name: str | None = None,
) -> CovarianceMatrix:
    """Mask a covariance to block-diagonal structure by a grouping factor.

    Entries for label pairs in different groups become zero; within-group
    entries, including the diagonal, are preserved. Masking a matrix that
    is already block-diagonal for the same groups returns equal values.

    Args:
        base_cov: Covariance to mask.
        group_levels: Group of each label, aligned with base_cov.labels,
            or a mapping label → group.
        name: Name of the result (default '<base>@nested').

    Raises:
        ConstructionError: If group levels are misaligned or missing, or
            if there is only one group.
    """
    if isinstance(group_levels, Mapping):
        lookup = {str(k): str(v) for k, v in group_levels.items()}
        missing = [lab for lab in base_cov.labels if lab not in lookup]
        if missing:
            raise ConstructionError(
                f"no group given for labels {missing[:10]}",
                missing=tuple(missing),
            )
        groups = np.array([lookup[lab] for lab in base_cov.labels])
    else:
        groups = np.array(check_labels(group_levels, 'group_levels'))
        if groups.shape[0] != base_cov.n:
            raise ConstructionError(
                f"group_levels has {groups.shape[0]} entries, "
                f"expected {base_cov.n} (one per label)"
            )

    if len(np.unique(groups)) < 2:
        raise ConstructionError(
            "nesting requires a grouping factor with at least 2 levels"
        )

    mask = groups[:, np.newaxis] == groups[np.newaxis, :]
    return base_cov.with_values(
        base_cov.values * mask,
        name=f"{base_cov.name}@nested" if name is None else name,
    )


def ou_cross_covariance(V: NDArray, d_i: float, d_j: float) -> NDArray:
    """Ornstein-Uhlenbeck covariance between two traits on one tree.

    For tips a, b with shared path s = V[a, b] and depths t_a = V[a, a]:

        C[a, b] = d_i^(t_a - s) · (1 - (d_i d_j)^s) / (1 - d_i d_j) · d_j^(t_b - s)

    d is the per-trait signal parameter (d = exp(-α) for OU strength α).
    As d_i d_j → 1 the middle factor tends to s and C → V (Brownian
    motion). The ratio is evaluated with expm1 for stability near 1.
    """
    tip_depth = np.diag(V)
    tau = tip_depth[:, np.newaxis] - V
    log_x = np.log(d_i) + np.log(d_j)
    if log_x == 0.0:
        core = V.copy()
    else:
        core = np.expm1(V * log_x) / np.expm1(log_x)
    return np.power(d_i, tau) * core * np.power(d_j, tau.T)


def ou_transform(cov: CovarianceMatrix, d: float) -> CovarianceMatrix:
    """OU-transformed copy of a Brownian-motion covariance.

    Raises:
        ConstructionError: If d is not a positive finite number.
    """
    if not np.isfinite(d) or d <= 0:
        raise ConstructionError(f"OU signal parameter must be > 0, got {d}")
    return cov.with_values(
        ou_cross_covariance(cov.values, float(d), float(d)),
        name=f"{cov.name}@ou",
    )


def standardize(cov: CovarianceMatrix) -> CovarianceMatrix:
    """Scale a covariance to maximum entry 1 and determinant 1.

    Raises:
        ConstructionError: If the matrix is not positive definite.
    """
    vmax = float(np.max(cov.values))
    if vmax <= 0:
        raise ConstructionError(
            f"{cov.name}: cannot standardize, maximum entry is {vmax}"
        )
    V = cov.values / vmax
    sign, logdet = np.linalg.slogdet(V)
    if sign <= 0:
        raise ConstructionError(
            f"{cov.name}: cannot standardize a matrix that is not "
            f"positive definite"
        )
    return cov.with_values(V / np.exp(logdet / cov.n))


def repulsion(cov: CovarianceMatrix) -> CovarianceMatrix:
    """Standardized inverse covariance (phylogenetic repulsion).

    Raises:
        ConstructionError: If the matrix cannot be inverted.
    """
    try:
        factor = cholesky(cov.values, name=cov.name)
    except SingularCovarianceError as e:
        raise ConstructionError(
            f"{cov.name}: repulsion needs an invertible covariance ({e})"
        ) from e
    inverse = cov.with_values(factor.inverse(), name=f"{cov.name}@repulsion")
    return standardize(inverse)


def from_matrix(
    values: ArrayLike,
    labels: Sequence[str],
    *,
    name: str = 'cov',
    psd_tol: float = 1e-8,
) -> CovarianceMatrix:
    """Validated covariance from an explicit matrix.

    Raises:
        ConstructionError: If the matrix is not square, symmetric, finite
            and positive semi-definite (eigenvalues >= -psd_tol·max|v|).
    """
    cov = CovarianceMatrix(
        values=np.asarray(values, dtype=np.float64),
        labels=tuple(str(lab) for lab in labels),
        name=name,
    )
    if cov.n < 2:
        raise ConstructionError(f"{name}: need at least 2 labels, got {cov.n}")
    scale = max(float(np.max(np.abs(cov.values))), 1e-300)
    lam = min_eigenvalue(cov.values)
    if lam < -psd_tol * scale:
        raise ConstructionError(
            f"{name}: not positive semi-definite (min eigenvalue {lam:.3e})"
        )
    return cov


def from_distance(
    distances: ArrayLike,
    labels: Sequence[str],
    *,
    scale: float,
    name: str = 'spatial',
) -> CovarianceMatrix:
    """Exponential-decay covariance exp(-D / scale) from a distance matrix.

    Raises:
        ConstructionError: On negative distances, a non-zero diagonal or
            a non-positive scale.
    """
    D = np.asarray(distances, dtype=np.float64)
    if scale <= 0 or not np.isfinite(scale):
        raise ConstructionError(f"scale must be > 0, got {scale}")
    if D.ndim != 2 or D.shape[0] != D.shape[1]:
        raise ConstructionError(f"distances must be square, got shape {D.shape}")
    if np.any(D < 0):
        raise ConstructionError("distances must be non-negative")
    if np.any(np.diag(D) != 0):
        raise ConstructionError("distances must have a zero diagonal")
    return from_matrix(np.exp(-D / scale), labels, name=name)
