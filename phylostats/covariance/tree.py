"""
Phylogenetic tree helpers on top of Biopython's Bio.Phylo.

Trees are an external collaborator: phylostats consumes a rooted
Bio.Phylo tree (or a Newick string) and only reads tip labels, topology
and branch lengths. The root's own branch length is ignored.
"""

from __future__ import annotations

from io import StringIO

import numpy as np
from Bio import Phylo
from Bio.Phylo.BaseTree import Clade, Tree
from Bio.Phylo.NewickIO import NewickError

from phylostats.core.exceptions import ConstructionError, ValidationError


def read_newick(text: str) -> Tree:
    """Parse a single Newick tree.

    Raises:
        ConstructionError: If the string is not a valid Newick tree.
    """
    try:
        return Phylo.read(StringIO(text), 'newick')
    except (NewickError, ValueError) as e:
        raise ConstructionError(f"cannot parse Newick tree: {e}") from e


def as_tree(tree: Tree | Clade | str) -> Tree:
    """Accept a Bio.Phylo Tree, a root Clade or a Newick string."""
    if isinstance(tree, str):
        return read_newick(tree)
    if isinstance(tree, Tree):
        return tree
    if isinstance(tree, Clade):
        return Tree(root=tree, rooted=True)
    raise ConstructionError(
        f"expected a Bio.Phylo tree or Newick string, got {type(tree).__name__}"
    )


def tip_labels(tree: Tree | str) -> list[str]:
    """Tip names in tree traversal order."""
    return [str(tip.name) for tip in as_tree(tree).get_terminals()]


def clade_depths(tree: Tree) -> dict[int, float]:
    """Root-to-node path length for every clade, keyed by id(clade).

    Walks the tree iteratively (deep caterpillar trees would exceed the
    recursion limit) and validates branch lengths on the way.

    Raises:
        ConstructionError: On a missing or negative branch length.
    """
    depths = {id(tree.root): 0.0}
    stack = [tree.root]
    while stack:
        node = stack.pop()
        base = depths[id(node)]
        for child in node.clades:
            length = child.branch_length
            if length is None:
                raise ConstructionError(
                    f"branch leading to {child.name or 'an internal node'} "
                    f"has no length"
                )
            if length < 0:
                raise ConstructionError(
                    f"negative branch length {length} leading to "
                    f"{child.name or 'an internal node'}"
                )
            depths[id(child)] = base + float(length)
            stack.append(child)
    return depths


def is_ultrametric(tree: Tree | str, rtol: float = 1e-6) -> bool:
    """True if all tips are (nearly) equidistant from the root."""
    tree = as_tree(tree)
    depths = clade_depths(tree)
    tip_depths = np.array([depths[id(t)] for t in tree.get_terminals()])
    spread = tip_depths.max() - tip_depths.min()
    return bool(spread <= rtol * max(tip_depths.max(), 1e-300))


def simulate_coalescent_tree(
    n_tips: int,
    *,
    seed: int | np.random.Generator | None = None,
    labels: list[str] | None = None,
) -> Tree:
    """Simulate an ultrametric tree under the Kingman coalescent.

    With k lineages the waiting time to the next coalescence is
    exponential with rate k(k-1)/2; two lineages chosen uniformly merge.

    Args:
        n_tips: Number of tips (>= 2).
        seed: Seed or Generator for reproducibility.
        labels: Tip labels; defaults to 't1' .. 'tn'.

    Returns:
        Rooted Bio.Phylo tree.
    """
    if n_tips < 2:
        raise ValidationError(f"n_tips must be >= 2, got {n_tips}")
    if labels is None:
        labels = [f"t{i + 1}" for i in range(n_tips)]
    if len(labels) != n_tips:
        raise ValidationError(
            f"labels has {len(labels)} entries, expected {n_tips}"
        )

    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)

    lineages = [(Clade(branch_length=0.0, name=str(lab)), 0.0) for lab in labels]
    height = 0.0
    while len(lineages) > 1:
        k = len(lineages)
        height += rng.exponential(2.0 / (k * (k - 1)))
        i, j = rng.choice(k, size=2, replace=False)
        (a, height_a), (b, height_b) = lineages[i], lineages[j]
        a.branch_length = height - height_a
        b.branch_length = height - height_b
        parent = Clade(branch_length=0.0, clades=[a, b])
        lineages = [lin for m, lin in enumerate(lineages) if m not in (i, j)]
        lineages.append((parent, height))

    root = lineages[0][0]
    root.branch_length = None
    return Tree(root=root, rooted=True)
