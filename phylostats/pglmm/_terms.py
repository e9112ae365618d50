"""
Random-effect terms: specification, formula parsing and resolution.

A PGLMM random effect is one of four kinds:

    SIMPLE      iid effect per level of a grouping factor g, optionally
                per combination of g with a blocking factor h (g@h)
    STRUCTURED  effect per level of g with covariance A over the levels
    NESTED      structured effect of g masked to within-h blocks
    CROSSED     effect over combinations of g and h with covariance A ⊗ B

Terms are resolved once, before fitting, into observation-level structure
matrices K (n × n). For observations i and j:

    SIMPLE      K_ij = 1[g_i = g_j] · 1[h_i = h_j]
    STRUCTURED  K_ij = A[g_i, g_j]
    NESTED      K_ij = A[g_i, g_j] · 1[h_i = h_j]
    CROSSED     K_ij = A[g_i, g_j] · B[h_i, h_j]

and a random slope on covariate z multiplies K elementwise by z z'.
The estimators only ever see the list of K matrices.

Formula syntax (one term per parenthesized group, joined by '+'):

    (1|g)         SIMPLE(g)
    (1|g@h)       SIMPLE(g, blocked_by=h)
    (1|g__)       SIMPLE(g) + STRUCTURED(g, cov[g])
    (1|g__@h)     NESTED(g, cov[g], blocked_by=h)
    (1|g@h__)     NESTED(h, cov[h], blocked_by=g)
    (1|g__@h__)   CROSSED(g, cov[g], h, cov[h])
    (x|...)       same terms with a random slope on covariate x

The independent SIMPLE term that accompanies g__ keeps the diagonal
structured variance from absorbing iid level variance.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.typing import NDArray
from Bio.Phylo.BaseTree import Clade, Tree

from phylostats.core.exceptions import ConstructionError, SpecError
from phylostats.covariance._common import CovarianceMatrix
from phylostats.covariance.builder import (
    build_from_tree, build_nested, repulsion, standardize,
)


class TermKind(Enum):
    SIMPLE = 'simple'
    STRUCTURED = 'structured'
    NESTED = 'nested'
    CROSSED = 'crossed'


_STRUCTURED_KINDS = (TermKind.STRUCTURED, TermKind.NESTED, TermKind.CROSSED)


@dataclass(frozen=True)
class RandomTerm:
    """One random-effect term, before it is bound to data.

    Attributes:
        kind: Term variant.
        name: Unique term name (used in output tables).
        group: Grouping factor column.
        covariance: Covariance over the levels of group (structured kinds).
        blocked_by: Second grouping factor (SIMPLE, NESTED, CROSSED).
        cross_covariance: Covariance over the levels of blocked_by (CROSSED).
        slope: Covariate column for a random slope, or None for an intercept.
        repulsion: Use the standardized inverse of the covariance.
    """
    kind: TermKind
    name: str
    group: str
    covariance: CovarianceMatrix | None = None
    blocked_by: str | None = None
    cross_covariance: CovarianceMatrix | None = None
    slope: str | None = None
    repulsion: bool = False


def _lhs(slope: str | None) -> str:
    return '1' if slope is None else slope


def simple(
    group: str,
    *,
    blocked_by: str | None = None,
    slope: str | None = None,
    name: str | None = None,
) -> RandomTerm:
    """Independent effect per level of group (or per group × blocked_by cell)."""
    if name is None:
        rhs = group if blocked_by is None else f"{group}@{blocked_by}"
        name = f"{_lhs(slope)}|{rhs}"
    return RandomTerm(
        kind=TermKind.SIMPLE, name=name, group=group,
        blocked_by=blocked_by, slope=slope,
    )


def structured(
    group: str,
    covariance: CovarianceMatrix,
    *,
    slope: str | None = None,
    repulsion: bool = False,
    name: str | None = None,
) -> RandomTerm:
    """Effect per level of group with a fixed covariance over the levels."""
    if name is None:
        name = f"{_lhs(slope)}|{group}__"
    return RandomTerm(
        kind=TermKind.STRUCTURED, name=name, group=group,
        covariance=covariance, slope=slope, repulsion=repulsion,
    )


def nested(
    group: str,
    covariance: CovarianceMatrix,
    blocked_by: str,
    *,
    slope: str | None = None,
    repulsion: bool = False,
    name: str | None = None,
) -> RandomTerm:
    """Structured effect of group restricted to blocks of blocked_by."""
    if name is None:
        name = f"{_lhs(slope)}|{group}__@{blocked_by}"
    return RandomTerm(
        kind=TermKind.NESTED, name=name, group=group, covariance=covariance,
        blocked_by=blocked_by, slope=slope, repulsion=repulsion,
    )


def crossed(
    group: str,
    covariance: CovarianceMatrix,
    blocked_by: str,
    cross_covariance: CovarianceMatrix,
    *,
    slope: str | None = None,
    repulsion: bool = False,
    name: str | None = None,
) -> RandomTerm:
    """Effect over group × blocked_by cells with covariance A ⊗ B."""
    if name is None:
        name = f"{_lhs(slope)}|{group}__@{blocked_by}__"
    return RandomTerm(
        kind=TermKind.CROSSED, name=name, group=group, covariance=covariance,
        blocked_by=blocked_by, cross_covariance=cross_covariance,
        slope=slope, repulsion=repulsion,
    )


# =====================================================================
# Formula parsing
# =====================================================================

_TERM_RE = re.compile(r'^\(\s*([^|()]+?)\s*\|\s*([^|()]+?)\s*\)$')
_FACTOR_RE = re.compile(r'^([A-Za-z.][\w.]*?)(__)?$')
_SLOPE_RE = re.compile(r'^[A-Za-z.][\w.]*$')


def _split_terms(formula: str) -> list[str]:
    """Split on '+' outside parentheses."""
    parts, depth, current = [], 0, []
    for ch in formula:
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
            if depth < 0:
                raise SpecError(f"unbalanced parentheses in {formula!r}")
        if ch == '+' and depth == 0:
            parts.append(''.join(current).strip())
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise SpecError(f"unbalanced parentheses in {formula!r}")
    parts.append(''.join(current).strip())
    if any(not p for p in parts):
        raise SpecError(f"empty term in {formula!r}")
    return parts


def _parse_factor(text: str, term: str) -> tuple[str, bool]:
    match = _FACTOR_RE.match(text.strip())
    if match is None:
        raise SpecError(f"invalid grouping factor {text!r} in term {term!r}")
    return match.group(1), match.group(2) is not None


def _as_covariance(value: Any, name: str) -> CovarianceMatrix:
    if isinstance(value, CovarianceMatrix):
        return value
    if isinstance(value, (Tree, Clade, str)):
        return build_from_tree(value, name=name)
    raise SpecError(
        f"cov_ranef[{name!r}] must be a CovarianceMatrix, a Bio.Phylo tree "
        f"or a Newick string, got {type(value).__name__}"
    )


def _lookup_cov(
    covs: Mapping[str, Any],
    group: str,
    term: str,
    resolved: dict[str, CovarianceMatrix],
) -> CovarianceMatrix:
    if group not in covs:
        raise SpecError(
            f"term {term!r} needs a covariance for {group!r}, but cov_ranef "
            f"only has {sorted(covs)}"
        )
    if group not in resolved:
        resolved[group] = _as_covariance(covs[group], group)
    return resolved[group]


def parse_random_terms(
    formula: str,
    cov_ranef: Mapping[str, Any] | None = None,
    *,
    add_independent: bool = True,
) -> list[RandomTerm]:
    """Parse a random-effects formula into an ordered list of terms.

    Args:
        formula: e.g. "(1|sp__) + (1|site) + (x|sp) + (1|sp__@site)".
        cov_ranef: Grouping factor name → CovarianceMatrix, Bio.Phylo tree
            or Newick string, for every factor marked with '__'.
        add_independent: If True (default), '(1|g__)' also emits the
            independent SIMPLE term for g. Set False to spell out both
            terms explicitly.

    Returns:
        Terms in formula order.

    Raises:
        SpecError: On malformed syntax, a missing covariance, or
            duplicate term names.
    """
    if not isinstance(formula, str) or not formula.strip():
        raise SpecError("random-effects formula must be a non-empty string")
    covs = {} if cov_ranef is None else dict(cov_ranef)
    resolved: dict[str, CovarianceMatrix] = {}

    terms: list[RandomTerm] = []
    for text in _split_terms(formula.strip()):
        match = _TERM_RE.match(text)
        if match is None:
            raise SpecError(f"malformed random term {text!r}, expected '(lhs|rhs)'")
        lhs, rhs = match.group(1).strip(), match.group(2).strip()

        if lhs == '1':
            slope = None
        elif _SLOPE_RE.match(lhs):
            slope = lhs
        else:
            raise SpecError(
                f"left side of {text!r} must be '1' or a covariate name"
            )

        factors = rhs.split('@')
        if len(factors) > 2:
            raise SpecError(f"at most one '@' allowed in term {text!r}")

        g, g_cov = _parse_factor(factors[0], text)
        name = f"{_lhs(slope)}|{rhs.replace(' ', '')}"

        if len(factors) == 1:
            if g_cov:
                if add_independent:
                    terms.append(simple(g, slope=slope))
                cov = _lookup_cov(covs, g, text, resolved)
                terms.append(structured(g, cov, slope=slope, name=name))
            else:
                terms.append(simple(g, slope=slope, name=name))
            continue

        h, h_cov = _parse_factor(factors[1], text)
        if g == h:
            raise SpecError(f"term {text!r} blocks a factor by itself")
        if g_cov and h_cov:
            terms.append(crossed(
                g, _lookup_cov(covs, g, text, resolved),
                h, _lookup_cov(covs, h, text, resolved),
                slope=slope, name=name,
            ))
        elif g_cov:
            terms.append(nested(
                g, _lookup_cov(covs, g, text, resolved), h,
                slope=slope, name=name,
            ))
        elif h_cov:
            terms.append(nested(
                h, _lookup_cov(covs, h, text, resolved), g,
                slope=slope, name=name,
            ))
        else:
            terms.append(simple(g, blocked_by=h, slope=slope, name=name))

    check_unique_names(terms)
    return terms


def check_unique_names(terms: Sequence[RandomTerm]) -> None:
    """Raise SpecError if two terms share a name."""
    seen: set[str] = set()
    for term in terms:
        if term.name in seen:
            raise SpecError(f"duplicate random term {term.name!r}")
        seen.add(term.name)


# =====================================================================
# Resolution against data
# =====================================================================

@dataclass(frozen=True)
class ResolvedTerm:
    """A random term bound to the observations.

    Attributes:
        term: The originating RandomTerm.
        K: Observation-level structure matrix (n, n), read-only.
        n_levels: Number of levels of the grouping factor (cells for
            SIMPLE terms with a blocking factor).
    """
    term: RandomTerm
    K: NDArray
    n_levels: int

    @property
    def name(self) -> str:
        return self.term.name

    @property
    def kind(self) -> TermKind:
        return self.term.kind


def _column(data: Any, column: str, n: int, term: RandomTerm) -> NDArray:
    try:
        values = data[column]
    except (KeyError, IndexError, TypeError) as e:
        raise SpecError(
            f"term {term.name!r}: column {column!r} not found in data"
        ) from e
    values = np.asarray(values)
    if values.ndim != 1 or values.shape[0] != n:
        raise SpecError(
            f"term {term.name!r}: column {column!r} has shape {values.shape}, "
            f"expected ({n},)"
        )
    return values


def _levels(data: Any, column: str, n: int, term: RandomTerm) -> NDArray:
    values = _column(data, column, n, term)
    return np.array([str(v) for v in values.tolist()])


def _indicator(levels: NDArray) -> NDArray:
    return (levels[:, np.newaxis] == levels[np.newaxis, :]).astype(np.float64)


def _prepare_cov(
    cov: CovarianceMatrix, term: RandomTerm, scale_cov: bool
) -> CovarianceMatrix:
    if term.repulsion:
        return repulsion(cov)
    if scale_cov:
        return standardize(cov)
    return cov


def _expand(
    cov: CovarianceMatrix,
    levels: NDArray,
    column: str,
    term: RandomTerm,
    scale_cov: bool,
) -> NDArray:
    """Observation-level A[g_i, g_j], checking levels against the covariance."""
    unique = sorted(set(levels.tolist()))
    if len(unique) < 2:
        raise ConstructionError(
            f"term {term.name!r}: grouping factor {column!r} has only one "
            f"level ({unique[0]!r}); a structured covariance needs at least 2"
        )
    missing = sorted(set(unique) - set(cov.labels))
    extra = sorted(set(cov.labels) - set(unique))
    if missing or extra:
        raise SpecError(
            f"term {term.name!r}: levels of {column!r} do not match covariance "
            f"{cov.name!r} ({cov.n} labels, {len(unique)} levels): "
            f"not in covariance {missing[:10]}, not in data {extra[:10]}"
        )
    cov = _prepare_cov(cov, term, scale_cov)
    idx = cov.indices(levels.tolist())
    return cov.values[np.ix_(idx, idx)]


def resolve_terms(
    terms: Sequence[RandomTerm],
    data: Any,
    n: int,
    *,
    scale_cov: bool = True,
) -> list[ResolvedTerm]:
    """Bind terms to data, producing one structure matrix per term.

    Args:
        terms: Random terms.
        data: Mapping (or DataFrame) from column name to length-n array.
        n: Number of observations.
        scale_cov: Standardize structured covariances to max 1, det 1.

    Raises:
        SpecError: On unknown columns, mismatched covariance levels or
            duplicate names.
        ConstructionError: On a single-level factor in a structured term.
    """
    if not terms:
        raise SpecError("at least one random term is required")
    check_unique_names(terms)

    resolved = []
    for term in terms:
        g = _levels(data, term.group, n, term)
        h = None if term.blocked_by is None else _levels(data, term.blocked_by, n, term)

        if term.kind is TermKind.SIMPLE:
            cells = g if h is None else np.char.add(np.char.add(g, '\x1f'), h)
            n_levels = len(np.unique(cells))
            if n_levels < 2:
                raise SpecError(
                    f"term {term.name!r}: grouping factor {term.group!r} "
                    f"has only one level"
                )
            K = _indicator(cells)
        else:
            if term.covariance is None:
                raise SpecError(f"term {term.name!r} has no covariance")
            n_levels = len(np.unique(g))
            K = _expand(term.covariance, g, term.group, term, scale_cov)
            if term.kind is TermKind.NESTED:
                if h is None:
                    raise SpecError(f"nested term {term.name!r} has no blocking factor")
                obs = CovarianceMatrix(
                    values=K,
                    labels=tuple(str(i) for i in range(n)),
                    name=term.name,
                )
                K = np.array(build_nested(obs, h).values)
            elif term.kind is TermKind.CROSSED:
                if h is None or term.cross_covariance is None:
                    raise SpecError(
                        f"crossed term {term.name!r} needs a second factor "
                        f"and its covariance"
                    )
                K = K * _expand(
                    term.cross_covariance, h, term.blocked_by, term, scale_cov
                )

        if term.slope is not None:
            z = _column(data, term.slope, n, term).astype(np.float64)
            if not np.all(np.isfinite(z)):
                raise SpecError(
                    f"term {term.name!r}: slope covariate {term.slope!r} "
                    f"contains non-finite values"
                )
            K = K * np.outer(z, z)

        K = np.ascontiguousarray(K, dtype=np.float64)
        K.setflags(write=False)
        resolved.append(ResolvedTerm(term=term, K=K, n_levels=n_levels))

    return resolved
