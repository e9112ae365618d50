"""
Solution wrapper for cor-phylo.

CorPhyloSolution wraps Result[CorPhyloParams] together with the design
and fit settings, so the parametric bootstrap can simulate from and refit
the same model.
"""

from __future__ import annotations

from dataclasses import replace

import numpy as np
from numpy.typing import NDArray

from phylostats.core.result import Result
from phylostats.corphylo._common import (
    CorPhyloBootstrap, CorPhyloParams, CorPhyloSettings,
)
from phylostats.corphylo.design import CorPhyloDesign


def _significance_stars(p: float) -> str:
    if p < 0.001:
        return '***'
    elif p < 0.01:
        return '**'
    elif p < 0.05:
        return '*'
    elif p < 0.1:
        return '.'
    else:
        return ' '


def _format_pvalue(p: float) -> str:
    if p < 2e-16:
        return '< 2e-16'
    elif p < 0.001:
        return f'{p:.2e}'
    else:
        return f'{p:.4f}'


class CorPhyloSolution:
    """Solution wrapper for a cor-phylo fit.

    Immutable: with_bootstrap() returns a new solution.
    """

    def __init__(
        self,
        _result: Result[CorPhyloParams],
        _design: CorPhyloDesign,
        _settings: CorPhyloSettings,
    ):
        self._result = _result
        self._design = _design
        self._settings = _settings

    @property
    def params(self) -> CorPhyloParams:
        return self._result.params

    @property
    def info(self) -> dict:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def backend_name(self) -> str:
        return self._result.backend_name

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    @property
    def design(self) -> CorPhyloDesign:
        return self._design

    @property
    def settings(self) -> CorPhyloSettings:
        return self._settings

    # --- Estimates ---

    @property
    def corrs(self) -> NDArray:
        """Trait correlation matrix (p, p)."""
        return self.params.corrs

    @property
    def cov_matrix(self) -> NDArray:
        return self.params.cov_matrix

    @property
    def d(self) -> NDArray:
        """Phylogenetic signal per trait."""
        return self.params.d

    @property
    def B(self) -> NDArray:
        return self.params.B

    @property
    def coefficients(self) -> dict[str, float]:
        return dict(zip(self.params.B_names, self.params.B))

    @property
    def B_se(self) -> NDArray:
        return self.params.B_se

    @property
    def B_cov(self) -> NDArray:
        return self.params.B_cov

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def n_iter(self) -> int:
        return self.params.n_iter

    @property
    def bootstrap(self) -> CorPhyloBootstrap | None:
        return self.params.bootstrap

    def with_bootstrap(self, table: CorPhyloBootstrap) -> 'CorPhyloSolution':
        """New solution carrying a bootstrap interval table."""
        params = replace(self.params, bootstrap=table)
        return CorPhyloSolution(
            _result=replace(self._result, params=params),
            _design=self._design,
            _settings=self._settings,
        )

    # --- Summary ---

    def summary(self) -> str:
        params = self.params
        names = params.trait_names
        p = params.n_traits
        method = 'REML' if params.reml else 'ML'

        lines = [f"Correlation with phylogenetic signal, fit by {method}", ""]
        lines.append(
            f"{'logLik':>10s} {'AIC':>10s} {'BIC':>10s}"
        )
        lines.append(
            f"{params.log_likelihood:10.2f} {params.aic:10.2f} {params.bic:10.2f}"
        )
        lines.append("")

        width = max(10, max(len(t) for t in names))
        lines.append("Correlation matrix:")
        lines.append(" " + " " * width + "".join(f" {t:>{width}s}" for t in names))
        for i in range(p):
            row = "".join(f" {params.corrs[i, j]:{width}.4f}" for j in range(p))
            lines.append(f" {names[i]:>{width}s}{row}")
        lines.append("")

        lines.append("Phylogenetic signal d:")
        for t, dj in zip(names, params.d):
            lines.append(f" {t:>{width}s} {dj:10.4f}")
        lines.append("")

        lines.append("Coefficients:")
        lines.append(
            f" {'':>15s} {'Estimate':>10s} {'Std. Error':>10s} "
            f"{'z value':>10s} {'Pr(>|z|)':>10s} {'':>4s}"
        )
        for i, name in enumerate(params.B_names):
            lines.append(
                f" {name:>15s} {params.B[i]:10.4f} {params.B_se[i]:10.4f} "
                f"{params.B_z[i]:10.3f} {_format_pvalue(params.B_p[i]):>10s} "
                f"{_significance_stars(params.B_p[i])}"
            )
        lines.append("---")
        lines.append("Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")

        boot = params.bootstrap
        if boot is not None:
            level = 100.0 * (1.0 - boot.alpha)
            lines.append("")
            lines.append(
                f"Bootstrap {level:g}% intervals "
                f"({boot.n_reps - boot.n_failed} of {boot.n_reps} replicates):"
            )
            iu = np.triu_indices(p, k=1)
            for i, j in zip(*iu):
                lines.append(
                    f" corr {names[i]}-{names[j]}: "
                    f"[{boot.corrs_lower[i, j]:.4f}, {boot.corrs_upper[i, j]:.4f}]"
                )
            for t, lo, hi in zip(names, boot.d_lower, boot.d_upper):
                lines.append(f" d {t}: [{lo:.4f}, {hi:.4f}]")
            for name, lo, hi in zip(params.B_names, boot.B_lower, boot.B_upper):
                lines.append(f" {name}: [{lo:.4f}, {hi:.4f}]")
            if boot.n_failed:
                lines.append(
                    f" {boot.n_failed} replicates excluded; first cause: "
                    f"{boot.representative_cause}"
                )

        lines.append("")
        lines.append(f"Number of species: {params.n_species}, traits: {p}")
        if not params.converged:
            lines.append("")
            lines.append("WARNING: Model did not converge")
        return '\n'.join(lines)

    def __repr__(self) -> str:
        method = 'REML' if self.params.reml else 'ML'
        return (
            f"CorPhyloSolution({method}, n={self.params.n_species}, "
            f"traits={self.params.n_traits}, "
            f"bootstrap={'yes' if self.params.bootstrap is not None else 'no'})"
        )
