"""
Solution wrapper for PGLMM.

PGLMMSolution wraps Result[PGLMMParams] and provides a text summary,
property accessors for common quantities, profile likelihood-ratio tests
of the random-effect variances, and model comparison.
"""

from __future__ import annotations

import warnings

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from phylostats.core.exceptions import ValidationError
from phylostats.core.result import Result
from phylostats.pglmm._common import PGLMMParams, VarCompSummary


def _significance_stars(p: float) -> str:
    """Return significance stars like R."""
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
    """Format p-value like R."""
    if p < 2e-16:
        return '< 2e-16'
    elif p < 0.001:
        return f'{p:.2e}'
    else:
        return f'{p:.4f}'


class PGLMMSolution:
    """Solution wrapper for a fitted PGLMM.

    Immutable: every property returns data from the underlying frozen
    Result.
    """

    def __init__(self, _result: Result[PGLMMParams]):
        self._result = _result

    @property
    def params(self) -> PGLMMParams:
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

    # --- Fixed effects ---

    @property
    def coefficients(self) -> NDArray:
        """Fixed effect estimates β̂."""
        return self.params.coefficients

    @property
    def fixef(self) -> dict[str, float]:
        """Fixed effects as name → value dict."""
        return dict(zip(self.params.coefficient_names, self.params.coefficients))

    @property
    def se(self) -> NDArray:
        """Wald standard errors of fixed effects."""
        return self.params.se

    @property
    def z_values(self) -> NDArray:
        return self.params.z_values

    @property
    def p_values(self) -> NDArray:
        """Two-sided Wald p-values for fixed effects."""
        return self.params.p_values

    @property
    def vcov(self) -> NDArray:
        return self.params.vcov

    # --- Random effects ---

    @property
    def var_components(self) -> tuple[VarCompSummary, ...]:
        return self.params.var_components

    @property
    def variances(self) -> dict[str, float]:
        """Random-effect variances as term name → σ²_k."""
        return {vc.name: vc.variance for vc in self.params.var_components}

    @property
    def residual_variance(self) -> float | None:
        """σ̂² for the Gaussian family; None otherwise."""
        return self.params.residual_variance

    @property
    def ranef(self) -> dict[str, NDArray]:
        """Conditional modes per term, on the observation scale."""
        return self.params.random_effects

    @property
    def zi_probability(self) -> float | None:
        return self.params.zi_probability

    # --- Model fit ---

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
    def deviance(self) -> float:
        return self.params.deviance

    @property
    def linear_predictor(self) -> NDArray:
        return self.params.linear_predictor

    @property
    def fitted_values(self) -> NDArray:
        """μ̂ including the conditional modes of all random terms."""
        return self.params.fitted_values

    @property
    def predicted_values(self) -> NDArray:
        return self.params.fitted_values

    @property
    def residuals(self) -> NDArray:
        return self.params.residuals

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def n_iter(self) -> int:
        return self.params.n_iter

    # --- Inference on random effects ---

    def profile_lrt(self, term: str) -> tuple[float, float]:
        """Profile likelihood-ratio test of σ²_term = 0.

        Returns:
            (LRT statistic, one-sided p-value).

        Raises:
            ValidationError: If the term is unknown or the fit was run
                with re_pvalues=False.
        """
        for vc in self.params.var_components:
            if vc.name == term:
                if vc.lrt is None:
                    raise ValidationError(
                        "random-effect tests were not computed; refit with "
                        "re_pvalues=True"
                    )
                return vc.lrt, vc.p_value
        names = [vc.name for vc in self.params.var_components]
        raise ValidationError(f"unknown term {term!r}; terms are {names}")

    def compare(self, other: 'PGLMMSolution') -> str:
        """Likelihood ratio test between two nested models.

        Both models should be fit with ML (reml=False) when their fixed
        effects differ.
        """
        if (self.params.reml or other.params.reml) and (
            self.params.coefficient_names != other.params.coefficient_names
        ):
            warnings.warn(
                "REML likelihoods are not comparable across different "
                "fixed effects. Refit with reml=False.",
                UserWarning,
                stacklevel=2,
            )

        if self.params.n_params >= other.params.n_params:
            full, reduced = self, other
        else:
            full, reduced = other, self
        n_full, n_reduced = full.params.n_params, reduced.params.n_params

        chi_sq = max(-2.0 * (reduced.log_likelihood - full.log_likelihood), 0.0)
        df = max(n_full - n_reduced, 1)
        p_value = float(stats.chi2.sf(chi_sq, df))

        lines = [
            "Likelihood Ratio Test",
            "=" * 50,
            f"  Reduced model logLik: {reduced.log_likelihood:.4f}  "
            f"(df = {n_reduced})",
            f"  Full model logLik:    {full.log_likelihood:.4f}  "
            f"(df = {n_full})",
            f"  Chi-squared: {chi_sq:.4f}  on {df} df",
            f"  p-value: {_format_pvalue(p_value)}",
        ]
        return '\n'.join(lines)

    # --- Summary ---

    def summary(self) -> str:
        """Text summary: random effects, fixed effects and fit criteria."""
        params = self.params
        gaussian = params.family_name == 'gaussian'
        method = 'REML' if params.reml else 'ML'

        lines = []
        if gaussian:
            lines.append(f"Linear mixed model fit by {method}")
        else:
            lines.append(
                f"Generalized linear mixed model fit by PQL ({method} on "
                f"the working problem)"
            )
            lines.append(f" Family: {params.family_name} ( {params.link_name} )")
        lines.append("")

        lines.append(
            f"{'logLik':>10s} {'AIC':>10s} {'BIC':>10s}"
        )
        lines.append(
            f"{params.log_likelihood:10.2f} {params.aic:10.2f} {params.bic:10.2f}"
        )
        lines.append("")

        lines.append("Random effects:")
        lines.append(
            f" {'Term':<22s} {'Variance':>10s} {'Std.Dev.':>10s} "
            f"{'LRT':>9s} {'p-value':>10s}"
        )
        for vc in params.var_components:
            lrt = f'{vc.lrt:9.3f}' if vc.lrt is not None else f"{'':9s}"
            pv = _format_pvalue(vc.p_value) if vc.p_value is not None else ''
            lines.append(
                f" {vc.name:<22s} {vc.variance:10.4f} {vc.std_dev:10.4f} "
                f"{lrt} {pv:>10s}"
            )
        if params.residual_variance is not None:
            lines.append(
                f" {'Residual':<22s} {params.residual_variance:10.4f} "
                f"{np.sqrt(params.residual_variance):10.4f}"
            )
        if params.zi_probability is not None:
            lines.append(f" Zero-inflation probability: {params.zi_probability:.4f}")
        lines.append("")

        lines.append("Fixed effects:")
        lines.append(
            f" {'':>15s} {'Estimate':>10s} {'Std. Error':>10s} "
            f"{'z value':>10s} {'Pr(>|z|)':>10s} {'':>4s}"
        )
        for i, name in enumerate(params.coefficient_names):
            p_str = _format_pvalue(params.p_values[i])
            stars = _significance_stars(params.p_values[i])
            lines.append(
                f" {name:>15s} {params.coefficients[i]:10.4f} "
                f"{params.se[i]:10.4f} {params.z_values[i]:10.3f} "
                f"{p_str:>10s} {stars}"
            )
        lines.append("---")
        lines.append("Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")
        lines.append("")
        lines.append(f"Number of obs: {params.n_obs}")

        if not params.converged:
            lines.append("")
            lines.append("WARNING: Model did not converge")

        return '\n'.join(lines)

    def __repr__(self) -> str:
        method = 'REML' if self.params.reml else 'ML'
        return (
            f"PGLMMSolution({self.params.family_name}, {method}, "
            f"n={self.params.n_obs}, "
            f"fixed={len(self.params.coefficients)}, "
            f"random={len(self.params.var_components)} terms)"
        )
