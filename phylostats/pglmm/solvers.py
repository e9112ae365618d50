"""
Solver dispatch for PGLMM.

Public API:
    pglmm()             — fit a phylogenetic (generalized) linear mixed model
    resolve_estimator() — choose the estimation strategy for a family

Estimators:
    GaussianEstimator — profiled REML/ML for the Gaussian family
    PQLEstimator      — penalized quasi-likelihood for binomial, Poisson
                        and zero-inflated families

Any object satisfying the Estimator protocol (a `name` and a
`solve(design) -> Result[PGLMMParams]`) can be passed as `estimator=`,
e.g. an external Bayesian solver.
"""

from __future__ import annotations

import threading
import warnings
from dataclasses import replace
from functools import partial
from typing import Any, Callable, Mapping, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import stats

from phylostats.core.compute.optimize import OptimizeOutcome, minimize
from phylostats.core.compute.timing import Timer
from phylostats.core.config import FitControl
from phylostats.core.exceptions import ConvergenceWarning, SpecError, ValidationError
from phylostats.core.protocols import Estimator
from phylostats.core.result import Result
from phylostats.core.validation import check_vector
from phylostats.pglmm._common import PGLMMParams, VarCompSummary
from phylostats.pglmm._deviance import (
    MarginalFit, fit_profiled, profiled_deviance, quasi_deviance,
)
from phylostats.pglmm._pql import solve_pql
from phylostats.pglmm._terms import RandomTerm, parse_random_terms, resolve_terms
from phylostats.pglmm.design import PGLMMDesign
from phylostats.pglmm.families import Family, resolve_family
from phylostats.pglmm.solution import PGLMMSolution


class GaussianEstimator:
    """Profiled REML/ML estimator for Gaussian PGLMM.

    Optimizes θ_k = σ_k / σ ≥ 0 with σ² profiled out, then reports β̂
    with Wald inference, σ²_k = θ_k² σ̂² and per-term conditional modes.
    """

    def __init__(
        self,
        control: FitControl | None = None,
        *,
        re_pvalues: bool = True,
        cancel: threading.Event | None = None,
    ):
        self._control = FitControl.for_pglmm() if control is None else control
        self._re_pvalues = re_pvalues
        self._cancel = cancel

    @property
    def name(self) -> str:
        return 'cpu_gaussian'

    def solve(self, design: PGLMMDesign) -> Result[PGLMMParams]:
        if not design.family.is_gaussian:
            raise ValidationError(
                f"{self.name} fits the gaussian family only, "
                f"got {design.family.name!r}"
            )
        control = self._control
        timer = Timer()
        timer.start()

        structures = design.structures
        q = len(structures)
        objective = partial(
            profiled_deviance,
            X=design.X, y=design.y, structures=structures,
            reml=design.reml, rcond_threshold=control.rcond_threshold,
        )

        with timer.section('optimization'):
            outcome = _optimize_theta(objective, q, control, self._cancel)

        warn_list = []
        if not outcome.converged:
            msg = (
                f"PGLMM optimizer did not converge after {outcome.n_iter} "
                f"iterations: {outcome.message}"
            )
            warnings.warn(msg, ConvergenceWarning, stacklevel=3)
            warn_list.append(msg)

        with timer.section('final_solve'):
            fit = fit_profiled(
                outcome.x, design.X, design.y, structures,
                reml=design.reml, rcond_threshold=control.rcond_threshold,
            )

        with timer.section('profile_lrt'):
            lrts = _profile_lrts(
                objective, fit.theta, fit.deviance, control, self._cancel,
            ) if self._re_pvalues else None

        ranef = fit.conditional_modes(structures)
        eta = design.X @ fit.beta + np.sum(ranef, axis=0)
        timer.stop()

        params = _assemble_params(
            design,
            fit,
            variances=fit.theta ** 2 * fit.scale,
            ranef=ranef,
            eta=eta,
            mu=eta,
            lrts=lrts,
            residual_variance=fit.scale,
            n_params=design.p + q + 1,
            zi_probability=None,
            converged=outcome.converged,
            n_iter=outcome.n_iter,
        )

        return Result(
            params=params,
            info={
                'method': 'REML' if design.reml else 'ML',
                'likelihood': 'exact',
                'optimizer': control.optimizer,
                'converged': outcome.converged,
                'n_iter': outcome.n_iter,
                'n_eval': outcome.n_eval,
                'deviance': fit.deviance,
                'rcond_V': fit.factor.rcond,
            },
            timing=timer.result(),
            backend_name='cpu_reml' if design.reml else 'cpu_ml',
            warnings=tuple(warn_list),
        )


class PQLEstimator:
    """Penalized quasi-likelihood estimator for non-Gaussian PGLMM.

    Variances and the likelihood refer to the final working (pseudo-data)
    problem; info['likelihood'] is 'quasi'.
    """

    def __init__(
        self,
        control: FitControl | None = None,
        *,
        re_pvalues: bool = True,
        cancel: threading.Event | None = None,
    ):
        self._control = FitControl.for_pglmm() if control is None else control
        self._re_pvalues = re_pvalues
        self._cancel = cancel

    @property
    def name(self) -> str:
        return 'cpu_pql'

    def solve(self, design: PGLMMDesign) -> Result[PGLMMParams]:
        if design.family.is_gaussian:
            raise ValidationError(
                f"{self.name} fits non-gaussian families; use GaussianEstimator"
            )
        control = self._control
        timer = Timer()
        timer.start()

        with timer.section('pql'):
            pql = solve_pql(design, control, self._cancel)

        warn_list = []
        if not pql.converged:
            msg = (
                f"PQL did not converge after {pql.n_iter} iterations "
                f"(tol={control.tol})"
            )
            warnings.warn(msg, ConvergenceWarning, stacklevel=3)
            warn_list.append(msg)

        with timer.section('profile_lrt'):
            if self._re_pvalues:
                objective = partial(
                    quasi_deviance,
                    X=design.X, z=pql.z, structures=design.structures,
                    residual_diag=pql.residual_diag, reml=design.reml,
                    rcond_threshold=control.rcond_threshold,
                )
                lrts = _profile_lrts(
                    objective, pql.fit.theta, pql.fit.deviance,
                    control, self._cancel,
                )
            else:
                lrts = None

        timer.stop()

        q = len(design.terms)
        n_params = design.p + q + (1 if design.family.zero_inflated else 0)
        params = _assemble_params(
            design,
            pql.fit,
            variances=pql.fit.theta ** 2,
            ranef=pql.random_effects,
            eta=pql.eta,
            mu=pql.mu,
            lrts=lrts,
            residual_variance=None,
            n_params=n_params,
            zi_probability=pql.zi_probability,
            converged=pql.converged,
            n_iter=pql.n_iter,
        )

        info = {
            'method': 'PQL-REML' if design.reml else 'PQL-ML',
            'likelihood': 'quasi',
            'family': design.family.name,
            'link': design.family.link.name,
            'optimizer': control.optimizer,
            'converged': pql.converged,
            'n_iter': pql.n_iter,
            'deviance': params.deviance,
            'rcond_V': pql.fit.factor.rcond,
        }
        if design.family.zero_inflated:
            info['conditional_log_likelihood'] = design.family.zi_log_likelihood(
                design.y, pql.mu, design.weights, pql.zi_probability,
            )

        return Result(
            params=params,
            info=info,
            timing=timer.result(),
            backend_name=self.name,
            warnings=tuple(warn_list),
        )


def resolve_estimator(
    family: str | Family,
    *,
    control: FitControl | None = None,
    re_pvalues: bool = True,
    cancel: threading.Event | None = None,
) -> Estimator:
    """Choose the estimator for a family: Gaussian → profiled, else PQL."""
    family = resolve_family(family)
    cls = GaussianEstimator if family.is_gaussian else PQLEstimator
    return cls(control, re_pvalues=re_pvalues, cancel=cancel)


def pglmm(
    y: ArrayLike,
    X: ArrayLike,
    data: Mapping[str, ArrayLike] | Any,
    random: str | Sequence[RandomTerm],
    *,
    family: str | Family = 'gaussian',
    cov_ranef: Mapping[str, Any] | None = None,
    reml: bool = True,
    add_independent: bool = True,
    scale_cov: bool = True,
    trials: ArrayLike | None = None,
    coefficient_names: Sequence[str] | None = None,
    re_pvalues: bool = True,
    control: FitControl | None = None,
    estimator: Estimator | None = None,
    cancel: threading.Event | None = None,
) -> PGLMMSolution:
    """Fit a phylogenetic generalized linear mixed model.

    The marginal covariance is V = σ²I + Σ_k σ²_k K_k for the Gaussian
    family, with one structure matrix K_k per random term. Other families
    are fit by penalized quasi-likelihood.

    Args:
        y: Response vector (n,). For binomial with trials, successes.
        X: Fixed effects design matrix (n, p). Should include an
            intercept column if desired.
        data: Mapping (or DataFrame) of columns referenced by the random
            terms: grouping factors and slope covariates, each length n.
        random: Random-effects formula, e.g. "(1|sp__) + (1|site)", or a
            sequence of RandomTerm built with simple/structured/nested/
            crossed.
        family: 'gaussian', 'binomial', 'poisson', 'zi_binomial',
            'zi_poisson', or a Family instance.
        cov_ranef: Covariances for '__' factors: CovarianceMatrix,
            Bio.Phylo tree or Newick string per factor name.
        reml: If True (default), REML; otherwise ML. Use ML to compare
            models with different fixed effects.
        add_independent: If True (default), '(1|g__)' also adds '(1|g)'.
        scale_cov: Standardize structured covariances (max 1, det 1).
        trials: Binomial trials per observation.
        coefficient_names: Names of the columns of X.
        re_pvalues: Compute profile likelihood-ratio tests for the
            random-effect variances.
        control: Tolerances and iteration caps.
        estimator: Alternative estimator; defaults by family.
        cancel: Event that cancels the fit cooperatively.

    Returns:
        PGLMMSolution.

    Raises:
        SpecError: Malformed formula or terms not matching the data.
        ConstructionError: Invalid covariance or degenerate grouping factor.
        ValidationError: Invalid y, X, trials or control.
        SingularCovarianceError: Singular V or X'V⁻¹X.
        FitCancelledError: If cancel is set during the fit.

    Examples:
        >>> tree = simulate_coalescent_tree(30, seed=1)
        >>> result = pglmm(y, X, {'sp': sp, 'site': site},
        ...                "(1|sp__) + (1|site) + (1|sp__@site)",
        ...                cov_ranef={'sp': tree})
        >>> print(result.summary())
    """
    family_obj = resolve_family(family)
    control = FitControl.for_pglmm() if control is None else control

    y_arr = check_vector(y, 'y')
    n = y_arr.shape[0]

    if isinstance(random, str):
        terms = parse_random_terms(
            random, cov_ranef, add_independent=add_independent,
        )
    else:
        terms = list(random)
        for term in terms:
            if not isinstance(term, RandomTerm):
                raise SpecError(
                    f"random must be a formula or RandomTerm sequence, "
                    f"got element of type {type(term).__name__}"
                )

    resolved = resolve_terms(terms, data, n, scale_cov=scale_cov)
    design = PGLMMDesign.validate(
        y_arr, X, resolved, family_obj,
        reml=reml, trials=trials, coefficient_names=coefficient_names,
    )

    if estimator is None:
        estimator = resolve_estimator(
            family_obj, control=control, re_pvalues=re_pvalues, cancel=cancel,
        )
    elif not isinstance(estimator, Estimator):
        raise ValidationError(
            f"estimator must provide 'name' and 'solve(design)', "
            f"got {type(estimator).__name__}"
        )

    return PGLMMSolution(_result=estimator.solve(design))


# =====================================================================
# Helpers
# =====================================================================

# θ above this is refit on the log scale; the raw-scale deviance is
# nearly flat there and L-BFGS-B can stop short of the optimum.
_LARGE_THETA = 10.0

# Lower bound of θ on the log scale, and the floor of refit starts.
_MIN_THETA = 1e-6
_MIN_START = 1e-3


def _on_log_scale(objective: Callable[[NDArray], float], log_theta: NDArray) -> float:
    return objective(np.exp(log_theta))


def _optimize_theta(
    objective: Callable[[NDArray], float],
    q: int,
    control: FitControl,
    cancel: threading.Event | None,
) -> OptimizeOutcome:
    """Minimize the profiled deviance over θ ≥ 0.

    Searches on θ from θ = 1. If that search does not converge or ends at
    a large variance ratio, the deviance is minimized again over log θ by
    Nelder-Mead from the first solution and from θ = 1, and the better
    fit is kept. Exact zeros are only reachable by the first search.
    """
    outcome = minimize(
        objective,
        np.ones(q),
        [(0.0, None)] * q,
        method=control.optimizer,
        tol=control.optimizer_tol,
        max_iter=control.optimizer_max_iter,
        cancel=cancel,
    )
    if outcome.converged and np.max(outcome.x) <= _LARGE_THETA:
        return outcome

    log_min = np.log(_MIN_THETA)
    refit = minimize(
        partial(_on_log_scale, objective),
        np.log(np.maximum(outcome.x, _MIN_START)),
        [(log_min, None)] * q,
        method='Nelder-Mead',
        tol=control.optimizer_tol,
        # simplex iterations grow with the number of terms
        max_iter=control.optimizer_max_iter * q,
        starts=[np.zeros(q)],
        penalize_singular=True,
        cancel=cancel,
    )
    n_eval = outcome.n_eval + refit.n_eval
    if refit.fun < outcome.fun and (refit.converged or not outcome.converged):
        return replace(refit, x=np.exp(refit.x), n_eval=n_eval)
    return replace(outcome, n_eval=n_eval)


def profile_lrt(
    objective: Callable[[NDArray], float],
    theta_hat: NDArray,
    deviance_hat: float,
    k: int,
    control: FitControl,
    cancel: threading.Event | None = None,
) -> tuple[float, float]:
    """Profile likelihood-ratio test of θ_k = 0.

    Re-optimizes the other variance parameters with θ_k fixed at zero.
    Since the null lies on the boundary, p = 0.5 × P(χ²₁ > LRT), and 1
    when LRT = 0.

    Returns:
        (LRT statistic, p-value).
    """
    q = len(theta_hat)
    if q == 1:
        null_deviance = objective(np.zeros(1))
    else:
        keep = np.array([i for i in range(q) if i != k])

        def reduced(t: NDArray) -> float:
            full = np.zeros(q)
            full[keep] = t
            return objective(full)

        outcome = minimize(
            reduced,
            theta_hat[keep],
            [(0.0, None)] * (q - 1),
            method=control.optimizer,
            tol=control.optimizer_tol,
            max_iter=control.optimizer_max_iter,
            cancel=cancel,
        )
        null_deviance = outcome.fun

    lrt = max(0.0, float(null_deviance - deviance_hat))
    p_value = 0.5 * float(stats.chi2.sf(lrt, 1)) if lrt > 0 else 1.0
    return lrt, p_value


def _profile_lrts(objective, theta_hat, deviance_hat, control, cancel):
    return [
        profile_lrt(objective, theta_hat, deviance_hat, k, control, cancel)
        for k in range(len(theta_hat))
    ]


def _assemble_params(
    design: PGLMMDesign,
    fit: MarginalFit,
    *,
    variances: NDArray,
    ranef: list[NDArray],
    eta: NDArray,
    mu: NDArray,
    lrts: list[tuple[float, float]] | None,
    residual_variance: float | None,
    n_params: int,
    zi_probability: float | None,
    converged: bool,
    n_iter: int,
) -> PGLMMParams:
    """Wald inference, variance table and fit statistics."""
    vcov = fit.vcov
    se = np.sqrt(np.maximum(np.diag(vcov), 0.0))
    with np.errstate(divide='ignore', invalid='ignore'):
        z_vals = fit.beta / se
    p_vals = 2.0 * stats.norm.sf(np.abs(z_vals))

    var_comps = []
    for k, term in enumerate(design.terms):
        lrt, p = (None, None) if lrts is None else lrts[k]
        var_comps.append(VarCompSummary(
            name=term.name,
            kind=term.kind.value,
            group=term.term.group,
            variance=float(variances[k]),
            std_dev=float(np.sqrt(max(variances[k], 0.0))),
            n_levels=term.n_levels,
            lrt=lrt,
            p_value=p,
        ))

    ll = -0.5 * fit.deviance
    aic = -2.0 * ll + 2.0 * n_params
    bic = -2.0 * ll + np.log(design.n) * n_params

    return PGLMMParams(
        coefficients=fit.beta,
        coefficient_names=design.coefficient_names,
        se=se,
        z_values=z_vals,
        p_values=p_vals,
        vcov=vcov,
        var_components=tuple(var_comps),
        residual_variance=residual_variance,
        log_likelihood=float(ll),
        reml=design.reml,
        aic=float(aic),
        bic=float(bic),
        n_obs=design.n,
        n_params=n_params,
        family_name=design.family.name,
        link_name=design.family.link.name,
        zi_probability=zi_probability,
        converged=converged,
        n_iter=n_iter,
        random_effects={t.name: b for t, b in zip(design.terms, ranef)},
        linear_predictor=eta,
        fitted_values=mu,
        residuals=design.y - mu,
        deviance=design.family.deviance(design.y, mu, design.weights),
        theta=fit.theta,
    )
