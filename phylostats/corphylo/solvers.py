"""
Solver dispatch for cor-phylo.

Public API:
    cor_phylo() — correlations among traits with phylogenetic signal,
                  covariates and measurement error

Estimators:
    CorPhyloEstimator — REML/ML on the standardized scale, Nelder-Mead by
                        default, B profiled out by GLS
"""

from __future__ import annotations

import logging
import threading
import warnings
from functools import partial
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import stats
import scipy.linalg as sla

from phylostats.core.compute.linalg import min_eigenvalue
from phylostats.core.compute.optimize import minimize
from phylostats.core.compute.timing import Timer
from phylostats.core.config import FitControl
from phylostats.core.exceptions import (
    ConvergenceWarning, InvalidCorrelationError,
)
from phylostats.core.result import Result
from phylostats.core.validation import check_at_least, check_open_interval
from phylostats.corphylo._common import CorPhyloParams, CorPhyloSettings
from phylostats.corphylo._likelihood import (
    LikelihoodFit, StandardizedProblem, bounds, evaluate, objective,
    standardize_problem, start_values,
)
from phylostats.corphylo.design import CorPhyloDesign
from phylostats.corphylo.solution import CorPhyloSolution

logger = logging.getLogger(__name__)

_EIGEN_TOL = 1e-8


class CorPhyloEstimator:
    """Maximum (restricted) likelihood estimator for cor-phylo.

    Args:
        settings: REML/ML choice, d parameterization and optimizer control.
        start: Optional starting parameter vector (as in
            CorPhyloParams.par). Bootstrap refits start from the fit.
        cancel: Event checked at every objective evaluation.
        warn: Issue a ConvergenceWarning when the optimizer stops at its
            cap. The message is recorded in Result.warnings either way.
    """

    def __init__(
        self,
        settings: CorPhyloSettings,
        *,
        start: NDArray | None = None,
        cancel: threading.Event | None = None,
        warn: bool = True,
    ):
        self._settings = settings
        self._start = start
        self._cancel = cancel
        self._warn = warn

    @property
    def name(self) -> str:
        return 'cpu_corphylo'

    def solve(self, design: CorPhyloDesign) -> Result[CorPhyloParams]:
        settings = self._settings
        control = settings.control
        timer = Timer()
        timer.start()

        with timer.section('standardize'):
            prob = standardize_problem(design)
            if self._start is None:
                x0 = start_values(prob, settings.constrain_d)
            else:
                x0 = np.asarray(self._start, dtype=np.float64)

        with timer.section('optimization'):
            outcome = minimize(
                partial(
                    objective,
                    prob=prob, reml=settings.reml,
                    constrain_d=settings.constrain_d, lower_d=settings.lower_d,
                    rcond_threshold=control.rcond_threshold,
                ),
                x0,
                bounds(prob, settings.constrain_d, settings.lower_d),
                method=control.optimizer,
                tol=control.optimizer_tol,
                max_iter=control.optimizer_max_iter,
                penalize_singular=True,
                cancel=self._cancel,
            )

        warn_list = []
        if not outcome.converged:
            msg = (
                f"cor_phylo optimizer did not converge after {outcome.n_iter} "
                f"iterations: {outcome.message}"
            )
            if self._warn:
                warnings.warn(msg, ConvergenceWarning, stacklevel=3)
            warn_list.append(msg)

        with timer.section('final_solve'):
            # singular V or U'V⁻¹U at the optimum propagates
            fit = evaluate(
                outcome.x, prob, settings.reml, settings.constrain_d,
                settings.lower_d, control.rcond_threshold,
            )
            corrs = correlation_from_covariance(fit.R)

        timer.stop()

        params = _assemble_params(
            design, prob, fit, corrs,
            reml=settings.reml,
            converged=outcome.converged,
            n_iter=outcome.n_iter,
            par=outcome.x,
        )

        return Result(
            params=params,
            info={
                'method': 'REML' if settings.reml else 'ML',
                'optimizer': control.optimizer,
                'converged': outcome.converged,
                'n_iter': outcome.n_iter,
                'n_eval': outcome.n_eval,
                'objective': fit.objective,
                'constrain_d': settings.constrain_d,
                'd_max': prob.d_max,
                'rcond_V': fit.factor.rcond,
                'rcond_UVU': fit.gls.xtvx.rcond,
            },
            timing=timer.result(),
            backend_name=self.name,
            warnings=tuple(warn_list),
        )


def cor_phylo(
    traits: Mapping[str, ArrayLike] | ArrayLike,
    species: ArrayLike,
    phy: Any,
    *,
    covariates: Mapping[str, Any] | None = None,
    meas_errors: Mapping[str, ArrayLike] | None = None,
    trait_names: Sequence[str] | None = None,
    reml: bool = True,
    constrain_d: bool = False,
    lower_d: float = 1e-7,
    control: FitControl | None = None,
    boot: int = 0,
    boot_alpha: float = 0.05,
    seed: int | None = None,
    n_jobs: int = 1,
    cancel: threading.Event | None = None,
) -> CorPhyloSolution:
    """Correlations among traits accounting for phylogenetic signal.

    Each trait evolves along the tree under an Ornstein-Uhlenbeck process
    with its own signal parameter d (d = 1 is Brownian motion, d → 0 no
    signal). Traits may have their own covariates and known measurement
    standard errors.

    Args:
        traits: Mapping trait name → values (n,), or an (n, p) array.
        species: Species label of each row (n,), unique.
        phy: Bio.Phylo tree, Newick string or CovarianceMatrix covering
            exactly the species.
        covariates: Mapping trait name → covariates of that trait.
        meas_errors: Mapping trait name → measurement standard errors.
        trait_names: Names for the columns of an array of traits.
        reml: If True (default), REML; otherwise ML.
        constrain_d: Constrain d to (0, 1) by a logistic transform.
        lower_d: Lower bound on d.
        control: Optimizer settings; defaults to FitControl.for_cor_phylo().
        boot: Number of parametric bootstrap replicates (0 for none).
        boot_alpha: 1 - confidence level of the bootstrap intervals.
        seed: Seed for the bootstrap.
        n_jobs: Threads for the bootstrap.
        cancel: Event that cancels the fit or bootstrap cooperatively.

    Returns:
        CorPhyloSolution.

    Raises:
        ValidationError: Invalid inputs or options.
        ConstructionError: Tree or covariance does not match the species.
        SingularCovarianceError: Singular V or U'V⁻¹U at the optimum.
        InvalidCorrelationError: Estimated correlations are not valid.
        InsufficientReplicatesError: Too many bootstrap replicates failed.
        FitCancelledError: If cancel is set.

    Examples:
        >>> tree = simulate_coalescent_tree(40, seed=2)
        >>> result = cor_phylo({'mass': mass, 'metab': metab},
        ...                    tip_labels(tree), tree)
        >>> result.corrs[0, 1]
    """
    check_open_interval(lower_d, 'lower_d')
    check_at_least(boot, 0, 'boot')
    check_open_interval(boot_alpha, 'boot_alpha')

    design = CorPhyloDesign.validate(
        traits, species, phy,
        covariates=covariates, meas_errors=meas_errors, trait_names=trait_names,
    )
    settings = CorPhyloSettings(
        reml=reml,
        constrain_d=constrain_d,
        lower_d=lower_d,
        control=FitControl.for_cor_phylo() if control is None else control,
    )

    estimator = CorPhyloEstimator(settings, cancel=cancel)
    solution = CorPhyloSolution(
        _result=estimator.solve(design), _design=design, _settings=settings,
    )

    if boot == 0:
        return solution

    from phylostats.corphylo.bootstrap import boot_ci, bootstrap

    replicates = bootstrap(solution, boot, seed=seed, n_jobs=n_jobs, cancel=cancel)
    return solution.with_bootstrap(boot_ci(replicates, alpha=boot_alpha))


# =====================================================================
# Helpers
# =====================================================================

def correlation_from_covariance(R: NDArray) -> NDArray:
    """cov2cor(R), checked to be a valid correlation matrix.

    Raises:
        InvalidCorrelationError: Zero variance, non-unit diagonal,
            |r| > 1 or a negative eigenvalue below -1e-8.
    """
    sd = np.sqrt(np.diag(R))
    if not np.all(np.isfinite(sd)) or np.any(sd <= 0):
        raise InvalidCorrelationError(
            f"trait covariance has non-positive variances {np.diag(R)}"
        )
    corrs = R / np.outer(sd, sd)
    corrs = 0.5 * (corrs + corrs.T)

    if not np.allclose(np.diag(corrs), 1.0):
        raise InvalidCorrelationError(
            f"correlation diagonal is {np.diag(corrs)}, expected ones"
        )
    if np.any(np.abs(corrs) > 1.0 + 1e-10):
        raise InvalidCorrelationError(
            f"correlation magnitude {np.max(np.abs(corrs)):.6g} exceeds 1"
        )
    lam = min_eigenvalue(corrs)
    if lam < -_EIGEN_TOL:
        raise InvalidCorrelationError(
            f"correlation matrix has eigenvalue {lam:.3e} < {-_EIGEN_TOL:.0e}",
            min_eigenvalue=lam,
        )

    corrs = np.clip(corrs, -1.0, 1.0)
    np.fill_diagonal(corrs, 1.0)
    return corrs


def _back_transform(prob: StandardizedProblem) -> tuple[NDArray, NDArray]:
    """(A, c) with B = c + A B* mapping standardized to original coefficients."""
    blocks, offsets = [], []
    for j, (mu, su) in enumerate(zip(prob.u_mean, prob.u_sd)):
        s = prob.x_sd[j]
        k = 1 + mu.shape[0]
        A_j = np.zeros((k, k))
        A_j[0, 0] = s
        A_j[0, 1:] = -s * mu / su
        A_j[1:, 1:] = np.diag(s / su)
        blocks.append(A_j)
        c_j = np.zeros(k)
        c_j[0] = prob.x_mean[j]
        offsets.append(c_j)
    return sla.block_diag(*blocks), np.concatenate(offsets)


def _assemble_params(
    design: CorPhyloDesign,
    prob: StandardizedProblem,
    fit: LikelihoodFit,
    corrs: NDArray,
    *,
    reml: bool,
    converged: bool,
    n_iter: int,
    par: NDArray,
) -> CorPhyloParams:
    """Back-transform B, Wald inference and fit statistics."""
    n, p = prob.n, prob.p
    n_coef = prob.UU.shape[1]

    A, c = _back_transform(prob)
    B = c + A @ fit.gls.beta
    B_cov = A @ fit.gls.xtvx.inverse() @ A.T
    B_cov = 0.5 * (B_cov + B_cov.T)
    B_se = np.sqrt(np.maximum(np.diag(B_cov), 0.0))
    with np.errstate(divide='ignore', invalid='ignore'):
        B_z = B / B_se
    B_p = 2.0 * stats.norm.sf(np.abs(B_z))

    df = n * p - (n_coef if reml else 0)
    ll = (
        -fit.objective
        - 0.5 * df * np.log(2.0 * np.pi)
        - n * float(np.sum(np.log(prob.x_sd)))
    )
    k = p * (p + 1) // 2 + p + n_coef
    aic = -2.0 * ll + 2.0 * k
    bic = -2.0 * ll + k * np.log(n * p)

    logger.debug("cor_phylo fit: logLik=%.6g d=%s corrs=%s", ll, fit.d, corrs)

    return CorPhyloParams(
        corrs=corrs,
        cov_matrix=fit.R,
        d=fit.d,
        B=B,
        B_names=design.coefficient_names,
        B_se=B_se,
        B_z=B_z,
        B_p=B_p,
        B_cov=B_cov,
        log_likelihood=float(ll),
        aic=float(aic),
        bic=float(bic),
        reml=reml,
        n_species=n,
        n_traits=p,
        trait_names=design.trait_names,
        converged=converged,
        n_iter=n_iter,
        rcond_V=fit.factor.rcond,
        rcond_UVU=fit.gls.xtvx.rcond,
        par=np.asarray(par, dtype=np.float64),
    )
