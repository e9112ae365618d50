"""
Likelihood of the cor-phylo model.

On the standardized scale (traits and covariates centred and scaled by
their standard deviation, tree covariance scaled to max 1 and det 1):

    vec(X) ~ N(U B, V),    V = C(R, d) + diag(vec(M²))

Block (i, j) of C is R_ij times the Ornstein-Uhlenbeck cross-covariance
of traits i and j on the tree with signal parameters d_i, d_j. R = L'L
with L upper triangular, so R is positive semi-definite for every
parameter vector. B is profiled out by GLS and the objective is

    ML:   ½ (log|V| + H'V⁻¹H)
    REML: ½ (log|V| + H'V⁻¹H + log|U'V⁻¹U|)

with H = vec(X) - U B̂.

Parameter vector: the p(p+1)/2 upper-triangular entries of L (row-major)
followed by the p signal parameters (logit(d) when constrain_d).

References:
    Zheng, L., Ives, A. R., Garland, T., et al. (2009). New multivariate
    tests for phylogenetic signal and trait correlations applied to
    ecophysiological phenotypes of nine Manglietia species.
    Functional Ecology, 23(6), 1059-1069.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from phylostats.core.compute.linalg import CholeskyFactor, GLSResult, cholesky, gls
from phylostats.core.exceptions import ConstructionError
from phylostats.covariance.builder import ou_cross_covariance
from phylostats.corphylo.design import CorPhyloDesign

# Upper bound on d (when not constrained) such that d^(2·depth) stays
# below this ratio.
_D_RANGE = 1e6
_D_CAP = 10.0


@dataclass(frozen=True)
class StandardizedProblem:
    """Cor-phylo inputs on the standardized scale.

    Attributes:
        X: Standardized traits (n, p).
        UU: Block design matrix (n·p, k): intercept and covariates per trait.
        M: Measurement standard errors divided by trait SD (n, p).
        Vphy: Tree covariance scaled to max 1 and determinant 1 (n, n).
        x_mean, x_sd: Trait means and SDs (p,).
        u_mean, u_sd: Covariate means and SDs per trait.
        trait_columns: (start, stop) columns of UU for each trait.
        d_max: Upper bound for d.
    """
    X: NDArray
    UU: NDArray
    M: NDArray
    Vphy: NDArray
    x_mean: NDArray
    x_sd: NDArray
    u_mean: tuple[NDArray, ...]
    u_sd: tuple[NDArray, ...]
    trait_columns: tuple[tuple[int, int], ...]
    d_max: float

    @property
    def n(self) -> int:
        return self.X.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]

    @property
    def x_vec(self) -> NDArray:
        """vec(X): trait columns stacked."""
        return self.X.ravel(order='F')


def standardize_problem(design: CorPhyloDesign) -> StandardizedProblem:
    """Standardize traits, covariates, errors and tree covariance.

    Raises:
        ConstructionError: If the tree covariance is singular or not
            positive definite.
    """
    n, p = design.n, design.p

    x_mean = design.X.mean(axis=0)
    x_sd = design.X.std(axis=0, ddof=1)
    X = (design.X - x_mean) / x_sd
    M = design.M / x_sd

    Vphy = design.Vphy / np.max(design.Vphy)
    sign, logdet = np.linalg.slogdet(Vphy)
    if sign <= 0 or not np.isfinite(logdet):
        raise ConstructionError(
            "phylogenetic covariance is singular or not positive definite "
            f"(sign {sign:g}, log-determinant {logdet:g}); "
            "check for zero-length terminal branches or duplicated tips"
        )
    Vphy = Vphy / np.exp(logdet / n)

    blocks, u_mean, u_sd, trait_columns = [], [], [], []
    offset = 0
    for Uj in design.U:
        if Uj.shape[1]:
            mj = Uj.mean(axis=0)
            sj = Uj.std(axis=0, ddof=1)
            Zj = (Uj - mj) / sj
        else:
            mj, sj = np.empty(0), np.empty(0)
            Zj = Uj
        u_mean.append(mj)
        u_sd.append(sj)
        blocks.append(np.column_stack([np.ones(n), Zj]))
        trait_columns.append((offset, offset + 1 + Zj.shape[1]))
        offset += 1 + Zj.shape[1]
    UU = sla.block_diag(*blocks)

    depth = float(np.max(np.diag(Vphy)))
    d_max = min(_D_CAP, float(np.exp(np.log(_D_RANGE) / (2.0 * depth))))

    return StandardizedProblem(
        X=X, UU=UU, M=M, Vphy=Vphy,
        x_mean=x_mean, x_sd=x_sd,
        u_mean=tuple(u_mean), u_sd=tuple(u_sd),
        trait_columns=tuple(trait_columns),
        d_max=d_max,
    )


def n_cholesky_params(p: int) -> int:
    return p * (p + 1) // 2


def unpack(
    par: NDArray, p: int, constrain_d: bool, lower_d: float
) -> tuple[NDArray, NDArray]:
    """Parameter vector → (R, d)."""
    m = n_cholesky_params(p)
    L = np.zeros((p, p))
    L[np.triu_indices(p)] = par[:m]
    R = L.T @ L
    d = np.asarray(par[m:m + p], dtype=np.float64)
    if constrain_d:
        d = 1.0 / (1.0 + np.exp(-np.clip(d, -50.0, 50.0)))
    return R, np.maximum(d, lower_d)


def pack(R: NDArray, d: NDArray, constrain_d: bool) -> NDArray:
    """(R, d) → parameter vector. R must be positive definite."""
    p = R.shape[0]
    L = np.linalg.cholesky(R).T
    d = np.asarray(d, dtype=np.float64)
    if constrain_d:
        d = np.log(d / (1.0 - d))
    return np.concatenate([L[np.triu_indices(p)], d])


def trait_covariance(prob: StandardizedProblem, R: NDArray, d: NDArray) -> NDArray:
    """V = C(R, d) + diag(vec(M²)), trait-major blocks (n·p, n·p)."""
    n, p = prob.n, prob.p
    V = np.empty((n * p, n * p))
    for i in range(p):
        for j in range(i, p):
            block = R[i, j] * ou_cross_covariance(prob.Vphy, d[i], d[j])
            V[i * n:(i + 1) * n, j * n:(j + 1) * n] = block
            if j != i:
                V[j * n:(j + 1) * n, i * n:(i + 1) * n] = block.T
    V[np.diag_indices_from(V)] += prob.M.ravel(order='F') ** 2
    return V


@dataclass(frozen=True)
class LikelihoodFit:
    """Evaluation of the cor-phylo likelihood at one parameter vector.

    Attributes:
        R: Trait covariance (p, p).
        d: Signal parameters (p,).
        factor: Cholesky factor of V.
        gls: GLS fit of vec(X) on UU.
        objective: ½(log|V| + H'V⁻¹H [+ log|U'V⁻¹U|]).
    """
    R: NDArray
    d: NDArray
    factor: CholeskyFactor
    gls: GLSResult
    objective: float


def evaluate(
    par: NDArray,
    prob: StandardizedProblem,
    reml: bool,
    constrain_d: bool,
    lower_d: float,
    rcond_threshold: float,
) -> LikelihoodFit:
    """Evaluate the likelihood.

    Raises:
        SingularCovarianceError: If V or U'V⁻¹U is singular.
    """
    R, d = unpack(par, prob.p, constrain_d, lower_d)
    V = trait_covariance(prob, R, d)
    factor = cholesky(V, name='V', rcond_threshold=rcond_threshold)
    fit = gls(prob.UU, prob.x_vec, factor, rcond_threshold=rcond_threshold)

    value = factor.logdet + fit.quad
    if reml:
        value += fit.xtvx.logdet

    return LikelihoodFit(R=R, d=d, factor=factor, gls=fit, objective=0.5 * value)


def objective(
    par: NDArray,
    prob: StandardizedProblem,
    reml: bool,
    constrain_d: bool,
    lower_d: float,
    rcond_threshold: float,
) -> float:
    """Objective minimized by the optimizer (-log-likelihood up to constants)."""
    return evaluate(par, prob, reml, constrain_d, lower_d, rcond_threshold).objective


def start_values(prob: StandardizedProblem, constrain_d: bool) -> NDArray:
    """R from the covariance of per-trait OLS residuals, d = 0.5."""
    n, p = prob.n, prob.p
    residuals = np.empty((n, p))
    for j, (start, stop) in enumerate(prob.trait_columns):
        Uj = prob.UU[j * n:(j + 1) * n, start:stop]
        beta, *_ = np.linalg.lstsq(Uj, prob.X[:, j], rcond=None)
        residuals[:, j] = prob.X[:, j] - Uj @ beta
    R = np.cov(residuals, rowvar=False)
    R = R + 1e-6 * np.eye(p)
    return pack(R, np.full(p, 0.5), constrain_d)


def bounds(prob: StandardizedProblem, constrain_d: bool, lower_d: float) -> list:
    m = n_cholesky_params(prob.p)
    if constrain_d:
        return [(None, None)] * (m + prob.p)
    return [(None, None)] * m + [(lower_d, prob.d_max)] * prob.p
