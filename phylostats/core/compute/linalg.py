"""
Dense linear algebra kernels shared by the PGLMM and cor-phylo estimators.

Every covariance matrix in phylostats is symmetric positive definite by
construction, so all solves and determinants go through one Cholesky
factorization. Near-singularity is detected here and reported as
SingularCovarianceError rather than propagating NaN or garbage.

The reciprocal condition is estimated from the Cholesky diagonal,
(min diag L / max diag L)², which is cheap and adequate as a guard;
it is not LAPACK's rcond.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from phylostats.core.config import DEFAULT_RCOND_THRESHOLD
from phylostats.core.exceptions import SingularCovarianceError


@dataclass(frozen=True)
class CholeskyFactor:
    """Cholesky factorization A = L L'.

    Attributes:
        lower: Lower-triangular factor L (n, n).
        logdet: log|A| = 2 Σ log diag(L).
        rcond: Reciprocal condition estimate of A.
        name: Name of the factored matrix (for error messages).
    """
    lower: NDArray
    logdet: float
    rcond: float
    name: str

    def solve(self, b: NDArray) -> NDArray:
        """Solve A x = b."""
        return sla.cho_solve((self.lower, True), b, check_finite=False)

    def inverse(self) -> NDArray:
        """A⁻¹ (only used for small matrices such as X'V⁻¹X)."""
        n = self.lower.shape[0]
        return self.solve(np.eye(n))

    def half_multiply(self, z: NDArray) -> NDArray:
        """L z: maps standard normal draws to draws with covariance A."""
        return self.lower @ z


def cholesky(
    A: NDArray,
    name: str = 'matrix',
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD,
) -> CholeskyFactor:
    """Factor a symmetric positive definite matrix.

    Args:
        A: Symmetric matrix (n, n).
        name: Name used in error messages.
        rcond_threshold: Reciprocal condition below which A is treated
            as singular.

    Returns:
        CholeskyFactor.

    Raises:
        SingularCovarianceError: If A is not positive definite, contains
            non-finite values, or is too ill-conditioned.
    """
    try:
        L = sla.cholesky(A, lower=True, check_finite=True)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise SingularCovarianceError(
            f"{name}: not positive definite ({e})",
            matrix_name=name,
        ) from e

    diag = np.diag(L)
    if not np.all(np.isfinite(diag)) or diag.min() <= 0.0:
        raise SingularCovarianceError(
            f"{name}: Cholesky factor has non-positive or non-finite diagonal",
            matrix_name=name,
        )

    rcond = float((diag.min() / diag.max()) ** 2)
    if rcond < rcond_threshold:
        raise SingularCovarianceError(
            f"{name}: reciprocal condition {rcond:.3e} is below "
            f"threshold {rcond_threshold:.1e}",
            matrix_name=name,
            rcond=rcond,
        )

    return CholeskyFactor(
        lower=L,
        logdet=float(2.0 * np.sum(np.log(diag))),
        rcond=rcond,
        name=name,
    )


@dataclass(frozen=True)
class GLSResult:
    """Generalized least squares solution for y ~ N(Xβ, V).

    Attributes:
        beta: GLS estimate (p,).
        residuals: y - Xβ̂ (n,).
        vinv_residuals: V⁻¹(y - Xβ̂) (n,).
        quad: (y - Xβ̂)'V⁻¹(y - Xβ̂).
        xtvx: Cholesky factor of X'V⁻¹X (p, p).
    """
    beta: NDArray
    residuals: NDArray
    vinv_residuals: NDArray
    quad: float
    xtvx: CholeskyFactor


def gls(
    X: NDArray,
    y: NDArray,
    factor: CholeskyFactor,
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD,
) -> GLSResult:
    """GLS fit given a factored covariance V.

    Args:
        X: Design matrix (n, p).
        y: Response (n,).
        factor: Cholesky factor of V (n, n).
        rcond_threshold: Threshold for X'V⁻¹X.

    Raises:
        SingularCovarianceError: If X'V⁻¹X is singular.
    """
    ViX = factor.solve(X)
    XtViX = X.T @ ViX
    XtViX = 0.5 * (XtViX + XtViX.T)
    xtvx = cholesky(XtViX, name="X'V^-1X", rcond_threshold=rcond_threshold)

    beta = xtvx.solve(ViX.T @ y)
    residuals = y - X @ beta
    vinv_residuals = factor.solve(residuals)

    return GLSResult(
        beta=beta,
        residuals=residuals,
        vinv_residuals=vinv_residuals,
        quad=float(residuals @ vinv_residuals),
        xtvx=xtvx,
    )


def min_eigenvalue(A: NDArray) -> float:
    """Smallest eigenvalue of a symmetric matrix."""
    return float(np.linalg.eigvalsh(0.5 * (A + A.T))[0])
