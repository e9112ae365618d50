"""
Common data types for PGLMM.

Contains the frozen parameter payloads that go inside Result[P] envelopes.
Each payload is a pure data container — no methods, no computation.

References:
    Ives, A. R., & Helmus, M. R. (2011). Generalized linear mixed models
    for phylogenetic analyses of community structure.
    Ecological Monographs, 81(3), 511-525.
    Li, D., Dinnage, R., Nell, L. A., Helmus, M. R., & Ives, A. R. (2020).
    phyr: An R package for phylogenetic species-distribution modelling in
    ecological communities. Methods in Ecology and Evolution, 11, 1455-1463.
"""

from dataclasses import dataclass

from numpy.typing import NDArray


@dataclass(frozen=True)
class VarCompSummary:
    """Variance component summary for one random-effect term.

    Attributes:
        name: Term name (e.g. '1|sp__', 'x|sp').
        kind: Term kind ('simple', 'structured', 'nested', 'crossed').
        group: Grouping factor name.
        variance: Estimated variance σ²_k.
        std_dev: Standard deviation (sqrt of variance).
        n_levels: Number of levels of the grouping factor.
        lrt: Profile likelihood-ratio statistic for σ²_k = 0, or None.
        p_value: One-sided p-value of the LRT, or None if not computed.
    """
    name: str
    kind: str
    group: str
    variance: float
    std_dev: float
    n_levels: int
    lrt: float | None = None
    p_value: float | None = None


@dataclass(frozen=True)
class PGLMMParams:
    """
    Parameter payload for a fitted PGLMM.

    For the Gaussian family, σ²_k = θ_k² σ̂² and the likelihood is exact.
    For the other families the variances are those of the final working
    problem and the likelihood is the quasi log-likelihood of the
    pseudo-data.
    """
    # Fixed effects
    coefficients: NDArray              # β̂ (p,)
    coefficient_names: tuple[str, ...]
    se: NDArray                        # Wald standard errors (p,)
    z_values: NDArray                  # β̂ / se (p,)
    p_values: NDArray                  # two-sided normal p-values (p,)
    vcov: NDArray                      # covariance of β̂ (p, p)

    # Random effects
    var_components: tuple[VarCompSummary, ...]
    residual_variance: float | None    # σ̂² (Gaussian only)

    # Model fit
    log_likelihood: float
    reml: bool
    aic: float
    bic: float
    n_obs: int
    n_params: int

    # Family
    family_name: str
    link_name: str
    zi_probability: float | None       # structural-zero probability π̂ (ZI only)

    # Convergence
    converged: bool
    n_iter: int

    # Conditional modes per term, observation scale
    random_effects: dict[str, NDArray]  # term name → (n,)

    # Predictions
    linear_predictor: NDArray          # η̂ = Xβ̂ + Σ b̂_k (n,)
    fitted_values: NDArray             # μ̂ = g⁻¹(η̂) (n,)
    residuals: NDArray                 # y - μ̂ (n,)
    deviance: float                    # family deviance at μ̂

    # Internal
    theta: NDArray                     # converged variance parameters
