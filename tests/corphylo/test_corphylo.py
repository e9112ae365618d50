"""
Tests for cor-phylo.

Validates:
    - Recovery of a trait correlation on a simulated tree
    - Back-transformation of coefficients to the original scale
    - Covariates, measurement errors and fit criteria
    - Input validation
    - correlation_from_covariance checks
"""

import threading

import numpy as np
import pytest

from phylostats.core.exceptions import (
    ConstructionError, FitCancelledError, InvalidCorrelationError,
    ValidationError,
)
from phylostats.covariance import (
    build_from_tree, from_matrix, ou_cross_covariance, standardize,
)
from phylostats.corphylo import (
    CorPhyloSolution, cor_phylo, correlation_from_covariance,
)


def _fit(d, **kwargs):
    return cor_phylo(d['traits'], d['species'], d['tree'], **kwargs)


class TestRecovery:

    def test_correlation_recovered(self, correlated_traits):
        result = _fit(correlated_traits)
        assert isinstance(result, CorPhyloSolution)
        assert result.backend_name == 'cpu_corphylo'
        assert abs(result.corrs[0, 1] - correlated_traits['rho']) < 0.3

    def test_correlation_matrix_valid(self, correlated_traits):
        corrs = _fit(correlated_traits).corrs
        np.testing.assert_allclose(np.diag(corrs), 1.0)
        np.testing.assert_allclose(corrs, corrs.T)
        assert np.all(np.abs(corrs) <= 1.0)

    def test_signal_within_bounds(self, correlated_traits):
        result = _fit(correlated_traits)
        assert np.all(result.d >= 1e-7)
        assert np.all(result.d <= result.info['d_max'])

    def test_intercepts_on_original_scale(self, correlated_traits, simulate_traits):
        d = correlated_traits
        assert _fit(d).params.B_names == ('mass_0', 'metab_0')

        # A single tree-wide mean is poorly determined under strong signal,
        # so average over replicate data sets.
        rng = np.random.default_rng(33)
        n_sims = 12
        sd = np.array([2.0, 0.5])
        signal = np.array([0.9, 0.6])
        estimates = []
        for _ in range(n_sims):
            species, X = simulate_traits(
                rng, d['tree'], [[1.0, 0.7], [0.7, 1.0]], signal,
                mean=d['mean'], sd=sd,
            )
            estimates.append(
                cor_phylo({'mass': X[:, 0], 'metab': X[:, 1]}, species, d['tree']).B
            )

        V = standardize(build_from_tree(d['tree'], species)).values
        one = np.ones(V.shape[0])
        gls_se = np.array([
            sd[j] / np.sqrt(one @ np.linalg.solve(ou_cross_covariance(V, s, s), one))
            for j, s in enumerate(signal)
        ])
        error = np.mean(estimates, axis=0) - d['mean']
        assert np.all(np.abs(error) < 4.0 * gls_se / np.sqrt(n_sims))

    def test_trait_rescaling(self, correlated_traits):
        d = correlated_traits
        base = _fit(d)
        scaled = cor_phylo(
            {'mass': 10.0 * d['traits']['mass'] + 5.0, 'metab': d['traits']['metab']},
            d['species'], d['tree'],
        )
        np.testing.assert_allclose(scaled.corrs, base.corrs, atol=1e-3)
        np.testing.assert_allclose(scaled.d, base.d, rtol=1e-3)
        assert scaled.B[0] == pytest.approx(10.0 * base.B[0] + 5.0, rel=1e-3)
        assert scaled.B_se[0] == pytest.approx(10.0 * base.B_se[0], rel=1e-3)
        assert scaled.B[1] == pytest.approx(base.B[1], rel=1e-3)
        n = len(d['species'])
        assert scaled.log_likelihood == pytest.approx(
            base.log_likelihood - n * np.log(10.0), abs=1e-3,
        )

    def test_species_order_irrelevant(self, correlated_traits):
        d = correlated_traits
        base = _fit(d)
        perm = np.random.default_rng(0).permutation(len(d['species']))
        shuffled = cor_phylo(
            {k: v[perm] for k, v in d['traits'].items()},
            [d['species'][i] for i in perm],
            d['tree'],
        )
        assert shuffled.corrs[0, 1] == pytest.approx(base.corrs[0, 1], abs=1e-2)
        assert shuffled.log_likelihood == pytest.approx(base.log_likelihood, abs=1e-3)

    def test_covariance_matrix_input(self, correlated_traits):
        d = correlated_traits
        from_tree = _fit(d)
        from_cov = cor_phylo(d['traits'], d['species'], build_from_tree(d['tree']))
        np.testing.assert_allclose(from_cov.corrs, from_tree.corrs, atol=1e-6)

    def test_array_traits(self, correlated_traits):
        d = correlated_traits
        X = np.column_stack([d['traits']['mass'], d['traits']['metab']])
        result = cor_phylo(X, d['species'], d['tree'])
        assert result.params.trait_names == ('trait1', 'trait2')
        named = cor_phylo(X, d['species'], d['tree'], trait_names=['a', 'b'])
        assert named.params.B_names == ('a_0', 'b_0')


class TestCovariates:

    @pytest.fixture
    def with_covariate(self, correlated_traits):
        d = dict(correlated_traits)
        u = np.random.default_rng(11).normal(2.0, 1.5, len(d['species']))
        d['u'] = u
        d['traits'] = dict(d['traits'], mass=d['traits']['mass'] + 1.5 * u)
        return d

    def test_slope_recovered(self, with_covariate):
        d = with_covariate
        result = _fit(d, covariates={'mass': {'u': d['u']}})
        assert result.params.B_names == ('mass_0', 'mass_u', 'metab_0')
        slope = result.coefficients['mass_u']
        se = result.B_se[1]
        assert abs(slope - 1.5) < 4 * se
        assert result.params.B_p[1] < 0.001

    def test_covariate_rescaling(self, with_covariate):
        d = with_covariate
        base = _fit(d, covariates={'mass': {'u': d['u']}})
        scaled = _fit(d, covariates={'mass': {'u': 2.0 * d['u']}})
        assert scaled.coefficients['mass_u'] == pytest.approx(
            0.5 * base.coefficients['mass_u'], rel=1e-3,
        )
        assert scaled.coefficients['mass_0'] == pytest.approx(
            base.coefficients['mass_0'], rel=1e-3,
        )

    def test_array_covariates_named(self, with_covariate):
        d = with_covariate
        result = _fit(d, covariates={'metab': d['u']})
        assert result.params.B_names == ('mass_0', 'metab_0', 'metab_cov1')

    def test_parameter_count(self, with_covariate):
        d = with_covariate
        result = _fit(d, covariates={'mass': {'u': d['u']}})
        # 3 for R, 2 for d, 3 coefficients
        k = 8
        n = len(d['species'])
        assert result.aic == pytest.approx(-2.0 * result.log_likelihood + 2.0 * k)
        assert result.bic == pytest.approx(
            -2.0 * result.log_likelihood + k * np.log(2 * n),
        )


class TestOptions:

    def test_ml(self, correlated_traits):
        result = _fit(correlated_traits, reml=False)
        assert result.info['method'] == 'ML'
        assert not result.params.reml

    def test_constrain_d(self, correlated_traits):
        result = _fit(correlated_traits, constrain_d=True)
        assert result.info['constrain_d']
        assert np.all((result.d > 0) & (result.d <= 1))

    def test_measurement_errors(self, correlated_traits):
        d = correlated_traits
        n = len(d['species'])
        base = _fit(d)
        result = _fit(d, meas_errors={'mass': np.full(n, 0.5)})
        assert np.isfinite(result.log_likelihood)
        assert result.log_likelihood != pytest.approx(base.log_likelihood)
        assert result.design.M[0, 0] == 0.5
        assert np.all(result.design.M[:, 1] == 0.0)

    def test_timing_and_info(self, correlated_traits):
        result = _fit(correlated_traits)
        assert 'optimization' in result.timing
        assert result.info['optimizer'] == 'Nelder-Mead'
        assert 0 < result.info['rcond_V'] <= 1

    def test_cancel(self, correlated_traits):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(FitCancelledError):
            _fit(correlated_traits, cancel=cancel)


class TestSolution:

    def test_summary(self, correlated_traits):
        text = _fit(correlated_traits).summary()
        assert "Correlation with phylogenetic signal, fit by REML" in text
        assert "Correlation matrix:" in text
        assert "Phylogenetic signal d:" in text
        assert "mass_0" in text
        assert "Number of species: 50, traits: 2" in text
        assert "Bootstrap" not in text

    def test_repr(self, correlated_traits):
        result = _fit(correlated_traits)
        assert repr(result) == "CorPhyloSolution(REML, n=50, traits=2, bootstrap=no)"

    def test_no_bootstrap_by_default(self, correlated_traits):
        assert _fit(correlated_traits).bootstrap is None


class TestInputErrors:

    def test_single_trait(self, correlated_traits):
        d = correlated_traits
        with pytest.raises(ValidationError, match="at least 2 traits"):
            cor_phylo({'mass': d['traits']['mass']}, d['species'], d['tree'])

    def test_duplicate_species(self, correlated_traits):
        d = correlated_traits
        species = list(d['species'])
        species[1] = species[0]
        with pytest.raises(ValidationError, match="duplicate species"):
            cor_phylo(d['traits'], species, d['tree'])

    def test_species_not_in_tree(self, correlated_traits):
        d = correlated_traits
        species = list(d['species'])
        species[0] = 'not_a_tip'
        with pytest.raises(ConstructionError):
            cor_phylo(d['traits'], species, d['tree'])

    def test_negative_measurement_error(self, correlated_traits):
        d = correlated_traits
        se = np.full(len(d['species']), 0.1)
        se[3] = -0.1
        with pytest.raises(ValidationError, match=">= 0"):
            _fit(d, meas_errors={'mass': se})

    def test_covariates_for_unknown_trait(self, correlated_traits):
        d = correlated_traits
        with pytest.raises(ValidationError, match="unknown traits"):
            _fit(d, covariates={'height': np.ones(len(d['species']))})

    def test_wrong_length(self, correlated_traits):
        d = correlated_traits
        with pytest.raises(ValidationError):
            cor_phylo(d['traits'], d['species'][:-1], d['tree'])

    def test_singular_tree_covariance(self, correlated_traits):
        d = correlated_traits
        cov = build_from_tree(d['tree'], d['species'])
        V = cov.values.copy()
        # first species has no variance of its own
        V[0, :] = 0.0
        V[:, 0] = 0.0
        singular = from_matrix(V, cov.labels)
        with pytest.raises(ConstructionError, match="singular"):
            cor_phylo(d['traits'], d['species'], singular)

    @pytest.mark.parametrize("kwargs", [
        {'lower_d': 0.0},
        {'lower_d': 1.0},
        {'boot': -1},
        {'boot_alpha': 1.5},
    ])
    def test_invalid_options(self, correlated_traits, kwargs):
        with pytest.raises(ValidationError):
            _fit(correlated_traits, **kwargs)


class TestCorrelationFromCovariance:

    def test_valid(self):
        R = np.array([[4.0, 1.0], [1.0, 1.0]])
        corrs = correlation_from_covariance(R)
        np.testing.assert_allclose(corrs, [[1.0, 0.5], [0.5, 1.0]])

    def test_zero_variance(self):
        with pytest.raises(InvalidCorrelationError, match="non-positive"):
            correlation_from_covariance(np.array([[0.0, 0.0], [0.0, 1.0]]))

    def test_not_positive_semi_definite(self):
        R = np.array([
            [1.0, 0.9, -0.9],
            [0.9, 1.0, 0.9],
            [-0.9, 0.9, 1.0],
        ])
        with pytest.raises(InvalidCorrelationError) as exc:
            correlation_from_covariance(R)
        assert exc.value.min_eigenvalue < 0
