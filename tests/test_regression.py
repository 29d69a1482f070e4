"""
Tests for the tensor regression fitting backend.
"""

import pytest
import numpy as np
import tensorly as tl

from commreg.data import CovariateMatrix
from commreg.errors import ConvergenceError, InputDataError, ShapeError
from commreg.models.rank import DecompositionRanks
from commreg.models.regression import FittedModel, TuckerRegressionFitter, fit_regression
from commreg.models.tensor import leading_left_singular_vectors


class TestFactorHelper:
    """Test the sign-fixed singular vector helper."""

    def test_orthonormal_columns(self):
        rng = np.random.default_rng(1)
        U = leading_left_singular_vectors(rng.random((6, 9)), 3)

        assert U.shape == (6, 3)
        np.testing.assert_allclose(U.T @ U, np.eye(3), atol=1e-12)

    def test_signs_are_fixed(self):
        rng = np.random.default_rng(2)
        matrix = rng.standard_normal((5, 8))

        U = leading_left_singular_vectors(matrix, 2)
        flipped = leading_left_singular_vectors(-matrix, 2)

        np.testing.assert_allclose(U, flipped, atol=1e-12)
        peaks = U[np.argmax(np.abs(U), axis=0), np.arange(2)]
        assert np.all(peaks > 0)

    def test_predict_is_covariate_mode_product(self):
        rng = np.random.default_rng(3)
        coefficients = rng.standard_normal((2, 3, 4, 5))
        X = rng.standard_normal((6, 2))
        model = FittedModel(
            coefficients=coefficients,
            covariate_names=["a", "b"],
            ranks=DecompositionRanks(2, 3, 4, 5),
            residual_std=1.0,
        )

        expected = np.einsum("ic,csrl->isrl", X, coefficients)
        np.testing.assert_allclose(model.predict(X), expected)


def _low_rank_problem(seed=0, noise=0.0):
    """Regression data whose coefficients have sender/receiver/pair rank (2, 2, 3)."""
    rng = np.random.default_rng(seed)
    n, p = 30, 3
    S, R, P = 6, 5, 8

    X = np.column_stack([np.ones(n), rng.standard_normal((n, p - 1))])
    core = rng.standard_normal((p, 2, 2, 3))
    factors = [np.linalg.qr(rng.standard_normal((d, r)))[0] for d, r in [(S, 2), (R, 2), (P, 3)]]
    B = tl.tenalg.multi_mode_dot(core, factors, [1, 2, 3])

    Y = tl.tenalg.mode_dot(B, X, 0) + noise * rng.standard_normal((n, S, R, P))
    covariates = CovariateMatrix(
        values=X,
        names=["(Intercept)", "x1", "x2"],
        samples=[f"s{i}" for i in range(n)],
    )
    return Y, covariates, B


class TestTuckerRegressionFitter:
    """Test TuckerRegressionFitter."""

    def test_recovers_noiseless_coefficients(self):
        Y, covariates, B = _low_rank_problem()
        ranks = DecompositionRanks(covariate=3, sender=2, receiver=2, pair=3)

        model = TuckerRegressionFitter().fit(Y, covariates, ranks)

        assert model.converged
        assert model.coefficients.shape == B.shape
        np.testing.assert_allclose(model.coefficients, B, atol=1e-6)
        assert model.residual_std < 1e-6

    def test_low_rank_coefficients(self):
        Y, covariates, _ = _low_rank_problem(noise=0.1)
        ranks = DecompositionRanks(covariate=3, sender=2, receiver=2, pair=3)

        model = TuckerRegressionFitter().fit(Y, covariates, ranks)

        assert np.linalg.matrix_rank(tl.unfold(model.coefficients, 1), tol=1e-8) == 2
        assert np.linalg.matrix_rank(tl.unfold(model.coefficients, 3), tol=1e-8) == 3
        assert model.residual_std == pytest.approx(0.1, rel=0.3)

    def test_deterministic(self):
        Y, covariates, _ = _low_rank_problem(noise=0.5, seed=3)
        ranks = DecompositionRanks(covariate=3, sender=2, receiver=2, pair=3)
        fitter = TuckerRegressionFitter()

        first = fitter.fit(Y, covariates, ranks)
        second = fitter.fit(Y.copy(), covariates, ranks)

        np.testing.assert_allclose(first.coefficients, second.coefficients, atol=1e-10, rtol=0)
        assert first.n_iterations == second.n_iterations

    def test_does_not_mutate_inputs(self):
        Y, covariates, _ = _low_rank_problem(noise=0.1)
        Y_before = Y.copy()
        ranks = DecompositionRanks(covariate=3, sender=2, receiver=2, pair=3)

        TuckerRegressionFitter().fit(Y, covariates, ranks)

        np.testing.assert_array_equal(Y, Y_before)

    def test_max_iterations_raises(self):
        Y, covariates, _ = _low_rank_problem(noise=0.5)
        ranks = DecompositionRanks(covariate=3, sender=2, receiver=2, pair=2)

        with pytest.raises(ConvergenceError, match="did not converge"):
            TuckerRegressionFitter(max_iterations=1).fit(Y, covariates, ranks)

    def test_time_budget_raises(self):
        Y, covariates, _ = _low_rank_problem(noise=0.5)
        ranks = DecompositionRanks(covariate=3, sender=2, receiver=2, pair=2)

        with pytest.raises(ConvergenceError, match="time budget"):
            TuckerRegressionFitter(time_budget=0.0).fit(Y, covariates, ranks)

    def test_with_time_budget_copies_settings(self):
        fitter = TuckerRegressionFitter(max_iterations=7, tolerance=1e-6)
        limited = fitter.with_time_budget(2.5)

        assert limited is not fitter
        assert limited.time_budget == 2.5
        assert limited.max_iterations == 7
        assert fitter.time_budget is None

    def test_covariate_rank_mismatch(self):
        Y, covariates, _ = _low_rank_problem()
        ranks = DecompositionRanks(covariate=2, sender=2, receiver=2, pair=3)

        with pytest.raises(ShapeError):
            TuckerRegressionFitter().fit(Y, covariates, ranks)

    def test_sample_count_mismatch(self):
        Y, covariates, _ = _low_rank_problem()
        ranks = DecompositionRanks(covariate=3, sender=2, receiver=2, pair=3)

        with pytest.raises(ShapeError):
            TuckerRegressionFitter().fit(Y[:10], covariates, ranks)

    def test_fit_regression_accepts_tuple(self):
        Y, covariates, B = _low_rank_problem()
        model = fit_regression(Y, covariates, (3, 2, 2, 3))
        assert isinstance(model, FittedModel)
        assert model.ranks.pair == 3


class TestFittedModel:
    """Test FittedModel accessors."""

    def test_coefficient_slice_by_name_and_index(self, small_fit):
        by_name = small_fit.coefficient_slice("condition_treated")
        by_index = small_fit.coefficient_slice(small_fit.covariate_names.index("condition_treated"))

        np.testing.assert_array_equal(by_name, by_index)
        assert by_name.shape == small_fit.entity_shape

    def test_unknown_covariate(self, small_fit):
        with pytest.raises(InputDataError):
            small_fit.coefficient_slice("batch")

    def test_coefficients_read_only(self, small_fit):
        with pytest.raises(ValueError):
            small_fit.coefficients[0, 0, 0, 0] = 1.0

    def test_predict_exclude(self, small_dataset, small_fit):
        X = small_dataset.covariates.values
        idx = small_fit.covariate_index("condition_treated")

        full = small_fit.predict(X)
        reduced = small_fit.predict(X, exclude="condition_treated")
        contribution = np.einsum("n,srp->nsrp", X[:, idx], small_fit.coefficient_slice(idx))

        np.testing.assert_allclose(full - reduced, contribution, atol=1e-12)

    def test_predict_wrong_width(self, small_fit):
        with pytest.raises(ShapeError):
            small_fit.predict(np.ones((5, small_fit.n_covariates + 1)))

    def test_recovers_synthetic_effects(self, small_dataset, small_fit):
        estimated = small_fit.coefficient_slice(small_dataset.effect_covariate)
        true = small_dataset.true_effect

        mask = true != 0
        np.testing.assert_allclose(estimated[mask], true[mask], atol=0.3)
        assert np.max(np.abs(estimated[~mask])) < 0.3

    def test_summary(self, small_fit):
        summary = small_fit.summary()
        assert summary["converged"] is True
        assert summary["covariates"] == small_fit.covariate_names
