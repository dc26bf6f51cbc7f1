# tests/unit/fitting/test_unit_splines.py - v2
"""Tests for fitting/splines.py - bases, penalties and GCV fits."""

from __future__ import annotations

import numpy as np
import pytest

from vifit.fitting.splines import (
    CovariateTensorBasis,
    SplineBasis,
    TensorBasis,
    fit_covariate_tensor_spline,
    fit_penalized,
    fit_penalized_spline,
    fit_tensor_spline,
)

X = np.linspace(1.0, 365.0, 120)


def _seasonal(x: np.ndarray) -> np.ndarray:
    return 0.4 + 0.2 * np.sin(2 * np.pi * x / 365.0)


class TestSplineBasis:
    def test_partition_of_unity(self):
        design = SplineBasis(k=10, lo=1.0, hi=365.0).design(X)
        assert design.shape == (len(X), 10)
        np.testing.assert_allclose(design.sum(axis=1), 1.0, atol=1e-10)

    def test_endpoint_included(self):
        design = SplineBasis(k=6, lo=0.0, hi=10.0).design(np.array([10.0]))
        np.testing.assert_allclose(design.sum(), 1.0)

    def test_cyclic_partition_and_period(self):
        basis = SplineBasis(k=8, lo=0.0, hi=365.0, cyclic=True)
        design = basis.design(X)
        np.testing.assert_allclose(design.sum(axis=1), 1.0, atol=1e-10)
        np.testing.assert_allclose(basis.design(X + 365.0), design, atol=1e-10)

    def test_penalty_null_space_is_linear(self):
        basis = SplineBasis(k=8, lo=0.0, hi=1.0)
        linear = np.arange(8, dtype=float)
        np.testing.assert_allclose(basis.penalty() @ linear, 0.0, atol=1e-10)

    def test_cyclic_penalty_null_space_is_constant(self):
        penalty = SplineBasis(k=8, lo=0.0, hi=1.0, cyclic=True).penalty()
        np.testing.assert_allclose(penalty @ np.ones(8), 0.0, atol=1e-10)
        assert np.linalg.matrix_rank(penalty) == 7

    @pytest.mark.parametrize(("k", "lo", "hi"), [(3, 0.0, 1.0), (5, 1.0, 1.0)])
    def test_invalid(self, k, lo, hi):
        with pytest.raises(ValueError):
            SplineBasis(k=k, lo=lo, hi=hi)


class TestTensorBasis:
    def test_shapes(self):
        basis = TensorBasis(SplineBasis(4, 0.0, 1.0), SplineBasis(5, 0.0, 1.0))
        x = np.array([0.1, 0.5, 0.9])
        design = basis.design(x, x)
        assert design.shape == (3, 20)
        np.testing.assert_allclose(design.sum(axis=1), 1.0, atol=1e-10)
        assert basis.penalty().shape == (20, 20)


class TestFitPenalized:
    def test_recovers_smooth_curve(self):
        rng = np.random.default_rng(1)
        y = _seasonal(X) + rng.normal(0, 0.01, len(X))
        fit, basis = fit_penalized_spline(X, y, k=12)
        mean, se = fit.predict(basis.design(X))
        assert fit.converged
        assert np.max(np.abs(mean - _seasonal(X))) < 0.02
        assert np.all(se > 0)
        assert 2.0 < fit.edf < 12.0

    def test_deterministic(self):
        rng = np.random.default_rng(2)
        y = _seasonal(X) + rng.normal(0, 0.02, len(X))
        first, _ = fit_penalized_spline(X, y, k=10, cyclic=True)
        second, _ = fit_penalized_spline(X, y, k=10, cyclic=True)
        np.testing.assert_array_equal(first.coef, second.coef)
        assert first.lam == second.lam

    def test_non_finite_response_not_converged(self):
        y = _seasonal(X)
        y[3] = np.nan
        fit, _ = fit_penalized_spline(X, y, k=8)
        assert fit.converged is False

    def test_singular_system_raises(self):
        with pytest.raises(np.linalg.LinAlgError):
            fit_penalized(np.zeros((5, 4)), np.ones(5), np.zeros((4, 4)))

    def test_basis_covers_padded_range(self):
        x = np.concatenate([[-20.0, -5.0], X, [370.0, 390.0]])
        _, basis = fit_penalized_spline(x, _seasonal(x), k=12)
        assert basis.lo == -20.0
        assert basis.hi == 390.0


class TestFitTensorSpline:
    def test_plane(self):
        rng = np.random.default_rng(3)
        x = rng.uniform(0, 4, 150)
        y = rng.uniform(0, 3, 150)
        z = 0.2 + 0.05 * x - 0.03 * y + rng.normal(0, 0.005, 150)
        fit, basis = fit_tensor_spline(x, y, z, k=4, grid_x=np.array([0.0, 4.0]), grid_y=np.array([0.0, 3.0]))
        assert fit.converged
        mean, _ = fit.predict(basis.design(np.array([2.0]), np.array([1.5])))
        assert mean[0] == pytest.approx(0.2 + 0.1 - 0.045, abs=0.01)



class TestFitCovariateTensorSpline:
    def test_recovers_covariate_slope(self):
        rng = np.random.default_rng(5)
        x = rng.uniform(0, 4, 150)
        y = rng.uniform(0, 3, 150)
        c = rng.uniform(0.2, 0.6, 150)
        z = 0.8 * c + 0.1 + 0.02 * x + rng.normal(0, 0.005, 150)
        fit, basis = fit_covariate_tensor_spline(c, x, y, z, k=4)
        assert fit.converged
        assert basis.k == 17
        assert fit.coef[0] == pytest.approx(0.8, abs=0.03)
        mean, _ = fit.predict(basis.design(np.array([0.5]), np.array([2.0]), np.array([1.5])))
        assert mean[0] == pytest.approx(0.4 + 0.1 + 0.04, abs=0.01)

    def test_covariate_unpenalized(self):
        basis = CovariateTensorBasis(
            tensor=TensorBasis(bx=SplineBasis(k=4, lo=0.0, hi=1.0), by=SplineBasis(k=4, lo=0.0, hi=1.0)),
        )
        penalty = basis.penalty()
        assert not penalty[0].any()
        assert not penalty[:, 0].any()
