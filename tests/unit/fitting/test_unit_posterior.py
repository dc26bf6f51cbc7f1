# tests/unit/fitting/test_unit_posterior.py - v2
"""Tests for fitting/posterior.py - simulated bounds and derivatives."""

from __future__ import annotations

from statistics import NormalDist

import numpy as np
import pytest

from vifit.fitting.posterior import derivative_summary, posterior_summary
from vifit.fitting.splines import SplineFit, fit_penalized_spline

DAYS = np.arange(1.0, 366.0)


def _indefinite_fit() -> SplineFit:
    return SplineFit(
        coef=np.array([1.0, 2.0]), cov=np.array([[1.0, 2.0], [2.0, 1.0]]),
        edf=2.0, sigma2=1.0, lam=1.0, n_obs=10, converged=True,
    )


@pytest.fixture
def seasonal_fit():
    rng = np.random.default_rng(7)
    x = np.arange(1.0, 366.0, 3.0)
    y = 0.4 + 0.2 * np.sin(2 * np.pi * x / 365.0) + rng.normal(0, 0.01, len(x))
    return fit_penalized_spline(x, y, k=12, cyclic=True)


class TestPosteriorSummary:
    def test_bounds_bracket_mean(self, seasonal_fit):
        fit, basis = seasonal_fit
        post = posterior_summary(fit, basis.design(DAYS), n_sims=200, seed=1034)
        assert post.simulated
        assert np.all(post.lwr <= post.mean)
        assert np.all(post.mean <= post.upr)

    def test_seeded(self, seasonal_fit):
        fit, basis = seasonal_fit
        a = posterior_summary(fit, basis.design(DAYS), n_sims=50, seed=5)
        b = posterior_summary(fit, basis.design(DAYS), n_sims=50, seed=5)
        np.testing.assert_array_equal(a.lwr, b.lwr)

    def test_normal_fallback_when_not_positive_definite(self):
        post = posterior_summary(_indefinite_fit(), np.eye(2), n_sims=10, seed=1)
        assert post.simulated is False
        np.testing.assert_allclose(post.mean, [1.0, 2.0])
        np.testing.assert_allclose(post.upr - post.mean, [1.959964, 1.959964], rtol=1e-6)

    def test_normal_fallback_follows_quantiles(self):
        post = posterior_summary(_indefinite_fit(), np.eye(2), n_sims=10, seed=1, lwr=0.05, upr=0.95)
        np.testing.assert_allclose(post.mean - post.lwr, [1.644854, 1.644854], rtol=1e-6)


class TestDerivativeSummary:
    def test_seasonal_slope_signs(self, seasonal_fit):
        fit, basis = seasonal_fit
        deriv = derivative_summary(fit, basis.design, DAYS, n_sims=200, seed=1124)
        assert deriv.mean[30] > 0
        assert deriv.mean[182] < 0
        assert deriv.significant[182]
        assert deriv.significant.dtype == bool

    def test_linear_trend(self):
        rng = np.random.default_rng(11)
        x = np.linspace(1.0, 365.0, 200)
        y = 0.01 * x + rng.normal(0, 0.01, len(x))
        fit, basis = fit_penalized_spline(x, y, k=10)
        deriv = derivative_summary(fit, basis.design, DAYS[30:335], n_sims=100, seed=3)
        np.testing.assert_allclose(deriv.mean, 0.01, atol=0.002)
        assert deriv.significant.all()

    def test_slope_at_range_edges(self):
        x = np.linspace(1.0, 365.0, 200)
        y = 0.002 * x + np.random.default_rng(13).normal(0, 0.005, len(x))
        fit, basis = fit_penalized_spline(x, y, k=10)
        deriv = derivative_summary(fit, basis.design, DAYS, n_sims=100, seed=3, lo=basis.lo, hi=basis.hi)
        for day in (0, 364):
            assert deriv.mean[day] == pytest.approx(0.002, abs=0.001)
            assert deriv.upr[day] > deriv.lwr[day]

    def test_normal_fallback_width_follows_alpha(self):
        def design_fn(at):
            return np.column_stack([at, at])

        at = np.array([1.0, 2.0])
        narrow = derivative_summary(_indefinite_fit(), design_fn, at, n_sims=10, seed=1, alpha=0.5)
        wide = derivative_summary(_indefinite_fit(), design_fn, at, n_sims=10, seed=1, alpha=0.05)
        z_ratio = NormalDist().inv_cdf(0.975) / NormalDist().inv_cdf(0.75)
        np.testing.assert_allclose(
            wide.upr - wide.mean, (narrow.upr - narrow.mean) * z_ratio, rtol=1e-6,
        )
