"""
Tests for the shared helpers.
"""

import numpy as np
import pytest

from statblog.utils import logistic, logit, make_rng, numerical_jacobian


class TestLinks:

    def test_inverse(self):
        z = np.linspace(-6, 6, 25)
        assert np.allclose(logit(logistic(z)), z)

    def test_extreme_inputs_stay_finite(self):
        p = logistic(np.array([-1e4, 0.0, 1e4]))
        assert np.all(np.isfinite(p))
        assert p[1] == 0.5

    def test_float64_saturation(self):
        """Large positive inputs round to exactly 1; negative ones stay above 0."""
        assert logistic(36.0) < 1.0
        assert np.all(logistic(np.array([37.0, 40.0])) == 1.0)
        assert logistic(-700.0) > 0.0


class TestRng:

    def test_seed(self):
        assert make_rng(3).normal() == make_rng(3).normal()

    def test_generator_wins(self):
        rng = np.random.default_rng(0)
        assert make_rng(seed=5, rng=rng) is rng


class TestJacobian:

    def test_linear_map(self):
        A = np.array([[1.0, 2.0], [0.0, -3.0], [4.0, 0.5]])
        J = numerical_jacobian(lambda b: A @ b, np.array([0.3, -1.2]))
        assert J.shape == (3, 2)
        assert np.allclose(J, A, atol=1e-5)

    def test_logistic_slope(self):
        J = numerical_jacobian(lambda b: logistic(b), np.array([0.4]))
        p = logistic(0.4)
        assert J[0, 0] == pytest.approx(p * (1 - p), rel=1e-5)
