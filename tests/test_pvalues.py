"""
Tests for the p-value uniformity computations.
"""

import numpy as np
import pytest

from statblog import pvalues as m_pv


@pytest.fixture(scope="module")
def null():
    return m_pv.simulate_pvalues(n_sims=10_000, n_per_group=20, seed=1)


@pytest.fixture(scope="module")
def alt():
    return m_pv.simulate_pvalues(n_sims=5_000, n_per_group=30, effect_size=0.5,
                                 seed=2)


class TestNull:
    """Behaviour when H0 is true."""

    def test_shapes(self, null):
        assert null["p_values"].shape == (10_000,)
        assert null["t_stats"].shape == (10_000,)
        assert null["df"] == 38

    def test_range(self, null):
        assert np.all((null["p_values"] >= 0) & (null["p_values"] <= 1))

    def test_rejection_rate_is_alpha(self, null):
        """Type I error rate matches the significance level."""
        for alpha in (0.05, 0.10):
            assert abs(m_pv.rejection_rate(null["p_values"], alpha) - alpha) < 0.012

    def test_uniformity_not_rejected(self, null):
        assert m_pv.uniformity_test(null["p_values"])["p_value"] > 0.001

    def test_by_hand_matches_scipy(self, null):
        """Transforming the statistic through the null CDF gives the p-value."""
        by_hand = m_pv.null_statistic_pvalues(null["t_stats"], null["df"])
        assert np.allclose(by_hand, null["p_values"])

    def test_one_sided_halves(self, null):
        t = null["t_stats"]
        greater = m_pv.null_statistic_pvalues(t, null["df"], "greater")
        less = m_pv.null_statistic_pvalues(t, null["df"], "less")
        assert np.allclose(greater + less, 1)

    def test_histogram_flat(self, null):
        h = m_pv.pvalue_histogram(null["p_values"], n_bins=10)
        assert h["counts"].sum() == 10_000
        assert h["expected"] == 1_000
        assert np.all(np.abs(h["counts"] - h["expected"]) < 150)

    def test_ecdf_on_diagonal(self, null):
        grid, F = m_pv.ecdf(null["p_values"])
        assert F[-1] == 1.0
        assert np.all(np.diff(F) >= 0)
        assert np.max(np.abs(F - grid)) < 0.03


class TestAlternative:
    """Behaviour when there is a real effect."""

    def test_power_exceeds_alpha(self, alt):
        assert m_pv.rejection_rate(alt["p_values"], 0.05) > 0.3

    def test_uniformity_rejected(self, alt):
        assert m_pv.uniformity_test(alt["p_values"])["p_value"] < 1e-6

    def test_mass_near_zero(self, alt):
        h = m_pv.pvalue_histogram(alt["p_values"], n_bins=20)
        assert h["counts"][0] > 3 * h["expected"]


class TestValidation:

    def test_bad_arguments(self):
        with pytest.raises(ValueError):
            m_pv.simulate_pvalues(n_sims=0)
        with pytest.raises(ValueError):
            m_pv.simulate_pvalues(n_per_group=1)
        with pytest.raises(ValueError):
            m_pv.simulate_pvalues(sd=0)
        with pytest.raises(ValueError):
            m_pv.rejection_rate([0.1, 0.2], alpha=1.5)
        with pytest.raises(ValueError):
            m_pv.null_statistic_pvalues([1.0], 10, alternative="sideways")

    def test_seed_reproducible(self):
        a = m_pv.simulate_pvalues(n_sims=50, seed=10)
        b = m_pv.simulate_pvalues(n_sims=50, seed=10)
        assert np.array_equal(a["p_values"], b["p_values"])
