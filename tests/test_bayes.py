"""
Tests for the PyMC mixed model.

Sampling takes a while, so the whole module is marked slow; run it with
``pytest -m slow``.
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from statblog import marginal as mfx
from statblog.bayes import BayesFit, build_model, fit_bayes_glmm
from statblog.glmm import ConvergenceWarning
from statblog.simulate import simulate_advice_data

pytestmark = pytest.mark.slow

FORMULA = ("binary_outcome ~ advice_present"
           " + (1 + advice_present || subject) + (1 | item)")
N_CHAINS, N_DRAWS = 2, 200


@pytest.fixture(scope="module")
def small_data():
    return simulate_advice_data(n_subjects=15, n_items=10, seed=3)


@pytest.fixture(scope="module")
def bayes_fit(small_data):
    # short chains trip the ESS check; that is not what these tests are about
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return fit_bayes_glmm(FORMULA, small_data, chains=N_CHAINS, cores=1,
                              draws=N_DRAWS, tune=300, seed=1)


class TestModel:

    def test_variables(self, small_data):
        model, design = build_model(FORMULA, small_data)
        names = set(model.named_vars)
        assert {"beta", "y", "sd_subject__Intercept", "sd_subject__advice_present",
                "sd_item__Intercept", "r_item__Intercept"} <= names
        assert len(design["blocks"]) == 3

    def test_needs_random_terms(self, small_data):
        with pytest.raises(ValueError):
            fit_bayes_glmm("binary_outcome ~ advice_present", small_data)

    def test_bad_family(self, small_data):
        with pytest.raises(ValueError):
            build_model(FORMULA, small_data, family="gamma")


class TestPosterior:

    def test_draw_shapes(self, bayes_fit):
        n = N_CHAINS * N_DRAWS
        assert isinstance(bayes_fit, BayesFit)
        assert bayes_fit.beta_draws.shape == (n, 2)
        assert bayes_fit.sd_draws.shape == (n, 3)
        assert bayes_fit.r_draws[0].shape == (n, 15)
        assert bayes_fit.r_draws[2].shape == (n, 10)
        assert np.all(bayes_fit.sd_draws > 0)

    def test_diagnostics(self, bayes_fit):
        diag = bayes_fit.diagnostics()
        assert set(diag) == {"max_rhat", "min_ess_bulk", "min_ess_tail",
                             "divergences", "ok"}
        assert diag["max_rhat"] < 1.1

    def test_summary(self, bayes_fit):
        summ = bayes_fit.summary()
        assert {"mean", "sd", "r_hat", "ess_bulk"} <= set(summ.columns)
        assert "Family: binomial" in str(bayes_fit)


class TestPredict:

    def test_shape_and_range(self, bayes_fit):
        p = bayes_fit.predict()
        assert p.shape == (N_CHAINS * N_DRAWS, 150)
        assert np.all((p > 0) & (p < 1))

    def test_draw_subset(self, bayes_fit):
        assert bayes_fit.predict(ndraws=50, seed=2).shape == (50, 150)

    def test_exclude(self, bayes_fit, small_data):
        eta = bayes_fit.predict(type="link", re_form="exclude")
        X = np.column_stack([np.ones(150), small_data["advice_present"]])
        assert np.allclose(eta, bayes_fit.beta_draws @ X.T)
        grid = pd.DataFrame({"advice_present": [0, 1]})
        eta_grid = bayes_fit.predict(grid, type="link", re_form="exclude")
        assert np.allclose(eta_grid[:, 1] - eta_grid[:, 0], bayes_fit.beta_draws[:, 1])

    def test_new_levels(self, bayes_fit):
        new = pd.DataFrame({"advice_present": [0, 1], "subject": ["new", "new"],
                            "item": ["i01", "i01"]})
        with pytest.raises(ValueError, match="allow_new_levels"):
            bayes_fit.predict(new)
        for how in ("uncertainty", "gaussian", "zero"):
            a = bayes_fit.predict(new, allow_new_levels=True,
                                  sample_new_levels=how, seed=4)
            b = bayes_fit.predict(new, allow_new_levels=True,
                                  sample_new_levels=how, seed=4)
            assert np.array_equal(a, b)


class TestMarginal:

    def test_avg_comparison_has_interval(self, bayes_fit):
        ame = mfx.avg_comparisons(bayes_fit, "advice_present")
        row = ame.frame.iloc[0]
        assert row["conf_low"] < row["estimate"] < row["conf_high"]
        assert "std_error" not in ame.frame.columns
        assert ame.draws.shape == (N_CHAINS * N_DRAWS, 1)

    def test_routes_agree(self, bayes_fit):
        """The contrast equals the hypothesis on averaged predictions, draw by draw."""
        ame = mfx.avg_comparisons(bayes_fit, "advice_present")
        avg = mfx.avg_predictions(bayes_fit, variables={"advice_present": [0, 1]},
                                  by="advice_present")
        h = mfx.hypotheses(avg, "b2 - b1 = 0")
        assert np.allclose(ame.draws, h.draws)

    def test_coefficient_hypothesis(self, bayes_fit):
        h = mfx.hypotheses(bayes_fit, "b2 = 0")
        assert h.estimate[0] == pytest.approx(np.median(bayes_fit.beta_draws[:, 1]))
