"""
Tests for the maximum-likelihood GLMM.

Mostly behaviour tests on simulated data with known parameters.
"""

import numpy as np
import pandas as pd
import pytest
from scipy.optimize import minimize

from statblog.glmm import (ConvergenceWarning, SingularFitWarning, fit_glmm,
                           get_family)
from statblog.utils import logistic

FORMULA = ("binary_outcome ~ advice_present"
           " + (1 + advice_present || subject) + (1 | item)")


class TestEstimates:
    """The fit recovers the simulated parameters."""

    def test_fixed_effects(self, glmm_fit):
        assert glmm_fit.coef["(Intercept)"] == pytest.approx(-0.5, abs=0.5)
        assert glmm_fit.coef["advice_present"] == pytest.approx(1.0, abs=0.5)

    def test_standard_errors(self, glmm_fit):
        assert np.all(glmm_fit.se > 0)
        assert np.all(glmm_fit.se < 1)
        V = glmm_fit.vcov.to_numpy()
        assert np.allclose(V, V.T)

    def test_standard_deviations(self, glmm_fit):
        assert np.all(glmm_fit.sd >= 0)
        assert glmm_fit.sd["subject: (Intercept)"] == pytest.approx(0.8, abs=0.5)
        assert list(glmm_fit.sd.index) == [
            "subject: (Intercept)", "subject: advice_present", "item: (Intercept)"]

    def test_converged(self, glmm_fit):
        assert glmm_fit.converged
        assert np.isfinite(glmm_fit.loglik)
        assert glmm_fit.aic == pytest.approx(-2 * glmm_fit.loglik + 2 * 5)

    def test_better_than_no_random_effects(self, glmm_fit, advice_data):
        """Adding random effects should raise the likelihood over a plain logit."""
        X = np.column_stack([np.ones(len(advice_data)),
                             advice_data["advice_present"]])
        y = advice_data["binary_outcome"].to_numpy()
        fam = get_family("binomial")
        res = minimize(lambda b: -fam.loglik(y, X @ b), np.zeros(2), method="BFGS")
        assert glmm_fit.loglik > -res.fun


class TestSummaries:

    def test_summary_table(self, glmm_fit):
        s = glmm_fit.summary()
        assert list(s.columns) == ["Estimate", "Std. Error", "z value", "Pr(>|z|)"]
        assert np.allclose(s["z value"], glmm_fit.coef / glmm_fit.se)

    def test_variance_components(self, glmm_fit):
        vc = glmm_fit.variance_components()
        assert np.allclose(vc["Variance"], vc["Std.Dev."] ** 2)
        assert list(vc["Groups"]) == ["subject", "subject", "item"]

    def test_str(self, glmm_fit):
        text = str(glmm_fit)
        assert "Laplace Approximation" in text
        assert "Fixed effects:" in text

    def test_ranef(self, glmm_fit):
        re = glmm_fit.ranef()
        assert set(re) == {"subject", "item"}
        assert re["subject"].shape == (40, 2)
        assert list(re["subject"].columns) == ["(Intercept)", "advice_present"]
        assert re["item"].shape == (25, 1)

    def test_ranef_shrinks(self, glmm_fit, advice_data):
        """Conditional modes correlate with the true subject effects."""
        est = glmm_fit.ranef()["subject"]["(Intercept)"]
        truth = (advice_data.groupby("subject", observed=True)
                 ["subject_intercept_effect"].first())
        truth.index = truth.index.astype(str)
        assert np.corrcoef(est, truth.loc[est.index])[0, 1] > 0.5


class TestPredict:

    def test_exclude_is_fixed_part(self, glmm_fit, advice_data):
        b0, b1 = glmm_fit.coef.to_numpy()
        p = glmm_fit.predict(re_form="exclude")
        expected = logistic(b0 + b1 * advice_data["advice_present"].to_numpy())
        assert np.allclose(p, expected)

    def test_link_scale(self, glmm_fit):
        eta = glmm_fit.predict(type="link")
        assert np.allclose(logistic(eta), glmm_fit.predict())

    def test_include_in_unit_interval(self, glmm_fit):
        p = glmm_fit.predict()
        assert np.all((p > 0) & (p < 1))
        assert not np.allclose(p, glmm_fit.predict(re_form="exclude"))

    def test_exclude_without_group_columns(self, glmm_fit):
        b0, b1 = glmm_fit.coef.to_numpy()
        new = pd.DataFrame({"advice_present": [0, 1]})
        p = glmm_fit.predict(new, re_form="exclude")
        assert np.allclose(p, logistic(np.array([b0, b0 + b1])))

    def test_beta_override(self, glmm_fit):
        p = glmm_fit.predict(re_form="exclude", beta=[0.0, 0.0])
        assert np.allclose(p, 0.5)

    def test_new_levels_rejected(self, glmm_fit):
        new = pd.DataFrame({"advice_present": [1], "subject": ["new"],
                            "item": ["i01"]})
        with pytest.raises(ValueError, match="allow_new_levels"):
            glmm_fit.predict(new)

    def test_new_levels_zero(self, glmm_fit):
        """Unseen subject and item fall back to the population prediction."""
        new = pd.DataFrame({"advice_present": [0, 1], "subject": ["new", "new"],
                            "item": ["new", "new"]})
        p = glmm_fit.predict(new, allow_new_levels=True)
        assert np.allclose(p, glmm_fit.predict(new, re_form="exclude"))

    def test_new_levels_gaussian_seeded(self, glmm_fit):
        new = pd.DataFrame({"advice_present": [0, 1], "subject": ["new", "new"],
                            "item": ["i01", "i01"]})
        kw = dict(allow_new_levels=True, sample_new_levels="gaussian", ndraws=200)
        a = glmm_fit.predict(new, seed=1, **kw)
        b = glmm_fit.predict(new, seed=1, **kw)
        c = glmm_fit.predict(new, allow_new_levels=True)
        assert np.array_equal(a, b)
        assert a.shape == (2,)
        assert not np.allclose(a, c)

    def test_bad_options(self, glmm_fit):
        with pytest.raises(ValueError):
            glmm_fit.predict(type="odds")
        with pytest.raises(ValueError):
            glmm_fit.predict(re_form="sometimes")


class TestFitting:

    def test_poisson(self):
        rng = np.random.default_rng(3)
        g = np.repeat(np.arange(30), 20)
        x = rng.normal(size=g.size)
        u = rng.normal(0, 0.5, 30)
        y = rng.poisson(np.exp(0.3 + 0.4 * x + u[g]))
        df = pd.DataFrame({"y": y, "x": x, "g": g})
        fit = fit_glmm("y ~ x + (1 | g)", df, family="poisson")
        assert fit.coef["x"] == pytest.approx(0.4, abs=0.1)
        assert fit.sd.iloc[0] == pytest.approx(0.5, abs=0.25)

    def test_iteration_limit_warns(self, advice_data):
        with pytest.warns(ConvergenceWarning):
            fit = fit_glmm(FORMULA, advice_data, maxiter=5)
        assert not fit.converged

    def test_bad_family(self, advice_data):
        with pytest.raises(ValueError, match="Unsupported family"):
            fit_glmm(FORMULA, advice_data, family="gamma")

    def test_bad_response(self, advice_data):
        bad = advice_data.assign(binary_outcome=advice_data["binary_outcome"] * 2)
        with pytest.raises(ValueError, match="0/1"):
            fit_glmm(FORMULA, bad)

    def test_needs_random_terms(self, advice_data):
        with pytest.raises(ValueError):
            fit_glmm("binary_outcome ~ advice_present", advice_data)

    def test_rank_deficient(self, advice_data):
        dup = advice_data.assign(copy=advice_data["advice_present"])
        with pytest.raises(ValueError, match="rank deficient"):
            fit_glmm("binary_outcome ~ advice_present + copy + (1 | subject)", dup)

    def test_bad_start(self, advice_data):
        with pytest.raises(ValueError):
            fit_glmm(FORMULA, advice_data, start=[0.0, 1.0])

    def test_singular_fit_warns(self):
        """Groups with identical outcome patterns carry no between-group variance."""
        x = np.tile([0, 0, 0, 0, 1, 1, 1, 1], 20)
        y = np.tile([0, 0, 0, 1, 0, 1, 1, 1], 20)
        df = pd.DataFrame({"y": y, "x": x, "g": np.repeat(np.arange(20), 8)})
        with pytest.warns(SingularFitWarning):
            fit = fit_glmm("y ~ x + (1 | g)", df)
        assert fit.sd.iloc[0] < 1e-4
        assert fit.coef["x"] == pytest.approx(np.log(9), abs=1e-2)
