"""
Bayesian generalized linear mixed models with PyMC.

Same formula language and design as ``statblog.glmm``; the random effects
are independent normal deviations per group level, written in the
non-centred form r = sd * z with z ~ N(0, 1) so NUTS copes with small
standard deviations. Priors are weakly informative on the link scale:

    beta_j ~ StudentT(3, 0, prior_scale)
    sd_k   ~ HalfStudentT(3, prior_scale)

Posterior draws of every parameter are kept so that predictions and
contrasts can be summarised draw by draw.
"""

import re
import warnings

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm

from .formula import build_design, parse_formula, sd_names
from .glmm import ConvergenceWarning, get_family

RHAT_TOL = 1.01
MIN_ESS = 400


def _safe(name):
    return re.sub(r"[^A-Za-z0-9_]+", "", name.replace(":", "_x_")) or "term"


def _var_names(block):
    stem = f"{block['group']}__{_safe(block['name'])}"
    return f"sd_{stem}", f"r_{stem}"


def build_model(formula, data, family="bernoulli", prior_scale=2.5):
    """
    Build (but do not sample) the PyMC model for a formula.

    Returns
    -------
    model : pymc.Model
    design : dict from ``build_design``
    """
    family = get_family(family)
    parsed = parse_formula(formula) if isinstance(formula, str) else formula
    design = build_design(parsed, data)
    X, y = design["X"], design["y"]
    if y is None:
        raise ValueError(f"Response column {parsed.response!r} not found in data")

    coords = {"fixed": parsed.fixed_names, "obs": np.arange(len(data))}
    for group, lv in design["levels"].items():
        coords[group] = lv

    with pm.Model(coords=coords) as model:
        beta = pm.StudentT("beta", nu=3, mu=0, sigma=prior_scale, dims="fixed")
        eta = pm.math.dot(X, beta)
        for block in design["blocks"]:
            sd_name, r_name = _var_names(block)
            sd = pm.HalfStudentT(sd_name, nu=3, sigma=prior_scale)
            z = pm.Normal(f"z_{r_name[2:]}", 0, 1, dims=block["group"])
            r = pm.Deterministic(r_name, sd * z, dims=block["group"])
            eta = eta + r[block["index"]] * block["values"]

        if family.name == "binomial":
            pm.Bernoulli("y", logit_p=eta, observed=y, dims="obs")
        else:
            pm.Poisson("y", mu=pm.math.exp(eta), observed=y, dims="obs")
    return model, design


def _stack(idata, name):
    """Posterior of one variable as an array with draws on axis 0."""
    da = idata.posterior[name].stack(sample=("chain", "draw"))
    return np.moveaxis(da.values, -1, 0)


class BayesFit:
    """
    Posterior draws from a Bayesian GLMM.

    Attributes
    ----------
    idata : arviz.InferenceData
    coef : pandas.Series
        Posterior means of the fixed effects.
    sd : pandas.Series
        Posterior means of the random-effect standard deviations.
    """

    kind = "bayesian"

    def __init__(self, formula, family, data, design, model, idata):
        self.formula = formula
        self.family = family
        self.data = data
        self.model = model
        self.idata = idata
        self.levels = design["levels"]
        self.blocks = [dict(group=b["group"], name=b["name"])
                       for b in design["blocks"]]
        self.nobs = len(data)
        self.beta_draws = _stack(idata, "beta")
        self.sd_draws = np.column_stack(
            [_stack(idata, _var_names(b)[0]) for b in self.blocks])
        self.r_draws = [_stack(idata, _var_names(b)[1]) for b in self.blocks]
        self.coef = pd.Series(self.beta_draws.mean(axis=0),
                              index=formula.fixed_names, name="Estimate")
        self.sd = pd.Series(self.sd_draws.mean(axis=0),
                            index=sd_names(self.blocks), name="Std.Dev.")

    @property
    def ndraws(self):
        return self.beta_draws.shape[0]

    def summary(self, hdi_prob=0.95):
        """ArviZ summary of the fixed effects and standard deviations."""
        var_names = ["beta"] + [_var_names(b)[0] for b in self.blocks]
        return az.summary(self.idata, var_names=var_names, hdi_prob=hdi_prob)

    def diagnostics(self):
        """
        Sampler health checks.

        Returns
        -------
        dict with keys:
            max_rhat     : largest potential scale reduction factor
            min_ess_bulk : smallest bulk effective sample size
            min_ess_tail : smallest tail effective sample size
            divergences  : number of divergent transitions
            ok           : all of the above within tolerance
        """
        summ = self.summary()
        divergences = int(self.idata.sample_stats["diverging"].sum())
        out = dict(
            max_rhat=float(summ["r_hat"].max()),
            min_ess_bulk=float(summ["ess_bulk"].min()),
            min_ess_tail=float(summ["ess_tail"].min()),
            divergences=divergences,
        )
        out["ok"] = (out["max_rhat"] < RHAT_TOL and divergences == 0
                     and out["min_ess_bulk"] >= MIN_ESS
                     and out["min_ess_tail"] >= MIN_ESS)
        return out

    def __str__(self):
        n_groups = ", ".join(f"{g}, {len(lv)}" for g, lv in self.levels.items())
        return "\n".join([
            f" Family: {self.family.name} (link = {self.family.link})",
            f"Formula: {self.formula.text}",
            f"   Data: {self.nobs} observations, groups: {n_groups}",
            f"  Draws: {self.idata.posterior.sizes['chain']} chains, "
            f"{self.ndraws} post-warmup draws",
            "",
            self.summary().to_string(),
        ])

    def predict(self, newdata=None, type="response", re_form="include",
                allow_new_levels=False, sample_new_levels="uncertainty",
                ndraws=None, seed=None):
        """
        Posterior predictions, one row per posterior draw.

        Parameters
        ----------
        newdata : DataFrame or None
        type : {"response", "link"}
        re_form : {"include", "exclude"}
        allow_new_levels : bool
        sample_new_levels : {"uncertainty", "gaussian", "zero"}
            How to fill in levels unseen during fitting: borrow the effect
            of a randomly chosen existing level (per draw), draw from
            N(0, sd^2) using each draw's sd, or set to zero.
        ndraws : int or None
            Use a random subset of the posterior draws.
        seed : int or None
            Seed for the draw subset and the new-level sampling.

        Returns
        -------
        ndarray, shape (ndraws, n)
        """
        if type not in ("response", "link"):
            raise ValueError(f"type must be 'response' or 'link', got {type!r}")
        if re_form not in ("include", "exclude"):
            raise ValueError(f"re_form must be 'include' or 'exclude', got {re_form!r}")
        if sample_new_levels not in ("uncertainty", "gaussian", "zero"):
            raise ValueError("sample_new_levels must be 'uncertainty', "
                             f"'gaussian' or 'zero', got {sample_new_levels!r}")

        rng = np.random.default_rng(seed)
        sel = np.arange(self.ndraws)
        if ndraws is not None and ndraws < self.ndraws:
            sel = np.sort(rng.choice(self.ndraws, ndraws, replace=False))

        data = self.data if newdata is None else newdata
        design = build_design(self.formula, data, levels=self.levels,
                              random=re_form == "include")
        eta = self.beta_draws[sel] @ design["X"].T

        if re_form == "include":
            new_rows = [np.flatnonzero(b["index"] < 0) for b in design["blocks"]]
            unseen = sorted({b["group"] for b, rows in zip(design["blocks"], new_rows)
                             if len(rows)})
            if unseen and not allow_new_levels:
                raise ValueError(f"New levels found in grouping factor(s) {unseen}; "
                                 "set allow_new_levels=True to predict for them")

            # one borrowed level per (draw, new label), shared across a group's terms
            picks = {}
            for j, (block, rows) in enumerate(zip(design["blocks"], new_rows)):
                r = self.r_draws[j][sel]
                idx = block["index"]
                seen = idx >= 0
                eta[:, seen] += r[:, idx[seen]] * block["values"][seen]
                if not len(rows) or sample_new_levels == "zero":
                    continue
                labels = data[block["group"]].astype(str).to_numpy()[rows]
                _, inv = np.unique(labels, return_inverse=True)
                n_new = inv.max() + 1
                if sample_new_levels == "gaussian":
                    sd = self.sd_draws[sel, j]
                    vals = rng.normal(0, 1, (len(sel), n_new)) * sd[:, None]
                else:
                    group = block["group"]
                    if group not in picks:
                        picks[group] = rng.integers(0, r.shape[1], (len(sel), n_new))
                    vals = np.take_along_axis(r, picks[group], axis=1)
                eta[:, rows] += vals[:, inv] * block["values"][rows]

        if type == "response":
            return self.family.linkinv(eta)
        return eta


def fit_bayes_glmm(formula, data, family="bernoulli", chains=4, cores=4,
                   draws=1000, tune=1000, target_accept=0.9, prior_scale=2.5,
                   seed=None, progressbar=False):
    """
    Fit a Bayesian GLMM with the NUTS sampler.

    Parameters
    ----------
    formula : str
        lme4-style formula (see ``statblog.formula``).
    data : pandas.DataFrame
    family : {"bernoulli", "binomial", "poisson"}
    chains, cores : int
        Number of Markov chains and how many run in parallel.
    draws, tune : int
        Post-warmup draws and warmup iterations per chain.
    target_accept : float
        NUTS target acceptance rate; raise it if divergences appear.
    prior_scale : float
        Scale of the Student-t priors.
    seed : int or None

    Returns
    -------
    BayesFit

    Warns
    -----
    ConvergenceWarning
        Divergent transitions, r_hat above 1.01, or low effective sample
        size.
    """
    parsed = parse_formula(formula)
    if not parsed.random:
        raise ValueError("Formula has no random-effect terms")
    if chains < 1 or cores < 1:
        raise ValueError("chains and cores must be at least 1")
    data = data.reset_index(drop=True)
    model, design = build_model(parsed, data, family=family,
                                prior_scale=prior_scale)
    with model:
        idata = pm.sample(draws=draws, tune=tune, chains=chains, cores=cores,
                          target_accept=target_accept, random_seed=seed,
                          progressbar=progressbar)

    fit = BayesFit(parsed, get_family(family), data, design, model, idata)
    diag = fit.diagnostics()
    if diag["divergences"]:
        warnings.warn(f"There were {diag['divergences']} divergent transitions "
                      "after warmup; consider increasing target_accept",
                      ConvergenceWarning, stacklevel=2)
    if diag["max_rhat"] >= RHAT_TOL:
        warnings.warn(f"Some r_hat values exceed {RHAT_TOL} "
                      f"(max {diag['max_rhat']:.3f}); chains have not mixed",
                      ConvergenceWarning, stacklevel=2)
    if min(diag["min_ess_bulk"], diag["min_ess_tail"]) < MIN_ESS:
        warnings.warn("Effective sample size is low; posterior summaries "
                      "may be unreliable", ConvergenceWarning, stacklevel=2)
    return fit
