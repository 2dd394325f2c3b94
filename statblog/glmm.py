"""
Generalized linear mixed models by maximum likelihood.

The marginal likelihood integrates the random effects out,

    L(beta, sd) = Integral  p(y | X beta + Z b)  N(b; 0, diag(sd^2))  db,

which has no closed form for a logistic or Poisson response. As in lme4's
default ``glmer`` fit, the integral is replaced by its Laplace
approximation. Writing b = S u with S = diag(sd) and u ~ N(0, I):

    log L ~= l(y | u_hat) - u_hat'u_hat / 2 - log|S Z'W Z S + I| / 2

where u_hat maximizes the penalized log-likelihood l(y | u) - u'u / 2 and
W holds the working weights at u_hat. The inner maximization is a
penalized Newton (IRLS) loop; the outer one is a bounded Nelder-Mead
search over (beta, sd) with sd >= 0.

Standard errors of beta come from the Schur complement of the joint
(beta, u) information at the optimum, i.e. treating sd as known.
"""

import warnings

import numpy as np
import pandas as pd
from scipy import linalg, stats
from scipy.optimize import approx_fprime, minimize
from scipy.special import gammaln

from .formula import (build_design, parse_formula, random_design_matrix,
                      sd_names)
from .utils import logistic


class ConvergenceWarning(UserWarning):
    """The optimizer stopped short of a clean optimum."""


class SingularFitWarning(UserWarning):
    """At least one random-effect standard deviation is estimated at zero."""


SINGULAR_TOL = 1e-4
GRADIENT_TOL = 1e-2


class Family:
    """Response distribution with its canonical link."""

    def __init__(self, name, link, linkinv, loglik, weights):
        self.name = name
        self.link = link
        self.linkinv = linkinv
        self.loglik = loglik
        self.weights = weights

    def __repr__(self):
        return f"Family({self.name!r}, link={self.link!r})"


def _binomial_loglik(y, eta):
    return np.sum(y * eta - np.logaddexp(0, eta))


def _poisson_loglik(y, eta):
    return np.sum(y * eta - np.exp(eta) - gammaln(y + 1))


def _binomial_weights(eta):
    mu = logistic(eta)
    return mu * (1 - mu)


FAMILIES = {
    "binomial": Family("binomial", "logit", logistic, _binomial_loglik,
                       _binomial_weights),
    "poisson": Family("poisson", "log", np.exp, _poisson_loglik, np.exp),
}
FAMILIES["bernoulli"] = FAMILIES["binomial"]


def get_family(family):
    """Look up a response family by name."""
    if isinstance(family, Family):
        return family
    try:
        return FAMILIES[family]
    except KeyError:
        raise ValueError(f"Unsupported family {family!r}; choose one of "
                         f"{sorted(FAMILIES)}") from None


def _check_response(y, family):
    if y is None:
        raise ValueError("Response column not found in data")
    if not np.all(np.isfinite(y)):
        raise ValueError("Response contains missing or non-finite values")
    if family.name == "binomial" and not np.all((y == 0) | (y == 1)):
        raise ValueError("Binomial response must be coded 0/1")
    if family.name == "poisson" and (np.any(y < 0) or np.any(y != np.round(y))):
        raise ValueError("Poisson response must be non-negative integers")


def _glm_start(X, y, family):
    """Fixed-effects-only MLE used as the starting point."""
    def nll(b):
        return -family.loglik(y, X @ b)

    res = minimize(nll, np.zeros(X.shape[1]), method="BFGS")
    return res.x


def _sd_vector(sd, slices, q):
    s = np.empty(q)
    for value, sl in zip(sd, slices):
        s[sl] = value
    return s


def penalized_modes(X, Z, y, beta, s, family, u0=None, tol=1e-10,
                    max_iter=100):
    """
    Conditional modes of the spherical random effects.

    Maximizes  l(y | X beta + Z S u) - u'u / 2  by Newton steps with
    step halving.

    Returns
    -------
    dict with keys:
        u      : conditional modes, shape (q,)
        chol   : Cholesky factor (lower, bool) of S Z'W Z S + I
        loglik : conditional log-likelihood at u
        eta    : linear predictor at u
        iterations : Newton iterations used
    """
    ZS = Z * s
    offset = X @ beta
    u = np.zeros(Z.shape[1]) if u0 is None else u0.copy()

    def objective(u_):
        eta_ = offset + ZS @ u_
        return family.loglik(y, eta_) - 0.5 * (u_ @ u_), eta_

    h, eta = objective(u)
    for it in range(1, max_iter + 1):
        mu = family.linkinv(eta)
        W = family.weights(eta)
        grad = ZS.T @ (y - mu) - u
        H = ZS.T @ (ZS * W[:, None]) + np.eye(len(u))
        chol = linalg.cho_factor(H, lower=True)
        step = linalg.cho_solve(chol, grad)

        t = 1.0
        while True:
            h_new, eta_new = objective(u + t * step)
            if h_new >= h - 1e-12 or t < 1e-8:
                break
            t /= 2
        u = u + t * step
        h, eta = h_new, eta_new
        if np.max(np.abs(t * step)) < tol:
            break

    W = family.weights(eta)
    H = ZS.T @ (ZS * W[:, None]) + np.eye(len(u))
    chol = linalg.cho_factor(H, lower=True)
    return dict(u=u, chol=chol, loglik=family.loglik(y, eta), eta=eta,
                iterations=it)


def laplace_nll(params, X, Z, y, slices, family, u0=None):
    """
    Negative Laplace-approximate log-likelihood at params = (beta, sd).

    Returns
    -------
    nll : float
    modes : dict returned by ``penalized_modes``
    """
    p = X.shape[1]
    beta, sd = params[:p], np.abs(params[p:])
    s = _sd_vector(sd, slices, Z.shape[1])
    modes = penalized_modes(X, Z, y, beta, s, family, u0=u0)
    u = modes["u"]
    logdet = 2 * np.sum(np.log(np.diag(modes["chol"][0])))
    nll = -(modes["loglik"] - 0.5 * (u @ u) - 0.5 * logdet)
    return nll, modes


class GLMMFit:
    """
    A fitted maximum-likelihood GLMM.

    Attributes
    ----------
    coef, se : pandas.Series
        Fixed-effect estimates and standard errors.
    vcov : pandas.DataFrame
        Covariance matrix of the fixed effects.
    sd : pandas.Series
        Random-effect standard deviations.
    loglik, aic, bic : float
    converged : bool
    """

    kind = "frequentist"

    def __init__(self, formula, family, data, design, beta, sd, u, vcov,
                 nll, optimizer):
        self.formula = formula
        self.family = family
        self.data = data
        self.levels = design["levels"]
        self.blocks = [dict(group=b["group"], name=b["name"])
                       for b in design["blocks"]]
        self.nobs = len(data)
        names = formula.fixed_names
        self.coef = pd.Series(beta, index=names, name="Estimate")
        self.vcov = pd.DataFrame(vcov, index=names, columns=names)
        self.se = pd.Series(np.sqrt(np.diag(vcov)), index=names,
                            name="Std. Error")
        self.sd = pd.Series(sd, index=sd_names(design["blocks"]), name="Std.Dev.")
        self.u = u
        self.loglik = -nll
        k = len(beta) + len(sd)
        self.aic = 2 * nll + 2 * k
        self.bic = 2 * nll + np.log(self.nobs) * k
        self.converged = optimizer["converged"]
        self.optimizer = optimizer

    def ranef(self):
        """
        Conditional modes of the random effects, one table per group.

        Returns
        -------
        dict mapping group name -> DataFrame (levels x components)
        """
        out, start = {}, 0
        for block, sd in zip(self.blocks, self.sd.to_numpy()):
            lv = self.levels[block["group"]]
            values = sd * self.u[start:start + len(lv)]
            start += len(lv)
            frame = out.setdefault(block["group"],
                                   pd.DataFrame(index=pd.Index(lv, name=block["group"])))
            frame[block["name"]] = values
        return out

    def summary(self):
        """Fixed-effect table with Wald z tests."""
        z = self.coef / self.se
        return pd.DataFrame({
            "Estimate": self.coef,
            "Std. Error": self.se,
            "z value": z,
            "Pr(>|z|)": 2 * stats.norm.sf(np.abs(z)),
        })

    def variance_components(self):
        """Random-effect standard deviations and variances."""
        groups = [b["group"] for b in self.blocks]
        return pd.DataFrame({
            "Groups": groups,
            "Name": [b["name"] for b in self.blocks],
            "Variance": self.sd.to_numpy() ** 2,
            "Std.Dev.": self.sd.to_numpy(),
        })

    def __str__(self):
        n_groups = ", ".join(f"{g}, {len(lv)}" for g, lv in self.levels.items())
        lines = [
            f"Generalized linear mixed model fit by maximum likelihood "
            f"(Laplace Approximation) [{self.family.name}, {self.family.link}]",
            f"Formula: {self.formula.text}",
            f"    logLik = {self.loglik:.2f}   AIC = {self.aic:.2f}   "
            f"BIC = {self.bic:.2f}",
            "",
            "Random effects:",
            self.variance_components().to_string(index=False),
            f"Number of obs: {self.nobs}, groups: {n_groups}",
            "",
            "Fixed effects:",
            self.summary().to_string(float_format=lambda v: f"{v:.4f}"),
        ]
        if not self.converged:
            lines.append(f"\nOptimizer: {self.optimizer['message']}")
        return "\n".join(lines)

    def predict(self, newdata=None, type="response", re_form="include",
                allow_new_levels=False, sample_new_levels="zero", ndraws=500,
                seed=None, beta=None):
        """
        Predictions for new or observed data.

        Parameters
        ----------
        newdata : DataFrame or None
            Rows to predict for (defaults to the fitting data).
        type : {"response", "link"}
        re_form : {"include", "exclude"}
            Use the conditional modes of the random effects, or set every
            random effect to zero (population-level prediction).
        allow_new_levels : bool
            Permit group levels not seen during fitting.
        sample_new_levels : {"zero", "gaussian"}
            Unseen levels get a zero effect, or are integrated over by
            drawing ``ndraws`` effects from N(0, sd^2) and averaging the
            predictions.
        seed : int or None
            Seed for the new-level draws. A fixed seed makes the call
            reproducible.
        beta : array-like or None
            Override the fixed effects (used for numerical derivatives).

        Returns
        -------
        ndarray, shape (n,)
        """
        if type not in ("response", "link"):
            raise ValueError(f"type must be 'response' or 'link', got {type!r}")
        eta = predict_eta(self, newdata, re_form, allow_new_levels,
                          sample_new_levels, ndraws, seed, beta)
        if eta.ndim == 2:
            if type == "response":
                return self.family.linkinv(eta).mean(axis=0)
            return eta.mean(axis=0)
        return self.family.linkinv(eta) if type == "response" else eta


def predict_eta(model, newdata, re_form, allow_new_levels, sample_new_levels,
                ndraws, seed, beta):
    """
    Linear predictor at the conditional modes of the random effects.

    Returns shape (n,) unless new levels are sampled, in which case the
    result is (ndraws, n).
    """
    if re_form not in ("include", "exclude"):
        raise ValueError(f"re_form must be 'include' or 'exclude', got {re_form!r}")
    if sample_new_levels not in ("zero", "gaussian"):
        raise ValueError("sample_new_levels must be 'zero' or 'gaussian', "
                         f"got {sample_new_levels!r}")
    data = model.data if newdata is None else newdata
    design = build_design(model.formula, data, levels=model.levels,
                          random=re_form == "include")
    beta = model.coef.to_numpy() if beta is None else np.asarray(beta, float)
    eta = design["X"] @ beta
    if re_form == "exclude":
        return eta

    new_rows = [np.flatnonzero(b["index"] < 0) for b in design["blocks"]]
    unseen = sorted({b["group"] for b, rows in zip(design["blocks"], new_rows)
                     if len(rows)})
    if unseen and not allow_new_levels:
        raise ValueError(f"New levels found in grouping factor(s) {unseen}; "
                         "set allow_new_levels=True to predict for them")

    sample = bool(unseen) and sample_new_levels == "gaussian"
    if sample:
        rng = np.random.default_rng(seed)
        eta = np.tile(eta, (ndraws, 1))

    u, sd = model.u, model.sd.to_numpy()
    start = 0
    for block, rows, s in zip(design["blocks"], new_rows, sd):
        size = len(model.levels[block["group"]])
        b = s * u[start:start + size]
        start += size
        idx = block["index"]
        seen = idx >= 0
        contrib = np.zeros(len(idx))
        contrib[seen] = b[idx[seen]] * block["values"][seen]
        eta = eta + contrib
        if sample and len(rows):
            labels = data[block["group"]].astype(str).to_numpy()[rows]
            _, inv = np.unique(labels, return_inverse=True)
            draws = rng.normal(0, s, (ndraws, inv.max() + 1))
            eta[:, rows] += draws[:, inv] * block["values"][rows]
    return eta


def fit_glmm(formula, data, family="binomial", start=None, maxiter=4000):
    """
    Fit a GLMM by Laplace-approximate maximum likelihood.

    Parameters
    ----------
    formula : str
        lme4-style formula, e.g.
        ``"binary_outcome ~ advice_present + (1 + advice_present || subject) + (1 | item)"``.
    data : pandas.DataFrame
    family : {"binomial", "bernoulli", "poisson"}
    start : array-like or None
        Starting (beta, sd) vector. Defaults to the fixed-effects GLM fit
        and unit standard deviations.
    maxiter : int
        Iteration limit for each Nelder-Mead run.

    Returns
    -------
    GLMMFit

    Warns
    -----
    ConvergenceWarning
        The optimizer hit its iteration limit or the gradient at the
        solution is not close to zero.
    SingularFitWarning
        A standard deviation was estimated on the boundary.
    """
    family = get_family(family)
    parsed = parse_formula(formula)
    if not parsed.random:
        raise ValueError("Formula has no random-effect terms; fit a GLM instead")
    data = data.reset_index(drop=True)
    design = build_design(parsed, data)
    X, y = design["X"], design["y"]
    _check_response(y, family)
    Z, slices = random_design_matrix(design["blocks"], design["levels"])
    p, k = X.shape[1], len(design["blocks"])
    if np.linalg.matrix_rank(X) < p:
        raise ValueError("Fixed-effect design matrix is rank deficient")

    if start is None:
        start = np.concatenate([_glm_start(X, y, family), np.ones(k)])
    start = np.asarray(start, dtype=float)
    if start.shape != (p + k,):
        raise ValueError(f"start must have length {p + k}, got {start.shape}")

    cache = dict(u=None)

    def objective(params):
        nll, modes = laplace_nll(params, X, Z, y, slices, family, u0=cache["u"])
        cache["u"] = modes["u"]
        return nll

    bounds = [(None, None)] * p + [(0, None)] * k
    options = dict(maxiter=maxiter, maxfev=2 * maxiter, xatol=1e-6, fatol=1e-9)
    res = minimize(objective, start, method="Nelder-Mead", bounds=bounds,
                   options=options)
    # restart from the solution, Nelder-Mead can stall on a collapsed simplex
    res2 = minimize(objective, res.x, method="Nelder-Mead", bounds=bounds,
                    options=options)
    if res2.fun <= res.fun:
        res = res2

    params = res.x
    beta, sd = params[:p], np.abs(params[p:])
    nll, modes = laplace_nll(params, X, Z, y, slices, family)
    u = modes["u"]

    s = _sd_vector(sd, slices, Z.shape[1])
    ZS = Z * s
    W = family.weights(modes["eta"])
    XtW = X.T * W
    cross = XtW @ ZS
    schur = XtW @ X - cross @ linalg.cho_solve(modes["chol"], cross.T)
    vcov = np.linalg.inv(schur)

    grad = approx_fprime(params, lambda x: laplace_nll(
        x, X, Z, y, slices, family, u0=u)[0], 1e-6)
    interior = np.concatenate([np.ones(p, bool), sd > SINGULAR_TOL])
    max_grad = float(np.max(np.abs(grad[interior]))) if interior.any() else 0.0

    converged = bool(res.success) and max_grad < GRADIENT_TOL
    if not res.success:
        warnings.warn(f"Model failed to converge: {res.message}",
                      ConvergenceWarning, stacklevel=2)
    elif max_grad >= GRADIENT_TOL:
        warnings.warn(f"Model failed to converge with max|grad| = {max_grad:.4g} "
                      f"(tol = {GRADIENT_TOL})", ConvergenceWarning, stacklevel=2)
    if np.any(sd < SINGULAR_TOL):
        names = [n for n, v in zip(sd_names(design["blocks"]), sd)
                 if v < SINGULAR_TOL]
        warnings.warn(f"boundary (singular) fit: {names}", SingularFitWarning,
                      stacklevel=2)

    optimizer = dict(converged=converged, message=res.message, nfev=res.nfev,
                     max_grad=max_grad)
    return GLMMFit(parsed, family, data, design, beta, sd, u, vcov, nll,
                   optimizer)
