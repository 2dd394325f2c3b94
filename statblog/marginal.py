"""
Predictions, contrasts and hypothesis tests from fitted mixed models.

Every quantity here is a function of the model parameters evaluated on a
grid of predictor values:

* ``predictions``      unit-level or averaged predicted outcomes
* ``comparisons``      differences / ratios of predictions when one
                       predictor is moved between two values
* ``hypotheses``       linear combinations of any of the above, or of the
                       raw coefficients

Uncertainty depends on how the model was fit. For a maximum-likelihood
GLMM it comes from the delta method,

    Var(g(beta_hat)) ~= J V J',   J = dg / dbeta (numerical, forward differences),

with V the covariance of the fixed effects. For a Bayesian GLMM the
quantity is computed draw by draw and summarised by its posterior median
and an equal-tailed interval.
"""

import itertools
import re

import numpy as np
import pandas as pd
from scipy import stats

from .utils import numerical_jacobian


class Estimates:
    """
    A table of estimates plus what is needed to test combinations of them.

    Attributes
    ----------
    frame : pandas.DataFrame
        One row per estimate; ``estimate`` and interval columns always,
        ``std_error``, ``statistic`` and ``p_value`` for ML fits.
    jacobian, vcov : ndarray or None
        Delta-method ingredients (ML fits).
    draws : ndarray or None
        Posterior draws, shape (n_draws, n_estimates) (Bayesian fits).
    """

    def __init__(self, frame, conf_level, jacobian=None, vcov=None, draws=None):
        self.frame = frame
        self.conf_level = conf_level
        self.jacobian = jacobian
        self.vcov = vcov
        self.draws = draws

    @property
    def estimate(self):
        return self.frame["estimate"].to_numpy()

    def __len__(self):
        return len(self.frame)

    def __getitem__(self, key):
        return self.frame[key]

    def __repr__(self):
        return self.frame.to_string(float_format=lambda v: f"{v:.4f}")


def _summarize_delta(est, J, V, conf_level):
    se = np.sqrt(np.maximum(np.einsum("ij,jk,ik->i", J, V, J), 0))
    with np.errstate(divide="ignore", invalid="ignore"):
        z = est / se
    crit = stats.norm.ppf(0.5 + conf_level / 2)
    return pd.DataFrame({
        "estimate": est,
        "std_error": se,
        "statistic": z,
        "p_value": 2 * stats.norm.sf(np.abs(z)),
        "conf_low": est - crit * se,
        "conf_high": est + crit * se,
    })


def _summarize_draws(draws, conf_level):
    alpha = 1 - conf_level
    lo, med, hi = np.quantile(draws, [alpha / 2, 0.5, 1 - alpha / 2], axis=0)
    return pd.DataFrame({"estimate": med, "conf_low": lo, "conf_high": hi})


def _check_conf_level(conf_level):
    if not 0 < conf_level < 1:
        raise ValueError(f"conf_level must lie in (0, 1), got {conf_level}")


def datagrid(model=None, newdata=None, grid_type="typical", **values):
    """
    Build a grid of predictor values to predict on.

    Parameters
    ----------
    model : fitted model or None
        Supplies the data and the list of predictors used.
    newdata : DataFrame or None
        Data to summarise instead of the model's fitting data.
    grid_type : {"typical", "counterfactual"}
        ``"typical"``: one row per combination of the given values, every
        other predictor held at its mean (numeric) or mode (categorical).
        ``"counterfactual"``: the whole observed data, repeated once per
        combination of the given values.
    **values
        Predictor name -> value or list of values.

    Returns
    -------
    pandas.DataFrame
    """
    data = newdata if newdata is not None else getattr(model, "data", None)
    if data is None:
        raise ValueError("datagrid needs a model or newdata")
    for name in values:
        if name not in data.columns:
            raise ValueError(f"Column {name!r} not found in data")
    values = {k: list(v) if isinstance(v, (list, tuple, np.ndarray, pd.Series))
              else [v] for k, v in values.items()}
    for name, vals in values.items():
        if not vals:
            raise ValueError(f"No values given for {name!r}")

    combos = list(itertools.product(*values.values()))
    if grid_type == "counterfactual":
        frames = []
        for combo in combos:
            frame = data.copy()
            for name, value in zip(values, combo):
                frame[name] = value
            frame["rowid"] = np.arange(len(data))
            frames.append(frame)
        return pd.concat(frames, ignore_index=True)
    if grid_type != "typical":
        raise ValueError(f"grid_type must be 'typical' or 'counterfactual', "
                         f"got {grid_type!r}")

    if model is not None:
        columns = [c for c in model.formula.variables if c in data.columns]
    else:
        columns = list(data.columns)
    fixed = {}
    for col in columns:
        if col in values:
            continue
        series = data[col]
        numeric = (pd.api.types.is_numeric_dtype(series)
                   and not pd.api.types.is_bool_dtype(series))
        if numeric:
            fixed[col] = series.mean()
        else:
            fixed[col] = series.mode().iloc[0]

    rows = []
    for combo in combos:
        row = dict(fixed)
        row.update(zip(values, combo))
        rows.append(row)
    return pd.DataFrame(rows, columns=list(dict.fromkeys(list(values) + columns)))


def _aggregation(newdata, by):
    """Averaging matrix A (groups x rows) and the group key frame."""
    n = len(newdata)
    if by is None:
        return None, newdata.reset_index(drop=True)
    if by is True:
        return np.full((1, n), 1.0 / n), pd.DataFrame(index=[0])
    by = [by] if isinstance(by, str) else list(by)
    for col in by:
        if col not in newdata.columns:
            raise ValueError(f"'by' column {col!r} not found in newdata")
        if newdata[col].isna().any():
            raise ValueError(f"'by' column {col!r} has missing values")
    grouped = newdata.groupby(by, observed=True, sort=True)
    codes = grouped.ngroup().to_numpy()
    keys = grouped.size().index.to_frame(index=False)
    A = np.zeros((codes.max() + 1, n))
    A[codes, np.arange(n)] = 1.0
    A /= A.sum(axis=1, keepdims=True)
    return A, keys


def _predict_fn(model, newdata, type, re_form, allow_new_levels,
                sample_new_levels, ndraws, seed):
    kwargs = dict(type=type, re_form=re_form, allow_new_levels=allow_new_levels,
                  seed=seed)
    if sample_new_levels is not None:
        kwargs["sample_new_levels"] = sample_new_levels
    if ndraws is not None:
        kwargs["ndraws"] = ndraws
    if model.kind == "bayesian":
        return lambda beta=None: model.predict(newdata, **kwargs)
    return lambda beta=None: model.predict(newdata, beta=beta, **kwargs)


def _evaluate(model, fn, A, conf_level):
    """Point estimates and uncertainty for g = A @ fn(parameters)."""
    if model.kind == "bayesian":
        draws = fn()
        if A is not None:
            draws = draws @ A.T
        return _summarize_draws(draws, conf_level), dict(draws=draws)

    def g(beta):
        out = fn(beta)
        return A @ out if A is not None else out

    beta = model.coef.to_numpy()
    est = g(beta)
    J = numerical_jacobian(g, beta)
    V = model.vcov.to_numpy()
    return _summarize_delta(est, J, V, conf_level), dict(jacobian=J, vcov=V)


def _resolve_seed(seed):
    # one seed per call so every evaluation inside it sees the same draws
    if seed is None:
        return int(np.random.default_rng().integers(2**31))
    return seed


def _resolve_newdata(model, newdata, variables):
    if isinstance(newdata, str):
        if newdata not in ("mean", "typical"):
            raise ValueError(f"Unknown newdata shortcut {newdata!r}")
        newdata = datagrid(model)
    base = model.data if newdata is None else newdata
    if variables:
        base = datagrid(model, newdata=base, grid_type="counterfactual",
                        **variables)
    if len(base) == 0:
        raise ValueError("newdata has no rows")
    return base


def predictions(model, newdata=None, variables=None, by=None, type="response",
                re_form="include", allow_new_levels=False,
                sample_new_levels=None, ndraws=None, conf_level=0.95,
                seed=None):
    """
    Predicted outcomes with uncertainty.

    Parameters
    ----------
    model : GLMMFit or BayesFit
    newdata : DataFrame, "mean" or None
        Rows to predict for. ``"mean"`` is shorthand for ``datagrid(model)``
        (every predictor at its mean or mode). Defaults to the fitting data.
    variables : dict or None
        Predictor -> values; predicts on the counterfactual grid that sets
        the whole ``newdata`` to each value in turn.
    by : None, True, str or list of str
        None for one row per unit; True to average everything; column
        name(s) to average within groups. Group keys must not be missing.
    type : {"response", "link"}
    re_form : {"include", "exclude"}
        Use the estimated random effects, or set them all to zero. With
        ``"exclude"`` the grouping columns are not needed in ``newdata``.
    allow_new_levels : bool
    sample_new_levels : str or None
        How unseen group levels are filled in (see the model's ``predict``).
    ndraws : int or None
        Monte Carlo draws for new levels (ML) or posterior draws to use
        (Bayesian).
    conf_level : float
    seed : int or None
        Seed for any random draws. Without one, calls that sample new
        levels differ from run to run.

    Returns
    -------
    Estimates
    """
    _check_conf_level(conf_level)
    newdata = _resolve_newdata(model, newdata, variables)
    seed = _resolve_seed(seed)
    A, keys = _aggregation(newdata, by)
    fn = _predict_fn(model, newdata, type, re_form, allow_new_levels,
                     sample_new_levels, ndraws, seed)
    summary, extra = _evaluate(model, fn, A, conf_level)
    frame = pd.concat([keys.reset_index(drop=True), summary], axis=1)
    return Estimates(frame, conf_level, **extra)


def avg_predictions(model, newdata=None, variables=None, by=True, **kwargs):
    """``predictions`` averaged over all rows, or within ``by`` groups."""
    return predictions(model, newdata=newdata, variables=variables,
                       by=True if by is None else by, **kwargs)


def _contrast_values(data, name, step):
    if name not in data.columns:
        raise ValueError(f"Column {name!r} not found in data")
    col = data[name]
    if step is None:
        uniq = set(pd.unique(col))
        if uniq <= {0, 1}:
            return 0, 1, "1 - 0"
        if not pd.api.types.is_numeric_dtype(col):
            raise ValueError(f"Give explicit [low, high] values for {name!r}")
        return col, col + 1, "+1"
    if isinstance(step, (list, tuple)):
        if len(step) != 2:
            raise ValueError(f"Contrast for {name!r} needs exactly two values")
        lo, hi = step
        return lo, hi, f"{hi} - {lo}"
    return col, col + step, f"+{step}"


def comparisons(model, variables, newdata=None, comparison="difference",
                by=None, type="response", re_form="include",
                allow_new_levels=False, sample_new_levels=None, ndraws=None,
                conf_level=0.95, seed=None):
    """
    Contrasts between predictions at two values of a predictor.

    Parameters
    ----------
    variables : str, list or dict
        Predictor(s) to move. A 0/1 predictor goes from 0 to 1; a numeric
        one increases by 1. A dict maps a predictor to ``[low, high]`` or
        to a step size.
    comparison : {"difference", "ratio"}
        ``high - low`` or ``high / low``, computed per row before any
        averaging.
    by, type, re_form, allow_new_levels, sample_new_levels, ndraws,
    conf_level, seed
        As in ``predictions``.

    Returns
    -------
    Estimates
        One block of rows per predictor, labelled by ``term`` and
        ``contrast``.
    """
    _check_conf_level(conf_level)
    if comparison not in ("difference", "ratio"):
        raise ValueError(f"comparison must be 'difference' or 'ratio', "
                         f"got {comparison!r}")
    if isinstance(variables, str):
        variables = {variables: None}
    elif not isinstance(variables, dict):
        variables = {v: None for v in variables}
    newdata = _resolve_newdata(model, newdata, None)
    seed = _resolve_seed(seed)
    A, keys = _aggregation(newdata, by)

    frames, jacobians, draws, vcov = [], [], [], None
    for name, step in variables.items():
        lo, hi, label = _contrast_values(newdata, name, step)
        lo_data, hi_data = newdata.copy(), newdata.copy()
        lo_data[name] = lo
        hi_data[name] = hi
        args = (type, re_form, allow_new_levels, sample_new_levels, ndraws, seed)
        f_lo = _predict_fn(model, lo_data, *args)
        f_hi = _predict_fn(model, hi_data, *args)

        if comparison == "difference":
            def fn(beta=None, f_lo=f_lo, f_hi=f_hi):
                return f_hi(beta) - f_lo(beta)
        else:
            def fn(beta=None, f_lo=f_lo, f_hi=f_hi):
                return f_hi(beta) / f_lo(beta)

        summary, extra = _evaluate(model, fn, A, conf_level)
        head = keys.reset_index(drop=True).copy()
        head.insert(0, "contrast", label)
        head.insert(0, "term", name)
        frames.append(pd.concat([head, summary], axis=1))
        if "draws" in extra:
            draws.append(extra["draws"])
        else:
            jacobians.append(extra["jacobian"])
            vcov = extra["vcov"]

    frame = pd.concat(frames, ignore_index=True)
    if draws:
        return Estimates(frame, conf_level, draws=np.hstack(draws))
    return Estimates(frame, conf_level, jacobian=np.vstack(jacobians), vcov=vcov)


def avg_comparisons(model, variables, newdata=None, by=True, **kwargs):
    """``comparisons`` averaged over all rows, or within ``by`` groups."""
    return comparisons(model, variables, newdata=newdata,
                       by=True if by is None else by, **kwargs)


_TERM = re.compile(r"(?:(\d*\.?\d+)\*?)?b(\d+)")
_NUMBER = re.compile(r"\d*\.?\d+")


def _parse_side(side, m, sign, weights):
    s = side.replace(" ", "")
    if not s:
        raise ValueError("Empty side in hypothesis")
    if s[0] not in "+-":
        s = "+" + s
    terms = re.findall(r"[+-][^+-]+", s)
    if "".join(terms) != s:
        raise ValueError(f"Cannot parse hypothesis term in {side!r}")
    const = 0.0
    for term in terms:
        term_sign = sign * (1 if term[0] == "+" else -1)
        body = term[1:]
        match = _TERM.fullmatch(body)
        if match:
            coef = float(match.group(1)) if match.group(1) else 1.0
            idx = int(match.group(2))
            if not 1 <= idx <= m:
                raise ValueError(f"b{idx} is out of range; there are {m} estimates")
            weights[idx - 1] += term_sign * coef
        elif _NUMBER.fullmatch(body):
            const += term_sign * float(body)
        else:
            raise ValueError(f"Cannot parse hypothesis term {body!r}")
    return const


def hypothesis_matrix(hypothesis, m):
    """
    Weights and constants for a hypothesis on m estimates.

    Returns
    -------
    W : ndarray, shape (m, h)
        One column per hypothesis.
    const : ndarray, shape (h,)
    labels : list of str
    """
    if isinstance(hypothesis, str):
        if hypothesis == "pairwise":
            pairs = list(itertools.combinations(range(m), 2))
            if not pairs:
                raise ValueError("'pairwise' needs at least two estimates")
            W = np.zeros((m, len(pairs)))
            for k, (i, j) in enumerate(pairs):
                W[i, k], W[j, k] = 1, -1
            return W, np.zeros(len(pairs)), [f"b{i + 1} - b{j + 1}" for i, j in pairs]
        if hypothesis == "reference":
            if m < 2:
                raise ValueError("'reference' needs at least two estimates")
            W = np.zeros((m, m - 1))
            W[0, :] = -1
            W[np.arange(1, m), np.arange(m - 1)] = 1
            return W, np.zeros(m - 1), [f"b{i + 1} - b1" for i in range(1, m)]
        if hypothesis.count("=") != 1:
            raise ValueError(f"Hypothesis must contain one '=': {hypothesis!r}")
        lhs, rhs = hypothesis.split("=")
        w = np.zeros(m)
        const = _parse_side(lhs, m, 1, w) + _parse_side(rhs, m, -1, w)
        return w[:, None], np.array([const]), [hypothesis.strip()]

    W = np.asarray(hypothesis, dtype=float)
    if W.ndim == 1:
        W = W[:, None]
    if W.ndim != 2 or W.shape[0] != m:
        raise ValueError(f"Hypothesis weights must have {m} rows, got shape "
                         f"{W.shape}")
    return W, np.zeros(W.shape[1]), [f"H{k + 1}" for k in range(W.shape[1])]


def _coefficient_estimates(model, conf_level):
    names = list(model.coef.index)
    if model.kind == "bayesian":
        draws = model.beta_draws
        frame = _summarize_draws(draws, conf_level)
        frame.insert(0, "term", names)
        return Estimates(frame, conf_level, draws=draws)
    V = model.vcov.to_numpy()
    J = np.eye(len(names))
    frame = _summarize_delta(model.coef.to_numpy(), J, V, conf_level)
    frame.insert(0, "term", names)
    return Estimates(frame, conf_level, jacobian=J, vcov=V)


def hypotheses(estimates, hypothesis, conf_level=None):
    """
    Test linear combinations of estimates.

    Parameters
    ----------
    estimates : Estimates or fitted model
        Output of ``predictions`` / ``comparisons`` / ``hypotheses``, or a
        fitted model to test its fixed-effect coefficients.
    hypothesis : str or array-like
        ``"b2 - b1 = 0"`` style equation where bN is the N-th row (1-based),
        ``"pairwise"``, ``"reference"`` (each row minus the first), or a
        weight vector / matrix with one column per hypothesis.
    conf_level : float or None
        Defaults to the level of ``estimates``.

    Returns
    -------
    Estimates
        ML fits: estimate, std. error, z statistic, two-sided p-value and
        interval. Bayesian fits: posterior median and interval.
    """
    if not isinstance(estimates, Estimates):
        estimates = _coefficient_estimates(estimates, conf_level or 0.95)
    conf_level = estimates.conf_level if conf_level is None else conf_level
    _check_conf_level(conf_level)
    W, const, labels = hypothesis_matrix(hypothesis, len(estimates))

    if estimates.draws is not None:
        draws = estimates.draws @ W + const
        frame = _summarize_draws(draws, conf_level)
        frame.insert(0, "term", labels)
        return Estimates(frame, conf_level, draws=draws)

    est = estimates.estimate @ W + const
    J = W.T @ estimates.jacobian
    frame = _summarize_delta(est, J, estimates.vcov, conf_level)
    frame.insert(0, "term", labels)
    return Estimates(frame, conf_level, jacobian=J, vcov=estimates.vcov)
