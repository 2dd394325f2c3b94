"""
Simulated advice-taking data for the multilevel-model posts.

Each subject sees each item once; on some trials an advice cue is shown.
The outcome is a binary choice generated by a logistic model with crossed
random effects:

    eta = b0 + u0[subject] + w0[item] + (b1 + u1[subject]) * advice
    p   = logistic(eta)
    y   ~ Bernoulli(p)

with u0 ~ N(0, sd_u0^2), u1 ~ N(0, sd_u1^2), w0 ~ N(0, sd_w0^2), all
independent.
"""

import math

import numpy as np
import pandas as pd

from .utils import logistic, make_rng

COLUMNS = [
    "subject",
    "item",
    "advice_present",
    "subject_intercept_effect",
    "subject_slope_effect",
    "item_intercept_effect",
    "linear_predictor",
    "response_probability",
    "binary_outcome",
]

# Design used in the blog post
N_SUBJECTS = 50
N_ITEMS = 30
INTERCEPT = -0.5
ADVICE_EFFECT = 1.0
SD_SUBJECT_INTERCEPT = 0.8
SD_SUBJECT_SLOPE = 0.5
SD_ITEM_INTERCEPT = 0.6
P_ADVICE = 0.5


def _check_count(name, value):
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


def _check_sd(name, value):
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a finite non-negative number, got {value}")


def _labels(prefix, n):
    width = max(2, len(str(n)))
    return [f"{prefix}{i + 1:0{width}d}" for i in range(n)]


def simulate_advice_data(n_subjects=N_SUBJECTS, n_items=N_ITEMS,
                         intercept=INTERCEPT, advice_effect=ADVICE_EFFECT,
                         sd_subject_intercept=SD_SUBJECT_INTERCEPT,
                         sd_subject_slope=SD_SUBJECT_SLOPE,
                         sd_item_intercept=SD_ITEM_INTERCEPT,
                         p_advice=P_ADVICE, seed=None, rng=None):
    """
    Simulate one (subject, item) trial table with crossed random effects.

    Draw order is fixed (advice cue, subject intercepts, subject slopes,
    item intercepts, outcomes), so a given seed always reproduces the same
    table.

    Parameters
    ----------
    n_subjects, n_items : int
        Number of sampled subjects and stimuli.
    intercept : float
        Fixed intercept on the log-odds scale.
    advice_effect : float
        Fixed effect of the advice cue on the log-odds scale.
    sd_subject_intercept, sd_subject_slope, sd_item_intercept : float
        Standard deviations of the three random-effect distributions.
    p_advice : float
        Probability that the advice cue is present on a trial.
    seed : int or None
        Seed for a fresh generator (ignored when ``rng`` is given).
    rng : numpy.random.Generator or None
        Explicit generator to draw from.

    Returns
    -------
    pandas.DataFrame
        One row per (subject, item) with the columns in ``COLUMNS``. The
        generating values are kept in ``df.attrs["true_parameters"]``.

    Notes
    -----
    ``response_probability`` lies strictly inside (0, 1) only while the
    linear predictor stays below about 36.7. Above that float64 rounds the
    logistic transform to exactly 1.0 and every outcome is 1. Very negative
    linear predictors stay positive because ``logistic`` clips at -500.
    """
    _check_count("n_subjects", n_subjects)
    _check_count("n_items", n_items)
    for name, value in [("intercept", intercept), ("advice_effect", advice_effect)]:
        if not math.isfinite(value):
            raise ValueError(f"{name} must be finite, got {value}")
    _check_sd("sd_subject_intercept", sd_subject_intercept)
    _check_sd("sd_subject_slope", sd_subject_slope)
    _check_sd("sd_item_intercept", sd_item_intercept)
    if not 0 <= p_advice <= 1:
        raise ValueError(f"p_advice must lie in [0, 1], got {p_advice}")

    rng = make_rng(seed, rng)
    n = n_subjects * n_items

    subject_idx = np.repeat(np.arange(n_subjects), n_items)
    item_idx = np.tile(np.arange(n_items), n_subjects)

    advice = rng.binomial(1, p_advice, n)
    u0 = rng.normal(0, sd_subject_intercept, n_subjects)
    u1 = rng.normal(0, sd_subject_slope, n_subjects)
    w0 = rng.normal(0, sd_item_intercept, n_items)

    eta = (intercept + u0[subject_idx] + w0[item_idx]
           + (advice_effect + u1[subject_idx]) * advice)
    p = logistic(eta)
    y = rng.binomial(1, p)

    subjects = _labels("s", n_subjects)
    items = _labels("i", n_items)
    df = pd.DataFrame({
        "subject": pd.Categorical(np.array(subjects, dtype=object)[subject_idx],
                                  categories=subjects),
        "item": pd.Categorical(np.array(items, dtype=object)[item_idx],
                               categories=items),
        "advice_present": advice.astype(np.int64),
        "subject_intercept_effect": u0[subject_idx],
        "subject_slope_effect": u1[subject_idx],
        "item_intercept_effect": w0[item_idx],
        "linear_predictor": eta,
        "response_probability": p,
        "binary_outcome": y.astype(np.int64),
    }, columns=COLUMNS)
    df.attrs["true_parameters"] = dict(
        intercept=intercept,
        advice_effect=advice_effect,
        sd_subject_intercept=sd_subject_intercept,
        sd_subject_slope=sd_subject_slope,
        sd_item_intercept=sd_item_intercept,
        p_advice=p_advice,
    )
    return df


def empirical_outcome_rate(linear_predictor, n_draws=100_000, seed=None, rng=None):
    """
    Mean of many Bernoulli draws at one fixed linear predictor.

    By the law of large numbers this converges to ``logistic(linear_predictor)``.

    Returns
    -------
    dict with keys:
        probability : logistic(linear_predictor)
        empirical   : mean of the simulated outcomes
        mc_se       : Monte Carlo standard error of ``empirical``
    """
    if n_draws <= 0:
        raise ValueError(f"n_draws must be positive, got {n_draws}")
    rng = make_rng(seed, rng)
    p = float(logistic(linear_predictor))
    draws = rng.binomial(1, p, n_draws)
    return dict(
        probability=p,
        empirical=draws.mean(),
        mc_se=np.sqrt(p * (1 - p) / n_draws),
    )
