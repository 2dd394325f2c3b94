"""
Why p-values are uniform under the null

If a test statistic T has a continuous null distribution with CDF F, the
p-value is a transform of T through its own CDF, p = 1 - F(T) (or the
two-sided version 2 * (1 - F(|T|))). By the probability integral
transform, F(T) ~ U(0, 1) when H0 is true, so P(p <= alpha) = alpha for
every alpha. Under an alternative the statistic is shifted and the
p-values pile up near zero instead.
"""

import numpy as np
from scipy import stats

from .utils import make_rng


def simulate_pvalues(n_sims=10_000, n_per_group=30, effect_size=0.0, sd=1.0,
                     seed=None, rng=None):
    """
    Repeated two-sample t-tests on simulated normal data.

    Parameters
    ----------
    n_sims : int
        Number of simulated experiments.
    n_per_group : int
        Sample size in each of the two groups.
    effect_size : float
        True mean difference between groups (0 = null is true).
    sd : float
        Common standard deviation.
    seed : int or None
    rng : numpy.random.Generator or None

    Returns
    -------
    dict with keys:
        p_values : ndarray, shape (n_sims,)
        t_stats  : ndarray, shape (n_sims,)
        df       : degrees of freedom of the pooled t-test
    """
    if n_sims <= 0:
        raise ValueError(f"n_sims must be positive, got {n_sims}")
    if n_per_group < 2:
        raise ValueError(f"n_per_group must be at least 2, got {n_per_group}")
    if sd <= 0:
        raise ValueError(f"sd must be positive, got {sd}")

    rng = make_rng(seed, rng)
    a = rng.normal(0, sd, (n_sims, n_per_group))
    b = rng.normal(effect_size, sd, (n_sims, n_per_group))
    res = stats.ttest_ind(b, a, axis=1)
    return dict(
        p_values=np.asarray(res.pvalue),
        t_stats=np.asarray(res.statistic),
        df=2 * n_per_group - 2,
    )


def null_statistic_pvalues(t_stats, df, alternative="two-sided"):
    """
    Turn t statistics into p-values through the null CDF.

    This is the probability integral transform written out by hand; it
    reproduces the p-values returned by ``scipy.stats.ttest_ind``.
    """
    t_stats = np.asarray(t_stats, dtype=float)
    if alternative == "two-sided":
        return 2 * stats.t.sf(np.abs(t_stats), df)
    if alternative == "greater":
        return stats.t.sf(t_stats, df)
    if alternative == "less":
        return stats.t.cdf(t_stats, df)
    raise ValueError(f"Unknown alternative: {alternative!r}")


def uniformity_test(p_values):
    """
    Kolmogorov-Smirnov test of p-values against U(0, 1).

    Returns
    -------
    dict with keys: statistic, p_value
    """
    res = stats.kstest(np.asarray(p_values), "uniform")
    return dict(statistic=res.statistic, p_value=res.pvalue)


def pvalue_histogram(p_values, n_bins=20):
    """
    Histogram of p-values on [0, 1] with the count expected under H0.

    Returns
    -------
    dict with keys:
        counts   : ndarray, shape (n_bins,)
        edges    : ndarray, shape (n_bins + 1,)
        expected : count per bin if p ~ U(0, 1)
    """
    p_values = np.asarray(p_values)
    counts, edges = np.histogram(p_values, bins=n_bins, range=(0, 1))
    return dict(counts=counts, edges=edges, expected=len(p_values) / n_bins)


def rejection_rate(p_values, alpha=0.05):
    """
    Share of p-values at or below alpha.

    Under H0 this is the type I error rate (about alpha); under an
    alternative it estimates power.
    """
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must lie in (0, 1), got {alpha}")
    return float(np.mean(np.asarray(p_values) <= alpha))


def ecdf(p_values, grid=None):
    """
    Empirical CDF of the p-values evaluated on a grid.

    Under H0 the curve lies on the diagonal F(x) = x.

    Returns
    -------
    grid : ndarray
    F : ndarray
    """
    if grid is None:
        grid = np.linspace(0, 1, 101)
    p_sorted = np.sort(np.asarray(p_values))
    F = np.searchsorted(p_sorted, grid, side="right") / len(p_sorted)
    return grid, F
