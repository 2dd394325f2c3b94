"""
Why Are p-Values Uniformly Distributed Under the Null?
=======================================================

A visual walk-through: simulate thousands of two-sample t-tests where the
null hypothesis is true, look at the distribution of the resulting
p-values, then repeat with a real effect and watch them pile up near zero.

Uses the statblog.pvalues module for the computations.
"""

import argparse
import os
import sys
from pathlib import Path

import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from scipy import stats

# Add project root to path so the statblog package is importable
PROJECT_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(PROJECT_ROOT))

from statblog import pvalues as m_pv

# -- Style --
plt.rcParams.update({
    "figure.facecolor": "#FAFAFA", "axes.facecolor": "#FAFAFA",
    "axes.edgecolor": "#333", "axes.labelcolor": "#222",
    "xtick.color": "#555", "ytick.color": "#555", "text.color": "#222",
    "font.size": 10, "axes.titlesize": 12, "axes.titleweight": "bold",
    "axes.grid": True, "grid.alpha": 0.25, "grid.color": "#AAA", "figure.dpi": 140,
})
CB, CO, CG, CR, CY = "#2171B5", "#E6550D", "#31A354", "#DE2D26", "#888"

INTRO_TEXT = """\
The claim
If the null hypothesis is true and the test statistic is continuous, the
p-value is uniformly distributed on [0, 1]. A p-value of 0.01 is exactly
as likely as a p-value of 0.73.

Why
Let T be the test statistic and F its CDF under H0. A one-sided p-value
is p = 1 - F(T). For any u in [0, 1]:

  P(p <= u) = P(F(T) >= 1 - u) = 1 - (1 - u) = u

because F(T) ~ U(0, 1) (the probability integral transform). A CDF of
P(p <= u) = u is the definition of the uniform distribution. The
two-sided version 2 * (1 - F(|T|)) works the same way for a symmetric
null distribution.

Consequence
"Reject when p <= 0.05" rejects a true null 5% of the time. That is all
the significance level promises.
"""


def savefig(fig, outdir, name):
    fig.savefig(os.path.join(outdir, name), bbox_inches="tight", dpi=150)
    plt.close(fig)


def plot_pvalues(null, alt, outdir, alpha=0.05):
    """Three panels: null histogram, alternative histogram, ECDFs."""
    fig, axes = plt.subplots(1, 3, figsize=(15, 4.5))

    ax = axes[0]
    h = m_pv.pvalue_histogram(null["p_values"])
    ax.hist(null["p_values"], bins=h["edges"], color=CB, alpha=.7,
            edgecolor="white")
    ax.axhline(h["expected"], color=CR, ls="--", lw=2, label="Expected under H0")
    ax.set_xlabel("p-value"); ax.set_ylabel("Count")
    ax.set_title("A) H0 true: flat"); ax.legend(fontsize=8)

    ax = axes[1]
    h_alt = m_pv.pvalue_histogram(alt["p_values"])
    ax.hist(alt["p_values"], bins=h_alt["edges"], color=CO, alpha=.7,
            edgecolor="white")
    ax.axvline(alpha, color=CR, ls=":", lw=2, label=f"alpha = {alpha}")
    ax.set_xlabel("p-value"); ax.set_ylabel("Count")
    ax.set_title("B) H1 true: piles up near 0"); ax.legend(fontsize=8)

    ax = axes[2]
    grid, F_null = m_pv.ecdf(null["p_values"])
    _, F_alt = m_pv.ecdf(alt["p_values"], grid)
    ax.plot(grid, grid, color=CY, lw=1.5, ls="--", label="U(0, 1)")
    ax.plot(grid, F_null, color=CB, lw=2.5, label="H0 true")
    ax.plot(grid, F_alt, color=CO, lw=2.5, ls="-.", label="H1 true")
    ax.set_xlabel("u"); ax.set_ylabel("P(p <= u)")
    ax.set_title("C) Empirical CDF of p"); ax.legend(fontsize=8)

    fig.suptitle("p-values under the null and under an alternative",
                 fontsize=14, y=1.03)
    fig.tight_layout()
    savefig(fig, outdir, "fig_pvalue_histograms.png")


def plot_transform(null, outdir):
    """Statistic -> CDF -> p-value: the probability integral transform."""
    fig, axes = plt.subplots(1, 2, figsize=(11, 4.5))
    t, df = null["t_stats"], null["df"]

    ax = axes[0]
    tg = np.linspace(-4, 4, 300)
    ax.hist(t, bins=60, density=True, color=CB, alpha=.6, edgecolor="white")
    ax.plot(tg, stats.t.pdf(tg, df), color=CR, lw=2, label=f"t({df}) density")
    ax.set_xlabel("t statistic"); ax.set_title("A) Statistic under H0")
    ax.legend(fontsize=8)

    ax = axes[1]
    u = stats.t.cdf(t, df)
    ax.hist(u, bins=20, density=True, color=CG, alpha=.6, edgecolor="white")
    ax.axhline(1, color=CR, ls="--", lw=2)
    ax.set_xlabel("F(T)"); ax.set_title("B) F(T) is uniform")

    fig.tight_layout()
    savefig(fig, outdir, "fig_probability_integral_transform.png")


def main():
    parser = argparse.ArgumentParser(
        description="Why p-values are uniform under the null"
    )
    parser.add_argument("--n-sims", type=int, default=10_000,
                        help="Number of simulated experiments (default: 10000)")
    parser.add_argument("--n-per-group", type=int, default=30,
                        help="Sample size per group (default: 30)")
    parser.add_argument("--effect-size", type=float, default=0.5,
                        help="Mean difference under the alternative (default: 0.5)")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--outdir", default=str(Path(__file__).resolve().parent),
                        help="Where to write figures")
    parser.add_argument("--no-figures", action="store_true")
    args = parser.parse_args()

    print("=" * 60)
    print("Why p-values are uniformly distributed under H0")
    print("=" * 60)
    print()
    print(INTRO_TEXT)

    rng = np.random.default_rng(args.seed)

    # --- 1) H0 true ---
    null = m_pv.simulate_pvalues(args.n_sims, args.n_per_group,
                                 effect_size=0.0, rng=rng)
    ks = m_pv.uniformity_test(null["p_values"])
    print(f"[H0 true] {args.n_sims} t-tests, n = {args.n_per_group} per group")
    for a in (0.01, 0.05, 0.10):
        print(f"  P(p <= {a:.2f}) = {m_pv.rejection_rate(null['p_values'], a):.4f}"
              f"   (uniform: {a:.2f})")
    print(f"  KS test vs U(0,1): D = {ks['statistic']:.4f}, "
          f"p = {ks['p_value']:.3f}")

    # --- 2) p-values by hand through the null CDF ---
    by_hand = m_pv.null_statistic_pvalues(null["t_stats"], null["df"])
    max_diff = np.max(np.abs(by_hand - null["p_values"]))
    print(f"\n[Transform] 2 * (1 - F_t(|T|)) reproduces scipy's p-values: "
          f"max |diff| = {max_diff:.2e}")

    # --- 3) H1 true ---
    alt = m_pv.simulate_pvalues(args.n_sims, args.n_per_group,
                                effect_size=args.effect_size, rng=rng)
    ks_alt = m_pv.uniformity_test(alt["p_values"])
    power = m_pv.rejection_rate(alt["p_values"], 0.05)
    print(f"\n[H1 true] effect size = {args.effect_size}")
    print(f"  P(p <= 0.05) = {power:.4f}   (this is the power)")
    print(f"  KS test vs U(0,1): D = {ks_alt['statistic']:.4f}, "
          f"p = {ks_alt['p_value']:.2e}")
    print("\n  Under an alternative the statistic is shifted away from 0, so")
    print("  F(T) concentrates near 1 and p concentrates near 0.")

    if not args.no_figures:
        os.makedirs(args.outdir, exist_ok=True)
        plot_pvalues(null, alt, args.outdir)
        plot_transform(null, args.outdir)
        print(f"\nFigures written to {args.outdir}")


if __name__ == "__main__":
    main()
