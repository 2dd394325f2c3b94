"""
Shared utility functions used across the blog's method modules.
"""

import numpy as np


def logistic(z):
    """Logistic (sigmoid) CDF: 1 / (1 + exp(-z))."""
    return 1 / (1 + np.exp(-np.clip(z, -500, 500)))


def logit(p):
    """Log-odds, the inverse of ``logistic``."""
    p = np.asarray(p, dtype=float)
    return np.log(p) - np.log1p(-p)


def make_rng(seed=None, rng=None):
    """
    Return the random generator a simulation should draw from.

    Parameters
    ----------
    seed : int or None
        Seed used to build a fresh generator when ``rng`` is not given.
    rng : numpy.random.Generator or None
        Generator threaded in by the caller; takes precedence over ``seed``.

    Returns
    -------
    numpy.random.Generator
    """
    if rng is not None:
        return rng
    return np.random.default_rng(seed)


def numerical_jacobian(func, params, eps=1e-7):
    """
    Forward-difference Jacobian of a vector-valued function.

    Parameters
    ----------
    func : callable
        Function params -> ndarray, shape (m,).
    params : ndarray, shape (k,)
    eps : float
        Step size.

    Returns
    -------
    J : ndarray, shape (m, k)
    """
    params = np.asarray(params, dtype=float)
    base = np.asarray(func(params), dtype=float)
    J = np.empty((base.size, params.size))
    for j in range(params.size):
        step = np.zeros_like(params)
        step[j] = eps * max(1.0, abs(params[j]))
        J[:, j] = (np.asarray(func(params + step), dtype=float) - base) / step[j]
    return J
