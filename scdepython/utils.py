"""
Utility functions for scdePython.

Discrete-grid statistics shared by the posterior engine and the tester:
log-space normalisation, highest-density intervals, conservative
estimates, deterministic per-gene random streams and work chunking.
"""

import numpy as np
from scipy.special import logsumexp


LN10 = np.log(10.0)
LOG2_10 = np.log2(10.0)


def normalize_log_weights(log_w):
    """Normalise log-weights to a probability vector.

    Returns ``None`` when every entry is -inf or non-finite, so callers
    can fall back explicitly instead of propagating NaN.
    """
    log_w = np.asarray(log_w, dtype=np.float64)
    finite = np.isfinite(log_w)
    if not finite.any():
        return None
    log_w = np.where(finite, log_w, -np.inf)
    total = logsumexp(log_w)
    if not np.isfinite(total):
        return None
    w = np.exp(log_w - total)
    s = w.sum()
    if not (s > 0 and np.isfinite(s)):
        return None
    return w / s


def normalize_weights(w):
    """Clip to non-negative and normalise a weight vector."""
    w = np.clip(np.asarray(w, dtype=np.float64), 0.0, None)
    s = w.sum()
    if not (s > 0 and np.isfinite(s)):
        raise FloatingPointError("Weights sum to zero or a non-finite value")
    return w / s


def hdi(values, weights, mass=0.95):
    """Highest-density interval of a discrete distribution on a sorted grid.

    Finds the narrowest contiguous run of grid points whose cumulative
    weight is at least ``mass``. Ties are broken towards the run with
    the larger weight, then the leftmost run.

    Returns
    -------
    tuple of (lower, upper) grid values.
    """
    values = np.asarray(values, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)
    n = len(values)
    cum = np.concatenate([[0.0], np.cumsum(weights)])
    target = mass * cum[-1] - 1e-12
    best = (0, n - 1)
    best_width = np.inf
    best_mass = -np.inf
    j = 0
    for i in range(n):
        if j < i:
            j = i
        while j < n and cum[j + 1] - cum[i] < target:
            j += 1
        if j >= n:
            break
        width = values[j] - values[i]
        m = cum[j + 1] - cum[i]
        if width < best_width - 1e-12 or (abs(width - best_width) <= 1e-12 and m > best_mass):
            best = (i, j)
            best_width = width
            best_mass = m
    return values[best[0]], values[best[1]]


def conservative_estimate(lower, upper):
    """Bound closest to zero, or 0 when the interval covers zero."""
    if lower <= 0.0 <= upper:
        return 0.0
    return lower if lower > 0 else upper


def posterior_mode(values, weights):
    """Grid value carrying the largest weight (first on ties)."""
    return float(values[int(np.argmax(weights))])


def posterior_mean(values, weights):
    """Weighted mean of a discrete distribution."""
    return float(np.dot(values, weights) / np.sum(weights))


def gene_rng(seed, gene_index, stream=0):
    """Random generator for one gene, derived from the run seed.

    The stream depends only on ``(seed, gene_index, stream)``, so results
    do not depend on which worker processes a gene or in which order.
    """
    entropy = [int(seed), int(gene_index), int(stream)]
    return np.random.Generator(np.random.PCG64(np.random.SeedSequence(entropy)))


def chunk_indices(n, chunk_size):
    """Split ``range(n)`` into consecutive index arrays."""
    return [np.arange(s, min(s + chunk_size, n)) for s in range(0, n, chunk_size)]


def mad(x):
    """Median absolute deviation, scaled to the normal standard deviation."""
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return np.nan
    return 1.4826 * np.median(np.abs(x - np.median(x)))


def tukey_biweight(u, c=4.685):
    """Tukey biweight weights for standardised residuals ``u``."""
    u = np.asarray(u, dtype=np.float64) / c
    w = (1.0 - u ** 2) ** 2
    return np.where(np.abs(u) < 1.0, w, 0.0)
