"""
NB + Poisson mixture likelihood kernels.

An observed count ``y`` in a cell with error model
``(corr_intercept, corr_slope, conc_intercept, conc_slope, phi, r)`` at
true expression ``E`` has likelihood

    pi(E) * NB(y; mu(E), 1/phi) + (1 - pi(E)) * Poisson(y; r)

with ``log mu(E) = corr_intercept + corr_slope * log E`` and
``logit pi(E) = conc_intercept + conc_slope * log E``.
"""

import math

import numpy as np
from numba import njit


@njit(cache=True)
def _nb_logpmf(y, mu, size):
    """NB log-PMF parameterised by mean and size."""
    return (math.lgamma(y + size) - math.lgamma(y + 1.0) - math.lgamma(size)
            + size * math.log(size / (size + mu)) + y * math.log(mu / (size + mu)))


@njit(cache=True)
def _poisson_logpmf(y, rate):
    return y * math.log(rate) - rate - math.lgamma(y + 1.0)


@njit(cache=True)
def _log_sigmoid(eta):
    """log(1 / (1 + exp(-eta))) without overflow."""
    if eta >= 0:
        return -math.log1p(math.exp(-eta))
    return eta - math.log1p(math.exp(eta))


@njit(cache=True)
def _logaddexp(a, b):
    if a == -math.inf:
        return b
    if b == -math.inf:
        return a
    if a > b:
        return a + math.log1p(math.exp(b - a))
    return b + math.log1p(math.exp(a - b))


@njit(cache=True)
def _mixture_loglik_kernel(y, corr_a, corr_b, conc_a, conc_b, phi, fail_r, log_e, out):
    """Fill ``out[c, i]`` with the log-likelihood of ``y[c]`` at ``log_e[i]``."""
    ncell = y.shape[0]
    ngrid = log_e.shape[0]
    for c in range(ncell):
        size = 1.0 / phi[c]
        lp_fail = _poisson_logpmf(y[c], fail_r[c])
        for i in range(ngrid):
            le = log_e[i]
            log_mu = corr_a[c] + corr_b[c] * le
            if log_mu > 700.0:
                log_mu = 700.0
            mu = math.exp(log_mu)
            if mu < 1e-300:
                mu = 1e-300
            eta = conc_a[c] + conc_b[c] * le
            l1 = _log_sigmoid(eta) + _nb_logpmf(y[c], mu, size)
            l2 = _log_sigmoid(-eta) + lp_fail
            out[c, i] = _logaddexp(l1, l2)


@njit(cache=True)
def _component_logliks_kernel(y, log_e, corr_a, corr_b, conc_a, conc_b, phi, fail_r,
                              l_nb, l_fail):
    """Per-observation component log-densities (mixing weight included)."""
    size = 1.0 / phi
    for g in range(y.shape[0]):
        log_mu = corr_a + corr_b * log_e[g]
        if log_mu > 700.0:
            log_mu = 700.0
        mu = math.exp(log_mu)
        if mu < 1e-300:
            mu = 1e-300
        eta = conc_a + conc_b * log_e[g]
        l_nb[g] = _log_sigmoid(eta) + _nb_logpmf(y[g], mu, size)
        l_fail[g] = _log_sigmoid(-eta) + _poisson_logpmf(y[g], fail_r)


def mixture_loglik_matrix(y, params, log_e):
    """Log-likelihood of each cell's count over the magnitude grid.

    Parameters
    ----------
    y : ndarray of shape (ncell,)
        Observed counts of one gene.
    params : dict of ndarray
        ``corr_intercept``, ``corr_slope``, ``conc_intercept``,
        ``conc_slope``, ``nb_overdispersion``, ``poisson_fail_rate``,
        each of shape (ncell,).
    log_e : ndarray of shape (ngrid,)
        Natural-log expression magnitude at each grid point.

    Returns
    -------
    ndarray of shape (ncell, ngrid)
    """
    y = np.ascontiguousarray(y, dtype=np.float64)
    log_e = np.ascontiguousarray(log_e, dtype=np.float64)
    out = np.empty((y.shape[0], log_e.shape[0]), dtype=np.float64)
    _mixture_loglik_kernel(
        y,
        np.ascontiguousarray(params['corr_intercept'], dtype=np.float64),
        np.ascontiguousarray(params['corr_slope'], dtype=np.float64),
        np.ascontiguousarray(params['conc_intercept'], dtype=np.float64),
        np.ascontiguousarray(params['conc_slope'], dtype=np.float64),
        np.ascontiguousarray(params['nb_overdispersion'], dtype=np.float64),
        np.ascontiguousarray(params['poisson_fail_rate'], dtype=np.float64),
        log_e, out,
    )
    return out


def component_logliks(y, log_e, corr_a, corr_b, conc_a, conc_b, phi, fail_r):
    """Weighted NB and Poisson log-densities for one cell's observations."""
    y = np.ascontiguousarray(y, dtype=np.float64)
    log_e = np.ascontiguousarray(log_e, dtype=np.float64)
    l_nb = np.empty_like(y)
    l_fail = np.empty_like(y)
    _component_logliks_kernel(y, log_e, float(corr_a), float(corr_b), float(conc_a),
                              float(conc_b), float(phi), float(fail_r), l_nb, l_fail)
    return l_nb, l_fail
