"""
Posterior engine.

Per-cell, joint (per-group) and fold-change posteriors over the shared
magnitude grid. Everything is computed from the per-cell log-likelihood
matrix of one gene; the prior is passed explicitly to every call.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass

import numpy as np
from numba import njit
from scipy.signal import fftconvolve

from .errors import NumericUnderflowWarning
from .likelihood import mixture_loglik_matrix
from .utils import (LOG2_10, normalize_log_weights, normalize_weights, hdi,
                    conservative_estimate, posterior_mode, posterior_mean)


_LOG_FLOOR = -1e30


@dataclass(frozen=True, eq=False)
class CellPosterior:
    """Posterior of one gene's magnitude in one cell."""

    gene: str
    cell: str
    weights: np.ndarray
    prior_only: bool = False


@dataclass(frozen=True, eq=False)
class GroupPosterior:
    """Joint posterior of one gene's magnitude across a group of cells."""

    gene: str
    cells: tuple
    weights: np.ndarray
    n_prior_only: int = 0


@dataclass(frozen=True, eq=False)
class FoldChangePosterior:
    """Posterior over log2 expression ratios (first group / second group).

    ``mle`` is the mode, ``lower_bound``/``upper_bound`` the highest
    density interval and ``conservative_estimate`` the bound closest to
    zero (0 when the interval covers zero).
    """

    gene: str
    log2_ratios: np.ndarray
    weights: np.ndarray
    mle: float
    lower_bound: float
    upper_bound: float
    conservative_estimate: float
    mean: float
    batch_adjusted: bool = False

    @classmethod
    def from_weights(cls, gene, log2_ratios, weights, mass=0.95, batch_adjusted=False,
                     mode_weights=None):
        """Summarise ``weights``; ``mode_weights`` (if given) locates the mode."""
        weights = normalize_weights(weights)
        mode_weights = weights if mode_weights is None else mode_weights
        lb, ub = hdi(log2_ratios, weights, mass)
        return cls(
            gene=gene,
            log2_ratios=log2_ratios,
            weights=weights,
            mle=posterior_mode(log2_ratios, mode_weights),
            lower_bound=float(lb),
            upper_bound=float(ub),
            conservative_estimate=float(conservative_estimate(lb, ub)),
            mean=posterior_mean(log2_ratios, weights),
            batch_adjusted=batch_adjusted,
        )


# ---------------------------------------------------------------------------
# Kernels
# ---------------------------------------------------------------------------

@njit(cache=True)
def _accumulate_log_posterior(loglik, log_prior, out):
    """Add each cell's log-likelihood to ``log_prior``, renormalising each time.

    Rows without a finite entry are skipped. Returns the number of
    skipped rows.
    """
    ngrid = log_prior.shape[0]
    for i in range(ngrid):
        out[i] = log_prior[i]
    skipped = 0
    for c in range(loglik.shape[0]):
        has_finite = False
        for i in range(ngrid):
            if math.isfinite(loglik[c, i]):
                has_finite = True
                break
        if not has_finite:
            skipped += 1
            continue
        m = -math.inf
        for i in range(ngrid):
            v = loglik[c, i]
            if not math.isfinite(v):
                v = -math.inf
            out[i] += v
            if out[i] > m:
                m = out[i]
        if m == -math.inf:
            return -1
        s = 0.0
        for i in range(ngrid):
            s += math.exp(out[i] - m)
        lse = m + math.log(s)
        for i in range(ngrid):
            out[i] -= lse
    return skipped


def ratio_grid(prior):
    """Log2 ratio value of every lag between two magnitude grids."""
    n = len(prior)
    return np.arange(-(n - 1), n) * prior.step * LOG2_10


def fold_change_weights(weights_a, weights_b):
    """Distribution of the magnitude difference A - B (cross-correlation)."""
    return normalize_weights(np.correlate(weights_a, weights_b, mode='full'))


def fold_change_weights_batch(weights_a, weights_b):
    """Row-wise cross-correlation of stacked posteriors via FFT."""
    out = fftconvolve(weights_a, weights_b[:, ::-1], mode='full', axes=1)
    out = np.clip(out, 0.0, None)
    return out / out.sum(axis=1, keepdims=True)


def _center_on_mode(weights):
    """Shift a fold-change distribution so that its mode sits at zero lag."""
    n = len(weights)
    center = (n - 1) // 2
    shift = center - int(np.argmax(weights))
    out = np.zeros_like(weights)
    if shift >= 0:
        out[shift:] = weights[:n - shift]
    else:
        out[:n + shift] = weights[-shift:]
    return normalize_weights(out)


def widen(weights, kernel):
    """Convolve fold-change weights with a zero-centred kernel, same length."""
    n = len(weights)
    center = (len(kernel) - 1) // 2
    full = np.convolve(weights, kernel, mode='full')
    return normalize_weights(full[center:center + n])


# ---------------------------------------------------------------------------
# Log-likelihood and joint posteriors
# ---------------------------------------------------------------------------

def cell_log_likelihoods(y, params, prior):
    """Log-likelihood matrix (cells x grid) for one gene's counts."""
    return mixture_loglik_matrix(y, params, prior.log_expression)


def sanitize_log_likelihoods(loglik):
    """Make a log-likelihood matrix safe for row sums.

    Cells whose likelihood underflows everywhere contribute a flat row
    (their posterior is the prior); remaining -inf entries are floored.

    Returns
    -------
    tuple of (matrix, boolean mask of prior-only rows)
    """
    if np.isnan(loglik).any():
        raise FloatingPointError("NaN in cell log-likelihoods")
    finite = np.isfinite(loglik)
    prior_only = ~finite.any(axis=1)
    out = np.where(finite, loglik, _LOG_FLOOR)
    out[prior_only] = 0.0
    return out, prior_only


def joint_log_posterior(loglik, log_prior):
    """Normalised joint log-posterior of a set of cells.

    Returns
    -------
    tuple of (log-posterior or None on total underflow, skipped cell count)
    """
    out = np.empty(len(log_prior), dtype=np.float64)
    skipped = _accumulate_log_posterior(np.ascontiguousarray(loglik, dtype=np.float64),
                                        np.ascontiguousarray(log_prior, dtype=np.float64), out)
    if skipped < 0:
        return None, loglik.shape[0]
    return out, skipped


def joint_weights_batch(loglik, indicators, log_prior):
    """Joint posteriors of many cell subsets at once.

    Parameters
    ----------
    loglik : ndarray (ncell, ngrid)
        Sanitised log-likelihoods.
    indicators : ndarray (nsets, ncell)
        1 where a cell belongs to the subset.

    Returns
    -------
    ndarray (nsets, ngrid) of normalised weights.
    """
    lp = indicators.astype(np.float64) @ loglik + log_prior[None, :]
    lp -= lp.max(axis=1, keepdims=True)
    w = np.exp(lp)
    return w / w.sum(axis=1, keepdims=True)


def _gene_counts(data, gene, cells):
    g = data.gene_index(gene)
    cols = data.cell_indices(cells)
    return data['genes'][g], data['cells'][cols], data['counts'][g, cols]


def cell_posterior(gene, cell, models, prior, data):
    """Posterior of a gene's magnitude in one cell.

    Parameters
    ----------
    gene : str or int
    cell : str or int
    models : ErrorModelTable
    prior : ExpressionPrior
    data : CountData

    Returns
    -------
    CellPosterior
        Normalised weights over the grid. When the likelihood underflows
        everywhere the prior is returned with ``prior_only=True`` and a
        ``NumericUnderflowWarning`` is issued.
    """
    gene_name, cells, y = _gene_counts(data, gene, [cell])
    params = models.params(cells)
    loglik = cell_log_likelihoods(y, params, prior)[0]
    w = normalize_log_weights(prior.log_weights + loglik)
    if w is None:
        warnings.warn(f"Likelihood underflow for gene {gene_name} in cell {cells[0]}; "
                      f"using the prior.", NumericUnderflowWarning, stacklevel=2)
        return CellPosterior(gene_name, cells[0], np.array(prior.weights), prior_only=True)
    return CellPosterior(gene_name, cells[0], w)


def _joint_from_loglik(gene_name, cells, loglik, prior):
    log_post, skipped = joint_log_posterior(loglik, prior.log_weights)
    w = None if log_post is None else normalize_log_weights(log_post)
    if w is None:
        warnings.warn(f"Joint posterior underflow for gene {gene_name}; using the prior.",
                      NumericUnderflowWarning, stacklevel=3)
        return GroupPosterior(gene_name, tuple(cells), np.array(prior.weights), len(cells))
    if skipped:
        warnings.warn(f"{skipped} cells contributed only the prior for gene {gene_name}.",
                      NumericUnderflowWarning, stacklevel=3)
    return GroupPosterior(gene_name, tuple(cells), w, skipped)


def group_posterior(gene, cells, models, prior, data):
    """Joint posterior of a gene's magnitude across ``cells``.

    Cells are conditionally independent given the magnitude: the prior
    enters once and each cell's likelihood is multiplied in, with the
    running log-posterior renormalised after every cell. A single cell
    gives back ``cell_posterior``.

    Returns
    -------
    GroupPosterior
    """
    gene_name, cell_names, y = _gene_counts(data, gene, cells)
    if len(cell_names) == 0:
        raise ValueError("group_posterior needs at least one cell")
    loglik = cell_log_likelihoods(y, models.params(cell_names), prior)
    return _joint_from_loglik(gene_name, cell_names, loglik, prior)


# ---------------------------------------------------------------------------
# Fold change
# ---------------------------------------------------------------------------

def batch_level_codes(batch):
    """Integer code per cell; missing labels form their own level."""
    labels = ['' if b is None else str(b) for b in batch]
    levels = sorted(set(labels))
    lookup = {lv: k for k, lv in enumerate(levels)}
    return np.array([lookup[lv] for lv in labels], dtype=np.intp)


def batch_adjusted_weights(loglik, log_prior, in_a, codes, return_mixture=False):
    """Batch-marginalised fold-change weights for one labelling.

    Parameters
    ----------
    loglik : ndarray (ncell, ngrid)
        Sanitised log-likelihoods of the cells of both groups.
    in_a : ndarray of bool (ncell,)
        True for first-group cells, False for second-group cells.
    codes : ndarray of int (ncell,)
        Batch level code per cell.

    Within each level holding cells of both groups a fold-change
    posterior is formed; these are mixed with weights proportional to
    the level's effective size ``nA*nB/(nA+nB)``. The mixture is then
    convolved with the zero-centred batch-composition posterior: the
    ratio expected if each group's expression were explained only by
    its batch composition (each level's pooled joint posterior, mixed by
    the group's level fractions). The convolution widens the interval but
    can move the mode of a flat mixture, even across zero, so the mode is
    read from the mixture: with ``return_mixture`` the pre-widening
    mixture is returned as well.
    """
    in_a = np.asarray(in_a, dtype=bool)
    levels = np.unique(codes)
    n_a = in_a.sum()
    n_b = (~in_a).sum()
    mix = None
    total = 0.0
    comp_a = np.zeros(loglik.shape[1])
    comp_b = np.zeros(loglik.shape[1])
    for lv in levels:
        at = codes == lv
        a_l = at & in_a
        b_l = at & ~in_a
        na, nb = a_l.sum(), b_l.sum()
        pooled = joint_weights_batch(loglik, at[None, :], log_prior)[0]
        comp_a += (na / n_a) * pooled
        comp_b += (nb / n_b) * pooled
        if na == 0 or nb == 0:
            continue
        ind = np.vstack([a_l, b_l])
        wa, wb = joint_weights_batch(loglik, ind, log_prior)
        eff = na * nb / (na + nb)
        phi = fold_change_weights(wa, wb)
        mix = eff * phi if mix is None else mix + eff * phi
        total += eff
    if mix is None:
        wa, wb = joint_weights_batch(loglik, np.vstack([in_a, ~in_a]), log_prior)
        mix = fold_change_weights(wa, wb)
    else:
        mix = mix / total
    composition = _center_on_mode(fold_change_weights(comp_a, comp_b))
    widened = widen(mix, composition)
    if return_mixture:
        return widened, mix
    return widened


def batch_adjusted_weights_batch(loglik, log_prior, labels, codes, return_mixture=False):
    """``batch_adjusted_weights`` for many labellings sharing level sizes.

    Every row of ``labels`` must put the same number of first-group cells
    in each batch level (as stratified relabelings do), so the level
    weights and the batch-composition kernel are common to all rows.
    """
    labels = np.asarray(labels, dtype=bool)
    first = labels[0]
    levels = np.unique(codes)
    n_a = first.sum()
    n_b = (~first).sum()
    nrow, ngrid = labels.shape[0], loglik.shape[1]
    comp_a = np.zeros(ngrid)
    comp_b = np.zeros(ngrid)
    mix = np.zeros((nrow, 2 * ngrid - 1))
    total = 0.0
    for lv in levels:
        at = codes == lv
        na = first[at].sum()
        nb = at.sum() - na
        if np.any(labels[:, at].sum(axis=1) != na):
            raise ValueError("Relabelings must preserve per-level group sizes")
        pooled = joint_weights_batch(loglik, at[None, :], log_prior)[0]
        comp_a += (na / n_a) * pooled
        comp_b += (nb / n_b) * pooled
        if na == 0 or nb == 0:
            continue
        sub = loglik[at]
        wa = joint_weights_batch(sub, labels[:, at], log_prior)
        wb = joint_weights_batch(sub, ~labels[:, at], log_prior)
        eff = na * nb / (na + nb)
        mix += eff * fold_change_weights_batch(wa, wb)
        total += eff
    if total == 0:
        wa = joint_weights_batch(loglik, labels, log_prior)
        wb = joint_weights_batch(loglik, ~labels, log_prior)
        mix = fold_change_weights_batch(wa, wb)
    else:
        mix /= total
    composition = _center_on_mode(fold_change_weights(comp_a, comp_b))
    center = (len(composition) - 1) // 2
    full = fftconvolve(mix, composition[None, :], mode='full', axes=1)
    out = np.clip(full[:, center:center + mix.shape[1]], 0.0, None)
    out /= out.sum(axis=1, keepdims=True)
    if return_mixture:
        return out, mix
    return out


def fold_change_posterior(gene, cells_a, cells_b, models, prior, data, batch=None, mass=0.95):
    """Posterior of log2(expression in A / expression in B) for one gene.

    Parameters
    ----------
    gene : str or int
    cells_a, cells_b : sequence
        Cells of the two groups.
    models : ErrorModelTable
    prior : ExpressionPrior
    data : CountData
    batch : array-like, optional
        Batch label per cell of ``data``; when given the posterior is
        batch-marginalised (see ``batch_adjusted_weights``).
    mass : float
        Credible interval mass.

    Returns
    -------
    FoldChangePosterior
    """
    gene_name, names_a, y_a = _gene_counts(data, gene, cells_a)
    _, names_b, y_b = _gene_counts(data, gene, cells_b)
    if len(names_a) == 0 or len(names_b) == 0:
        raise ValueError("Both groups need at least one cell")
    ratios = ratio_grid(prior)
    if batch is None:
        wa = group_posterior(gene, names_a, models, prior, data).weights
        wb = group_posterior(gene, names_b, models, prior, data).weights
        return FoldChangePosterior.from_weights(gene_name, ratios, fold_change_weights(wa, wb), mass)

    batch = np.asarray(batch, dtype=object)
    if len(batch) != data.ncol:
        raise ValueError("Length of batch should equal the number of cells.")
    cells = np.concatenate([names_a, names_b])
    y = np.concatenate([y_a, y_b])
    loglik, _ = sanitize_log_likelihoods(cell_log_likelihoods(y, models.params(cells), prior))
    in_a = np.arange(len(cells)) < len(names_a)
    codes = batch_level_codes(batch[data.cell_indices(cells)])
    w, mix = batch_adjusted_weights(loglik, prior.log_weights, in_a, codes, return_mixture=True)
    return FoldChangePosterior.from_weights(gene_name, ratios, w, mass, batch_adjusted=True,
                                            mode_weights=mix)
