"""
Robust gene selection for error model fitting.

A gene is robust for a fitting group when it is detected in a majority
of the group's cells after extreme-coverage cells are set aside. The
cross-cell comparisons of the error model fit are restricted to these
genes.
"""

import numpy as np

from .config import AnalysisConfig
from .counts import group_levels
from .errors import InsufficientRobustGenesError
from .utils import mad


POOLED = '__all__'


def fitting_plan(groups, n_cells, mode='per_group'):
    """Decide which cells are fitted against which peers.

    Parameters
    ----------
    groups : ndarray of object or None
        Group label per cell (None = unassigned).
    n_cells : int
    mode : str
        ``'per_group'`` or ``'pooled'``.

    Returns
    -------
    list of (label, members, peers)
        ``members`` are the cells whose models are fitted within this
        entry, ``peers`` the cells they are compared against. Without
        labels, or in pooled mode, there is one entry holding all cells.
        Unassigned cells are fitted against all cells.
    """
    n = n_cells
    if groups is None or mode == 'pooled':
        return [(POOLED, np.arange(n), np.arange(n))]

    groups = np.asarray(groups, dtype=object)
    levels = group_levels(groups)
    if not levels:
        return [(POOLED, np.arange(n), np.arange(n))]
    plan = []
    for level in levels:
        members = np.where(groups == level)[0]
        plan.append((level, members, members))
    unassigned = np.array([k for k in range(n) if groups[k] is None], dtype=np.intp)
    if len(unassigned):
        plan.append((POOLED, unassigned, np.arange(n)))
    return plan


def detection_mask(counts, config):
    """Boolean matrix of detected (non-failed) observations."""
    threshold = config.detection_threshold if config.threshold_segmentation else 0.0
    return counts > threshold


def outlier_scores(counts):
    """Robust z-scores of each cell's log total count within ``counts``."""
    total = np.log(np.maximum(counts.sum(axis=0), 1.0))
    scale = mad(total)
    if not scale > 0:
        return np.zeros(counts.shape[1])
    return (total - np.median(total)) / scale


def select_robust_genes_for_cells(counts, label='', config=None, **kwargs):
    """Robust gene indices for one set of cells.

    Parameters
    ----------
    counts : ndarray
        Counts of the group's cells (genes x cells).
    label : str
        Group name used in error messages.
    config : AnalysisConfig, optional

    Returns
    -------
    ndarray of int
        Sorted gene indices.

    Raises
    ------
    InsufficientRobustGenesError
        When fewer than ``min_robust_genes`` genes qualify.
    """
    config = AnalysisConfig.from_kwargs(config, **kwargs)
    counts = np.asarray(counts, dtype=np.float64)
    z = outlier_scores(counts)
    keep = np.abs(z) <= config.outlier_mad
    if keep.sum() < 2:
        keep = np.ones(counts.shape[1], dtype=bool)
    detected = detection_mask(counts[:, keep], config)
    frac = detected.mean(axis=1)
    robust = np.where(frac >= config.min_detection_fraction)[0]
    if len(robust) < config.min_robust_genes:
        raise InsufficientRobustGenesError(label, len(robust), config.min_robust_genes)
    return robust


def select_robust_genes(data, config=None, **kwargs):
    """Robust gene indices per fitting group.

    Parameters
    ----------
    data : CountData
    config : AnalysisConfig, optional
        ``groups`` selects per-group or pooled fitting.

    Returns
    -------
    dict
        Fitting-group label -> sorted ndarray of gene indices.
    """
    config = AnalysisConfig.from_kwargs(config, **kwargs)
    counts = data['counts']
    out = {}
    for label, _, peers in fitting_plan(data.get('groups'), counts.shape[1], config.groups):
        out[label] = select_robust_genes_for_cells(counts[:, peers], label, config)
    return out
