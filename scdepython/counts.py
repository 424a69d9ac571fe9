"""
CountData construction and validation.

The ingestion collaborator delivers a cleaned genes x cells matrix; only
shape and type checks are repeated here.
"""

import warnings

import numpy as np
import pandas as pd

from .classes import CountData


def _as_labels(x, n, name):
    """Per-cell label vector with missing values normalised to None."""
    if x is None:
        return None
    if isinstance(x, pd.Series):
        x = x.to_numpy()
    x = np.asarray(x, dtype=object)
    if x.ndim != 1 or len(x) != n:
        raise ValueError(f"Length of {name} should equal the number of cells ({n}).")
    out = np.empty(n, dtype=object)
    for k, v in enumerate(x):
        out[k] = None if v is None or (isinstance(v, float) and np.isnan(v)) else str(v)
    return out


def make_count_data(counts, groups=None, batch=None, genes=None, cells=None):
    """Construct a CountData object.

    Parameters
    ----------
    counts : array-like, DataFrame, sparse matrix or AnnData
        Count matrix (genes x cells). AnnData objects are (cells x genes)
        and are transposed.
    groups : array-like, optional
        Group label per cell; None/NaN leaves a cell unassigned.
    batch : array-like, optional
        Batch label per cell.
    genes, cells : array-like, optional
        Names. Taken from DataFrame index/columns or AnnData names when
        not given.

    Returns
    -------
    CountData
    """
    try:
        import anndata
        is_anndata = isinstance(counts, anndata.AnnData)
    except ImportError:
        is_anndata = False

    if is_anndata:
        adata = counts
        if genes is None:
            genes = np.asarray(adata.var_names)
        if cells is None:
            cells = np.asarray(adata.obs_names)
        counts = adata.X
        if hasattr(counts, 'toarray'):
            counts = counts.toarray()
        counts = np.asarray(counts, dtype=np.float64).T
    elif isinstance(counts, pd.DataFrame):
        if genes is None:
            genes = np.asarray(counts.index)
        if cells is None:
            cells = np.asarray(counts.columns)
        counts = counts.to_numpy(dtype=np.float64)
    elif hasattr(counts, 'toarray') and hasattr(counts, 'nnz'):
        shape = counts.shape
        warnings.warn(
            f"Densifying sparse matrix ({shape[0]} x {shape[1]}, "
            f"{shape[0] * shape[1] * 8 / 1e6:.0f} MB dense). "
            f"scdePython stores counts as dense arrays.",
            stacklevel=2,
        )
        counts = np.asarray(counts.toarray(), dtype=np.float64)
    else:
        counts = np.array(counts, dtype=np.float64)

    if counts.ndim != 2:
        raise ValueError("counts must be a 2D array shaped (genes, cells)")
    if counts.size == 0:
        raise ValueError("'counts' must contain at least one value")
    if np.isnan(counts).any():
        raise ValueError("NA counts not allowed")
    if not np.isfinite(counts).all():
        raise ValueError("Infinite counts not allowed")
    if counts.min() < 0:
        raise ValueError("Negative counts not allowed")
    if np.any(counts != np.round(counts)):
        raise ValueError("Counts must be integer valued")

    ngenes, ncells = counts.shape
    if ncells < 2:
        raise ValueError("There is no more than one cell in the count matrix.")

    if genes is None:
        genes = [f"Gene{i+1}" for i in range(ngenes)]
    if cells is None:
        cells = [f"Cell{i+1}" for i in range(ncells)]
    genes = np.array([str(g) for g in genes], dtype=object)
    cells = np.array([str(c) for c in cells], dtype=object)
    if len(genes) != ngenes:
        raise ValueError("Length of genes should equal the number of rows of counts.")
    if len(cells) != ncells:
        raise ValueError("Length of cells should equal the number of columns of counts.")
    if len(set(cells)) != ncells:
        raise ValueError("Cell names must be unique.")
    if len(set(genes)) != ngenes:
        raise ValueError("Gene names must be unique.")

    counts = np.ascontiguousarray(counts)
    counts.setflags(write=False)

    return CountData(
        counts=counts,
        genes=genes,
        cells=cells,
        groups=_as_labels(groups, ncells, 'groups'),
        batch=_as_labels(batch, ncells, 'batch'),
    )


def as_count_data(data, groups=None, batch=None):
    """Coerce ``data`` to CountData, overriding labels when given."""
    if not isinstance(data, CountData):
        return make_count_data(data, groups=groups, batch=batch)
    if groups is None and batch is None:
        return data
    out = CountData(data)
    n = data.ncol
    if groups is not None:
        out['groups'] = _as_labels(groups, n, 'groups')
    if batch is not None:
        out['batch'] = _as_labels(batch, n, 'batch')
    return out


def group_levels(labels):
    """Sorted distinct labels, ignoring unassigned cells."""
    if labels is None:
        return []
    return sorted({v for v in labels if v is not None})
