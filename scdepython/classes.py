"""
Core container classes for scdePython.

Dict-like containers with attribute access, subsetting and display for
count data and differential expression results. The numerical records
(error models, prior grid, posteriors) are frozen dataclasses that live
next to the code that produces them.
"""

import numpy as np
import pandas as pd
from copy import deepcopy


class _ScdeBase(dict):
    """Base class providing dict-like access, subsetting, and display."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    @property
    def shape(self):
        if 'table' in self and self['table'] is not None:
            return self['table'].shape
        if 'counts' in self:
            return self['counts'].shape
        return None

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None:
            return f"{cls} with {s[0]} rows and {s[1]} columns\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    def _copy(self):
        """Deep copy of the object."""
        return deepcopy(self)

    def head(self, n=5):
        """Show first n rows."""
        if 'table' in self:
            return self['table'].head(n)
        if 'counts' in self:
            return pd.DataFrame(self['counts'][:n], index=self['genes'][:n],
                                columns=self['cells'])
        return None

    def tail(self, n=5):
        """Show last n rows."""
        if 'table' in self:
            return self['table'].tail(n)
        if 'counts' in self:
            return pd.DataFrame(self['counts'][-n:], index=self['genes'][-n:],
                                columns=self['cells'])
        return None


def _resolve_index(idx, names):
    """Resolve index to integer array. Supports bool, int, str, slice."""
    if idx is None:
        return None
    if isinstance(idx, slice):
        return idx
    idx = np.atleast_1d(idx)
    if idx.dtype == bool:
        return np.where(idx)[0]
    if idx.dtype.kind in ('U', 'S', 'O') and names is not None:
        lookup = {name: k for k, name in enumerate(names)}
        result = []
        for name in idx:
            if name not in lookup:
                raise KeyError(f"Name '{name}' not found")
            result.append(lookup[name])
        return np.array(result, dtype=np.intp)
    return idx.astype(np.intp)


def _subset_vector(x, idx):
    if x is None or idx is None:
        return x
    return x[idx] if isinstance(idx, slice) else x[np.atleast_1d(idx)]


class CountData(_ScdeBase):
    """Cleaned single-cell count data handed to the engine.

    Attributes
    ----------
    counts : ndarray
        Read-only count matrix (genes x cells).
    genes : ndarray of str
        Gene names.
    cells : ndarray of str
        Cell names.
    groups : ndarray of object
        Group label per cell; ``None`` marks an unassigned cell.
    batch : ndarray of object or None
        Batch label per cell.
    """

    _CELL_VECTORS = ('cells', 'groups', 'batch')

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        if isinstance(key, tuple):
            if len(key) == 2:
                i, j = key
            else:
                raise IndexError("Two subscripts required")
        else:
            raise IndexError("Two subscripts required")

        i_idx = _resolve_index(i, self['genes'])
        j_idx = _resolve_index(j, self['cells'])

        out = self._copy()
        counts = out['counts']
        if i_idx is not None:
            counts = counts[i_idx] if isinstance(i_idx, slice) else counts[i_idx, :]
        if j_idx is not None:
            counts = counts[:, j_idx]
        counts = np.array(counts, dtype=np.float64)
        counts.setflags(write=False)
        out['counts'] = counts
        out['genes'] = _subset_vector(out['genes'], i_idx)
        for k in self._CELL_VECTORS:
            out[k] = _subset_vector(out.get(k), j_idx)
        return out

    @property
    def nrow(self):
        return self['counts'].shape[0]

    @property
    def ncol(self):
        return self['counts'].shape[1]

    def __len__(self):
        return self.nrow

    def gene_index(self, gene):
        """Integer row of a gene given by name or position."""
        if isinstance(gene, (int, np.integer)):
            if not 0 <= gene < self.nrow:
                raise IndexError(f"Gene index {gene} out of range")
            return int(gene)
        return int(_resolve_index(gene, self['genes'])[0])

    def cell_indices(self, cells):
        """Integer columns for cells given by name, position or mask."""
        return np.atleast_1d(_resolve_index(np.asarray(cells), self['cells']))

    def to_dataframe(self):
        """Convert counts to DataFrame."""
        return pd.DataFrame(self['counts'], index=self['genes'], columns=self['cells'])


class DifferentialExpression(_ScdeBase):
    """Results of a randomization-calibrated differential expression test.

    Attributes
    ----------
    table : DataFrame
        Indexed by gene with columns mle, lower_bound, upper_bound,
        conservative_estimate, Z, [batch_corrected_Z], error.
    comparison : list
        Two group names; fold changes are log2(first / second).
    n_randomizations : int
    seed : int
    invalid_cells : list
        Cells excluded because their error model is invalid.
    posteriors : dict or None
        Gene -> FoldChangePosterior, when requested.
    """

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        if isinstance(key, tuple):
            if len(key) == 2:
                i, j = key
            else:
                raise IndexError("Two subscripts required")
        else:
            raise IndexError("Two subscripts required (rows, columns)")

        if j is not None:
            raise IndexError("Subsetting columns not allowed for DifferentialExpression objects.")

        out = self._copy()
        i_idx = _resolve_index(i, list(out['table'].index))
        out['table'] = out['table'].iloc[i_idx]
        if out.get('posteriors') is not None:
            keep = set(out['table'].index)
            out['posteriors'] = {g: p for g, p in out['posteriors'].items() if g in keep}
        return out

    def __repr__(self):
        out = ""
        if self.get('comparison') is not None:
            out += f"Comparison of groups: {self['comparison'][0]}/{self['comparison'][1]}\n"
        if self.get('table') is not None:
            out += str(self['table'])
        return out

    @property
    def failed(self):
        """Gene names whose evaluation failed."""
        table = self['table']
        return list(table.index[table['error'].notna()])


class TopGenes(_ScdeBase):
    """Top differentially expressed genes.

    Attributes
    ----------
    table : DataFrame
        Sorted table of top genes.
    comparison : list
    sort_by : str
    """

    def __repr__(self):
        out = ""
        comp = self.get('comparison') or []
        if len(comp) >= 2:
            out += f"Comparison of groups: {comp[0]}/{comp[1]}\n"
        if 'table' in self:
            out += str(self['table'])
        return out


class GeneDifference(_ScdeBase):
    """Posteriors of a single-gene expression difference query.

    Attributes
    ----------
    gene : str
    magnitudes : ndarray
        Log10 expression-magnitude grid.
    cell_posteriors : dict
        Group -> DataFrame (grid points x cells) of per-cell posteriors.
    joint_posteriors : dict
        Group -> GroupPosterior.
    fold_change : FoldChangePosterior
    batch_adjusted : FoldChangePosterior or None
    summary : DataFrame
        One row per posterior kind with mle and credible interval.
    """

    def __repr__(self):
        out = f"Expression difference for gene {self.get('gene')}\n"
        if 'summary' in self:
            out += str(self['summary'])
        return out
