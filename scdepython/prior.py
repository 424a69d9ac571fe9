"""
Expression magnitude prior.

The prior is a discrete distribution over an equally spaced grid of log10
expression magnitudes, shared by every gene and cell of a run. Its
weights are the smoothed empirical distribution of the magnitudes implied
by inverting each valid cell's error model against its observed counts.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.ndimage import gaussian_filter1d

from .config import AnalysisConfig
from .counts import as_count_data
from .errors import DegenerateGridError
from .utils import LN10


@dataclass(frozen=True, eq=False)
class ExpressionPrior:
    """Immutable magnitude grid with prior weights.

    Attributes
    ----------
    magnitudes : ndarray
        Strictly increasing, equally spaced log10 magnitudes.
    weights : ndarray
        Non-negative prior weights summing to one.
    """

    magnitudes: np.ndarray
    weights: np.ndarray

    def __post_init__(self):
        x = np.array(self.magnitudes, dtype=np.float64)
        w = np.array(self.weights, dtype=np.float64)
        if x.ndim != 1 or x.shape != w.shape:
            raise ValueError("magnitudes and weights must be 1D arrays of equal length")
        if len(x) < 2:
            raise DegenerateGridError("The magnitude grid needs at least 2 points")
        if not np.all(np.isfinite(x)) or not np.all(np.diff(x) > 0):
            raise DegenerateGridError("The magnitude grid must be finite and strictly increasing")
        d = np.diff(x)
        if not np.allclose(d, d[0], rtol=1e-6, atol=1e-9):
            raise ValueError("The magnitude grid must be equally spaced")
        if np.any(w < 0) or not np.all(np.isfinite(w)):
            raise ValueError("Prior weights must be finite and non-negative")
        s = w.sum()
        if not s > 0:
            raise ValueError("Prior weights sum to zero")
        w = w / s
        x.setflags(write=False)
        w.setflags(write=False)
        object.__setattr__(self, 'magnitudes', x)
        object.__setattr__(self, 'weights', w)

    def __len__(self):
        return len(self.magnitudes)

    @property
    def step(self):
        return float(self.magnitudes[1] - self.magnitudes[0])

    @property
    def log_weights(self):
        with np.errstate(divide='ignore'):
            return np.log(self.weights)

    @property
    def log_expression(self):
        """Natural-log expression magnitude at each grid point."""
        return self.magnitudes * LN10

    def to_frame(self):
        return pd.DataFrame({'magnitude': self.magnitudes, 'weight': self.weights})

    @classmethod
    def from_frame(cls, frame):
        return cls(frame['magnitude'].to_numpy(), frame['weight'].to_numpy())


def _magnitudes(counts, params, pseudo_count):
    """Invert error models: log10 magnitude of each count (genes x cells)."""
    log_y = np.log(counts + pseudo_count)
    return (log_y - params['corr_intercept'][None, :]) / (params['corr_slope'][None, :] * LN10)


def _model_cells(models, data):
    """Valid model cells present in ``data``, with their column indices."""
    valid = models.valid()
    present = {c: k for k, c in enumerate(data['cells'])}
    cells = [c for c in valid.cells if c in present]
    return valid, cells, np.array([present[c] for c in cells], dtype=np.intp)


def expression_magnitudes(models, data, pseudo_count=1.0):
    """Per-cell log10 magnitudes implied by the error models.

    Parameters
    ----------
    models : ErrorModelTable
    data : CountData or array-like
    pseudo_count : float
        Added to counts before inversion.

    Returns
    -------
    DataFrame
        Genes x valid cells.
    """
    data = as_count_data(data)
    valid, cells, cols = _model_cells(models, data)
    params = valid.params(cells)
    mags = _magnitudes(data['counts'][:, cols], params, pseudo_count)
    return pd.DataFrame(mags, index=data['genes'], columns=cells)


def build_expression_prior(models, data, config=None, **kwargs):
    """Build the shared magnitude grid and prior weights.

    Parameters
    ----------
    models : ErrorModelTable
        Invalid models are ignored.
    data : CountData or array-like
    config : AnalysisConfig, optional
        Uses ``length_out``, ``max_value``, ``max_quantile``,
        ``min_count``, ``pseudo_count``, ``bandwidth``, ``prior_floor``.

    Returns
    -------
    ExpressionPrior

    Raises
    ------
    DegenerateGridError
        No valid models, fewer than 2 distinct magnitudes, or an empty
        grid span.
    """
    config = AnalysisConfig.from_kwargs(config, **kwargs)
    data = as_count_data(data)
    valid, cells, cols = _model_cells(models, data)
    if not cells:
        raise DegenerateGridError("No valid error models for the cells in the data")
    params = valid.params(cells)

    pooled = _magnitudes(data['counts'][:, cols], params, config.pseudo_count).ravel()
    pooled = pooled[np.isfinite(pooled)]
    if np.unique(pooled).size < 2:
        raise DegenerateGridError("Fewer than 2 distinct expression magnitudes observed")

    limits = (np.log(config.min_count) - params['corr_intercept']) / (params['corr_slope'] * LN10)
    x_min = float(np.min(limits))
    if config.max_value is not None:
        x_max = float(config.max_value)
    else:
        x_max = float(np.quantile(pooled, config.max_quantile))
    if not x_max > x_min:
        raise DegenerateGridError(
            f"Empty magnitude grid span: minimum {x_min:.3f}, maximum {x_max:.3f}")

    # the grid reaches no further below the typical cell's limit than it does above it
    centre = float(np.median(limits))
    floor = 2.0 * centre - x_max
    if x_min < floor < centre:
        warnings.warn(f"Magnitude grid minimum {x_min:.3f} clamped to {floor:.3f}; "
                      f"some cells have very shallow error models")
        x_min = floor

    grid = np.linspace(x_min, x_max, config.length_out)
    step = grid[1] - grid[0]
    inside = pooled[(pooled >= x_min - step / 2) & (pooled <= x_max + step / 2)]
    idx = np.clip(np.rint((inside - x_min) / step).astype(np.intp), 0, len(grid) - 1)
    hist = np.bincount(idx, minlength=len(grid)).astype(np.float64)
    smoothed = gaussian_filter1d(hist, sigma=config.bandwidth / step, mode='constant')
    if not smoothed.max() > 0:
        raise DegenerateGridError("No observed magnitudes fall inside the grid span")
    weights = np.maximum(smoothed, config.prior_floor * smoothed.max())

    if config.verbose:
        print(f"Expression prior: {len(grid)} points on [{x_min:.3f}, {x_max:.3f}] (log10), "
              f"{len(cells)} cells.")
    return ExpressionPrior(grid, weights / weights.sum())
