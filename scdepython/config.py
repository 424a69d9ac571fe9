"""
Analysis configuration for scdePython.

All tunable options of a run live on :class:`AnalysisConfig`. Functions
accept ``config=None`` plus keyword overrides and call
:meth:`AnalysisConfig.from_kwargs`, so a bad option fails before any
fitting starts.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace

import numpy as np

from .errors import InvalidConfigurationError


GROUP_MODES = ('per_group', 'pooled')
STATISTICS = ('mean', 'mode')


@dataclass(frozen=True)
class AnalysisConfig:
    """Options recognised by the fitting, prior and testing stages.

    Attributes
    ----------
    groups : str
        ``'per_group'`` fits each cell against peers of its own group;
        ``'pooled'`` fits every cell against all cells. Without group
        labels a single implicit group holds all cells.
    threshold_segmentation : bool
        Pre-classify counts at or below ``detection_threshold`` as
        failures when initialising the mixture fit and when deciding
        whether a gene is detected.
    n_cores : int
        Number of worker processes (1 = sequential).
    n_randomizations : int
        Relabelings used to build each gene's null distribution.
    max_value : float or None
        Explicit upper bound of the log10 magnitude grid.
    length_out : int
        Number of grid points.
    verbose : int
        0 silent, 1 stage progress, 2 chunk progress.
    """

    groups: str = 'per_group'
    threshold_segmentation: bool = True
    n_cores: int = 1
    n_randomizations: int = 150
    max_value: float | None = None
    length_out: int = 400
    verbose: int = 0

    # robust gene selection
    min_detection_fraction: float = 0.5
    outlier_mad: float = 5.0
    min_robust_genes: int = 10
    detection_threshold: float = 0.0

    # error model fitting
    min_nonfailed: int = 3
    peer_biweight_c: float = 4.685
    max_iter: int = 50
    tol: float = 1e-6
    poisson_fail_rate: float | None = None
    min_fail_rate: float = 1e-2
    background_detection_fraction: float = 0.2

    # expression prior
    max_quantile: float = 0.999
    min_count: float = 0.1
    pseudo_count: float = 1.0
    bandwidth: float = 0.1
    prior_floor: float = 1e-10

    # differential expression
    statistic: str = 'mean'
    seed: int = 0
    chunk_size: int = 64
    credible_mass: float = 0.95

    def validate(self):
        """Raise InvalidConfigurationError on any out-of-range option."""
        if self.groups not in GROUP_MODES:
            raise InvalidConfigurationError(
                f"groups must be one of {GROUP_MODES}, got {self.groups!r}")
        if self.statistic not in STATISTICS:
            raise InvalidConfigurationError(
                f"statistic must be one of {STATISTICS}, got {self.statistic!r}")
        _check_int(self.n_cores, 'n_cores', 1)
        _check_int(self.n_randomizations, 'n_randomizations', 2)
        _check_int(self.length_out, 'length_out', 2)
        _check_int(self.min_robust_genes, 'min_robust_genes', 2)
        _check_int(self.min_nonfailed, 'min_nonfailed', 1)
        _check_int(self.max_iter, 'max_iter', 1)
        _check_int(self.chunk_size, 'chunk_size', 1)
        _check_int(self.seed, 'seed', 0)
        if self.verbose not in (0, 1, 2):
            raise InvalidConfigurationError(
                f"verbose must be 0, 1 or 2, got {self.verbose!r}")
        for name in ('min_detection_fraction', 'max_quantile', 'credible_mass'):
            v = getattr(self, name)
            if not 0.0 < v <= 1.0:
                raise InvalidConfigurationError(f"{name} must lie in (0, 1], got {v}")
        if not 0.0 <= self.background_detection_fraction < 1.0:
            raise InvalidConfigurationError(
                "background_detection_fraction must lie in [0, 1)")
        if self.background_detection_fraction >= self.min_detection_fraction:
            raise InvalidConfigurationError(
                "background_detection_fraction must be below min_detection_fraction; "
                "a gene cannot be both robust and background")
        for name in ('outlier_mad', 'peer_biweight_c', 'tol', 'min_fail_rate',
                     'min_count', 'pseudo_count', 'bandwidth', 'prior_floor'):
            v = getattr(self, name)
            if not v > 0:
                raise InvalidConfigurationError(f"{name} must be positive, got {v}")
        if self.detection_threshold < 0:
            raise InvalidConfigurationError("detection_threshold must be non-negative")
        if self.poisson_fail_rate is not None and not self.poisson_fail_rate > 0:
            raise InvalidConfigurationError("poisson_fail_rate must be positive or None")
        if self.max_value is not None and not (
                isinstance(self.max_value, (int, float, np.floating))
                and np.isfinite(self.max_value)):
            raise InvalidConfigurationError(
                f"max_value must be a finite number or None, got {self.max_value!r}")
        return self

    @classmethod
    def from_kwargs(cls, config=None, **overrides):
        """Merge keyword overrides into ``config`` and validate the result."""
        if config is None:
            config = cls()
        elif not isinstance(config, cls):
            raise InvalidConfigurationError(
                f"config must be an AnalysisConfig, got {type(config).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise InvalidConfigurationError(f"Unrecognised options: {unknown}")
        if overrides:
            config = replace(config, **overrides)
        return config.validate()


def _check_int(value, name, minimum):
    if (isinstance(value, bool) or not isinstance(value, (int, np.integer))
            or value < minimum):
        raise InvalidConfigurationError(f"{name} must be an integer >= {minimum}, got {value}")
