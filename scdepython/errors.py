"""
Exception and warning taxonomy for scdePython.

Run-level errors abort before expensive work starts; per-cell and per-gene
problems are caught by the fitter/tester and reported inline.
"""


class ScdeError(Exception):
    """Base class for exceptions in scdePython."""


class InvalidConfigurationError(ScdeError, ValueError):
    """Contradictory or out-of-range configuration options."""


class InsufficientRobustGenesError(ScdeError, ValueError):
    """Too few robustly detected genes to fit a group's error models."""

    def __init__(self, group, n_found, n_required):
        self.group = group
        self.n_found = n_found
        self.n_required = n_required
        super().__init__(
            f"Group '{group}' has {n_found} robust genes; "
            f"at least {n_required} are required for error model fitting."
        )


class ModelFitFailure(ScdeError, RuntimeError):
    """Error model fit for a single cell failed.

    Raised inside the per-cell fit and converted by ``fit_error_models``
    into an invalid model row carrying the message.
    """

    def __init__(self, cell, reason):
        self.cell = cell
        self.reason = reason
        super().__init__(f"Cell '{cell}': {reason}")


class DegenerateGridError(ScdeError, ValueError):
    """The expression-magnitude grid cannot be constructed."""


class AnalysisCancelledError(ScdeError, RuntimeError):
    """A run was cancelled between gene-level work units."""


class NumericUnderflowWarning(RuntimeWarning):
    """Likelihood underflowed everywhere; the prior was used instead."""
