"""
scdePython: Bayesian single-cell differential expression.

Per-cell error models, a shared expression-magnitude prior and
randomization-calibrated fold-change tests for single-cell RNA-seq
counts.
"""

__version__ = "0.1.0"

# --- Configuration & errors ---
from .config import AnalysisConfig
from .errors import (
    ScdeError,
    InvalidConfigurationError,
    InsufficientRobustGenesError,
    ModelFitFailure,
    DegenerateGridError,
    AnalysisCancelledError,
    NumericUnderflowWarning,
)

# --- Classes ---
from .classes import CountData, DifferentialExpression, TopGenes, GeneDifference

# --- CountData construction ---
from .counts import make_count_data, as_count_data

# --- Robust genes ---
from .robust_genes import select_robust_genes, select_robust_genes_for_cells

# --- Error models ---
from .error_models import ErrorModel, ErrorModelTable, fit_error_models, fit_cell_mixture

# --- Prior ---
from .prior import ExpressionPrior, build_expression_prior, expression_magnitudes

# --- Posteriors ---
from .posterior import (
    CellPosterior,
    GroupPosterior,
    FoldChangePosterior,
    cell_posterior,
    group_posterior,
    fold_change_posterior,
)

# --- Differential expression ---
from .diff_expr import (
    NullDistributionSampler,
    expression_difference,
    test_gene_expression_difference,
    run_scde,
)

# --- Results ---
from .results import top_genes
