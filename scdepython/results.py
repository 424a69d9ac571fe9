"""
Results processing for scdePython.

Ranking of differential expression tables.
"""

import numpy as np

from .classes import TopGenes


SORT_KEYS = ('Z', 'batch_corrected_Z', 'mle', 'conservative_estimate', 'none')


def top_genes(result, n=10, sort_by='Z', min_abs_z=0.0):
    """Summary table of the top differentially expressed genes.

    Parameters
    ----------
    result : DifferentialExpression
        Output of ``expression_difference``.
    n : int
        Number of top genes to return.
    sort_by : str
        'Z', 'batch_corrected_Z', 'mle', 'conservative_estimate' or
        'none'. Genes are ranked by the absolute value of the column;
        genes with a missing value (failed evaluations) come last.
    min_abs_z : float
        Keep only genes with ``|Z|`` (or ``|batch_corrected_Z|`` when
        sorting by it) at least this large.

    Returns
    -------
    TopGenes with 'table', 'comparison', 'sort_by'.
    """
    if result.get('table') is None:
        raise ValueError("Need to run expression_difference first")
    if sort_by not in SORT_KEYS:
        raise ValueError(f"sort_by must be one of {list(SORT_KEYS)}")
    tab = result['table']
    if sort_by != 'none' and sort_by not in tab.columns:
        raise ValueError(f"Column '{sort_by}' not in the result table")
    if n < 1:
        raise ValueError("n must be at least 1")

    if sort_by == 'none':
        o = np.arange(len(tab))
    else:
        key = np.abs(tab[sort_by].to_numpy(dtype=np.float64))
        # NaN sorts last; stable so ties keep gene order
        o = np.argsort(np.where(np.isnan(key), np.inf, -key), kind='stable')
    tab = tab.iloc[o]

    if min_abs_z > 0:
        zcol = 'batch_corrected_Z' if sort_by == 'batch_corrected_Z' else 'Z'
        tab = tab[np.abs(tab[zcol].to_numpy(dtype=np.float64)) >= min_abs_z]

    return TopGenes(
        table=tab.iloc[:min(n, len(tab))].copy(),
        comparison=result.get('comparison', []),
        sort_by=sort_by,
    )
