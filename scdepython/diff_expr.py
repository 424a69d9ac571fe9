"""
Randomization-calibrated differential expression.

For every gene the fold-change statistic under the true group labels is
compared with its distribution over random relabelings of the cells
(group sizes preserved). With a batch factor the relabelings are
stratified by batch and the statistic is taken from the
batch-marginalised fold-change posterior.
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, as_completed

import numpy as np
import pandas as pd

from .classes import DifferentialExpression, GeneDifference
from .config import AnalysisConfig
from .counts import as_count_data, group_levels
from .error_models import fit_error_models
from .errors import AnalysisCancelledError
from .posterior import (FoldChangePosterior, cell_log_likelihoods, sanitize_log_likelihoods,
                        joint_weights_batch, fold_change_weights, fold_change_weights_batch,
                        batch_adjusted_weights_batch, batch_level_codes, ratio_grid,
                        cell_posterior, group_posterior, fold_change_posterior)
from .prior import build_expression_prior
from .utils import LOG2_10, gene_rng, chunk_indices


RESULT_COLUMNS = ['mle', 'lower_bound', 'upper_bound', 'conservative_estimate', 'Z']


class NullDistributionSampler:
    """Random group relabelings for one gene's null distribution.

    Relabelings of gene ``g`` come from a generator seeded with
    ``SeedSequence([seed, g, stream])``. They depend only on the run
    seed and the gene's position, never on the worker that evaluates the
    gene or on completion order, so parallel runs reproduce sequential
    ones exactly.

    Parameters
    ----------
    in_a : ndarray of bool
        True labelling (True = first group).
    n_randomizations : int
    seed : int
    strata : ndarray of int, optional
        Batch level per cell; labels are then permuted within levels.
    """

    def __init__(self, in_a, n_randomizations, seed, strata=None):
        self.in_a = np.asarray(in_a, dtype=bool)
        self.n_randomizations = int(n_randomizations)
        self.seed = int(seed)
        self.strata = None if strata is None else np.asarray(strata)
        self.stream = 0 if strata is None else 1

    def draw(self, gene_index):
        """Relabelings of one gene, shape (n_randomizations, ncell)."""
        rng = gene_rng(self.seed, gene_index, self.stream)
        out = np.empty((self.n_randomizations, len(self.in_a)), dtype=bool)
        if self.strata is None:
            for r in range(self.n_randomizations):
                out[r] = rng.permutation(self.in_a)
            return out
        groups = [np.where(self.strata == lv)[0] for lv in np.unique(self.strata)]
        for r in range(self.n_randomizations):
            labels = self.in_a.copy()
            for idx in groups:
                labels[idx] = rng.permutation(self.in_a[idx])
            out[r] = labels
        return out


def _statistics(weights, ratios, statistic):
    if statistic == 'mode':
        return ratios[np.argmax(weights, axis=1)]
    return weights @ ratios


def label_statistics(loglik, log_prior, magnitudes, labels, ratios, statistic='mean'):
    """Fold-change statistic for each labelling (rows of ``labels``)."""
    wa = joint_weights_batch(loglik, labels, log_prior)
    wb = joint_weights_batch(loglik, ~labels, log_prior)
    if statistic == 'mean':
        return (wa @ magnitudes - wb @ magnitudes) * LOG2_10
    return _statistics(fold_change_weights_batch(wa, wb), ratios, statistic)


def randomization_z(observed, null):
    """Standardise ``observed`` against its randomization null."""
    sd = np.std(null, ddof=1)
    if not sd > 0:
        return 0.0
    return float((observed - np.mean(null)) / sd)


def _evaluate_gene(gene_index, name, y, params, prior, in_a, codes, config):
    ratios = ratio_grid(prior)
    log_prior = prior.log_weights
    loglik, prior_only = sanitize_log_likelihoods(cell_log_likelihoods(y, params, prior))

    wa, wb = joint_weights_batch(loglik, np.vstack([in_a, ~in_a]), log_prior)
    fc = FoldChangePosterior.from_weights(name, ratios, fold_change_weights(wa, wb),
                                          config.credible_mass)
    labels = np.vstack([in_a, NullDistributionSampler(
        in_a, config.n_randomizations, config.seed).draw(gene_index)])
    stats = label_statistics(loglik, log_prior, prior.magnitudes, labels, ratios,
                             config.statistic)
    row = {
        'mle': fc.mle,
        'lower_bound': fc.lower_bound,
        'upper_bound': fc.upper_bound,
        'conservative_estimate': fc.conservative_estimate,
        'Z': randomization_z(stats[0], stats[1:]),
        'prior_only_cells': int(prior_only.sum()),
        'error': None,
    }
    posts = {'fold_change': fc}
    if codes is not None:
        labels = np.vstack([in_a, NullDistributionSampler(
            in_a, config.n_randomizations, config.seed, strata=codes).draw(gene_index)])
        w, mix = batch_adjusted_weights_batch(loglik, log_prior, labels, codes,
                                              return_mixture=True)
        bstats = _statistics(mix if config.statistic == 'mode' else w, ratios, config.statistic)
        row['batch_corrected_Z'] = randomization_z(bstats[0], bstats[1:])
        posts['batch_adjusted'] = FoldChangePosterior.from_weights(
            name, ratios, w[0], config.credible_mass, batch_adjusted=True,
            mode_weights=mix[0])
    return row, posts


def _failed_row(exc, batched):
    row = {c: np.nan for c in RESULT_COLUMNS}
    row['prior_only_cells'] = 0
    if batched:
        row['batch_corrected_Z'] = np.nan
    row['error'] = f"{type(exc).__name__}: {exc}"
    return row


def _test_chunk(task):
    """Worker: evaluate a chunk of genes."""
    gene_indices, names, counts, params, prior, in_a, codes, config, keep = task
    rows = []
    posteriors = {}
    for gi, name, y in zip(gene_indices, names, counts):
        try:
            row, posts = _evaluate_gene(gi, name, y, params, prior, in_a, codes, config)
        except (ArithmeticError, ValueError, np.linalg.LinAlgError) as exc:
            row, posts = _failed_row(exc, codes is not None), None
        rows.append(row)
        if keep and posts is not None:
            posteriors[name] = posts
    return rows, posteriors


def _is_cancelled(cancel):
    if cancel is None:
        return False
    if hasattr(cancel, 'is_set'):
        return bool(cancel.is_set())
    return bool(cancel())


def _resolve_comparison(data, comparison):
    labels = data.get('groups')
    if labels is None:
        raise ValueError("Group labels are required for a differential expression test.")
    levels = group_levels(labels)
    if comparison is None:
        if len(levels) < 2:
            raise ValueError(f"Need at least two groups, found {levels}")
        return levels[:2]
    comparison = [str(c) for c in comparison]
    if len(comparison) != 2:
        raise ValueError("comparison must be of length 2.")
    missing = [c for c in comparison if c not in levels]
    if missing:
        raise ValueError(f"Groups {missing} not found. Available groups: {levels}")
    return comparison


def _split_cells(data, models, comparison):
    """Cells of each compared group with a valid model, plus excluded cells."""
    labels = data['groups']
    cells = data['cells']
    usable = {}
    invalid = []
    for g in comparison:
        keep = []
        for k in np.where(labels == g)[0]:
            c = cells[k]
            if c in models and models[c].valid:
                keep.append(int(k))
            else:
                invalid.append(c)
        if not keep:
            raise ValueError(f"Group '{g}' has no cell with a valid error model.")
        usable[g] = np.array(keep, dtype=np.intp)
    return usable[comparison[0]], usable[comparison[1]], invalid


def _resolve_batch(data, batch):
    if batch is False:
        return None
    if batch is None:
        return data.get('batch')
    batch = np.asarray(batch, dtype=object)
    if len(batch) != data.ncol:
        raise ValueError("Length of batch should equal the number of cells.")
    return batch


def expression_difference(models, data, prior, groups=None, batch=None, genes=None,
                          comparison=None, config=None, return_posteriors=False,
                          cancel=None, **kwargs):
    """Test every gene for differential expression between two groups.

    Parameters
    ----------
    models : ErrorModelTable
        Invalid models are excluded before any test.
    data : CountData or array-like
    prior : ExpressionPrior
    groups : array-like, optional
        Group label per cell; defaults to the labels stored in ``data``.
    batch : array-like or False, optional
        Batch label per cell; defaults to the labels stored in ``data``.
        ``False`` disables batch correction.
    genes : sequence, optional
        Genes to test (names or positions); default all.
    comparison : list of length 2, optional
        Groups compared; fold changes are log2(first / second). Default
        is the first two group levels in sorted order.
    config : AnalysisConfig, optional
        Uses ``n_randomizations``, ``seed``, ``statistic``, ``n_cores``,
        ``chunk_size``, ``credible_mass``, ``verbose``.
    return_posteriors : bool
        Keep each gene's fold-change posteriors in the result.
    cancel : object, optional
        ``threading.Event``-like (``is_set()``) or callable; checked
        between gene chunks.

    Returns
    -------
    DifferentialExpression

    Raises
    ------
    AnalysisCancelledError
        ``cancel`` was set; partial results are discarded.
    """
    config = AnalysisConfig.from_kwargs(config, **kwargs)
    data = as_count_data(data, groups=groups)
    comparison = _resolve_comparison(data, comparison)
    idx_a, idx_b, invalid = _split_cells(data, models, comparison)
    cols = np.concatenate([idx_a, idx_b])
    in_a = np.arange(len(cols)) < len(idx_a)
    cells = data['cells'][cols]

    batch = _resolve_batch(data, batch)
    codes = None if batch is None else batch_level_codes(np.asarray(batch, dtype=object)[cols])

    if genes is None:
        gene_idx = np.arange(data.nrow)
    else:
        gene_idx = np.array([data.gene_index(g) for g in np.atleast_1d(genes)], dtype=np.intp)
    names = data['genes'][gene_idx]
    counts = data['counts'][gene_idx][:, cols]
    params = models.params(cells)

    if config.verbose:
        print(f"Testing {len(gene_idx)} genes: {comparison[0]} ({len(idx_a)} cells) vs "
              f"{comparison[1]} ({len(idx_b)} cells), {config.n_randomizations} randomizations"
              + (", batch-corrected." if codes is not None else "."))
        if invalid:
            print(f"Excluded {len(invalid)} cells with invalid error models.")

    chunks = chunk_indices(len(gene_idx), config.chunk_size)
    tasks = [(gene_idx[ch], names[ch], counts[ch], params, prior, in_a, codes, config,
              return_posteriors) for ch in chunks]

    results = [None] * len(tasks)
    if config.n_cores > 1 and len(tasks) > 1:
        with ProcessPoolExecutor(max_workers=config.n_cores) as executor:
            futures = {executor.submit(_test_chunk, t): k for k, t in enumerate(tasks)}
            for fut in as_completed(futures):
                if _is_cancelled(cancel):
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise AnalysisCancelledError("Differential expression run cancelled.")
                results[futures[fut]] = fut.result()
                if config.verbose > 1:
                    print(f"  Gene chunk {futures[fut] + 1}/{len(tasks)} done.")
    else:
        for k, task in enumerate(tasks):
            if _is_cancelled(cancel):
                raise AnalysisCancelledError("Differential expression run cancelled.")
            if config.verbose > 1:
                print(f"  Gene chunk {k + 1}/{len(tasks)}...")
            results[k] = _test_chunk(task)

    rows = []
    posteriors = {}
    for chunk_rows, chunk_posts in results:
        rows.extend(chunk_rows)
        posteriors.update(chunk_posts)

    columns = RESULT_COLUMNS + (['batch_corrected_Z'] if codes is not None else [])
    columns += ['prior_only_cells', 'error']
    table = pd.DataFrame(rows, index=pd.Index(names, name='gene'), columns=columns)

    if config.verbose:
        n_failed = int(table['error'].notna().sum())
        if n_failed:
            print(f"{n_failed} genes could not be evaluated.")

    return DifferentialExpression(
        table=table,
        comparison=list(comparison),
        n_randomizations=config.n_randomizations,
        seed=config.seed,
        invalid_cells=invalid,
        posteriors=posteriors if return_posteriors else None,
    )


def test_gene_expression_difference(gene, models, data, prior, groups=None, batch=None,
                                    comparison=None, config=None, **kwargs):
    """Posteriors of one gene's expression difference, without randomization.

    Parameters
    ----------
    gene : str or int
    models : ErrorModelTable
    data : CountData or array-like
    prior : ExpressionPrior
    groups, batch, comparison :
        As for ``expression_difference``.

    Returns
    -------
    GeneDifference
        Per-cell posteriors (grid x cells per group), joint posteriors,
        fold-change posterior (and batch-adjusted one when a batch is
        given) and a summary of their credible intervals.
    """
    config = AnalysisConfig.from_kwargs(config, **kwargs)
    data = as_count_data(data, groups=groups)
    comparison = _resolve_comparison(data, comparison)
    idx_a, idx_b, invalid = _split_cells(data, models, comparison)
    cells_a = data['cells'][idx_a]
    cells_b = data['cells'][idx_b]
    gene_name = data['genes'][data.gene_index(gene)]

    cell_posts = {}
    joint = {}
    for g, cells in zip(comparison, (cells_a, cells_b)):
        per_cell = [cell_posterior(gene, c, models, prior, data) for c in cells]
        cell_posts[g] = pd.DataFrame(
            np.column_stack([p.weights for p in per_cell]),
            index=pd.Index(prior.magnitudes, name='magnitude'), columns=list(cells))
        joint[g] = group_posterior(gene, cells, models, prior, data)

    fc = fold_change_posterior(gene, cells_a, cells_b, models, prior, data,
                               mass=config.credible_mass)
    batch = _resolve_batch(data, batch)
    adjusted = None
    if batch is not None:
        adjusted = fold_change_posterior(gene, cells_a, cells_b, models, prior, data,
                                         batch=batch, mass=config.credible_mass)

    summary = pd.DataFrame(
        [[p.mle, p.lower_bound, p.upper_bound, p.conservative_estimate, p.mean]
         for p in ([fc] if adjusted is None else [fc, adjusted])],
        index=['fold_change'] if adjusted is None else ['fold_change', 'batch_adjusted'],
        columns=['mle', 'lower_bound', 'upper_bound', 'conservative_estimate', 'mean'],
    )
    return GeneDifference(
        gene=gene_name,
        comparison=list(comparison),
        magnitudes=prior.magnitudes,
        cell_posteriors=cell_posts,
        joint_posteriors=joint,
        fold_change=fc,
        batch_adjusted=adjusted,
        summary=summary,
        invalid_cells=invalid,
    )


test_gene_expression_difference.__test__ = False


def run_scde(data, groups=None, batch=None, models=None, prior=None, config=None, **kwargs):
    """Fit error models, build the prior and test every gene.

    Parameters
    ----------
    data : CountData or array-like
    groups, batch : array-like, optional
        Labels overriding those stored in ``data``.
    models : ErrorModelTable, optional
        Precomputed error models; fitted when omitted.
    prior : ExpressionPrior, optional
        Precomputed prior; built when omitted.
    config : AnalysisConfig, optional
        Keyword arguments override its fields. Extra keyword arguments
        of ``expression_difference`` (``genes``, ``comparison``,
        ``return_posteriors``, ``cancel``) are passed through.

    Returns
    -------
    DifferentialExpression
        With the ``models`` and ``prior`` used attached.
    """
    passthrough = {k: kwargs.pop(k) for k in ('genes', 'comparison', 'return_posteriors', 'cancel')
                   if k in kwargs}
    config = AnalysisConfig.from_kwargs(config, **kwargs)
    data = as_count_data(data, groups=groups, batch=batch)
    if models is None:
        models = fit_error_models(data, config)
    if prior is None:
        prior = build_expression_prior(models, data, config)
    result = expression_difference(models, data, prior, config=config, **passthrough)
    result['models'] = models
    result['prior'] = prior
    return result
