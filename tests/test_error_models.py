"""Tests for per-cell error model fitting and the model table."""

import numpy as np
import pandas as pd
import pytest

import scdepython as sd
from scdepython.error_models import MODEL_PARAMS, peer_weights
from scdepython.likelihood import mixture_loglik_matrix, component_logliks


def _model(cell, **overrides):
    params = dict(corr_slope=1.0, corr_intercept=0.0, conc_slope=2.0, conc_intercept=-1.0,
                  nb_overdispersion=0.2, poisson_fail_rate=0.05)
    params.update(overrides)
    return sd.ErrorModel(cell=cell, group='A', **params)


class TestErrorModel:

    def test_valid_requires_positive_slope(self):
        with pytest.raises(ValueError, match="corr_slope"):
            _model('c1', corr_slope=-0.5)

    def test_valid_requires_finite(self):
        with pytest.raises(ValueError, match="non-finite"):
            _model('c1', conc_slope=np.nan)

    def test_failed_row(self):
        m = sd.ErrorModel.failed('c1', 'A', 'no detected robust genes')
        assert not m.valid
        assert m.failure == 'no detected robust genes'
        assert np.isnan(m.corr_slope)


class TestErrorModelTable:

    def test_params_refuse_invalid(self):
        table = sd.ErrorModelTable([_model('c1'), sd.ErrorModel.failed('c2', 'A', 'x')])
        assert table.invalid_cells == ['c2']
        assert 'c2' in table
        assert len(table.valid()) == 1
        with pytest.raises(ValueError, match="Invalid"):
            table.params(['c1', 'c2'])
        params = table.params()
        assert set(params) == set(MODEL_PARAMS)
        assert params['corr_slope'].tolist() == [1.0]

    def test_duplicate_cells(self):
        with pytest.raises(ValueError, match="Duplicate"):
            sd.ErrorModelTable([_model('c1'), _model('c1')])

    def test_frame_round_trip(self, models):
        frame = models.to_frame()
        assert frame.index.name == 'cell'
        back = sd.ErrorModelTable.from_frame(frame)
        assert list(back.cells) == list(models.cells)
        assert np.array_equal(back.valid_mask, models.valid_mask)
        for p in MODEL_PARAMS:
            a = frame[p].to_numpy()
            b = back.to_frame()[p].to_numpy()
            assert np.allclose(a, b, equal_nan=True)

    def test_from_frame_rejects_bad_slope(self):
        frame = pd.DataFrame({
            'cell': ['c1', 'c2'],
            'corr_slope': [1.0, -0.3],
            'corr_intercept': [0.0, 0.0],
            'conc_slope': [2.0, 2.0],
            'conc_intercept': [-1.0, -1.0],
            'nb_overdispersion': [0.2, 0.2],
            'poisson_fail_rate': [0.05, 0.05],
        })
        table = sd.ErrorModelTable.from_frame(frame)
        assert table.invalid_cells == ['c2']
        assert table['c2'].failure == 'invalid parameters'


class TestLikelihood:

    def test_matrix_matches_components(self):
        y = np.array([0.0, 3.0, 12.0])
        log_e = np.log(np.array([0.5, 2.0, 10.0]))
        params = {
            'corr_intercept': np.zeros(3), 'corr_slope': np.ones(3),
            'conc_intercept': np.full(3, -1.0), 'conc_slope': np.full(3, 2.0),
            'nb_overdispersion': np.full(3, 0.2), 'poisson_fail_rate': np.full(3, 0.05),
        }
        mat = mixture_loglik_matrix(y, params, log_e)
        assert mat.shape == (3, 3)
        for c in range(3):
            l_nb, l_fail = component_logliks(np.full(3, y[c]), log_e, 0.0, 1.0, -1.0, 2.0,
                                             0.2, 0.05)
            assert np.allclose(mat[c], np.logaddexp(l_nb, l_fail))

    def test_probabilities_sum_to_one(self):
        y = np.arange(400, dtype=np.float64)
        params = {
            'corr_intercept': np.zeros(400), 'corr_slope': np.ones(400),
            'conc_intercept': np.full(400, -1.0), 'conc_slope': np.full(400, 2.0),
            'nb_overdispersion': np.full(400, 0.2), 'poisson_fail_rate': np.full(400, 0.05),
        }
        mat = mixture_loglik_matrix(y, params, np.log(np.array([0.3, 5.0, 40.0])))
        assert np.allclose(np.exp(mat).sum(axis=0), 1.0, atol=1e-6)


class TestPeerWeights:

    def test_biased_peer_downweighted(self, rng):
        cfg = sd.AnalysisConfig()
        ngene = 200
        truth = rng.normal(2.0, 1.0, ngene)
        cell = truth + rng.normal(0, 0.1, ngene)
        peers = np.column_stack([truth + rng.normal(0, 0.1, ngene) for _ in range(6)])
        peers[:, 5] += 3.0
        det = np.ones(ngene, dtype=bool)
        w = peer_weights(cell, det, peers, np.ones((ngene, 6), dtype=bool), cfg)
        assert w[5] == 0.0
        assert np.all(w[:5] > 0)


class TestFitErrorModels:

    def test_one_model_per_cell(self, models, count_data):
        assert len(models) == count_data.ncol
        assert list(models.cells) == list(count_data.cells)
        assert [m.group for m in models] == list(count_data.groups)

    def test_slope_invariant(self, models):
        for m in models:
            if m.valid:
                assert m.corr_slope > 0
                assert m.converged
                assert all(np.isfinite([getattr(m, p) for p in MODEL_PARAMS]))

    def test_most_cells_valid(self, models):
        assert models.valid_mask.sum() >= 0.8 * len(models)

    def test_background_rate_positive(self, models):
        rates = models.params()['poisson_fail_rate']
        assert np.all(rates >= sd.AnalysisConfig().min_fail_rate)

    def test_failed_cell_retained(self, sim):
        counts = sim['counts'].copy()
        counts[:, 3] = 0
        data = sd.make_count_data(counts, groups=sim['groups'], genes=sim['genes'])
        table = sd.fit_error_models(data)
        assert len(table) == data.ncol
        bad = table[data.cells[3]]
        assert not bad.valid
        assert bad.failure
        assert data.cells[3] in table.invalid_cells

    def test_fixed_fail_rate(self, count_data):
        sub = count_data[None, np.arange(10)]
        table = sd.fit_error_models(sub, poisson_fail_rate=0.1, groups='pooled')
        assert np.all(table.params()['poisson_fail_rate'] == 0.1)

    def test_insufficient_robust_genes_raises_before_fit(self, count_data):
        with pytest.raises(sd.InsufficientRobustGenesError):
            sd.fit_error_models(count_data, min_robust_genes=100000)

    def test_pooled_fit_keeps_cell_labels(self, count_data):
        cols = np.r_[0:6, count_data.ncol - 6:count_data.ncol]
        sub = count_data[None, cols]
        table = sd.fit_error_models(sub, groups='pooled')
        assert [m.group for m in table] == list(sub.groups)
        assert set(table.to_frame()['group']) == set(sub.groups)

    def test_unlabelled_cells_have_no_group(self, count_data):
        sub = count_data[None, np.arange(10)]
        data = sd.make_count_data(sub.counts, genes=sub.genes, cells=sub.cells)
        table = sd.fit_error_models(data)
        assert all(m.group is None for m in table)
        back = sd.ErrorModelTable.from_frame(table.to_frame())
        assert all(m.group is None for m in back)
