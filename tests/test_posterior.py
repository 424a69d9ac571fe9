"""Tests for the posterior engine."""

import numpy as np
import pytest

import scdepython as sd
from scdepython.posterior import (ratio_grid, fold_change_weights, fold_change_weights_batch,
                                  joint_weights_batch, sanitize_log_likelihoods, widen,
                                  batch_adjusted_weights, batch_adjusted_weights_batch,
                                  batch_level_codes)
from scdepython.utils import hdi, conservative_estimate, posterior_mode


def _valid_cells(models, data, group):
    return [c for c, g in zip(data.cells, data.groups) if g == group and models[c].valid]


def _underflowing(y, params, prior):
    return np.full((len(y), len(prior)), -np.inf)


class TestCellPosterior:

    def test_normalised(self, models, prior, count_data):
        cell = _valid_cells(models, count_data, 'A')[0]
        post = sd.cell_posterior('DE', cell, models, prior, count_data)
        assert post.weights.shape == (len(prior),)
        assert np.isclose(post.weights.sum(), 1.0)
        assert np.all(post.weights >= 0)
        assert not post.prior_only

    def test_higher_count_shifts_posterior(self, models, prior, count_data):
        cell = _valid_cells(models, count_data, 'A')[0]
        col = count_data.cell_indices([cell])[0]
        counts = np.array(count_data.counts)
        counts[0, col] = 2
        counts[1, col] = 200
        data = sd.make_count_data(counts, cells=count_data.cells, genes=count_data.genes)
        low = sd.cell_posterior(0, cell, models, prior, data)
        high = sd.cell_posterior(1, cell, models, prior, data)
        assert (np.dot(high.weights, prior.magnitudes)
                > np.dot(low.weights, prior.magnitudes))

    def test_invalid_model_refused(self, prior, count_data, models):
        cells = list(count_data.cells)
        table = sd.ErrorModelTable(
            [sd.ErrorModel.failed(cells[0], 'A', 'x')] + [models[c] for c in cells[1:]])
        with pytest.raises(ValueError, match="Invalid"):
            sd.cell_posterior('DE', cells[0], table, prior, count_data)

    def test_underflow_falls_back_to_prior(self, models, prior, count_data, monkeypatch):
        cell = _valid_cells(models, count_data, 'A')[0]
        monkeypatch.setattr(sd.posterior, 'cell_log_likelihoods', _underflowing)
        with pytest.warns(sd.NumericUnderflowWarning, match="underflow"):
            post = sd.cell_posterior('DE', cell, models, prior, count_data)
        assert post.prior_only
        assert np.array_equal(post.weights, prior.weights)


class TestGroupPosterior:

    def test_single_cell_identity(self, models, prior, count_data):
        cell = _valid_cells(models, count_data, 'B')[0]
        single = sd.cell_posterior('DE', cell, models, prior, count_data)
        joint = sd.group_posterior('DE', [cell], models, prior, count_data)
        assert np.allclose(joint.weights, single.weights, atol=1e-10)

    def test_normalised_and_narrower(self, models, prior, count_data):
        cells = _valid_cells(models, count_data, 'A')
        joint = sd.group_posterior('DE', cells, models, prior, count_data)
        assert np.isclose(joint.weights.sum(), 1.0)
        assert joint.n_prior_only == 0
        one = sd.cell_posterior('DE', cells[0], models, prior, count_data)
        lo_j, hi_j = hdi(prior.magnitudes, joint.weights)
        lo_1, hi_1 = hdi(prior.magnitudes, one.weights)
        assert hi_j - lo_j < hi_1 - lo_1

    def test_matches_batched_weights(self, models, prior, count_data):
        cells = _valid_cells(models, count_data, 'A')
        joint = sd.group_posterior('DE', cells, models, prior, count_data)
        y = count_data.counts[0, count_data.cell_indices(cells)]
        loglik, _ = sanitize_log_likelihoods(
            sd.posterior.cell_log_likelihoods(y, models.params(cells), prior))
        batched = joint_weights_batch(loglik, np.ones((1, len(cells)), dtype=bool),
                                      prior.log_weights)[0]
        assert np.allclose(joint.weights, batched, atol=1e-8)

    def test_all_cells_underflow(self, models, prior, count_data, monkeypatch):
        cells = _valid_cells(models, count_data, 'A')[:4]
        monkeypatch.setattr(sd.posterior, 'cell_log_likelihoods', _underflowing)
        with pytest.warns(sd.NumericUnderflowWarning, match="only the prior"):
            joint = sd.group_posterior('DE', cells, models, prior, count_data)
        assert joint.n_prior_only == len(cells)
        assert np.allclose(joint.weights, prior.weights, atol=1e-12)

    def test_one_cell_underflows(self, models, prior, count_data, monkeypatch):
        cells = _valid_cells(models, count_data, 'A')[:4]
        rest = sd.group_posterior('DE', cells[1:], models, prior, count_data)
        loglik = sd.posterior.cell_log_likelihoods

        def first_underflows(y, params, p):
            out = loglik(y, params, p)
            out[0] = -np.inf
            return out

        monkeypatch.setattr(sd.posterior, 'cell_log_likelihoods', first_underflows)
        with pytest.warns(sd.NumericUnderflowWarning):
            joint = sd.group_posterior('DE', cells, models, prior, count_data)
        assert joint.n_prior_only == 1
        assert np.allclose(joint.weights, rest.weights, atol=1e-10)

    def test_needs_cells(self, models, prior, count_data):
        with pytest.raises(ValueError):
            sd.group_posterior('DE', [], models, prior, count_data)


class TestFoldChangePosterior:

    def test_normalised(self, models, prior, count_data):
        a = _valid_cells(models, count_data, 'A')
        b = _valid_cells(models, count_data, 'B')
        fc = sd.fold_change_posterior('DE', a, b, models, prior, count_data)
        assert len(fc.weights) == 2 * len(prior) - 1
        assert np.isclose(fc.weights.sum(), 1.0)
        assert np.allclose(fc.log2_ratios, -fc.log2_ratios[::-1])
        assert fc.lower_bound <= fc.mle <= fc.upper_bound
        assert fc.conservative_estimate == conservative_estimate(fc.lower_bound,
                                                                 fc.upper_bound)

    def test_recovers_fold_change(self, models, prior, count_data):
        a = _valid_cells(models, count_data, 'A')
        b = _valid_cells(models, count_data, 'B')
        fc = sd.fold_change_posterior('DE', a, b, models, prior, count_data)
        assert fc.mle > 0.5
        assert fc.lower_bound > 0
        assert fc.conservative_estimate > 0

    def test_antisymmetry(self, models, prior, count_data):
        a = _valid_cells(models, count_data, 'A')
        b = _valid_cells(models, count_data, 'B')
        ab = sd.fold_change_posterior('Null3', a, b, models, prior, count_data)
        ba = sd.fold_change_posterior('Null3', b, a, models, prior, count_data)
        assert np.allclose(ab.weights, ba.weights[::-1], atol=1e-12)
        assert np.isclose(ab.mle, -ba.mle)
        assert np.isclose(ab.mean, -ba.mean)

    def test_batch_adjusted_preserves_sign(self, batch_models, batch_prior, batch_data):
        a = _valid_cells(batch_models, batch_data, 'A')
        b = _valid_cells(batch_models, batch_data, 'B')
        plain = sd.fold_change_posterior('DE', a, b, batch_models, batch_prior, batch_data)
        adj = sd.fold_change_posterior('DE', a, b, batch_models, batch_prior, batch_data,
                                       batch=batch_data.batch)
        assert adj.batch_adjusted
        assert np.isclose(adj.weights.sum(), 1.0)
        assert np.sign(adj.mle) == np.sign(plain.mle) == 1
        assert adj.upper_bound - adj.lower_bound >= plain.upper_bound - plain.lower_bound - 1e-9

    def test_batch_adjusted_mode_from_mixture(self, batch_models, batch_prior, batch_data):
        a = _valid_cells(batch_models, batch_data, 'A')
        b = _valid_cells(batch_models, batch_data, 'B')
        adj = sd.fold_change_posterior('Null2', a, b, batch_models, batch_prior, batch_data,
                                       batch=batch_data.batch)
        cells = a + b
        y = batch_data.counts[batch_data.gene_index('Null2'), batch_data.cell_indices(cells)]
        loglik, _ = sanitize_log_likelihoods(
            sd.posterior.cell_log_likelihoods(y, batch_models.params(cells), batch_prior))
        in_a = np.arange(len(cells)) < len(a)
        codes = batch_level_codes(batch_data.batch[batch_data.cell_indices(cells)])
        w, mix = batch_adjusted_weights(loglik, batch_prior.log_weights, in_a, codes,
                                        return_mixture=True)
        assert np.allclose(adj.weights, w)
        assert adj.mle == posterior_mode(adj.log2_ratios, mix)


class TestKernels:

    def test_ratio_grid(self):
        p = sd.ExpressionPrior(np.linspace(0, 1, 11), np.ones(11))
        r = ratio_grid(p)
        assert len(r) == 21
        assert np.isclose(r[10], 0.0)
        assert np.isclose(r[11] - r[10], 0.1 * np.log2(10))

    def test_fold_change_of_identical_is_symmetric(self):
        w = np.array([0.1, 0.2, 0.4, 0.3])
        phi = fold_change_weights(w, w)
        assert np.allclose(phi, phi[::-1])
        assert np.argmax(phi) == len(w) - 1

    def test_fold_change_shift(self):
        a = np.array([0.0, 0.0, 1.0, 0.0])
        b = np.array([1.0, 0.0, 0.0, 0.0])
        phi = fold_change_weights(a, b)
        # a sits two steps above b
        assert np.argmax(phi) == len(a) - 1 + 2

    def test_batched_matches_direct(self, rng):
        wa = rng.dirichlet(np.ones(30), size=4)
        wb = rng.dirichlet(np.ones(30), size=4)
        batched = fold_change_weights_batch(wa, wb)
        for k in range(4):
            assert np.allclose(batched[k], fold_change_weights(wa[k], wb[k]), atol=1e-10)

    def test_widen_keeps_mode(self):
        w = np.zeros(21)
        w[14] = 1.0
        kernel = np.zeros(21)
        kernel[9:12] = [0.25, 0.5, 0.25]
        out = widen(w, kernel)
        assert np.argmax(out) == 14
        assert np.isclose(out.sum(), 1.0)
        assert out[13] > 0 and out[15] > 0

    def test_widened_mode_not_reported(self):
        ratios = np.linspace(-1.0, 1.0, 21)
        mix = np.zeros(21)
        mix[[8, 9, 11]] = [0.3, 0.3, 0.4]
        kernel = np.zeros(21)
        kernel[9:12] = [0.25, 0.5, 0.25]
        out = widen(mix, kernel)
        # spreading the two neighbouring bins overtakes the single peak
        assert ratios[np.argmax(out)] < 0
        fc = sd.FoldChangePosterior.from_weights('g', ratios, out, batch_adjusted=True,
                                                 mode_weights=mix)
        assert fc.mle == pytest.approx(0.1)
        assert fc.lower_bound < 0 < fc.upper_bound

    def test_sanitize(self):
        ll = np.array([[-1.0, -np.inf], [-np.inf, -np.inf]])
        out, prior_only = sanitize_log_likelihoods(ll)
        assert list(prior_only) == [False, True]
        assert np.all(np.isfinite(out))
        assert np.all(out[1] == 0.0)
        with pytest.raises(FloatingPointError):
            sanitize_log_likelihoods(np.array([[np.nan, 0.0]]))

    def test_batch_weights_batched_matches_single(self, rng):
        ncell, ngrid = 12, 25
        loglik = rng.normal(-5, 2, (ncell, ngrid))
        log_prior = np.log(np.full(ngrid, 1.0 / ngrid))
        codes = batch_level_codes(['x'] * 6 + ['y'] * 6)
        in_a = np.array([True, True, True, False, False, False] * 2)
        perm = in_a.copy()
        perm[:6] = in_a[:6][::-1]
        labels = np.vstack([in_a, perm])
        batched = batch_adjusted_weights_batch(loglik, log_prior, labels, codes)
        for k in range(2):
            single = batch_adjusted_weights(loglik, log_prior, labels[k], codes)
            assert np.allclose(batched[k], single, atol=1e-10)

    def test_batch_weights_need_stratified_labels(self, rng):
        loglik = rng.normal(-5, 2, (4, 10))
        codes = batch_level_codes(['x', 'x', 'y', 'y'])
        labels = np.array([[True, False, True, False], [True, True, False, False]])
        with pytest.raises(ValueError, match="per-level"):
            batch_adjusted_weights_batch(loglik, np.zeros(10), labels, codes)

    def test_batch_level_codes_missing(self):
        codes = batch_level_codes(['b', None, 'a', 'b'])
        assert codes.tolist() == [2, 0, 1, 2]
