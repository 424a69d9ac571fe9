"""Tests for robust gene selection."""

import numpy as np
import pytest

import scdepython as sd
from scdepython.robust_genes import fitting_plan, POOLED


class TestFittingPlan:

    def test_per_group(self):
        groups = np.array(['A', 'B', 'A', None], dtype=object)
        plan = fitting_plan(groups, 4, 'per_group')
        labels = [p[0] for p in plan]
        assert labels == ['A', 'B', POOLED]
        assert list(plan[0][1]) == [0, 2]
        assert list(plan[2][1]) == [3]
        assert list(plan[2][2]) == [0, 1, 2, 3]

    def test_pooled_and_unlabelled(self):
        groups = np.array(['A', 'B'], dtype=object)
        assert [p[0] for p in fitting_plan(groups, 2, 'pooled')] == [POOLED]
        assert [p[0] for p in fitting_plan(None, 2)] == [POOLED]


class TestSelectRobustGenes:

    def test_per_group_selection(self, count_data):
        robust = sd.select_robust_genes(count_data)
        assert set(robust) == {'A', 'B'}
        for idx in robust.values():
            assert len(idx) >= 10
            assert np.all(np.diff(idx) > 0)
            frac = (count_data.counts[idx] > 0).mean(axis=1)
            assert np.all(frac >= 0.4)

    def test_pooled_selection(self, count_data):
        robust = sd.select_robust_genes(count_data, groups='pooled')
        assert list(robust) == [POOLED]

    def test_detection_fraction(self):
        counts = np.zeros((12, 6))
        counts[:10, :] = 5
        counts[10, :2] = 5
        counts[11, :4] = 5
        idx = sd.select_robust_genes_for_cells(counts)
        assert list(idx) == list(range(10)) + [11]

    def test_outlier_cell_ignored(self):
        counts = np.full((12, 7), 5.0)
        counts[:, :6] += np.arange(6)
        counts[:, 6] = 5000.0
        # gene 11 detected in half of the regular cells, not in the outlier
        counts[11, 3:] = 0
        idx = sd.select_robust_genes_for_cells(counts)
        assert list(idx) == list(range(12))
        counts[:, 6] = 10.0
        counts[11, 6] = 0
        idx = sd.select_robust_genes_for_cells(counts)
        assert 11 not in idx

    def test_insufficient(self, count_data):
        with pytest.raises(sd.InsufficientRobustGenesError) as info:
            sd.select_robust_genes(count_data, min_robust_genes=10000)
        assert info.value.n_required == 10000
