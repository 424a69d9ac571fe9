"""Shared fixtures for scdePython tests."""

import numpy as np
import pytest

import scdepython as sd


N_NULL = 240
DE_FOLD = 4.0


def simulate_counts(rng, n_per_group=20, n_null=N_NULL, fold=DE_FOLD, batch_effect=None):
    """Counts drawn from known NB + Poisson error models.

    Gene 0 ('DE') is ``fold`` times more expressed in group A than in
    group B; every other gene has the same magnitude in both groups. With
    ``batch_effect`` the cells are split into two batches, each holding
    half of both groups, and every gene is scaled by ``batch_effect`` in
    the second batch.

    Returns
    -------
    dict with counts (genes x cells), genes, groups, batch, params.
    """
    ncell = 2 * n_per_group
    groups = np.array(['A'] * n_per_group + ['B'] * n_per_group, dtype=object)
    half = n_per_group // 2
    batch = np.array((['b1'] * half + ['b2'] * (n_per_group - half)) * 2, dtype=object)

    log10_e = np.concatenate([[1.0], rng.uniform(-1.0, 2.0, n_null)])
    e = np.tile(10.0 ** log10_e[:, None], (1, ncell))
    e[0, groups == 'A'] *= fold
    if batch_effect is not None:
        e[:, batch == 'b2'] *= batch_effect

    corr_intercept = rng.normal(0.0, 0.2, ncell)
    corr_slope = rng.uniform(0.9, 1.1, ncell)
    conc_intercept = rng.normal(-1.0, 0.2, ncell)
    conc_slope = np.full(ncell, 2.0)
    phi = 0.2
    fail_rate = 0.05

    log_e = np.log(e)
    mu = np.exp(corr_intercept[None, :] + corr_slope[None, :] * log_e)
    p_detect = 1.0 / (1.0 + np.exp(-(conc_intercept[None, :] + conc_slope[None, :] * log_e)))
    size = 1.0 / phi
    nb = rng.negative_binomial(size, size / (size + mu))
    background = rng.poisson(fail_rate, mu.shape)
    detected = rng.uniform(size=mu.shape) < p_detect
    counts = np.where(detected, nb, background).astype(np.float64)

    genes = ['DE'] + [f"Null{i + 1}" for i in range(n_null)]
    return {
        'counts': counts,
        'genes': genes,
        'groups': groups,
        'batch': batch,
        'params': {'corr_intercept': corr_intercept, 'corr_slope': corr_slope},
    }


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture(scope="session")
def sim():
    return simulate_counts(np.random.RandomState(7))


@pytest.fixture(scope="session")
def count_data(sim):
    return sd.make_count_data(sim['counts'], groups=sim['groups'], genes=sim['genes'])


@pytest.fixture(scope="session")
def models(count_data):
    return sd.fit_error_models(count_data)


@pytest.fixture(scope="session")
def prior(models, count_data):
    return sd.build_expression_prior(models, count_data, length_out=200)


@pytest.fixture(scope="session")
def batch_sim():
    return simulate_counts(np.random.RandomState(11), batch_effect=1.5)


@pytest.fixture(scope="session")
def batch_data(batch_sim):
    return sd.make_count_data(batch_sim['counts'], groups=batch_sim['groups'],
                              batch=batch_sim['batch'], genes=batch_sim['genes'])


@pytest.fixture(scope="session")
def batch_models(batch_data):
    return sd.fit_error_models(batch_data)


@pytest.fixture(scope="session")
def batch_prior(batch_models, batch_data):
    return sd.build_expression_prior(batch_models, batch_data, length_out=200)
