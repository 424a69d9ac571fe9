"""
Per-cell error model fitting.

Each cell is compared against the other cells of its fitting group on
the group's robust genes. The pairwise comparisons give a consensus
expression magnitude per gene, against which the cell's counts are fit
with a two-component mixture: a negative binomial whose log-mean is
linear in log-magnitude ("corr"), and a Poisson background of fixed
rate, mixed with a logistic concomitant model of log-magnitude
("conc"). Peers that consistently over- or under-predict the cell are
down-weighted in the consensus.
"""

from __future__ import annotations

import math
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, asdict, fields

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.special import gammaln, digamma

from .config import AnalysisConfig
from .counts import as_count_data
from .errors import ModelFitFailure
from .likelihood import component_logliks
from .robust_genes import fitting_plan, select_robust_genes_for_cells, detection_mask
from .utils import mad, tukey_biweight


MODEL_PARAMS = ('corr_slope', 'corr_intercept', 'conc_slope', 'conc_intercept',
                'nb_overdispersion', 'poisson_fail_rate')

_LOG_PHI_BOUNDS = (math.log(1e-4), math.log(1e3))
_CONC_BOUND = 50.0
_CONC_RIDGE = 1e-4
_NOISE_FLOOR = 0.05
_MIN_FIT_GENES = 5


@dataclass(frozen=True)
class ErrorModel:
    """Fitted error model of one cell.

    ``valid`` is False for cells whose fit failed, did not converge or
    produced a non-positive ``corr_slope``; ``failure`` then says why.
    ``group`` is the cell's own label (None if unassigned), whatever
    peers it was fitted against.
    """

    cell: str
    group: str | None
    corr_slope: float
    corr_intercept: float
    conc_slope: float
    conc_intercept: float
    nb_overdispersion: float
    poisson_fail_rate: float
    valid: bool = True
    converged: bool = True
    n_genes: int = 0
    loglik: float = float('nan')
    failure: str | None = None

    def __post_init__(self):
        if self.valid:
            params = [getattr(self, p) for p in MODEL_PARAMS]
            if not all(np.isfinite(params)):
                raise ValueError(f"Valid model for cell '{self.cell}' has non-finite parameters")
            if not self.corr_slope > 0:
                raise ValueError(f"Valid model for cell '{self.cell}' requires corr_slope > 0")
            if not (self.nb_overdispersion > 0 and self.poisson_fail_rate > 0):
                raise ValueError(
                    f"Valid model for cell '{self.cell}' requires positive overdispersion "
                    f"and background rate")

    @classmethod
    def failed(cls, cell, group, reason, **params):
        """Invalid model row for an audited failure."""
        values = {p: float(params.get(p, np.nan)) for p in MODEL_PARAMS}
        return cls(cell=cell, group=group, valid=False,
                   converged=bool(params.get('converged', False)),
                   n_genes=int(params.get('n_genes', 0)),
                   loglik=float(params.get('loglik', np.nan)),
                   failure=reason, **values)


class ErrorModelTable:
    """Ordered, read-only collection of per-cell error models.

    Invalid models stay in the table for auditing; ``params()`` refuses
    them so they never reach a posterior computation.
    """

    def __init__(self, models):
        self._models = tuple(models)
        self._index = {m.cell: k for k, m in enumerate(self._models)}
        if len(self._index) != len(self._models):
            raise ValueError("Duplicate cell names in error model table")

    def __len__(self):
        return len(self._models)

    def __iter__(self):
        return iter(self._models)

    def __getitem__(self, key):
        if isinstance(key, (int, np.integer)):
            return self._models[key]
        return self._models[self._index[key]]

    def __contains__(self, cell):
        return cell in self._index

    def __repr__(self):
        return (f"ErrorModelTable with {len(self)} cells "
                f"({int(self.valid_mask.sum())} valid)")

    @property
    def cells(self):
        return np.array([m.cell for m in self._models], dtype=object)

    @property
    def valid_mask(self):
        return np.array([m.valid for m in self._models], dtype=bool)

    @property
    def invalid_cells(self):
        return [m.cell for m in self._models if not m.valid]

    def valid(self):
        """Table restricted to valid models."""
        return ErrorModelTable(m for m in self._models if m.valid)

    def params(self, cells=None):
        """Parameter arrays aligned to ``cells`` (default: all valid cells).

        Raises
        ------
        KeyError
            A cell has no model.
        ValueError
            A requested cell's model is invalid.
        """
        if cells is None:
            models = [m for m in self._models if m.valid]
        else:
            models = [self[c] for c in cells]
        bad = [m.cell for m in models if not m.valid]
        if bad:
            raise ValueError(f"Invalid error models requested for cells: {bad}")
        return {p: np.array([getattr(m, p) for m in models], dtype=np.float64)
                for p in MODEL_PARAMS}

    def to_frame(self):
        """DataFrame indexed by cell, one column per model field."""
        rows = [asdict(m) for m in self._models]
        cols = [f.name for f in fields(ErrorModel)]
        return pd.DataFrame(rows, columns=cols).set_index('cell')

    @classmethod
    def from_frame(cls, frame):
        """Rebuild a table from ``to_frame()`` output.

        Missing bookkeeping columns are filled in; ``valid`` is recomputed
        from the parameters when absent and cannot mark a non-positive
        ``corr_slope`` as valid.
        """
        frame = frame.copy()
        if 'cell' not in frame.columns:
            frame = frame.reset_index().rename(columns={frame.index.name or 'index': 'cell'})
        missing = [p for p in MODEL_PARAMS if p not in frame.columns]
        if missing:
            raise ValueError(f"Error model frame lacks columns: {missing}")
        models = []
        for row in frame.to_dict('records'):
            params = {p: float(row[p]) for p in MODEL_PARAMS}
            ok = (all(np.isfinite(list(params.values()))) and params['corr_slope'] > 0
                  and params['nb_overdispersion'] > 0 and params['poisson_fail_rate'] > 0)
            valid = bool(row.get('valid', True)) and ok
            failure = row.get('failure')
            if isinstance(failure, float) and np.isnan(failure):
                failure = None
            if not valid and failure is None:
                failure = 'invalid parameters'
            loglik = row.get('loglik', np.nan)
            group = row.get('group')
            if group is not None and not (isinstance(group, float) and np.isnan(group)):
                group = str(group)
            else:
                group = None
            models.append(ErrorModel(
                cell=str(row['cell']),
                group=group,
                valid=valid,
                converged=bool(row.get('converged', True)),
                n_genes=int(row.get('n_genes', 0)),
                loglik=float(np.nan if loglik is None else loglik),
                failure=failure,
                **params,
            ))
        return cls(models)


# ---------------------------------------------------------------------------
# Mixture fit for one cell
# ---------------------------------------------------------------------------

def _nb_objective(theta, y, log_e, w):
    """Weighted NB negative log-likelihood and gradient in (a, b, log phi)."""
    a, b, log_phi = theta
    eta = np.clip(a + b * log_e, -700.0, 700.0)
    mu = np.exp(eta)
    log_size = -log_phi
    size = math.exp(log_size)
    lse = np.logaddexp(log_size, eta)
    ll = (gammaln(y + size) - gammaln(size) - gammaln(y + 1.0)
          + size * (log_size - lse) + y * (eta - lse))
    inv = np.exp(-lse)
    dl_deta = size * (y - mu) * inv
    dl_dsize = digamma(y + size) - digamma(size) + (log_size - lse) + (mu - y) * inv
    grad = np.array([
        np.sum(w * dl_deta),
        np.sum(w * dl_deta * log_e),
        np.sum(w * dl_dsize) * -size,
    ])
    return -np.sum(w * ll), -grad


def _conc_objective(theta, log_e, r):
    """Logistic concomitant negative log-likelihood and gradient."""
    eta = theta[0] + theta[1] * log_e
    f = -np.sum(r * -np.logaddexp(0.0, -eta) + (1.0 - r) * -np.logaddexp(0.0, eta))
    f += 0.5 * _CONC_RIDGE * np.dot(theta, theta)
    p = np.exp(-np.logaddexp(0.0, -eta))
    d = p - r
    grad = np.array([np.sum(d), np.sum(d * log_e)]) + _CONC_RIDGE * theta
    return f, grad


def _fit_nb(y, log_e, w, theta0):
    res = minimize(_nb_objective, theta0, args=(y, log_e, w), jac=True, method='L-BFGS-B',
                   bounds=[(None, None), (None, None), _LOG_PHI_BOUNDS])
    if not np.all(np.isfinite(res.x)):
        raise FloatingPointError("NB regression produced non-finite parameters")
    return res.x


def _fit_conc(log_e, r, theta0):
    res = minimize(_conc_objective, theta0, args=(log_e, r), jac=True, method='L-BFGS-B',
                   bounds=[(-_CONC_BOUND, _CONC_BOUND)] * 2)
    if not np.all(np.isfinite(res.x)):
        raise FloatingPointError("Concomitant regression produced non-finite parameters")
    return res.x


def fit_cell_mixture(y, log_e, fail_rate, config, cell='', group=''):
    """Fit the NB + Poisson mixture of one cell against consensus magnitudes.

    Parameters
    ----------
    y : ndarray
        The cell's counts on the usable robust genes.
    log_e : ndarray
        Natural-log consensus magnitude of the same genes.
    fail_rate : float
        Background Poisson rate (held fixed).
    config : AnalysisConfig

    Returns
    -------
    ErrorModel
        Invalid (with reason) when the EM does not converge or the slope
        is not positive.

    Raises
    ------
    ModelFitFailure
        Too few genes or degenerate magnitudes to start a fit.
    """
    y = np.asarray(y, dtype=np.float64)
    log_e = np.asarray(log_e, dtype=np.float64)
    if len(y) < _MIN_FIT_GENES:
        raise ModelFitFailure(cell, f"only {len(y)} usable genes")
    pos = y > 0
    if pos.sum() < 3 or np.ptp(log_e[pos]) <= 0:
        raise ModelFitFailure(cell, "too few detected genes with distinct magnitudes")

    if config.threshold_segmentation:
        locked = y > config.detection_threshold
        resp = locked.astype(np.float64)
    else:
        locked = np.zeros(len(y), dtype=bool)
        resp = np.where(pos, 1.0, 0.5)

    slope, intercept = np.polyfit(log_e[pos], np.log(y[pos]), 1)
    nb_theta = np.array([intercept, slope, math.log(0.5)])
    conc_theta = np.zeros(2)

    prev = -np.inf
    converged = False
    ll = -np.inf
    for _ in range(config.max_iter):
        nb_theta = _fit_nb(y, log_e, resp, nb_theta)
        conc_theta = _fit_conc(log_e, resp, conc_theta)
        l_nb, l_fail = component_logliks(
            y, log_e, nb_theta[0], nb_theta[1], conc_theta[0], conc_theta[1],
            math.exp(nb_theta[2]), fail_rate)
        total = np.logaddexp(l_nb, l_fail)
        ll = float(np.sum(total))
        if not np.isfinite(ll):
            raise ModelFitFailure(cell, "non-finite mixture log-likelihood")
        resp = np.exp(l_nb - total)
        resp[locked] = 1.0
        if abs(ll - prev) <= config.tol * (abs(ll) + 1.0):
            converged = True
            break
        prev = ll

    params = dict(
        corr_intercept=float(nb_theta[0]),
        corr_slope=float(nb_theta[1]),
        conc_intercept=float(conc_theta[0]),
        conc_slope=float(conc_theta[1]),
        nb_overdispersion=float(math.exp(nb_theta[2])),
        poisson_fail_rate=float(fail_rate),
    )
    if not converged:
        return ErrorModel.failed(cell, group, f"EM did not converge within {config.max_iter} iterations",
                                 converged=False, n_genes=len(y), loglik=ll, **params)
    if not params['corr_slope'] > 0:
        return ErrorModel.failed(cell, group, "non-positive corr_slope",
                                 converged=True, n_genes=len(y), loglik=ll, **params)
    return ErrorModel(cell=cell, group=group, valid=True, converged=True,
                      n_genes=len(y), loglik=ll, **params)


# ---------------------------------------------------------------------------
# Cross-cell consensus
# ---------------------------------------------------------------------------

def _size_factors(log_y, detected):
    """Median-of-ratios size factors (log scale) over co-detected genes."""
    n_det = detected.sum(axis=1)
    gm = np.where(n_det > 0, (log_y * detected).sum(axis=1) / np.maximum(n_det, 1), np.nan)
    ratios = np.where(detected, log_y - gm[:, None], np.nan)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        return np.nanmedian(ratios, axis=0)


def peer_weights(log_n_cell, det_cell, log_n_peers, det_peers, config):
    """Consensus weights of the peers of one cell.

    Each peer is compared with the cell on co-detected genes: the median
    normalised log-ratio is its bias and the MAD its noise. Biases are
    standardised across peers and passed through a Tukey biweight, then
    divided by the squared noise.
    """
    co = det_cell[:, None] & det_peers
    diff = np.where(co, log_n_cell[:, None] - log_n_peers, np.nan)
    n_co = co.sum(axis=0)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        bias = np.nanmedian(diff, axis=0)
        noise = 1.4826 * np.nanmedian(np.abs(diff - bias[None, :]), axis=0)
    ok = (n_co >= 3) & np.isfinite(bias) & np.isfinite(noise)
    w = np.zeros(log_n_peers.shape[1])
    if not ok.any():
        return w
    spread = mad(bias[ok])
    if not spread > 1e-3:
        spread = 1e-3
    u = (bias - np.median(bias[ok])) / spread
    w[ok] = tukey_biweight(u[ok], config.peer_biweight_c) / np.maximum(noise[ok], _NOISE_FLOOR) ** 2
    if not w.sum() > 0:
        w = ok.astype(np.float64)
    return w


def _fit_cells(task):
    """Worker: fit a chunk of cells of one fitting group."""
    (positions, cell_names, cell_groups, y, detected, log_n, log_s, fail_rates, config) = task
    out = []
    npeer = y.shape[1]
    for pos, name, label, fail_rate in zip(positions, cell_names, cell_groups, fail_rates):
        try:
            if not np.isfinite(log_s[pos]):
                raise ModelFitFailure(name, "no detected robust genes")
            others = np.array([k for k in range(npeer) if k != pos and np.isfinite(log_s[k])],
                              dtype=np.intp)
            if len(others) < config.min_nonfailed:
                raise ModelFitFailure(name, f"only {len(others)} usable peer cells")
            w = peer_weights(log_n[:, pos], detected[:, pos], log_n[:, others],
                             detected[:, others], config)
            if not w.sum() > 0:
                raise ModelFitFailure(name, "no peer cell is comparable")
            d_o = detected[:, others]
            wd = d_o * w[None, :]
            den = wd.sum(axis=1)
            num = (np.where(d_o, log_n[:, others], 0.0) * w[None, :]).sum(axis=1)
            use = (d_o.sum(axis=1) >= config.min_nonfailed) & (den > 0)
            log_e = num[use] / den[use]
            out.append(fit_cell_mixture(y[use, pos], log_e, fail_rate, config, name, label))
        except ModelFitFailure as exc:
            out.append(ErrorModel.failed(name, label, exc.reason))
        except (FloatingPointError, ValueError, np.linalg.LinAlgError) as exc:
            out.append(ErrorModel.failed(name, label, f"{type(exc).__name__}: {exc}"))
    return out


def background_rates(counts, peers, members, config):
    """Background Poisson rate of each member cell.

    Mean count over genes detected in at most
    ``background_detection_fraction`` of the peer cells, floored at
    ``min_fail_rate``; the fixed ``poisson_fail_rate`` when configured.
    """
    if config.poisson_fail_rate is not None:
        return np.full(len(members), float(config.poisson_fail_rate))
    frac = detection_mask(counts[:, peers], config).mean(axis=1)
    bg = frac <= config.background_detection_fraction
    if not bg.any():
        return np.full(len(members), config.min_fail_rate)
    rates = counts[bg][:, members].mean(axis=0)
    return np.maximum(rates, config.min_fail_rate)


def fit_error_models(data, config=None, robust_genes=None, **kwargs):
    """Fit one error model per cell.

    Parameters
    ----------
    data : CountData or array-like
        Count data with group labels.
    config : AnalysisConfig, optional
        Keyword arguments override its fields (``groups``, ``n_cores``,
        ``threshold_segmentation``, ``verbose``, ...).
    robust_genes : dict, optional
        Precomputed fitting-group -> gene indices, as returned by
        ``select_robust_genes``.

    Returns
    -------
    ErrorModelTable
        One model per cell in data order. Failed cells are present with
        ``valid=False``.

    Raises
    ------
    InsufficientRobustGenesError
        A fitting group has too few robust genes; raised before any cell
        is fitted.
    """
    config = AnalysisConfig.from_kwargs(config, **kwargs)
    data = as_count_data(data)
    counts = data['counts']
    cells = data['cells']
    ncell = counts.shape[1]

    plan = fitting_plan(data.get('groups'), ncell, config.groups)
    cell_groups = data.get('groups')
    cell_groups = (np.full(ncell, None, dtype=object) if cell_groups is None
                   else np.asarray(cell_groups, dtype=object))
    if robust_genes is None:
        robust_genes = {label: select_robust_genes_for_cells(counts[:, peers], label, config)
                        for label, _, peers in plan}

    tasks = []
    task_members = []
    for label, members, peers in plan:
        genes = np.asarray(robust_genes[label], dtype=np.intp)
        y = np.ascontiguousarray(counts[genes][:, peers])
        detected = detection_mask(y, config)
        log_y = np.log(np.where(detected, y, 1.0))
        log_s = _size_factors(log_y, detected)
        log_n = log_y - np.where(np.isfinite(log_s), log_s, 0.0)[None, :]
        fail = background_rates(counts, peers, members, config)
        where = {int(c): k for k, c in enumerate(peers)}
        positions = np.array([where[int(c)] for c in members], dtype=np.intp)
        if config.verbose:
            print(f"Group {label}: fitting {len(members)} cells against "
                  f"{len(peers)} peers on {len(genes)} robust genes.")
        nchunk = max(1, min(len(members), config.n_cores * 4))
        for idx in np.array_split(np.arange(len(members)), nchunk):
            if len(idx) == 0:
                continue
            tasks.append((positions[idx], cells[members[idx]], cell_groups[members[idx]], y,
                          detected, log_n, log_s, fail[idx], config))
            task_members.append(members[idx])

    if config.n_cores > 1 and len(tasks) > 1:
        with ProcessPoolExecutor(max_workers=config.n_cores) as executor:
            results = list(executor.map(_fit_cells, tasks))
    else:
        results = []
        for k, task in enumerate(tasks):
            if config.verbose > 1:
                print(f"  Cell chunk {k + 1}/{len(tasks)}...")
            results.append(_fit_cells(task))

    models = [None] * ncell
    for members, fitted in zip(task_members, results):
        for c, model in zip(members, fitted):
            models[int(c)] = model

    table = ErrorModelTable(models)
    if config.verbose:
        print(f"Fitted {ncell} error models; {len(table.invalid_cells)} invalid.")
    return table
