"""Predictive check computations — pure functions, no I/O.

All functions take a FitResult (or simulated arrays) plus a Dataset and return
numpy arrays, dicts or polars tables. No file reading, no prints, fully
testable with synthetic draws.

Predictions use the uncentred intercepts (mu_b0, phi_b0), so one fit can be
evaluated on any dataset: the training counties, the held-out counties, or
nothing at all for prior-only fits. Log-likelihood is computed with numpy and
scipy rather than by rebuilding the PyMC model.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import arviz as az
import numpy as np
import polars as pl
import xarray as xr
from numpy.typing import NDArray
from scipy import stats
from scipy.special import expit

from turnout.config import ID_COLUMN
from turnout.dataset import Dataset
from turnout.errors import ConfigError

try:
    from analysis.model_spec import MEAN, PRECISION, uncentered_intercept_name, variable_name
except ModuleNotFoundError:
    from model_spec import (  # type: ignore[no-redef]
        MEAN,
        PRECISION,
        uncentered_intercept_name,
        variable_name,
    )

if TYPE_CHECKING:
    from analysis.inference import FitResult

RANDOM_SEED = 42
INTERVAL_PROBS = (0.5, 0.9)
ETA_CLIP = 30.0  # exp(30) ≈ 1e13: keeps phi finite for extreme prior draws
PRIOR_EDGE = 0.01


# ── Linear Predictors ───────────────────────────────────────────────────────


def _coefficient_draws(fit: FitResult, family: str) -> tuple[NDArray, NDArray]:
    """(b0 draws (S,), slope draws (S, k)) for one submodel."""
    b0 = fit.draws(uncentered_intercept_name(family))
    names = fit.spec.variables(family)
    if not names:
        return b0, np.empty((b0.size, 0))
    slopes = np.column_stack([fit.draws(variable_name(family, v)) for v in names])
    return b0, slopes


def linear_predictors(fit: FitResult, dataset: Dataset) -> tuple[NDArray, NDArray]:
    """Mean mu and precision phi for every retained draw and observation.

    Returns:
        (mu, phi), each of shape (n_draws_total, dataset.n_rows).
    """
    b0_mu, slopes_mu = _coefficient_draws(fit, MEAN)
    b0_phi, slopes_phi = _coefficient_draws(fit, PRECISION)

    x_mu = dataset.matrix(fit.spec.variables(MEAN))
    x_phi = dataset.matrix(fit.spec.variables(PRECISION))

    eta_mu = b0_mu[:, None] + slopes_mu @ x_mu.T
    eta_phi = b0_phi[:, None] + slopes_phi @ x_phi.T

    mu = expit(np.clip(eta_mu, -ETA_CLIP, ETA_CLIP))
    phi = np.exp(np.clip(eta_phi, -ETA_CLIP, ETA_CLIP))
    return mu, phi


# ── Predictive Simulation ───────────────────────────────────────────────────


def simulate_predictive(
    mu: NDArray,
    phi: NDArray,
    rng: np.random.Generator,
) -> NDArray:
    """One Beta(mu * phi, (1 - mu) * phi) draw per cell."""
    return rng.beta(mu * phi, (1.0 - mu) * phi)


def posterior_predictive(
    fit: FitResult,
    dataset: Dataset,
    n_reps: int | None = None,
    seed: int = RANDOM_SEED,
) -> NDArray:
    """Simulated turnout for each observation of dataset.

    One row per retained draw, or per draw of a seeded subsample of n_reps
    draws (without replacement, in draw order). The fit is not modified.

    Returns:
        Array of shape (n_reps or total draws, dataset.n_rows).
    """
    mu, phi = linear_predictors(fit, dataset)
    rng = np.random.default_rng(seed)
    n_total = mu.shape[0]
    if n_reps is not None:
        if n_reps < 1:
            msg = f"n_reps must be positive, got {n_reps}"
            raise ConfigError(msg)
        if n_reps < n_total:
            idx = np.sort(rng.choice(n_total, size=n_reps, replace=False))
            mu, phi = mu[idx], phi[idx]
    return simulate_predictive(mu, phi, rng)


# ── Interval Summaries ──────────────────────────────────────────────────────


def _label(prob: float) -> str:
    return f"{round(prob * 100):d}"


def _check_probs(probs: tuple[float, ...]) -> None:
    for p in probs:
        if not 0 < p < 1:
            msg = f"Interval probabilities must lie in (0, 1), got {p}"
            raise ConfigError(msg)


def predictive_intervals(
    y_rep: NDArray,
    dataset: Dataset,
    probs: tuple[float, ...] = INTERVAL_PROBS,
) -> pl.DataFrame:
    """Per-observation predictive mean, median and central intervals.

    For each probability p there are lower_<p>, upper_<p> and inside_<p>
    columns (e.g. lower_90 / upper_90 / inside_90), the last flagging whether
    the observed turnout falls inside the interval.
    """
    _check_probs(probs)
    if y_rep.ndim != 2 or y_rep.shape[1] != dataset.n_rows:
        msg = f"y_rep has shape {y_rep.shape}, expected (n_reps, {dataset.n_rows})"
        raise ValueError(msg)

    observed = dataset.response
    columns: dict[str, object] = {
        ID_COLUMN: dataset.ids,
        "observed": observed,
        "mean": y_rep.mean(axis=0),
        "median": np.median(y_rep, axis=0),
    }
    for p in probs:
        lo, hi = np.quantile(y_rep, [(1 - p) / 2, (1 + p) / 2], axis=0)
        label = _label(p)
        columns[f"lower_{label}"] = lo
        columns[f"upper_{label}"] = hi
        columns[f"inside_{label}"] = (observed >= lo) & (observed <= hi)
    return pl.DataFrame(columns)


def interval_coverage(
    intervals: pl.DataFrame,
    probs: tuple[float, ...] = INTERVAL_PROBS,
) -> dict[float, float]:
    """Empirical coverage: share of observations inside each central interval."""
    _check_probs(probs)
    return {p: float(intervals[f"inside_{_label(p)}"].mean()) for p in probs}


# ── PPC Battery ─────────────────────────────────────────────────────────────

_STATISTICS = {
    "mean": lambda a, axis=None: np.mean(a, axis=axis),
    "sd": lambda a, axis=None: np.std(a, axis=axis, ddof=1),
    "min": lambda a, axis=None: np.min(a, axis=axis),
    "max": lambda a, axis=None: np.max(a, axis=axis),
}


def run_ppc_battery(y_rep: NDArray, observed: NDArray) -> dict:
    """Compare summary statistics of the observed and replicated turnout.

    Returns dict keyed by statistic ("mean", "sd", "min", "max"), each with
    the observed value, the mean and sd of the replicated values, and the
    Bayesian p-value P(T(y_rep) >= T(y)). Values near 0 or 1 indicate misfit.
    """
    observed = np.asarray(observed, dtype=np.float64)
    results: dict = {"n_reps": int(y_rep.shape[0]), "n_obs": int(observed.size)}
    for name, stat in _STATISTICS.items():
        if name == "sd" and observed.size < 2:
            continue
        obs_value = float(stat(observed))
        rep_values = stat(y_rep, axis=1)
        results[name] = {
            "observed": obs_value,
            "replicated_mean": float(rep_values.mean()),
            "replicated_sd": float(rep_values.std()),
            "bayesian_p": float(np.mean(rep_values >= obs_value)),
        }
    return results


def battery_table(battery: dict, label: str) -> pl.DataFrame:
    """Flatten run_ppc_battery output to one row per statistic."""
    rows = [
        {"model": label, "statistic": name, **values}
        for name, values in battery.items()
        if isinstance(values, dict)
    ]
    return pl.DataFrame(rows)


def prior_predictive_summary(y_rep: NDArray, edge: float = PRIOR_EDGE) -> dict:
    """Describe simulated turnout under the priors alone.

    A weakly informative prior should put most mass away from the 0/1 edges;
    share_near_0 / share_near_1 report how much piles up within edge of them.
    """
    flat = np.asarray(y_rep, dtype=np.float64).reshape(-1)
    q = np.quantile(flat, [0.05, 0.25, 0.5, 0.75, 0.95])
    return {
        "n_values": int(flat.size),
        "mean": float(flat.mean()),
        "sd": float(flat.std()),
        "q05": float(q[0]),
        "q25": float(q[1]),
        "q50": float(q[2]),
        "q75": float(q[3]),
        "q95": float(q[4]),
        "share_near_0": float(np.mean(flat < edge)),
        "share_near_1": float(np.mean(flat > 1 - edge)),
    }


def holdout_metrics(
    y_rep: NDArray,
    dataset: Dataset,
    probs: tuple[float, ...] = INTERVAL_PROBS,
) -> dict:
    """Error of the predictive mean and interval coverage on held-out rows."""
    intervals = predictive_intervals(y_rep, dataset, probs)
    resid = intervals["observed"].to_numpy() - intervals["mean"].to_numpy()
    metrics = {
        "n_obs": dataset.n_rows,
        "rmse": float(np.sqrt(np.mean(resid**2))),
        "mae": float(np.mean(np.abs(resid))),
    }
    for p, cov in interval_coverage(intervals, probs).items():
        metrics[f"coverage_{_label(p)}"] = cov
    return metrics


# ── Log-Likelihood ──────────────────────────────────────────────────────────


def compute_log_likelihood(fit: FitResult, dataset: Dataset) -> xr.Dataset:
    """Pointwise Beta log-density of the observed turnout for every draw.

    Returns xarray Dataset with shape (chain, draw, obs), one variable named
    after the response.
    """
    mu, phi = linear_predictors(fit, dataset)
    y = dataset.response
    log_lik = stats.beta.logpdf(y[None, :], mu * phi, (1.0 - mu) * phi)

    n_chains, n_draws = fit.n_chains, fit.n_draws
    log_lik = log_lik.reshape(n_chains, n_draws, dataset.n_rows)
    return xr.Dataset(
        {fit.spec.response: (["chain", "draw", "obs"], log_lik)},
        coords={
            "chain": np.arange(n_chains),
            "draw": np.arange(n_draws),
            "obs": np.arange(dataset.n_rows),
        },
    )


def add_log_likelihood_to_idata(
    idata: az.InferenceData,
    log_lik_dataset: xr.Dataset,
) -> az.InferenceData:
    """Add log_likelihood group to InferenceData (returns new object)."""
    return idata.copy() + az.InferenceData(log_likelihood=log_lik_dataset)


# ── LOO-CV Model Comparison ────────────────────────────────────────────────


def compute_loo(idata: az.InferenceData) -> az.ELPDData:
    """Compute LOO-CV using PSIS (Pareto-smoothed importance sampling).

    Requires log_likelihood group in idata.
    """
    return az.loo(idata, pointwise=True)


def compare_models(
    model_idatas: dict[str, az.InferenceData],
) -> tuple[pl.DataFrame, dict[str, az.ELPDData]]:
    """Compare multiple models via LOO-CV.

    Args:
        model_idatas: {model_name: idata_with_log_likelihood}

    Returns:
        (comparison table ranked best first, {model_name: loo_result})
    """
    loo_results = {name: compute_loo(idata) for name, idata in model_idatas.items()}
    comparison = az.compare(loo_results)

    rows = []
    for name, row in comparison.iterrows():
        rows.append(
            {
                "model": str(name),
                "rank": int(row["rank"]),
                "elpd_loo": float(row["elpd_loo"]),
                "p_loo": float(row["p_loo"]),
                "elpd_diff": float(row["elpd_diff"]),
                "weight": float(row["weight"]),
                "se": float(row["se"]),
                "dse": float(row["dse"]),
                "warning": bool(row["warning"]),
            }
        )
    return pl.DataFrame(rows), loo_results


def summarize_pareto_k(loo_result: az.ELPDData) -> dict[str, int | float]:
    """Count observations in each Pareto k diagnostic category.

    Categories (Vehtari et al. 2017):
      good:       k < 0.5  (reliable)
      ok:         0.5 <= k < 0.7  (marginal)
      bad:        0.7 <= k < 1.0  (unreliable, higher variance)
      very_bad:   k >= 1.0  (PSIS fails)
    """
    k_values = np.asarray(loo_result.pareto_k.values)

    return {
        "good": int(np.sum(k_values < 0.5)),
        "ok": int(np.sum((k_values >= 0.5) & (k_values < 0.7))),
        "bad": int(np.sum((k_values >= 0.7) & (k_values < 1.0))),
        "very_bad": int(np.sum(k_values >= 1.0)),
        "total": len(k_values),
        "max_k": float(np.max(k_values)),
        "mean_k": float(np.mean(k_values)),
    }
