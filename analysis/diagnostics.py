"""Convergence diagnostics and posterior summaries for fitted beta regressions.

R-hat and bulk ESS come from ArviZ (rank-normalized split R-hat, Vehtari et
al. 2021). A parameter is flagged when R-hat exceeds the threshold or ESS is
small relative to the total number of retained draws; non-finite values (too
few draws to estimate) are flagged as well.
"""

from __future__ import annotations

import math

import arviz as az
import numpy as np
import polars as pl

RHAT_THRESHOLD = 1.05
MIN_ESS_RATIO = 0.1  # bulk ESS must be at least 10% of chains × draws
MIN_RHAT_CHAINS = 2  # ArviZ returns NaN R-hat below these
MIN_RHAT_DRAWS = 4
SUMMARY_QUANTILES = (0.05, 0.5, 0.95)


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def _scalar_or_max(values: np.ndarray, reducer) -> float:
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0 or np.all(np.isnan(arr)):
        return float("nan")
    return float(reducer(arr))


def check_convergence(
    idata: az.InferenceData,
    label: str,
    *,
    rhat_threshold: float = RHAT_THRESHOLD,
    min_ess_ratio: float = MIN_ESS_RATIO,
    var_names: list[str] | None = None,
) -> dict:
    """Check R-hat, ESS and divergences for every posterior variable.

    Returns dict with per-parameter "rhat" and "ess" maps, "flagged_rhat",
    "flagged_ess", "divergences", "max_rhat", "min_ess", "total_draws",
    "rhat_defined", "all_ok". rhat_defined is False when there are fewer
    than 2 chains or 4 draws per chain; every R-hat is then NaN and flagged.
    """
    print_header(f"CONVERGENCE — {label}")

    posterior = idata.posterior
    names = var_names or list(posterior.data_vars)
    n_chains = int(posterior.sizes["chain"])
    n_draws = int(posterior.sizes["draw"])
    total = n_chains * n_draws
    rhat_defined = n_chains >= MIN_RHAT_CHAINS and n_draws >= MIN_RHAT_DRAWS
    if not rhat_defined:
        print(
            f"  R-hat undefined for {n_chains} chain(s) x {n_draws} draws "
            f"(needs {MIN_RHAT_CHAINS}+ chains of {MIN_RHAT_DRAWS}+ draws)"
        )

    rhat_ds = az.rhat(idata, var_names=names)
    ess_ds = az.ess(idata, var_names=names)

    diag: dict = {
        "rhat": {},
        "ess": {},
        "flagged_rhat": [],
        "flagged_ess": [],
        "n_chains": n_chains,
        "n_draws": n_draws,
        "total_draws": total,
        "rhat_defined": rhat_defined,
    }

    for var in names:
        r = _scalar_or_max(rhat_ds[var].values, np.nanmax)
        e = _scalar_or_max(ess_ds[var].values, np.nanmin)
        diag["rhat"][var] = r
        diag["ess"][var] = e

        rhat_ok = math.isfinite(r) and r <= rhat_threshold
        ess_ok = math.isfinite(e) and e >= min_ess_ratio * total
        if not rhat_ok:
            diag["flagged_rhat"].append(var)
        if not ess_ok:
            diag["flagged_ess"].append(var)

        per_chain = e / n_chains if math.isfinite(e) else float("nan")
        print(
            f"  {var:<28} R-hat = {r:.4f}  {'OK' if rhat_ok else 'WARNING'}   "
            f"ESS = {e:.0f}  {'OK' if ess_ok else 'WARNING'}  (per-chain: {per_chain:.0f})"
        )

    finite_rhat = [v for v in diag["rhat"].values() if math.isfinite(v)]
    finite_ess = [v for v in diag["ess"].values() if math.isfinite(v)]
    diag["max_rhat"] = max(finite_rhat) if finite_rhat else float("nan")
    diag["min_ess"] = min(finite_ess) if finite_ess else float("nan")

    # Divergences (only samplers that record them)
    divergences = 0
    sample_stats = getattr(idata, "sample_stats", None)
    if sample_stats is not None and "diverging" in sample_stats:
        divergences = int(sample_stats["diverging"].sum().values)
    diag["divergences"] = divergences
    if divergences:
        print(f"  Divergences: {divergences}  WARNING")

    diag["all_ok"] = not diag["flagged_rhat"] and not diag["flagged_ess"]
    if diag["all_ok"]:
        print(f"  CONVERGENCE: ALL CHECKS PASSED ({n_chains} chains x {n_draws} draws)")
    else:
        print("  CONVERGENCE: SOME CHECKS FAILED — inspect diagnostics")

    return diag


def posterior_summary(idata: az.InferenceData, diag: dict | None = None) -> pl.DataFrame:
    """One row per posterior variable: mean, sd, quantiles, R-hat, ESS."""
    posterior = idata.posterior
    rows: list[dict] = []
    for var in posterior.data_vars:
        draws = posterior[var].values.reshape(-1)
        q = np.quantile(draws, SUMMARY_QUANTILES)
        rows.append(
            {
                "parameter": var,
                "mean": float(draws.mean()),
                "sd": float(draws.std(ddof=1)) if draws.size > 1 else float("nan"),
                "q5": float(q[0]),
                "q50": float(q[1]),
                "q95": float(q[2]),
                "rhat": (diag or {}).get("rhat", {}).get(var, float("nan")),
                "ess_bulk": (diag or {}).get("ess", {}).get(var, float("nan")),
            }
        )
    return pl.DataFrame(rows)
