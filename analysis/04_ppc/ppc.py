"""
County Turnout — Posterior Predictive Checks and Model Comparison (Phase 4)

Loads the four beta regression fits from the model cache (sampling only what
is missing or stale) and asks how well each reproduces the data:

  1. Posterior predictive battery on the training counties: mean, sd, min and
     max of simulated turnout against the observed values (Bayesian p-values)
  2. Interval coverage of 50% and 90% predictive intervals
  3. Holdout: RMSE, MAE and coverage on the 10% of counties not used to fit
  4. PSIS-LOO comparison of the variants, with Pareto k diagnostics

Usage:
  uv run python analysis/04_ppc/ppc.py [--n-reps 1000]

Outputs (in results/04_ppc/<date>/):
  - data/: ppc_battery.parquet, intervals_train_<variant>.parquet,
    intervals_test_<variant>.parquet, holdout_metrics.parquet, loo_comparison.parquet
  - filtering_manifest.json, run_info.json, run_log.txt
"""

import argparse
import sys
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, save_filtering_manifest
except ModuleNotFoundError:
    from run_context import RunContext, save_filtering_manifest  # type: ignore[no-redef]

try:
    from analysis.diagnostics import print_header
except ModuleNotFoundError:
    from diagnostics import print_header  # type: ignore[no-redef]

try:
    from analysis.eda import choose_covariates
except ModuleNotFoundError:
    from eda import choose_covariates  # type: ignore[no-redef]

try:
    from analysis.beta_regression import (
        add_common_args,
        fit_variants,
        load_and_split,
        runner_from_args,
        sampler_from_args,
        variant_manifest,
    )
except ModuleNotFoundError:
    from beta_regression import (  # type: ignore[no-redef]
        add_common_args,
        fit_variants,
        load_and_split,
        runner_from_args,
        sampler_from_args,
        variant_manifest,
    )

try:
    from analysis.model_spec import default_variants
except ModuleNotFoundError:
    from model_spec import default_variants  # type: ignore[no-redef]

try:
    from analysis.ppc_data import (
        INTERVAL_PROBS,
        add_log_likelihood_to_idata,
        battery_table,
        compare_models,
        compute_log_likelihood,
        holdout_metrics,
        interval_coverage,
        posterior_predictive,
        predictive_intervals,
        run_ppc_battery,
        summarize_pareto_k,
    )
except ModuleNotFoundError:
    from ppc_data import (  # type: ignore[no-redef]
        INTERVAL_PROBS,
        add_log_likelihood_to_idata,
        battery_table,
        compare_models,
        compute_log_likelihood,
        holdout_metrics,
        interval_coverage,
        posterior_predictive,
        predictive_intervals,
        run_ppc_battery,
        summarize_pareto_k,
    )

# ── Primer ───────────────────────────────────────────────────────────────────

PPC_PRIMER = """\
# Posterior Predictive Checks and Model Comparison

## Purpose

Checks whether each fitted beta regression can reproduce the observed county
turnout, how well it predicts counties it never saw, and which variant is
expected to predict new counties best.

## Method

- **PPC battery.** For a subsample of posterior draws, simulate one turnout
  value per training county and compare summary statistics of the simulated
  and observed data. The Bayesian p-value is P(T(y_rep) >= T(y)).
- **Intervals.** Central 50% and 90% predictive intervals per county; a
  calibrated model covers about 50% and 90% of the observed values.
- **Holdout.** The same intervals and the predictive mean on the held-out
  counties.
- **PSIS-LOO.** Pareto-smoothed importance sampling leave-one-out expected log
  predictive density (ELPD) per variant, compared with `arviz.compare`.

## Outputs

| File | Description |
|------|-------------|
| `data/ppc_battery.parquet` | Observed vs replicated statistics per variant |
| `data/intervals_train_<variant>.parquet` | Per-county predictive intervals (training) |
| `data/intervals_test_<variant>.parquet` | Per-county predictive intervals (holdout) |
| `data/holdout_metrics.parquet` | RMSE, MAE, coverage per variant |
| `data/loo_comparison.parquet` | ELPD ranking and stacking weights |

## Interpretation Guide

- Bayesian p-values below 0.05 or above 0.95 flag a statistic the model
  cannot reproduce.
- In the LOO table the top row has the highest ELPD; a difference (elpd_diff)
  smaller than about two standard errors (dse) is not decisive.
- Pareto k above 0.7 marks counties whose LOO estimate is unreliable.
"""

N_PPC_REPS = 1000


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="County Turnout Posterior Predictive Checks")
    add_common_args(parser)
    parser.add_argument("--n-reps", type=int, default=N_PPC_REPS, help="Posterior draws to simulate")
    return parser.parse_args()


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    sampler = sampler_from_args(args)
    runner = runner_from_args(args)

    with RunContext(
        analysis_name="04_ppc",
        params=vars(args),
        primer=PPC_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print("County Turnout Posterior Predictive Checks")
        print(f"Cache:    {args.cache_dir} (refit={args.refit}, backend={args.backend})")
        print(f"Output:   {ctx.run_dir}")

        dataset, split, train, test = load_and_split(args)
        covariates, _ = choose_covariates(dataset, args.covariate_selection, args.vif_threshold)

        variants = default_variants(covariates)
        fits, failures = fit_variants(runner, variants, train, sampler)

        # ── PPC battery + intervals ──
        battery_frames = []
        holdout_rows = []
        coverage: dict[str, dict] = {}
        for name, fit in fits.items():
            print_header(f"PPC — {name}")
            y_rep = posterior_predictive(fit, train, n_reps=args.n_reps, seed=args.seed)
            battery = run_ppc_battery(y_rep, train.response)
            battery_frames.append(battery_table(battery, name))
            for stat in ("mean", "sd", "min", "max"):
                if stat in battery:
                    entry = battery[stat]
                    print(
                        f"  {stat:<5} observed={entry['observed']:.4f}  "
                        f"replicated={entry['replicated_mean']:.4f} ± {entry['replicated_sd']:.4f}  "
                        f"p={entry['bayesian_p']:.3f}"
                    )

            intervals = predictive_intervals(y_rep, train, INTERVAL_PROBS)
            intervals.write_parquet(ctx.data_dir / f"intervals_train_{name}.parquet")
            coverage[name] = interval_coverage(intervals, INTERVAL_PROBS)
            for p, cov in coverage[name].items():
                print(f"  {p:.0%} interval coverage (train): {cov:.1%}")

            if test.n_rows:
                y_test = posterior_predictive(fit, test, n_reps=args.n_reps, seed=args.seed)
                predictive_intervals(y_test, test, INTERVAL_PROBS).write_parquet(
                    ctx.data_dir / f"intervals_test_{name}.parquet"
                )
                metrics = holdout_metrics(y_test, test, INTERVAL_PROBS)
                holdout_rows.append({"variant": name, **metrics})
                print(
                    f"  Holdout ({metrics['n_obs']} counties): RMSE={metrics['rmse']:.4f}  "
                    f"MAE={metrics['mae']:.4f}"
                )

        if battery_frames:
            pl.concat(battery_frames).write_parquet(ctx.data_dir / "ppc_battery.parquet")
        if holdout_rows:
            pl.DataFrame(holdout_rows).write_parquet(ctx.data_dir / "holdout_metrics.parquet")

        # ── LOO comparison ──
        pareto: dict[str, dict] = {}
        loo_table = None
        if len(fits) >= 2:
            print_header("LOO-CV MODEL COMPARISON")
            idatas = {
                name: add_log_likelihood_to_idata(fit.idata, compute_log_likelihood(fit, train))
                for name, fit in fits.items()
            }
            loo_table, loo_results = compare_models(idatas)
            loo_table.write_parquet(ctx.data_dir / "loo_comparison.parquet")
            for row in loo_table.iter_rows(named=True):
                print(
                    f"  {row['rank']}. {row['model']:<8} ELPD={row['elpd_loo']:.1f}  "
                    f"diff={row['elpd_diff']:.1f} (dse {row['dse']:.1f})  weight={row['weight']:.2f}"
                )
            for name, loo in loo_results.items():
                pareto[name] = summarize_pareto_k(loo)
                if pareto[name]["bad"] or pareto[name]["very_bad"]:
                    print(
                        f"  WARNING: {name} has {pareto[name]['bad'] + pareto[name]['very_bad']} "
                        "observations with Pareto k >= 0.7"
                    )

        print_header("FILTERING MANIFEST")
        manifest = {
            "analysis": "04_ppc",
            "data": str(args.data),
            "n_train": train.n_rows,
            "n_test": test.n_rows,
            "split_seed": split.seed,
            "covariates": list(covariates),
            "n_reps": args.n_reps,
            "interval_probs": list(INTERVAL_PROBS),
            "train_coverage": coverage,
            "pareto_k": pareto,
            "best_model": loo_table["model"][0] if loo_table is not None else None,
            "variants": variant_manifest(variants, fits),
            "failures": failures,
        }
        save_filtering_manifest(manifest, ctx.run_dir)


if __name__ == "__main__":
    main()
