"""
County Turnout — Prior Predictive Checks (Phase 2)

Samples the beta regression priors without the likelihood and simulates
turnout from them, before any model sees the outcome. Two prior sets are
checked: the intercept-only priors of the simple model (prior_1) and the full
m3 prior set (prior_2). Good priors put simulated turnout mostly between 0.2
and 0.9 with little mass piled up at 0 or 1.

Prior-only fits go through the same cache as posterior fits
(models/fit_prior_1.*, models/fit_prior_2.*).

Usage:
  uv run python analysis/02_prior_predictive/prior_predictive.py [--n-reps 500]

Outputs (in results/02_prior_predictive/<date>/):
  - data/: prior_summary_<check>.parquet, prior_predictive_summary.parquet
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
    from analysis.diagnostics import posterior_summary, print_header
except ModuleNotFoundError:
    from diagnostics import posterior_summary, print_header  # type: ignore[no-redef]

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
    from analysis.model_spec import prior_check_variants
except ModuleNotFoundError:
    from model_spec import prior_check_variants  # type: ignore[no-redef]

try:
    from analysis.ppc_data import PRIOR_EDGE, posterior_predictive, prior_predictive_summary
except ModuleNotFoundError:
    from ppc_data import (  # type: ignore[no-redef]
        PRIOR_EDGE,
        posterior_predictive,
        prior_predictive_summary,
    )

# ── Primer ───────────────────────────────────────────────────────────────────

PRIOR_PREDICTIVE_PRIMER = """\
# Prior Predictive Checks

## Purpose

Shows what the priors alone imply about county turnout, so implausible priors
are caught before they shape a posterior.

## Method

The beta regression graph is sampled with the likelihood removed. Each prior
draw of the coefficients is pushed through the logit and log links on the
training counties' covariates, and one turnout value is simulated per county
from the resulting Beta distribution.

## Outputs

| File | Description |
|------|-------------|
| `data/prior_summary_<check>.parquet` | Prior draws summarized per coefficient |
| `data/prior_predictive_summary.parquet` | Quantiles of simulated turnout, share near 0 / 1 |

## Interpretation Guide

- The intercept prior Normal(0.4, 1.5) centers expected turnout near
  logistic(0.4) ≈ 0.6 at the average county.
- A large share of simulated values within 0.01 of 0 or 1 means the priors
  (usually the precision priors) are too wide.
"""

N_PRIOR_REPS = 500


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="County Turnout Prior Predictive Checks")
    add_common_args(parser)
    parser.add_argument("--n-reps", type=int, default=N_PRIOR_REPS, help="Prior draws to simulate")
    return parser.parse_args()


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    sampler = sampler_from_args(args)
    runner = runner_from_args(args)

    with RunContext(
        analysis_name="02_prior_predictive",
        params=vars(args),
        primer=PRIOR_PREDICTIVE_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print("County Turnout Prior Predictive Checks")
        print(f"Cache:    {args.cache_dir} (refit={args.refit}, backend={args.backend})")
        print(f"Output:   {ctx.run_dir}")

        dataset, split, train, _ = load_and_split(args)
        covariates, _ = choose_covariates(dataset, args.covariate_selection, args.vif_threshold)

        variants = prior_check_variants(covariates)
        fits, failures = fit_variants(runner, variants, train, sampler, prior_only=True)

        print_header("PRIOR PREDICTIVE SIMULATION")
        rows = []
        for name, fit in fits.items():
            posterior_summary(fit.idata, fit.convergence).write_parquet(
                ctx.data_dir / f"prior_summary_{name}.parquet"
            )
            y_rep = posterior_predictive(fit, train, n_reps=args.n_reps, seed=args.seed)
            summary = prior_predictive_summary(y_rep)
            rows.append({"check": name, "formula": fit.spec.formula(), **summary})
            print(
                f"  {name}: median={summary['q50']:.3f}  90% range=[{summary['q05']:.3f}, "
                f"{summary['q95']:.3f}]  near 0: {summary['share_near_0']:.1%}  "
                f"near 1: {summary['share_near_1']:.1%}"
            )

        if rows:
            pl.DataFrame(rows).write_parquet(ctx.data_dir / "prior_predictive_summary.parquet")

        print_header("FILTERING MANIFEST")
        manifest = {
            "analysis": "02_prior_predictive",
            "data": str(args.data),
            "n_train": train.n_rows,
            "split_seed": split.seed,
            "covariates": list(covariates),
            "n_reps": args.n_reps,
            "constants": {"PRIOR_EDGE": PRIOR_EDGE},
            "checks": variant_manifest(variants, fits),
            "failures": failures,
        }
        save_filtering_manifest(manifest, ctx.run_dir)


if __name__ == "__main__":
    main()
