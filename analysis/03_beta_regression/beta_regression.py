"""
County Turnout — Bayesian Beta Regression (Phase 3)

Fits the four nested beta regressions of county turnout on the training
counties, one after another, through the cached InferenceRunner:

  simple  intercept only in both submodels
  m1      poverty share in both submodels, Student-t(7) priors
  m2      poverty + education share for the mean, constant precision
  m3      every selected covariate in both submodels

Each variant shares the same split and sampler settings. A variant whose
engine fails is recorded in the manifest and skipped; the others still run.
Fits land in the model cache (models/fit_<name>.nc + .json) so later phases
and reruns reuse them without resampling.

Usage:
  uv run python analysis/03_beta_regression/beta_regression.py
      [--data data/data_preprocessed.csv] [--backend nutpie|pymc]
      [--refit on_change|always|never] [--chains 4 --iterations 2000 --warmup 1000]

Outputs (in results/03_beta_regression/<date>/):
  - data/: posterior_summary_<variant>.parquet, convergence_summary.parquet
  - filtering_manifest.json, run_info.json, run_log.txt
"""

import argparse
import sys
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from turnout.config import (
    DATA_PATH,
    DELIMITER,
    MODELS_DIR,
    SPLIT_SEED,
    TRAIN_FRACTION,
    VIF_THRESHOLD,
)
from turnout.dataset import Dataset, Split, load_dataset, train_test_split
from turnout.errors import EngineError

try:
    from analysis.run_context import RunContext, save_filtering_manifest
except ModuleNotFoundError:
    from run_context import RunContext, save_filtering_manifest  # type: ignore[no-redef]

try:
    from analysis.diagnostics import posterior_summary, print_header
except ModuleNotFoundError:
    from diagnostics import posterior_summary, print_header  # type: ignore[no-redef]

try:
    from analysis.eda import SELECTION_METHODS, choose_covariates
except ModuleNotFoundError:
    from eda import SELECTION_METHODS, choose_covariates  # type: ignore[no-redef]

try:
    from analysis.inference import (
        BACKENDS,
        N_CHAINS,
        N_ITERATIONS,
        N_WARMUP,
        RANDOM_SEED,
        REFIT_POLICIES,
        FitResult,
        InferenceEngine,
        InferenceRunner,
        RunnerConfig,
        SamplerConfig,
    )
except ModuleNotFoundError:
    from inference import (  # type: ignore[no-redef]
        BACKENDS,
        N_CHAINS,
        N_ITERATIONS,
        N_WARMUP,
        RANDOM_SEED,
        REFIT_POLICIES,
        FitResult,
        InferenceEngine,
        InferenceRunner,
        RunnerConfig,
        SamplerConfig,
    )

try:
    from analysis.model_spec import ModelVariant, default_variants
except ModuleNotFoundError:
    from model_spec import ModelVariant, default_variants  # type: ignore[no-redef]

# ── Primer ───────────────────────────────────────────────────────────────────

BETA_REGRESSION_PRIMER = """\
# Bayesian Beta Regression

## Purpose

Models county turnout, a proportion strictly between 0 and 1, as a function
of county demographics, with uncertainty on every coefficient.

## Method

Turnout y_i ~ Beta(mu_i * phi_i, (1 - mu_i) * phi_i) where

- logit(mu_i) is linear in the mean covariates (expected turnout)
- log(phi_i) is linear in the precision covariates (how tightly counties
  cluster around that expectation)

Covariates are centred on the training counties, so intercept priors describe
the average county. Four nested variants are fit with NUTS (nutpie by
default), 4 chains x 2000 iterations with 1000 warmup, on a 90% training
sample drawn with seed 100.

## Outputs

| File | Description |
|------|-------------|
| `data/posterior_summary_<variant>.parquet` | Mean, sd, 5/50/95% quantiles, R-hat, ESS |
| `data/convergence_summary.parquet` | One row per variant: max R-hat, min ESS, divergences |
| `filtering_manifest.json` | Covariates, split sizes, variant status |

## Interpretation Guide

- Mean coefficients are on the logit scale: a coefficient of -1 on poverty
  share lowers the log-odds of turnout by 1 per unit (0 → 100%) of poverty.
- Precision coefficients above zero mean counties with more of that covariate
  vary less around their expected turnout.
- R-hat above 1.05 or a low effective sample size means the chains disagree;
  such fits are flagged with a WARNING and should not be interpreted.
"""


# ── Shared CLI Helpers ───────────────────────────────────────────────────────


def add_common_args(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Data, split, sampler and runner flags shared by the model phases."""
    parser.add_argument("--data", type=Path, default=DATA_PATH, help="Input file")
    parser.add_argument("--separator", default=DELIMITER)
    parser.add_argument("--train-fraction", type=float, default=TRAIN_FRACTION)
    parser.add_argument("--split-seed", type=int, default=SPLIT_SEED)
    parser.add_argument("--covariate-selection", choices=SELECTION_METHODS, default="fixed")
    parser.add_argument("--vif-threshold", type=float, default=VIF_THRESHOLD)
    parser.add_argument("--chains", type=int, default=N_CHAINS)
    parser.add_argument("--iterations", type=int, default=N_ITERATIONS, help="Per chain, with warmup")
    parser.add_argument("--warmup", type=int, default=N_WARMUP)
    parser.add_argument("--seed", type=int, default=RANDOM_SEED, help="Sampler seed")
    parser.add_argument("--cache-dir", type=Path, default=MODELS_DIR)
    parser.add_argument("--refit", choices=REFIT_POLICIES, default="on_change")
    parser.add_argument("--backend", choices=BACKENDS, default="nutpie")
    parser.add_argument(
        "--strict-convergence",
        action="store_true",
        help="Abort on failed convergence checks instead of warning",
    )
    parser.add_argument("--run-id", default=None, help="Group outputs under results/<run_id>/")
    return parser


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="County Turnout Beta Regression")
    return add_common_args(parser).parse_args()


def sampler_from_args(args: argparse.Namespace) -> SamplerConfig:
    return SamplerConfig(
        chains=args.chains,
        iterations=args.iterations,
        warmup=args.warmup,
        seed=args.seed,
    )


def runner_from_args(
    args: argparse.Namespace,
    engine: InferenceEngine | None = None,
) -> InferenceRunner:
    config = RunnerConfig(
        cache_dir=args.cache_dir,
        refit=args.refit,
        backend=args.backend,
        strict_convergence=args.strict_convergence,
    )
    return InferenceRunner(config, engine=engine)


def load_and_split(args: argparse.Namespace) -> tuple[Dataset, Split, Dataset, Dataset]:
    """Load the input file and draw the train/test split."""
    print_header("LOADING DATA")
    dataset = load_dataset(args.data, separator=args.separator)
    split, train, test = train_test_split(dataset, args.train_fraction, args.split_seed)
    print(f"  {dataset.n_rows} counties from {args.data}")
    print(
        f"  Split (seed={split.seed}, fraction={split.train_fraction}): "
        f"{train.n_rows} train / {test.n_rows} test"
    )
    return dataset, split, train, test


# ── Variant Loop ─────────────────────────────────────────────────────────────


def fit_variants(
    runner: InferenceRunner,
    variants: list[ModelVariant],
    data: Dataset,
    sampler: SamplerConfig,
    *,
    prior_only: bool = False,
) -> tuple[dict[str, FitResult], list[dict]]:
    """Fit each variant in order.

    An EngineError ends only the variant it came from. Load, config, spec
    and (strict) convergence errors propagate.

    Returns:
        ({variant name: FitResult}, [{"variant", "error"} for each failed variant])
    """
    fits: dict[str, FitResult] = {}
    failures: list[dict] = []
    for variant in variants:
        try:
            fits[variant.name] = runner.fit_variant(variant, data, sampler, prior_only=prior_only)
        except EngineError as e:
            print(f"  WARNING: {variant.name} skipped — {e}")
            failures.append({"variant": variant.name, "error": str(e)})
    return fits, failures


def convergence_table(fits: dict[str, FitResult]) -> pl.DataFrame:
    """One row per fit: draws, max R-hat, min ESS, divergences, status."""
    rows = []
    for name, fit in fits.items():
        diag = fit.convergence
        rows.append(
            {
                "variant": name,
                "formula": fit.spec.formula(),
                "n_chains": fit.n_chains,
                "n_draws": fit.n_draws,
                "max_rhat": diag.get("max_rhat"),
                "min_ess": diag.get("min_ess"),
                "divergences": diag.get("divergences", 0),
                "converged": fit.converged,
                "from_cache": fit.from_cache,
                "sampling_time": fit.sampling_time,
            }
        )
    return pl.DataFrame(rows)


def variant_manifest(variants: list[ModelVariant], fits: dict[str, FitResult]) -> dict:
    entries = {}
    for variant in variants:
        fit = fits.get(variant.name)
        entries[variant.name] = {
            "cache_name": variant.cache_name,
            "description": variant.description,
            "formula": variant.spec.formula(),
            "priors": variant.priors.describe(),
            "status": "failed" if fit is None else ("ok" if fit.converged else "not_converged"),
            "fingerprint": fit.fingerprint if fit is not None else None,
        }
    return entries


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    sampler = sampler_from_args(args)
    runner = runner_from_args(args)

    with RunContext(
        analysis_name="03_beta_regression",
        params=vars(args),
        primer=BETA_REGRESSION_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print("County Turnout Beta Regression")
        print(f"Cache:    {args.cache_dir} (refit={args.refit}, backend={args.backend})")
        print(f"Output:   {ctx.run_dir}")

        dataset, split, train, test = load_and_split(args)
        covariates, dropped = choose_covariates(
            dataset, args.covariate_selection, args.vif_threshold
        )
        print(f"  Covariates: {list(covariates)}")

        variants = default_variants(covariates)
        fits, failures = fit_variants(runner, variants, train, sampler)

        print_header("POSTERIOR SUMMARIES")
        for name, fit in fits.items():
            summary = posterior_summary(fit.idata, fit.convergence)
            summary.write_parquet(ctx.data_dir / f"posterior_summary_{name}.parquet")
            print(f"  {name}: {fit.spec.formula()}")
            for row in summary.iter_rows(named=True):
                print(
                    f"    {row['parameter']:<24} {row['mean']:+.3f} "
                    f"[{row['q5']:+.3f}, {row['q95']:+.3f}]"
                )

        if fits:
            convergence_table(fits).write_parquet(ctx.data_dir / "convergence_summary.parquet")

        print_header("FILTERING MANIFEST")
        manifest = {
            "analysis": "03_beta_regression",
            "data": str(args.data),
            "data_fingerprint": dataset.fingerprint(),
            "n_train": train.n_rows,
            "n_test": test.n_rows,
            "split_seed": split.seed,
            "train_fraction": split.train_fraction,
            "covariate_selection": args.covariate_selection,
            "covariates": list(covariates),
            "dropped_covariates": dropped,
            "sampler": {
                "chains": sampler.chains,
                "iterations": sampler.iterations,
                "warmup": sampler.warmup,
                "seed": sampler.seed,
            },
            "variants": variant_manifest(variants, fits),
            "failures": failures,
        }
        save_filtering_manifest(manifest, ctx.run_dir)


if __name__ == "__main__":
    main()
