"""
County Turnout — Exploratory Data Analysis (Phase 1)

Validates the input file, summarizes every numeric column, and screens the
candidate covariates for collinearity. The covariate set chosen here (fixed
exclusion list by default, or an iterative variance-inflation screen) is the
one the model phases use.

Usage:
  uv run python analysis/01_eda/eda.py [--data data/data_preprocessed.csv]
      [--covariate-selection fixed|vif] [--vif-threshold 5]

Outputs (in results/01_eda/<date>/):
  - data/: column_summary.parquet, correlations.parquet, vif.parquet
  - filtering_manifest.json, run_info.json, run_log.txt
"""

import argparse
import sys
from pathlib import Path

import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from turnout.config import (
    COVARIATE_COLUMNS,
    DATA_PATH,
    DELIMITER,
    EXCLUDED_COVARIATES,
    NUMERIC_COLUMNS,
    VIF_THRESHOLD,
)
from turnout.dataset import Dataset, load_dataset
from turnout.errors import ConfigError

try:
    from analysis.run_context import RunContext, save_filtering_manifest
except ModuleNotFoundError:
    from run_context import RunContext, save_filtering_manifest  # type: ignore[no-redef]

try:
    from analysis.diagnostics import print_header
except ModuleNotFoundError:
    from diagnostics import print_header  # type: ignore[no-redef]

# ── Primer ───────────────────────────────────────────────────────────────────

EDA_PRIMER = """\
# Exploratory Data Analysis

## Purpose

Checks the county turnout file before any model is fit and decides which
covariates enter the regressions.

## Method

1. **Load and validate.** Every value is cast strictly; turnout must lie
   strictly inside (0, 1), proportions in [0, 1], income above zero.
2. **Describe.** Mean, sd and quantiles of every numeric column.
3. **Collinearity.** Pearson correlations between covariates and the variance
   inflation factor (VIF) of each, from regressing it on all the others.

## Outputs

| File | Description |
|------|-------------|
| `data/column_summary.parquet` | One row per numeric column |
| `data/correlations.parquet` | Covariate correlation matrix |
| `data/vif.parquet` | VIF per candidate covariate |
| `filtering_manifest.json` | Selected and dropped covariates |

## Interpretation Guide

- VIF above 5 means the covariate is largely explained by the others; its
  coefficient will be poorly identified.
- Median household income and the poverty share move almost in lockstep, so
  the default selection keeps poverty and drops income.
"""

SELECTION_METHODS = ("fixed", "vif")


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="County Turnout EDA")
    parser.add_argument("--data", type=Path, default=DATA_PATH, help="Input file")
    parser.add_argument("--separator", default=DELIMITER)
    parser.add_argument("--covariate-selection", choices=SELECTION_METHODS, default="fixed")
    parser.add_argument("--vif-threshold", type=float, default=VIF_THRESHOLD)
    parser.add_argument("--run-id", default=None, help="Group outputs under results/<run_id>/")
    return parser.parse_args()


# ── Summaries ────────────────────────────────────────────────────────────────


def describe_columns(dataset: Dataset, names: tuple[str, ...] = NUMERIC_COLUMNS) -> pl.DataFrame:
    """Mean, sd, min, quartiles and max of each numeric column."""
    rows = []
    for name in names:
        values = dataset.column(name)
        q25, q50, q75 = np.quantile(values, [0.25, 0.5, 0.75])
        rows.append(
            {
                "column": name,
                "mean": float(values.mean()),
                "sd": float(values.std(ddof=1)) if values.size > 1 else float("nan"),
                "min": float(values.min()),
                "q25": float(q25),
                "median": float(q50),
                "q75": float(q75),
                "max": float(values.max()),
            }
        )
    return pl.DataFrame(rows)


def correlation_matrix(
    dataset: Dataset,
    names: tuple[str, ...] = COVARIATE_COLUMNS,
) -> pl.DataFrame:
    """Pearson correlations, one row per covariate (first column 'variable')."""
    corr = np.corrcoef(dataset.matrix(names), rowvar=False)
    corr = np.atleast_2d(corr)
    columns: dict[str, object] = {"variable": list(names)}
    for j, name in enumerate(names):
        columns[name] = corr[:, j]
    return pl.DataFrame(columns)


def compute_vif(dataset: Dataset, names: tuple[str, ...] | list[str]) -> dict[str, float]:
    """Variance inflation factor 1 / (1 - R^2) of each covariate on the others.

    A lone covariate has VIF 1. A covariate that is an exact linear function
    of the others (or constant) gets VIF inf.
    """
    names = list(names)
    x = dataset.matrix(names)
    n = x.shape[0]
    vif: dict[str, float] = {}
    for j, name in enumerate(names):
        target = x[:, j]
        others = np.delete(x, j, axis=1)
        design = np.column_stack([np.ones(n), others])
        coef, *_ = np.linalg.lstsq(design, target, rcond=None)
        resid = target - design @ coef
        ss_tot = float(np.sum((target - target.mean()) ** 2))
        if ss_tot == 0.0:
            vif[name] = float("inf")
            continue
        r2 = 1.0 - float(np.sum(resid**2)) / ss_tot
        vif[name] = float("inf") if r2 >= 1.0 - 1e-12 else 1.0 / (1.0 - r2)
    return vif


def select_covariates(
    dataset: Dataset,
    candidates: tuple[str, ...] = COVARIATE_COLUMNS,
    threshold: float = VIF_THRESHOLD,
) -> tuple[tuple[str, ...], list[dict]]:
    """Drop the highest-VIF covariate until every VIF is at most threshold.

    Returns:
        (kept covariates in candidate order, dropped [{"variable", "vif"}] in drop order)
    """
    if threshold < 1:
        msg = f"VIF threshold must be at least 1, got {threshold}"
        raise ConfigError(msg)
    kept = list(candidates)
    dropped: list[dict] = []
    while len(kept) > 1:
        vif = compute_vif(dataset, kept)
        worst = max(kept, key=lambda v: vif[v])
        if vif[worst] <= threshold:
            break
        dropped.append({"variable": worst, "vif": vif[worst]})
        kept.remove(worst)
    return tuple(kept), dropped


def choose_covariates(
    dataset: Dataset,
    method: str = "fixed",
    threshold: float = VIF_THRESHOLD,
) -> tuple[tuple[str, ...], list[dict]]:
    """Covariates the models use: fixed exclusion list or VIF screen."""
    match method:
        case "fixed":
            kept = tuple(c for c in COVARIATE_COLUMNS if c not in EXCLUDED_COVARIATES)
            dropped = [{"variable": c, "vif": None} for c in EXCLUDED_COVARIATES]
            return kept, dropped
        case "vif":
            return select_covariates(dataset, COVARIATE_COLUMNS, threshold)
        case _:
            msg = f"Unknown covariate selection {method!r}; supported: {SELECTION_METHODS}"
            raise ConfigError(msg)


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()

    with RunContext(
        analysis_name="01_eda",
        params=vars(args),
        primer=EDA_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print("County Turnout EDA")
        print(f"Data:     {args.data}")
        print(f"Output:   {ctx.run_dir}")

        print_header("LOADING DATA")
        dataset = load_dataset(args.data, separator=args.separator)
        print(f"  {dataset.n_rows} counties, {len(dataset.columns)} columns")

        print_header("COLUMN SUMMARY")
        summary = describe_columns(dataset)
        for row in summary.iter_rows(named=True):
            print(
                f"  {row['column']:<18} mean={row['mean']:.4g}  sd={row['sd']:.4g}  "
                f"range=[{row['min']:.4g}, {row['max']:.4g}]"
            )
        summary.write_parquet(ctx.data_dir / "column_summary.parquet")

        print_header("COLLINEARITY")
        correlation_matrix(dataset).write_parquet(ctx.data_dir / "correlations.parquet")
        vif = compute_vif(dataset, COVARIATE_COLUMNS)
        for name, value in vif.items():
            flag = "  HIGH" if value > args.vif_threshold else ""
            print(f"  VIF {name:<18} {value:8.2f}{flag}")
        pl.DataFrame(
            {"variable": list(vif), "vif": list(vif.values())}
        ).write_parquet(ctx.data_dir / "vif.parquet")

        kept, dropped = choose_covariates(dataset, args.covariate_selection, args.vif_threshold)
        print(f"  Selection ({args.covariate_selection}): keep {list(kept)}")
        for entry in dropped:
            print(f"    dropped {entry['variable']}")

        print_header("FILTERING MANIFEST")
        manifest = {
            "analysis": "01_eda",
            "data": str(args.data),
            "n_rows": dataset.n_rows,
            "data_fingerprint": dataset.fingerprint(),
            "covariate_selection": args.covariate_selection,
            "constants": {"VIF_THRESHOLD": args.vif_threshold},
            "vif": vif,
            "selected_covariates": list(kept),
            "dropped_covariates": dropped,
        }
        save_filtering_manifest(manifest, ctx.run_dir)


if __name__ == "__main__":
    main()
