"""County turnout dataset: loading, validation, and the train/test split.

The input is a semicolon-delimited file with one row per county, keyed by FIPS
code. Every column is read as text and cast strictly so that FIPS codes keep
their leading zeros and stray non-numeric values surface as a LoadError rather
than a silent null.

This module is pure data logic: no sampling, no prints.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import polars as pl

from turnout.config import (
    DELIMITER,
    ID_COLUMN,
    INCOME_COLUMN,
    MAX_REPORTED_IDS,
    NUMERIC_COLUMNS,
    PROPORTION_COLUMNS,
    REQUIRED_COLUMNS,
    RESPONSE_COLUMN,
    SPLIT_SEED,
    TRAIN_FRACTION,
)
from turnout.errors import ConfigError, LoadError

# ── Dataset ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class Dataset:
    """Ordered, validated collection of county observations.

    Wraps a polars DataFrame whose columns are exactly REQUIRED_COLUMNS.
    Row order is the file order; subsets keep the order of the indices given.
    """

    frame: pl.DataFrame

    @property
    def n_rows(self) -> int:
        return self.frame.height

    @property
    def columns(self) -> list[str]:
        return self.frame.columns

    @property
    def ids(self) -> list[str]:
        return self.frame[ID_COLUMN].to_list()

    @property
    def response(self) -> np.ndarray:
        return self.frame[RESPONSE_COLUMN].to_numpy().astype(np.float64)

    def column(self, name: str) -> np.ndarray:
        return self.frame[name].to_numpy().astype(np.float64)

    def matrix(self, names: tuple[str, ...] | list[str]) -> np.ndarray:
        """Design matrix (n_rows, len(names)); zero columns for an empty list."""
        if not names:
            return np.empty((self.n_rows, 0), dtype=np.float64)
        return self.frame.select(list(names)).to_numpy().astype(np.float64)

    def subset(self, indices: np.ndarray | list[int]) -> Dataset:
        idx = np.asarray(indices, dtype=np.int64)
        return Dataset(self.frame[idx])

    def fingerprint(self, names: tuple[str, ...] | list[str] | None = None) -> str:
        """SHA-256 over the ids and the given numeric columns (all by default)."""
        names = list(names) if names is not None else list(NUMERIC_COLUMNS)
        h = hashlib.sha256()
        h.update("\x1f".join(self.ids).encode("utf-8"))
        for name in names:
            h.update(name.encode("utf-8"))
            h.update(np.ascontiguousarray(self.column(name)).tobytes())
        return h.hexdigest()


# ── Loading ──────────────────────────────────────────────────────────────────


def _offending_ids(df: pl.DataFrame, mask: pl.Expr) -> str:
    ids = df.filter(mask)[ID_COLUMN].head(MAX_REPORTED_IDS).to_list()
    return ", ".join(str(i) for i in ids)


def validate_frame(df: pl.DataFrame, source: str = "<frame>") -> Dataset:
    """Check schema and value ranges, returning a Dataset of REQUIRED_COLUMNS.

    Raises:
        LoadError: Missing column, non-numeric value, missing value, duplicate
            FIPS code, no rows, or a value outside its declared range.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        msg = f"{source}: missing required columns {missing}"
        raise LoadError(msg)

    if df.height == 0:
        msg = f"{source}: contains no observations"
        raise LoadError(msg)

    try:
        df = df.select(
            pl.col(ID_COLUMN).cast(pl.Utf8).str.strip_chars(),
            *[pl.col(c).cast(pl.Float64, strict=True) for c in NUMERIC_COLUMNS],
        )
    except pl.exceptions.PolarsError as e:
        msg = f"{source}: non-numeric value in a numeric column ({e})"
        raise LoadError(msg) from e

    for col in REQUIRED_COLUMNS:
        bad = pl.col(col).is_null()
        if col != ID_COLUMN:
            bad = bad | pl.col(col).is_nan()
        n_bad = df.filter(bad).height
        if n_bad:
            msg = f"{source}: {n_bad} missing value(s) in {col!r}"
            raise LoadError(msg)

    n_dup = df.height - df[ID_COLUMN].n_unique()
    if n_dup:
        dup_mask = pl.col(ID_COLUMN).is_duplicated()
        msg = f"{source}: {n_dup} duplicate FIPS code(s): {_offending_ids(df, dup_mask)}"
        raise LoadError(msg)

    checks: list[tuple[str, pl.Expr, str]] = [
        (
            RESPONSE_COLUMN,
            (pl.col(RESPONSE_COLUMN) <= 0) | (pl.col(RESPONSE_COLUMN) >= 1),
            "must lie strictly inside (0, 1)",
        ),
        *[
            (col, (pl.col(col) < 0) | (pl.col(col) > 1), "must lie in [0, 1]")
            for col in PROPORTION_COLUMNS
        ],
        (INCOME_COLUMN, pl.col(INCOME_COLUMN) <= 0, "must be positive"),
    ]
    for col, mask, rule in checks:
        n_bad = df.filter(mask).height
        if n_bad:
            msg = (
                f"{source}: {n_bad} row(s) where {col} {rule} "
                f"(fips: {_offending_ids(df, mask)})"
            )
            raise LoadError(msg)

    return Dataset(df)


def load_dataset(path: Path | str, separator: str = DELIMITER) -> Dataset:
    """Read and validate the county turnout file.

    Args:
        path: Delimited file with a header row.
        separator: Field delimiter (semicolon in the preprocessed export).

    Raises:
        LoadError: File missing or unreadable, or validation failed.
    """
    path = Path(path)
    if not path.is_file():
        msg = f"Dataset not found: {path}"
        raise LoadError(msg)

    try:
        df = pl.read_csv(path, separator=separator, infer_schema_length=0)
    except (pl.exceptions.PolarsError, OSError) as e:
        msg = f"Could not parse {path}: {e}"
        raise LoadError(msg) from e

    return validate_frame(df, source=str(path))


# ── Split ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class Split:
    """Disjoint, exhaustive train/test row indices (both ascending)."""

    train: np.ndarray
    test: np.ndarray
    train_fraction: float
    seed: int

    @property
    def n_rows(self) -> int:
        return len(self.train) + len(self.test)


def split_indices(
    n_rows: int,
    train_fraction: float = TRAIN_FRACTION,
    seed: int = SPLIT_SEED,
) -> Split:
    """Draw floor(train_fraction * n_rows) training rows without replacement.

    The same (seed, n_rows, train_fraction) always yields the same indices;
    every downstream fit depends on that.

    Raises:
        ConfigError: train_fraction outside (0, 1), no rows, or a bad seed.
    """
    if not 0 < train_fraction < 1:
        msg = f"train_fraction must lie in (0, 1), got {train_fraction}"
        raise ConfigError(msg)
    if n_rows <= 0:
        msg = "Cannot split an empty dataset"
        raise ConfigError(msg)
    if isinstance(seed, bool) or not isinstance(seed, (int, np.integer)) or seed < 0:
        msg = f"seed must be a non-negative integer, got {seed!r}"
        raise ConfigError(msg)

    n_train = math.floor(train_fraction * n_rows)
    rng = np.random.default_rng(int(seed))
    train = np.sort(rng.choice(n_rows, size=n_train, replace=False)).astype(np.int64)
    test = np.setdiff1d(np.arange(n_rows, dtype=np.int64), train)
    return Split(train=train, test=test, train_fraction=train_fraction, seed=int(seed))


def train_test_split(
    dataset: Dataset,
    train_fraction: float = TRAIN_FRACTION,
    seed: int = SPLIT_SEED,
) -> tuple[Split, Dataset, Dataset]:
    """Split a dataset into (split, train subset, test subset)."""
    split = split_indices(dataset.n_rows, train_fraction, seed)
    return split, dataset.subset(split.train), dataset.subset(split.test)
