"""Configuration constants for the county turnout analysis."""

from pathlib import Path

DATA_PATH = Path("data") / "data_preprocessed.csv"
MODELS_DIR = Path("models")  # cached fits: fit_m1.nc + fit_m1.json, ...
DELIMITER = ";"

# ── Schema ───────────────────────────────────────────────────────────────────

ID_COLUMN = "fips"
RESPONSE_COLUMN = "turnout_est"
PROPORTION_COLUMNS = ("elderly_prop", "white_cvap_prop", "bsc_prop", "poverty_prop")
INCOME_COLUMN = "median_hh_income"
COVARIATE_COLUMNS = (*PROPORTION_COLUMNS, INCOME_COLUMN)
NUMERIC_COLUMNS = (RESPONSE_COLUMN, *COVARIATE_COLUMNS)
REQUIRED_COLUMNS = (ID_COLUMN, *NUMERIC_COLUMNS)

MAX_REPORTED_IDS = 5  # offending FIPS codes listed in a LoadError message

# ── Split ────────────────────────────────────────────────────────────────────

TRAIN_FRACTION = 0.9
SPLIT_SEED = 100

# ── Covariates ───────────────────────────────────────────────────────────────

# median_hh_income tracks poverty_prop almost one-for-one; poverty_prop is kept.
EXCLUDED_COVARIATES = (INCOME_COLUMN,)
DEFAULT_COVARIATES = ("poverty_prop", "bsc_prop", "elderly_prop", "white_cvap_prop")
VIF_THRESHOLD = 5.0
