"""Shared fixtures for turnout tests.

Provides a 10-county synthetic file (semicolon-delimited, FIPS with leading
zeros), a larger random county dataset, and FakeEngine: a deterministic
stand-in for the MCMC engine that returns correctly named draws instantly.
"""

import sys
from pathlib import Path

import arviz as az
import numpy as np
import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from turnout.config import REQUIRED_COLUMNS
from turnout.dataset import Dataset, validate_frame

from analysis.inference import FitResult, SamplerConfig
from analysis.model_spec import (
    FAMILIES,
    INTERCEPT,
    uncentered_intercept_name,
    variable_name,
)

# fips, turnout_est, elderly_prop, white_cvap_prop, bsc_prop, poverty_prop, median_hh_income
SYNTHETIC_ROWS = [
    ("01001", 0.612, 0.152, 0.781, 0.271, 0.124, 58731.0),
    ("01003", 0.655, 0.201, 0.862, 0.312, 0.098, 61250.0),
    ("01005", 0.503, 0.187, 0.472, 0.112, 0.264, 34186.0),
    ("04013", 0.587, 0.143, 0.655, 0.334, 0.131, 67799.0),
    ("06037", 0.548, 0.131, 0.412, 0.327, 0.142, 68044.0),
    ("13121", 0.624, 0.119, 0.448, 0.512, 0.137, 72741.0),
    ("17031", 0.596, 0.139, 0.537, 0.392, 0.148, 65886.0),
    ("20091", 0.702, 0.138, 0.823, 0.556, 0.051, 89087.0),
    ("36061", 0.571, 0.162, 0.588, 0.618, 0.159, 86553.0),
    ("48201", 0.523, 0.109, 0.452, 0.313, 0.165, 60146.0),
]


def synthetic_frame() -> pl.DataFrame:
    columns = list(zip(*SYNTHETIC_ROWS, strict=True))
    return pl.DataFrame(
        {name: list(values) for name, values in zip(REQUIRED_COLUMNS, columns, strict=True)}
    )


def write_csv(frame: pl.DataFrame, path: Path) -> Path:
    frame.write_csv(path, separator=";")
    return path


def random_county_frame(n: int = 60, seed: int = 7) -> pl.DataFrame:
    """Plausible counties with turnout driven by poverty and education."""
    rng = np.random.default_rng(seed)
    poverty = rng.uniform(0.05, 0.35, n)
    bsc = rng.uniform(0.10, 0.60, n)
    elderly = rng.uniform(0.08, 0.30, n)
    white = rng.uniform(0.30, 0.95, n)
    income = 95000.0 - 120000.0 * poverty + rng.normal(0, 2500, n)
    eta = 0.4 - 2.0 * (poverty - 0.2) + 1.0 * (bsc - 0.35)
    mu = 1.0 / (1.0 + np.exp(-eta))
    phi = 60.0
    turnout = rng.beta(mu * phi, (1 - mu) * phi)
    return pl.DataFrame(
        {
            "fips": [f"{i:05d}" for i in range(1001, 1001 + n)],
            "turnout_est": turnout,
            "elderly_prop": elderly,
            "white_cvap_prop": white,
            "bsc_prop": bsc,
            "poverty_prop": poverty,
            "median_hh_income": income,
        }
    )


# ── Data fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
def small_frame() -> pl.DataFrame:
    """The 10-county synthetic table."""
    return synthetic_frame()


@pytest.fixture
def small_csv(tmp_path, small_frame) -> Path:
    """The 10-county table written as a semicolon-delimited file."""
    return write_csv(small_frame, tmp_path / "data_preprocessed.csv")


@pytest.fixture
def small_dataset(small_frame) -> Dataset:
    return validate_frame(small_frame)


@pytest.fixture
def county_dataset() -> Dataset:
    """60 random counties."""
    return validate_frame(random_county_frame())


@pytest.fixture
def quick_sampler() -> SamplerConfig:
    """4 chains x 250 retained draws: enough for stable R-hat on iid draws."""
    return SamplerConfig(chains=4, iterations=500, warmup=250, seed=11)


# ── Fake engine ──────────────────────────────────────────────────────────────


class FakeEngine:
    """Deterministic engine: iid normal draws around each prior location.

    mode="good" gives well-mixed chains; mode="stuck" offsets every chain so
    they disagree (R-hat far above 1). fail_when(spec) -> True raises
    RuntimeError instead of sampling.
    """

    name = "fake"

    def __init__(self, mode: str = "good", spread: float = 0.1, fail_when=None) -> None:
        self.mode = mode
        self.spread = spread
        self.fail_when = fail_when
        self.calls = 0

    def sample(self, spec, priors, data, sampler, *, prior_only=False):
        self.calls += 1
        if self.fail_when is not None and self.fail_when(spec):
            raise RuntimeError("initial evaluation of model failed")

        rng = np.random.default_rng(sampler.seed)
        shape = (sampler.chains, sampler.draws)
        posterior: dict[str, np.ndarray] = {}
        for family in FAMILIES:
            for coef in spec.coefficients(family):
                prior = priors.get(family, coef)
                draws = rng.normal(prior.mu, self.spread, size=shape)
                if self.mode == "stuck":
                    draws = draws + 5.0 * np.arange(sampler.chains)[:, None]
                posterior[variable_name(family, coef)] = draws

            names = spec.variables(family)
            means = data.matrix(names).mean(axis=0) if names else np.zeros(0)
            b0 = posterior[variable_name(family, INTERCEPT)].copy()
            for mean, name in zip(means, names, strict=True):
                b0 = b0 - mean * posterior[variable_name(family, name)]
            posterior[uncentered_intercept_name(family)] = b0

        return az.from_dict(posterior=posterior)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


def make_fit(spec, priors, data, sampler, name="fit_test", engine=None) -> FitResult:
    """A FitResult straight from FakeEngine, bypassing the runner and cache."""
    engine = engine or FakeEngine()
    idata = engine.sample(spec, priors, data, sampler)
    return FitResult(
        name=name,
        idata=idata,
        spec=spec,
        priors=priors,
        sampler=sampler,
        fingerprint="0" * 64,
    )
