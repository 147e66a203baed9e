"""
Tests for the prior predictive phase in analysis/02_prior_predictive/prior_predictive.py.

main() runs end to end in a temporary directory with FakeEngine standing in
for the sampler.

Run: uv run pytest tests/test_prior_predictive.py -v
"""

import json
import sys
from pathlib import Path

import polars as pl
import pytest
from conftest import FakeEngine, random_county_frame, write_csv

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.prior_predictive import main

SMALL_RUN = ["--chains", "2", "--iterations", "600", "--warmup", "100", "--seed", "5"]


@pytest.fixture
def engine(monkeypatch, tmp_path):
    engine = FakeEngine()
    monkeypatch.setattr("analysis.inference.get_engine", lambda backend: engine)
    monkeypatch.chdir(tmp_path)
    return engine


@pytest.fixture
def county_csv(tmp_path) -> Path:
    return write_csv(random_county_frame(), tmp_path / "counties.csv")


def run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["prior_predictive.py", *argv])
    main()


class TestMain:
    """Prior-only fits of the two checks, simulated on the training counties."""

    def test_writes_outputs(self, monkeypatch, engine, tmp_path, county_csv):
        run(monkeypatch, "--data", str(county_csv), *SMALL_RUN, "--n-reps", "50")

        out = tmp_path / "results" / "02_prior_predictive" / "latest"
        for name in ("prior_1", "prior_2"):
            assert (out / "data" / f"prior_summary_{name}.parquet").exists()
        summary = pl.read_parquet(out / "data" / "prior_predictive_summary.parquet")
        assert summary["check"].to_list() == ["prior_1", "prior_2"]
        assert summary["n_values"].to_list() == [50 * 54, 50 * 54]
        assert summary["formula"][0] == "turnout_est ~ 1, phi ~ 1"

        manifest = json.loads((out / "filtering_manifest.json").read_text())
        assert manifest["n_reps"] == 50
        assert manifest["n_train"] == 54
        assert set(manifest["checks"]) == {"prior_1", "prior_2"}
        assert manifest["failures"] == []

    def test_prior_fits_cached_separately(self, monkeypatch, engine, tmp_path, county_csv):
        run(monkeypatch, "--data", str(county_csv), *SMALL_RUN, "--n-reps", "10")
        meta = json.loads((tmp_path / "models" / "fit_prior_1.json").read_text())
        assert meta["prior_only"] is True
        assert engine.calls == 2
