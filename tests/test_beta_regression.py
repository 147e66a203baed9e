"""
Tests for the beta regression phase in analysis/03_beta_regression/beta_regression.py.

The variant loop, summary tables and manifest entries are checked with
FakeEngine; main() runs end to end in a temporary directory with the engine
lookup patched, so no sampler is needed.

Run: uv run pytest tests/test_beta_regression.py -v
"""

import argparse
import json
import sys
from pathlib import Path

import polars as pl
import pytest
from conftest import FakeEngine, make_fit, random_county_frame, write_csv

sys.path.insert(0, str(Path(__file__).parent.parent))

from turnout.errors import ConfigError, LoadError

from analysis.beta_regression import (
    add_common_args,
    convergence_table,
    fit_variants,
    load_and_split,
    main,
    runner_from_args,
    sampler_from_args,
    variant_manifest,
)
from analysis.inference import InferenceRunner, RunnerConfig, SamplerConfig
from analysis.model_spec import default_variants

SAMPLER = SamplerConfig(chains=2, iterations=600, warmup=100, seed=5)
SMALL_RUN = ["--chains", "2", "--iterations", "600", "--warmup", "100", "--seed", "5"]


def parse(argv: list[str]) -> argparse.Namespace:
    return add_common_args(argparse.ArgumentParser()).parse_args(argv)


def is_m2(spec) -> bool:
    return spec.mean_vars == ("poverty_prop", "bsc_prop")


@pytest.fixture
def county_csv(tmp_path) -> Path:
    return write_csv(random_county_frame(), tmp_path / "counties.csv")


# ── CLI helpers ──────────────────────────────────────────────────────────────


class TestCommonArgs:
    """Flags shared by the model phases."""

    def test_defaults(self):
        args = parse([])
        assert args.train_fraction == 0.9
        assert args.split_seed == 100
        assert args.chains == 4
        assert args.iterations == 2000
        assert args.warmup == 1000
        assert args.refit == "on_change"
        assert args.backend == "nutpie"
        assert args.strict_convergence is False
        assert args.covariate_selection == "fixed"

    def test_sampler_from_args(self):
        sampler = sampler_from_args(parse(SMALL_RUN))
        assert sampler == SAMPLER
        assert sampler.total_draws == 1000

    def test_bad_sampler_values(self):
        with pytest.raises(ConfigError):
            sampler_from_args(parse(["--iterations", "100", "--warmup", "100"]))

    def test_unknown_backend_rejected_by_parser(self):
        with pytest.raises(SystemExit):
            parse(["--backend", "stan"])

    def test_runner_from_args(self, tmp_path):
        args = parse(["--cache-dir", str(tmp_path), "--refit", "never", "--strict-convergence"])
        runner = runner_from_args(args, engine=FakeEngine())
        assert runner.config.cache_dir == tmp_path
        assert runner.config.refit == "never"
        assert runner.config.strict_convergence is True
        assert runner.engine.name == "fake"

    def test_load_and_split(self, small_csv):
        dataset, split, train, test = load_and_split(parse(["--data", str(small_csv)]))
        assert dataset.n_rows == 10
        assert (train.n_rows, test.n_rows) == (9, 1)
        assert split.seed == 100

    def test_load_and_split_missing_file(self, tmp_path):
        with pytest.raises(LoadError):
            load_and_split(parse(["--data", str(tmp_path / "missing.csv")]))


# ── fit_variants() ───────────────────────────────────────────────────────────


class TestFitVariants:
    """Each variant in order; an engine failure skips only that variant."""

    def test_all_variants(self, tmp_path, county_dataset):
        runner = InferenceRunner(RunnerConfig(cache_dir=tmp_path), engine=FakeEngine())
        fits, failures = fit_variants(runner, default_variants(), county_dataset, SAMPLER)
        assert list(fits) == ["simple", "m1", "m2", "m3"]
        assert failures == []
        assert all(fit.n_chains * fit.n_draws == 1000 for fit in fits.values())

    def test_engine_failure_skips_variant(self, tmp_path, county_dataset, capsys):
        engine = FakeEngine(fail_when=is_m2)
        runner = InferenceRunner(RunnerConfig(cache_dir=tmp_path), engine=engine)
        fits, failures = fit_variants(runner, default_variants(), county_dataset, SAMPLER)
        assert list(fits) == ["simple", "m1", "m3"]
        assert len(failures) == 1
        assert failures[0]["variant"] == "m2"
        assert "sampling failed" in failures[0]["error"]
        assert "WARNING: m2 skipped" in capsys.readouterr().out
        assert not (tmp_path / "fit_m2.nc").exists()
        assert (tmp_path / "fit_m3.nc").exists()

    def test_prior_only(self, tmp_path, county_dataset):
        runner = InferenceRunner(RunnerConfig(cache_dir=tmp_path), engine=FakeEngine())
        fits, _ = fit_variants(
            runner, default_variants()[:1], county_dataset, SAMPLER, prior_only=True
        )
        assert fits["simple"].prior_only is True


# ── Tables + manifest ────────────────────────────────────────────────────────


class TestConvergenceTable:
    def test_one_row_per_fit(self, tmp_path, county_dataset):
        runner = InferenceRunner(RunnerConfig(cache_dir=tmp_path), engine=FakeEngine())
        fits, _ = fit_variants(runner, default_variants()[:2], county_dataset, SAMPLER)
        table = convergence_table(fits)
        assert table["variant"].to_list() == ["simple", "m1"]
        assert table["n_chains"].to_list() == [2, 2]
        assert table["n_draws"].to_list() == [500, 500]
        assert table["converged"].to_list() == [True, True]
        assert (table["max_rhat"] < 1.05).all()

    def test_not_converged(self, tmp_path, county_dataset):
        runner = InferenceRunner(
            RunnerConfig(cache_dir=tmp_path), engine=FakeEngine(mode="stuck")
        )
        fits, _ = fit_variants(runner, default_variants()[:1], county_dataset, SAMPLER)
        row = convergence_table(fits).row(0, named=True)
        assert row["converged"] is False
        assert row["max_rhat"] > 1.05


class TestVariantManifest:
    def test_status(self, county_dataset):
        variants = default_variants()
        fits = {
            v.name: make_fit(v.spec, v.priors, county_dataset, SAMPLER, name=v.cache_name)
            for v in variants[:2]
        }
        entries = variant_manifest(variants, fits)
        assert list(entries) == ["simple", "m1", "m2", "m3"]
        assert entries["simple"]["status"] == "ok"
        assert entries["m2"]["status"] == "failed"
        assert entries["m2"]["fingerprint"] is None
        assert entries["m1"]["cache_name"] == "fit_m1"
        assert entries["m1"]["formula"] == "turnout_est ~ poverty_prop, phi ~ poverty_prop"
        json.dumps(entries)


# ── main() ───────────────────────────────────────────────────────────────────


class TestMain:
    """Full phase run in tmp_path with the engine lookup patched."""

    @pytest.fixture
    def engine(self, monkeypatch, tmp_path):
        engine = FakeEngine()
        monkeypatch.setattr("analysis.inference.get_engine", lambda backend: engine)
        monkeypatch.chdir(tmp_path)
        return engine

    def run(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["beta_regression.py", *argv])
        main()

    def test_writes_outputs(self, monkeypatch, engine, tmp_path, county_csv):
        self.run(monkeypatch, "--data", str(county_csv), *SMALL_RUN)

        out = tmp_path / "results" / "03_beta_regression" / "latest"
        for name in ("simple", "m1", "m2", "m3"):
            summary = pl.read_parquet(out / "data" / f"posterior_summary_{name}.parquet")
            assert "mu_Intercept" in summary["parameter"].to_list()
            assert (tmp_path / "models" / f"fit_{name}.nc").exists()
            assert (tmp_path / "models" / f"fit_{name}.json").exists()

        convergence = pl.read_parquet(out / "data" / "convergence_summary.parquet")
        assert convergence.height == 4

        manifest = json.loads((out / "filtering_manifest.json").read_text())
        assert manifest["n_train"] == 54
        assert manifest["n_test"] == 6
        assert manifest["covariates"] == [
            "elderly_prop",
            "white_cvap_prop",
            "bsc_prop",
            "poverty_prop",
        ]
        assert manifest["dropped_covariates"] == [{"variable": "median_hh_income", "vif": None}]
        assert {v["status"] for v in manifest["variants"].values()} == {"ok"}
        assert (out / "run_log.txt").exists()
        assert (out.parent / "README.md").exists()

    def test_rerun_uses_cache(self, monkeypatch, engine, county_csv):
        self.run(monkeypatch, "--data", str(county_csv), *SMALL_RUN)
        assert engine.calls == 4
        self.run(monkeypatch, "--data", str(county_csv), *SMALL_RUN)
        assert engine.calls == 4

    def test_refit_always(self, monkeypatch, engine, county_csv):
        self.run(monkeypatch, "--data", str(county_csv), *SMALL_RUN)
        self.run(monkeypatch, "--data", str(county_csv), *SMALL_RUN, "--refit", "always")
        assert engine.calls == 8

    def test_run_id_layout(self, monkeypatch, engine, tmp_path, county_csv):
        self.run(monkeypatch, "--data", str(county_csv), *SMALL_RUN, "--run-id", "turnout-test")
        out = tmp_path / "results" / "turnout-test" / "03_beta_regression"
        assert (out / "filtering_manifest.json").exists()
        assert (tmp_path / "results" / "latest").is_symlink()
