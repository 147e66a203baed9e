"""Inference runner for the turnout beta regressions.

Wraps an external MCMC engine behind a small interface so the pipeline never
depends on a particular sampler:

  - SamplerConfig: chains / iterations / warmup / seed (frozen, validated)
  - RunnerConfig: cache directory, refit policy, backend, convergence thresholds
  - build_beta_regression_graph: the PyMC model (logit mean, log precision)
  - NutpieEngine (default) and PyMCEngine: graph → InferenceData
  - FitCache: <cache_dir>/<name>.nc + <name>.json fingerprint sidecar
  - InferenceRunner.fit: validate → cache lookup → sample → diagnose → cache

A cached fit is reused only when the SHA-256 fingerprint of (spec, priors,
data, sampler config, prior-only flag, engine) matches, so changing any single
prior parameter triggers a fresh run. Artifacts are written to temp files and
renamed into place, sidecar last; a failed run never touches the cache.

Usage:
    runner = InferenceRunner(RunnerConfig(cache_dir=Path("models")))
    fit = runner.fit("fit_m1", spec, priors, train, SamplerConfig())
    fit.draws("mu_poverty_prop")  # (chains * draws,) retained posterior draws
"""

from __future__ import annotations

import hashlib
import json
import os
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import arviz as az
import numpy as np
import pymc as pm
import pytensor.tensor as pt

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from turnout.config import MODELS_DIR
from turnout.dataset import Dataset
from turnout.errors import ConfigError, ConvergenceError, EngineError, SpecError

from analysis.diagnostics import MIN_ESS_RATIO, RHAT_THRESHOLD, check_convergence, print_header
from analysis.model_spec import (
    INTERCEPT,
    MEAN,
    PRECISION,
    ModelSpec,
    ModelVariant,
    PriorSet,
    uncentered_intercept_name,
    variable_name,
)

# ── Constants ────────────────────────────────────────────────────────────────

N_CHAINS = 4
N_ITERATIONS = 2000  # per chain, warmup included
N_WARMUP = 1000
RANDOM_SEED = 100

REFIT_POLICIES = ("on_change", "always", "never")
BACKENDS = ("nutpie", "pymc")


# ── Configuration ────────────────────────────────────────────────────────────


def _is_int(value: object) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


@dataclass(frozen=True)
class SamplerConfig:
    """MCMC settings. Each chain keeps iterations - warmup draws."""

    chains: int = N_CHAINS
    iterations: int = N_ITERATIONS
    warmup: int = N_WARMUP
    seed: int = RANDOM_SEED

    def __post_init__(self) -> None:
        for name in ("chains", "iterations", "warmup"):
            value = getattr(self, name)
            if not _is_int(value) or value < 1:
                msg = f"{name} must be a positive integer, got {value!r}"
                raise ConfigError(msg)
        if not _is_int(self.seed) or self.seed < 0:
            msg = f"seed must be a non-negative integer, got {self.seed!r}"
            raise ConfigError(msg)
        if self.warmup >= self.iterations:
            msg = f"warmup ({self.warmup}) must be smaller than iterations ({self.iterations})"
            raise ConfigError(msg)

    @property
    def draws(self) -> int:
        """Retained draws per chain."""
        return self.iterations - self.warmup

    @property
    def total_draws(self) -> int:
        return self.chains * self.draws


@dataclass(frozen=True)
class RunnerConfig:
    """Options that govern every fit made by one InferenceRunner.

    refit: "on_change" reuses a cached fit only when its fingerprint matches,
        "always" ignores the cache, "never" reuses any cached artifact.
    strict_convergence: raise ConvergenceError instead of attaching it to the fit.
    """

    cache_dir: Path = MODELS_DIR
    refit: str = "on_change"
    backend: str = "nutpie"
    rhat_threshold: float = RHAT_THRESHOLD
    min_ess_ratio: float = MIN_ESS_RATIO
    strict_convergence: bool = False

    def __post_init__(self) -> None:
        if self.refit not in REFIT_POLICIES:
            msg = f"Unknown refit policy {self.refit!r}; supported: {REFIT_POLICIES}"
            raise ConfigError(msg)
        if self.backend not in BACKENDS:
            msg = f"Unknown backend {self.backend!r}; supported: {BACKENDS}"
            raise ConfigError(msg)
        if not self.rhat_threshold > 1:
            msg = f"rhat_threshold must exceed 1, got {self.rhat_threshold}"
            raise ConfigError(msg)
        if not 0 <= self.min_ess_ratio <= 1:
            msg = f"min_ess_ratio must lie in [0, 1], got {self.min_ess_ratio}"
            raise ConfigError(msg)


# ── Model Graph ──────────────────────────────────────────────────────────────


def _linear_predictor(family: str, spec: ModelSpec, priors: PriorSet, data: Dataset):
    """Intercept + centred covariates for one submodel; registers the uncentred intercept."""
    names = spec.variables(family)
    x = data.matrix(names)
    means = x.mean(axis=0) if spec.center and names else np.zeros(len(names))
    x_centered = x - means

    intercept = priors.get(family, INTERCEPT).build(variable_name(family, INTERCEPT))
    if not names:
        pm.Deterministic(uncentered_intercept_name(family), intercept)
        return intercept

    coefs = pt.stack([priors.get(family, v).build(variable_name(family, v)) for v in names])
    pm.Deterministic(uncentered_intercept_name(family), intercept - pt.dot(means, coefs))
    return intercept + pt.dot(x_centered, coefs)


def build_beta_regression_graph(
    spec: ModelSpec,
    priors: PriorSet,
    data: Dataset,
    *,
    prior_only: bool = False,
) -> pm.Model:
    """Build the beta regression graph (no sampling).

    Model structure:
        logit(mu_i) = mu_Intercept + sum_k mu_k * (x_ik - mean_k)
        log(phi_i)  = phi_Intercept + sum_k phi_k * (z_ik - mean_k)
        y_i ~ Beta(mu_i * phi_i, (1 - mu_i) * phi_i)

    With prior_only=True the likelihood is left out, so sampling draws from
    the priors alone.
    """
    coords = {"obs_id": data.ids}
    with pm.Model(coords=coords) as model:
        eta_mu = _linear_predictor(MEAN, spec, priors, data)
        eta_phi = _linear_predictor(PRECISION, spec, priors, data)

        if not prior_only:
            mu = pm.math.invlogit(eta_mu)
            phi = pt.exp(eta_phi)
            pm.Beta(
                spec.response,
                alpha=mu * phi,
                beta=(1.0 - mu) * phi,
                observed=data.response,
                dims="obs_id",
            )

    return model


# ── Engines ──────────────────────────────────────────────────────────────────


class InferenceEngine(Protocol):
    """Anything that turns (spec, priors, data, sampler) into posterior draws."""

    name: str

    def sample(
        self,
        spec: ModelSpec,
        priors: PriorSet,
        data: Dataset,
        sampler: SamplerConfig,
        *,
        prior_only: bool = False,
    ) -> az.InferenceData: ...


class PyMCEngine:
    """PyMC's own NUTS, one core. Chain seeds are derived from sampler.seed."""

    name = "pymc"

    def sample(
        self,
        spec: ModelSpec,
        priors: PriorSet,
        data: Dataset,
        sampler: SamplerConfig,
        *,
        prior_only: bool = False,
    ) -> az.InferenceData:
        model = build_beta_regression_graph(spec, priors, data, prior_only=prior_only)
        return self._draw(model, sampler)

    def _draw(self, model: pm.Model, sampler: SamplerConfig) -> az.InferenceData:
        with model:
            return pm.sample(
                draws=sampler.draws,
                tune=sampler.warmup,
                chains=sampler.chains,
                cores=1,
                random_seed=sampler.seed,
                progressbar=False,
                compute_convergence_checks=False,
            )


class NutpieEngine(PyMCEngine):
    """Compile the PyMC graph and sample with nutpie's Rust NUTS."""

    name = "nutpie"

    def _draw(self, model: pm.Model, sampler: SamplerConfig) -> az.InferenceData:
        import nutpie

        print("  Compiling model with nutpie...")
        compiled = nutpie.compile_pymc_model(model)
        return nutpie.sample(
            compiled,
            draws=sampler.draws,
            tune=sampler.warmup,
            chains=sampler.chains,
            seed=sampler.seed,
            progress_bar=False,
            store_divergences=True,
        )


def get_engine(backend: str) -> InferenceEngine:
    match backend:
        case "nutpie":
            return NutpieEngine()
        case "pymc":
            return PyMCEngine()
        case _:
            msg = f"Unknown backend {backend!r}; supported: {BACKENDS}"
            raise ConfigError(msg)


# ── FitResult ────────────────────────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class FitResult:
    """Retained draws of one fit plus everything needed to reproduce it.

    idata.posterior holds one variable per coefficient (chain x draw) and the
    uncentred intercepts mu_b0 / phi_b0. Prior-only fits store their prior
    draws in the same group.
    """

    name: str
    idata: az.InferenceData
    spec: ModelSpec
    priors: PriorSet
    sampler: SamplerConfig
    fingerprint: str
    prior_only: bool = False
    from_cache: bool = False
    sampling_time: float = 0.0
    convergence: dict = field(default_factory=dict)
    convergence_error: ConvergenceError | None = None

    @property
    def n_chains(self) -> int:
        return int(self.idata.posterior.sizes["chain"])

    @property
    def n_draws(self) -> int:
        return int(self.idata.posterior.sizes["draw"])

    @property
    def param_names(self) -> list[str]:
        return list(self.idata.posterior.data_vars)

    @property
    def converged(self) -> bool:
        return self.convergence_error is None

    def draws(self, name: str) -> np.ndarray:
        """All retained draws of one parameter, chains concatenated."""
        if name not in self.idata.posterior:
            msg = f"{self.name}: no parameter {name!r}; available: {self.param_names}"
            raise KeyError(msg)
        return np.array(self.idata.posterior[name].values, dtype=np.float64).reshape(-1)


def fit_fingerprint(
    spec: ModelSpec,
    priors: PriorSet,
    data: Dataset,
    sampler: SamplerConfig,
    *,
    prior_only: bool,
    engine_name: str,
) -> str:
    """SHA-256 over everything that determines the draws."""
    payload = {
        "spec": spec.to_dict(),
        "priors": priors.to_dict(),
        "data": data.fingerprint([spec.response, *spec.all_variables]),
        "sampler": asdict(sampler),
        "prior_only": prior_only,
        "engine": engine_name,
    }
    blob = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(blob).hexdigest()


# ── Cache ────────────────────────────────────────────────────────────────────


class FitCache:
    """One NetCDF artifact + JSON sidecar per fit name."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = Path(cache_dir)

    def paths(self, name: str) -> tuple[Path, Path]:
        return self.cache_dir / f"{name}.nc", self.cache_dir / f"{name}.json"

    def exists(self, name: str) -> bool:
        nc_path, meta_path = self.paths(name)
        return nc_path.exists() and meta_path.exists()

    def read_meta(self, name: str) -> dict | None:
        _, meta_path = self.paths(name)
        if not meta_path.exists():
            return None
        with open(meta_path) as f:
            return json.load(f)

    def load(self, name: str, fingerprint: str | None) -> tuple[az.InferenceData, dict] | None:
        """Cached (idata, meta), or None if absent, unreadable or (with a fingerprint) stale."""
        if not self.exists(name):
            return None
        try:
            meta = self.read_meta(name)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            print(f"  WARNING: unreadable sidecar for {name} ({type(e).__name__}: {e})")
            return None
        if not isinstance(meta, dict):
            return None
        if fingerprint is not None and meta.get("fingerprint") != fingerprint:
            return None
        nc_path, _ = self.paths(name)
        try:
            with az.rc_context({"data.load": "eager"}):
                idata = az.from_netcdf(str(nc_path))
        except (OSError, ValueError) as e:
            print(f"  WARNING: unreadable artifact {nc_path} ({type(e).__name__}: {e})")
            return None
        if "posterior" not in idata.groups():
            return None
        return idata, meta

    def save(self, name: str, idata: az.InferenceData, meta: dict) -> None:
        """Write artifact then sidecar, each via temp file + rename."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        nc_path, meta_path = self.paths(name)

        # Drop the old sidecar first: an artifact without one is treated as stale.
        if meta_path.exists():
            meta_path.unlink()

        tmp_nc = nc_path.with_name(nc_path.name + ".tmp")
        idata.to_netcdf(str(tmp_nc))
        os.replace(tmp_nc, nc_path)

        tmp_meta = meta_path.with_name(meta_path.name + ".tmp")
        with open(tmp_meta, "w") as f:
            json.dump(meta, f, indent=2, default=str)
        os.replace(tmp_meta, meta_path)


# ── Runner ───────────────────────────────────────────────────────────────────

_ENGINE_FAILURES = (pm.exceptions.SamplingError, RuntimeError, FloatingPointError, ValueError)


class InferenceRunner:
    """Fit beta regressions through an engine, with fingerprinted caching.

    Attributes:
        config: RunnerConfig in force for every fit.
        engine: The InferenceEngine used (from config.backend unless injected).
        cache: FitCache rooted at config.cache_dir.
    """

    def __init__(self, config: RunnerConfig | None = None, engine: InferenceEngine | None = None):
        self.config = config or RunnerConfig()
        self.engine = engine if engine is not None else get_engine(self.config.backend)
        self.cache = FitCache(self.config.cache_dir)

    def fit(
        self,
        name: str,
        spec: ModelSpec,
        priors: PriorSet,
        data: Dataset,
        sampler: SamplerConfig,
        *,
        prior_only: bool = False,
    ) -> FitResult:
        """Return draws for (spec, priors, data, sampler), sampling at most once per fingerprint.

        Raises:
            ConfigError: Empty conditioning data.
            SpecError: Spec variables missing from data, or priors not covering spec.
            EngineError: The engine failed; nothing is cached.
            ConvergenceError: Only with strict_convergence; the fit is cached
                and available as error.fit.
        """
        if data.n_rows == 0:
            msg = f"{name}: conditioning dataset is empty"
            raise ConfigError(msg)
        missing = [v for v in (spec.response, *spec.all_variables) if v not in data.columns]
        if missing:
            msg = f"{name}: dataset lacks columns {missing}"
            raise SpecError(msg)
        priors.check_covers(spec)

        fingerprint = fit_fingerprint(
            spec, priors, data, sampler, prior_only=prior_only, engine_name=self.engine.name
        )

        mode = "PRIOR ONLY" if prior_only else "POSTERIOR"
        print_header(f"FIT {name} — {mode}")
        print(f"  Formula: {spec.formula()}")
        for line in priors.describe():
            print(f"  Prior  {line}")
        print(f"  Data: {data.n_rows} observations")

        cached = None
        if self.config.refit != "always":
            expected = None if self.config.refit == "never" else fingerprint
            cached = self.cache.load(name, expected)

        if cached is not None:
            idata, meta = cached
            fingerprint = meta.get("fingerprint", fingerprint)
            sampling_time = float(meta.get("sampling_time", 0.0))
            from_cache = True
            nc_path = self.cache.paths(name)[0]
            print(f"  Loaded cached fit: {nc_path} (fingerprint {fingerprint[:12]})")
        else:
            if self.cache.exists(name):
                print("  Cached fit is stale — refitting")
            idata, sampling_time = self._sample(name, spec, priors, data, sampler, prior_only)
            from_cache = False

        diag = check_convergence(
            idata,
            name,
            rhat_threshold=self.config.rhat_threshold,
            min_ess_ratio=self.config.min_ess_ratio,
        )

        error = None
        if not diag["all_ok"]:
            flagged = sorted(set(diag["flagged_rhat"]) | set(diag["flagged_ess"]))
            if diag["rhat_defined"]:
                rhat_note = f"max R-hat {diag['max_rhat']:.3f}"
            else:
                rhat_note = (
                    f"R-hat undefined for {diag['n_chains']} chain(s) x "
                    f"{diag['n_draws']} draws"
                )
            message = (
                f"{name}: convergence checks failed for {flagged} "
                f"({rhat_note}, min ESS {diag['min_ess']:.0f})"
            )
            error = ConvergenceError(message, rhat=diag["rhat"], ess=diag["ess"], flagged=flagged)

        result = FitResult(
            name=name,
            idata=idata,
            spec=spec,
            priors=priors,
            sampler=sampler,
            fingerprint=fingerprint,
            prior_only=prior_only,
            from_cache=from_cache,
            sampling_time=sampling_time,
            convergence=diag,
            convergence_error=error,
        )

        if not from_cache:
            self.cache.save(name, idata, self._metadata(result))
            print(f"  Saved: {self.cache.paths(name)[0]}")

        if error is not None:
            error.fit = result
            if self.config.strict_convergence:
                raise error
            print(f"  WARNING: {error}")

        return result

    def fit_variant(
        self,
        variant: ModelVariant,
        data: Dataset,
        sampler: SamplerConfig,
        *,
        prior_only: bool = False,
    ) -> FitResult:
        return self.fit(
            variant.cache_name,
            variant.spec,
            variant.priors,
            data,
            sampler,
            prior_only=prior_only,
        )

    def _sample(
        self,
        name: str,
        spec: ModelSpec,
        priors: PriorSet,
        data: Dataset,
        sampler: SamplerConfig,
        prior_only: bool,
    ) -> tuple[az.InferenceData, float]:
        print(
            f"  Sampling: {sampler.chains} chains x {sampler.iterations} iterations "
            f"({sampler.warmup} warmup), seed={sampler.seed}, engine={self.engine.name}"
        )
        t0 = time.time()
        try:
            idata = self.engine.sample(spec, priors, data, sampler, prior_only=prior_only)
        except _ENGINE_FAILURES as e:
            msg = f"{name}: sampling failed ({type(e).__name__}: {e})"
            raise EngineError(msg) from e
        sampling_time = time.time() - t0

        sizes = idata.posterior.sizes
        if sizes.get("chain") != sampler.chains or sizes.get("draw") != sampler.draws:
            msg = (
                f"{name}: engine returned {sizes.get('chain')} chains x {sizes.get('draw')} "
                f"draws, expected {sampler.chains} x {sampler.draws}"
            )
            raise EngineError(msg)

        print(f"  Sampling complete in {sampling_time:.1f}s")
        return idata, sampling_time

    def _metadata(self, result: FitResult) -> dict:
        return {
            "name": result.name,
            "fingerprint": result.fingerprint,
            "formula": result.spec.formula(),
            "spec": result.spec.to_dict(),
            "priors": result.priors.to_dict(),
            "sampler": asdict(result.sampler),
            "prior_only": result.prior_only,
            "engine": self.engine.name,
            "sampling_time": round(result.sampling_time, 2),
            "created": datetime.now(UTC).isoformat(),
            "max_rhat": result.convergence.get("max_rhat"),
            "min_ess": result.convergence.get("min_ess"),
            "converged": result.converged,
        }
