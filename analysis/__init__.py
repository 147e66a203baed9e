"""Analysis pipeline for the county turnout beta regressions.

Pipeline phases (in order):
  01_eda                — Exploratory data analysis + collinearity screen
  02_prior_predictive   — Prior-only fits and prior predictive checks
  03_beta_regression    — Fit the four beta-regression variants
  04_ppc                — Posterior predictive checks, holdout, LOO comparison

Shared infrastructure at root: run_context.py, inference.py, diagnostics.py

Uses a PEP 302 meta-path finder so that ``from analysis.eda import X``
transparently loads ``analysis.01_eda.eda``.  Zero import changes needed.
"""

from __future__ import annotations

import importlib
import sys
import types
from importlib.abc import MetaPathFinder
from importlib.machinery import ModuleSpec

_MODULE_MAP: dict[str, str] = {
    "eda": "01_eda",
    "prior_predictive": "02_prior_predictive",
    "model_spec": "03_beta_regression",
    "beta_regression": "03_beta_regression",
    "ppc": "04_ppc",
    "ppc_data": "04_ppc",
}


class _AliasLoader:
    """Loader that imports the real module and registers it under the alias."""

    def __init__(self, real_name: str) -> None:
        self.real_name = real_name

    def create_module(self, spec: ModuleSpec) -> types.ModuleType | None:
        return None  # use default semantics

    def exec_module(self, module: types.ModuleType) -> None:
        real = importlib.import_module(self.real_name)
        # Copy all attributes from the real module into the alias
        module.__dict__.update(real.__dict__)
        module.__file__ = real.__file__
        module.__loader__ = real.__loader__
        if hasattr(real, "__path__"):
            module.__path__ = real.__path__


class _AnalysisRedirectFinder(MetaPathFinder):
    """Redirect ``analysis.<name>`` imports to ``analysis.<NN_subdir>.<name>``."""

    def find_spec(
        self,
        fullname: str,
        path: object = None,
        target: types.ModuleType | None = None,
    ) -> ModuleSpec | None:
        parts = fullname.split(".")
        if len(parts) == 2 and parts[0] == "analysis" and parts[1] in _MODULE_MAP:
            name = parts[1]
            subpkg = _MODULE_MAP[name]
            real = f"analysis.{subpkg}.{name}"
            return ModuleSpec(fullname, _AliasLoader(real))
        return None


sys.meta_path.insert(0, _AnalysisRedirectFinder())
