"""Exception hierarchy for the turnout pipeline.

Load, config and spec errors are raised before any sampling starts.
ConvergenceError is raised (or attached to the fit) only after a full run,
so it carries the diagnostics and the fit itself.
"""

from __future__ import annotations

import math
from typing import Any


class TurnoutError(Exception):
    """Base class for all pipeline errors."""


class LoadError(TurnoutError):
    """Input file is missing, malformed, or violates a column constraint."""


class ConfigError(TurnoutError):
    """Invalid split or sampler parameters."""


class SpecError(TurnoutError):
    """Invalid or incomplete model or prior specification."""


class EngineError(TurnoutError):
    """The inference engine failed to produce draws."""


class ConvergenceError(TurnoutError):
    """Sampling finished but the draws fail convergence diagnostics.

    Attributes:
        rhat: Parameter name → R-hat for every parameter checked.
        ess: Parameter name → bulk effective sample size.
        flagged: Names of the parameters that failed a check.
        fit: The FitResult the diagnostics were computed on (still usable).
    """

    def __init__(
        self,
        message: str,
        rhat: dict[str, float],
        ess: dict[str, float] | None = None,
        flagged: list[str] | None = None,
        fit: Any = None,
    ) -> None:
        super().__init__(message)
        self.rhat = rhat
        self.ess = ess or {}
        self.flagged = flagged or []
        self.fit = fit

    @property
    def max_rhat(self) -> float:
        finite = [v for v in self.rhat.values() if math.isfinite(v)]
        return max(finite) if finite else float("nan")
