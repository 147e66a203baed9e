"""Reusable run context for structured analysis output.

Every analysis phase (EDA, prior predictive, beta regression, PPC) uses
RunContext to get:
  - Structured output directories: results/<analysis>/<date>/data/
  - Automatic console log capture (run_log.txt)
  - Run metadata (run_info.json): git hash, timestamp, parameters
  - A `latest` symlink pointing to the most recent successful run

Run-directory mode (pipeline runs):
  When run_id is set, all phases write into a single grouped directory:
    results/<run_id>/<analysis>/data/
  A root-level `latest` symlink points to the run directory.

Single-phase mode:
  When run_id is None, each phase writes to its own date directory:
    results/<analysis>/<date>/data/
  A phase-level `latest` symlink points to the date directory.

Usage:
    with RunContext(analysis_name="03_beta_regression", params=vars(args)) as ctx:
        summary.write_parquet(ctx.data_dir / "posterior_summary_m1.parquet")
        save_filtering_manifest(manifest, ctx.run_dir)
"""

import io
import json
import subprocess
import sys
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import TextIO

RESULTS_ROOT = Path("results")


class _TeeStream:
    """Wraps a stream to duplicate output to both the original stream and a buffer.

    All print() output goes to both the console (so the user sees progress)
    and an internal StringIO buffer (captured for run_log.txt).
    """

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def _git_commit_hash() -> str:
    """Get the current git commit hash, or 'unknown' if not in a repo."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds into a human-readable string.

    Examples: "3.2s", "1m 45s", "1h 12m 5s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m {secs}s"


def _next_run_label(analysis_dir: Path, today: str) -> str:
    """Return a unique run label for today, appending .1, .2, etc. if needed.

    First run of the day:  "261018"
    Second run:            "261018.1"
    Third run:             "261018.2"

    Checks for existing directories (not symlinks) under *analysis_dir*.
    """
    if not (analysis_dir / today).exists() or (analysis_dir / today).is_symlink():
        return today

    n = 1
    while (analysis_dir / f"{today}.{n}").exists():
        n += 1
    return f"{today}.{n}"


class RunContext:
    """Context manager that sets up structured output for an analysis run.

    Creates the directory tree, captures console output, and writes
    metadata on exit.

    Attributes:
        analysis_name: Name of the analysis phase (e.g. "01_eda").
        params: Script parameters to record in run_info.json.
        run_dir: Root of this run's output.
        data_dir: Directory for parquet tables.
    """

    def __init__(
        self,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
        run_id: str | None = None,
    ) -> None:
        self.analysis_name = analysis_name
        self.params = params or {}
        self.run_id = run_id

        self._root = results_root or RESULTS_ROOT
        today = datetime.now(UTC).strftime("%y%m%d")

        if run_id is not None:
            self._analysis_dir = self._root / run_id / analysis_name
            self.run_dir = self._analysis_dir
            self._run_label = run_id
        else:
            self._analysis_dir = self._root / analysis_name
            run_label = _next_run_label(self._analysis_dir, today)
            self.run_dir = self._analysis_dir / run_label
            self._run_label = run_label

        self.data_dir = self.run_dir / "data"

        self._today = today
        self._primer = primer
        self._tee: _TeeStream | None = None
        self._original_stdout: TextIO | None = None
        self._start_time: datetime | None = None

    def __enter__(self) -> "RunContext":
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.finalize(failed=exc_type is not None)

    def setup(self) -> None:
        """Create directories, write primer, and start log capture."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(exist_ok=True)

        if self._primer:
            readme = self._analysis_dir / "README.md"
            readme.write_text(self._primer, encoding="utf-8")

        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now(UTC)

    def finalize(self, *, failed: bool = False) -> None:
        """Write run_info.json, run_log.txt, and update latest symlink."""
        # Restore stdout before writing metadata (so our writes aren't captured)
        log_text = ""
        if self._tee is not None:
            log_text = self._tee.getvalue()
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]

        log_path = self.run_dir / "run_log.txt"
        log_path.write_text(log_text, encoding="utf-8")

        end_time = datetime.now(UTC)
        elapsed_seconds = (end_time - self._start_time).total_seconds() if self._start_time else 0.0
        run_info = {
            "analysis": self.analysis_name,
            "run_date": self._today,
            "run_label": self._run_label,
            "run_id": self.run_id,
            "status": "failed" if failed else "ok",
            "timestamp_start": (self._start_time.isoformat() if self._start_time else None),
            "timestamp_end": end_time.isoformat(),
            "elapsed_seconds": round(elapsed_seconds, 1),
            "elapsed_display": _format_elapsed(elapsed_seconds),
            "git_commit": _git_commit_hash(),
            "python_version": sys.version,
            "params": self.params,
        }
        info_path = self.run_dir / "run_info.json"
        with open(info_path, "w") as f:
            json.dump(run_info, f, indent=2, default=str)

        print(f"\n{self.analysis_name.upper()} completed in {run_info['elapsed_display']}")

        # Skip symlink update on failed runs so downstream phases don't see partial results
        if not failed:
            if self.run_id is not None:
                latest = self._root / "latest"
                if latest.is_symlink() or latest.exists():
                    latest.unlink()
                latest.symlink_to(self.run_id)
            else:
                latest = self._analysis_dir / "latest"
                if latest.is_symlink() or latest.exists():
                    latest.unlink()
                latest.symlink_to(self._run_label)


def save_filtering_manifest(manifest: dict, out_dir: Path) -> None:
    """Write the phase's decisions (covariates, variants, failures) as JSON."""
    path = out_dir / "filtering_manifest.json"
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)
    print(f"  Saved: {path.name}")
