"""
Run log for the command-line entry points.

Every finished CLI run appends one JSON line to
``results/<profile>/timing/phase_timings.jsonl`` with its wall-clock time,
the seed it used, how many units of work it ran (bootstrap replicates for
the lasso, design points for the grid search) and how many of those were
excluded (degenerate splits, infeasible designs).
"""
from __future__ import annotations

import json
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

import numpy as np

from clinstats.utils.project_context import ProjectContext

TIMING_FILENAME = "phase_timings.jsonl"


def _to_json(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Mapping):
        return {str(k): _to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


@dataclass
class PhaseTimingEntry:
    phase: str
    profile: str
    elapsed_seconds: float
    seed: int | None = None
    n_units: int | None = None
    n_excluded: int | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    cli_args: Iterable[str] = ()
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "phase": self.phase,
            "profile": self.profile,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "seed": _to_json(self.seed),
            "n_units": _to_json(self.n_units),
            "n_excluded": _to_json(self.n_excluded),
            "metadata": _to_json(dict(self.metadata)),
            "cli_args": list(self.cli_args),
        }


def record_phase_timing(
    *,
    context: ProjectContext,
    phase: str,
    started_at: float,
    seed: int | None = None,
    n_units: int | None = None,
    n_excluded: int | None = None,
    metadata: Mapping[str, Any] | None = None,
    cli_args: Iterable[str] | None = None,
) -> Path:
    """
    Append a run entry for ``phase`` under the profile's ``timing`` directory.

    Args:
        context: Project context bound to the active profile.
        phase: ``lasso_bootstrap`` or ``design_search``.
        started_at: Value of ``time.perf_counter()`` taken when the run began.
        seed: Base seed of the run.
        n_units: Bootstrap replicates or design points attempted.
        n_excluded: How many of ``n_units`` were excluded.
        metadata: Any further run settings worth keeping.
        cli_args: CLI arguments (defaults to ``sys.argv[1:]``).
    Returns:
        Path of the JSONL file.
    """
    entry = PhaseTimingEntry(
        phase=phase,
        profile=context.profile_name,
        elapsed_seconds=max(time.perf_counter() - started_at, 0.0),
        seed=seed,
        n_units=n_units,
        n_excluded=n_excluded,
        metadata=metadata or {},
        cli_args=cli_args if cli_args is not None else sys.argv[1:],
    )
    out_dir = context.results_dir() / "timing"
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / TIMING_FILENAME
    with out_path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(entry.as_dict(), ensure_ascii=False) + "\n")
    return out_path
