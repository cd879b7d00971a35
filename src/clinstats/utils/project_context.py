"""Helpers for working with predefined analysis profiles."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from clinstats.config.project_profiles import (
    ANALYSIS_PROFILES,
    ModeratorModelSpec,
    get_profile,
)


@dataclass
class ProjectContext:
    """Convenience wrapper for resolving data/result paths."""

    profile_name: str = "smoking"
    data_dir: Path | str = Path("data")
    results_root: Path | str = Path("results")

    def __post_init__(self) -> None:
        self.profile = get_profile(self.profile_name)
        self.data_dir = Path(self.data_dir)
        self.results_root = Path(self.results_root)

    @property
    def model_spec(self) -> ModeratorModelSpec:
        return self.profile.model

    def imputed_paths(self) -> Dict[int, Path]:
        return self.profile.imputed_paths(self.data_dir)

    def results_dir(self) -> Path:
        return self.profile.results_dir(self.results_root)


def profile_help_text() -> str:
    """Return a CLI-friendly help string listing available profiles."""
    pairs = [f"{name}: {profile.description}" for name, profile in ANALYSIS_PROFILES.items()]
    return " | ".join(pairs)
