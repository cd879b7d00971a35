"""Central definitions for analysis profiles, model specifications and simulation defaults."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple

TREATMENT_COLUMNS: Sequence[str] = ("BA", "Var")

SMOKING_COVARIATES: Sequence[str] = (
    "age_ps",
    "sex_ps",
    "inc",
    "edu",
    "ftcd_score",
    "ftcd.5.mins",
    "bdi_score_w00",
    "cpd_ps",
    "crv_total_pq1",
    "hedonsum_n_pq1_sqrt",
    "hedonsum_y_pq1_sqrt",
    "shaps_score_pq1_log",
    "otherdiag",
    "antidepmed",
    "mde_curr",
    "NMR_log",
    "Only.Menthol",
    "readiness",
    "Race",
)


@dataclass(frozen=True)
class ModeratorModelSpec:
    """Columns of the treatment-moderator logistic model.

    Every treatment indicator is crossed with every covariate; categorical
    covariates are dummy-coded against their first level.
    """

    outcome: str = "abst"
    group: str = "Group"
    treatments: Tuple[str, ...] = tuple(TREATMENT_COLUMNS)
    covariates: Tuple[str, ...] = tuple(SMOKING_COVARIATES)
    categorical: Tuple[str, ...] = ("Race",)

    def required_columns(self) -> List[str]:
        """Return every column an imputed dataset must provide."""
        cols = [self.outcome, self.group, *self.treatments, *self.covariates]
        return list(dict.fromkeys(cols))


@dataclass(frozen=True)
class SimulationProfile:
    """Fixed parameters shared by every design point of a grid search."""

    family: str
    budget: float = 2000.0
    c1: float = 20.0
    alpha: float = 2.0
    beta: float = 1.5
    gamma2: float = 1.0
    sigma2: float = 1.0
    n_sim: int = 100
    alpha_level: float = 0.05
    seed: int = 2550
    n_clusters_seq: Tuple[int, ...] = tuple(range(10, 55, 5))
    c1_c2_ratios: Tuple[float, ...] = (2.0, 5.0, 10.0, 20.0)
    outer: str = "n_clusters"

    def simulation_kwargs(self) -> Dict[str, float]:
        """Keyword arguments forwarded to a single design-point simulator."""
        kwargs: Dict[str, float] = {
            "B": self.budget,
            "c1": self.c1,
            "alpha": self.alpha,
            "beta": self.beta,
            "gamma2": self.gamma2,
            "n_sim": self.n_sim,
            "alpha_level": self.alpha_level,
            "seed": self.seed,
        }
        if self.family == "normal":
            kwargs["sigma2"] = self.sigma2
        return kwargs


SIMULATION_PROFILES: Mapping[str, SimulationProfile] = {
    "normal": SimulationProfile(family="normal", outer="n_clusters"),
    "poisson": SimulationProfile(family="poisson", outer="c1_c2_ratio"),
}


@dataclass(frozen=True)
class AnalysisProfile:
    """Metadata describing where imputed inputs and result tables live."""

    name: str
    imputed_pattern: str = "imputed_{index}.csv"
    n_imputations: int = 5
    results_subdir: str | None = None
    description: str = ""
    model: ModeratorModelSpec = field(default_factory=ModeratorModelSpec)

    def imputed_path(self, index: int, data_dir: Path | str = Path("data")) -> Path:
        """Return the CSV path of one imputed dataset (1-based index)."""
        if not 1 <= index <= self.n_imputations:
            raise ValueError(f"Imputation index {index} outside 1..{self.n_imputations}")
        return Path(data_dir) / self.name / self.imputed_pattern.format(index=index)

    def imputed_paths(self, data_dir: Path | str = Path("data")) -> Dict[int, Path]:
        return {i: self.imputed_path(i, data_dir) for i in range(1, self.n_imputations + 1)}

    def results_dir(self, results_root: Path | str = Path("results")) -> Path:
        """Return the root directory for analysis artifacts."""
        base = Path(results_root)
        subdir = self.results_subdir or self.name
        return base / subdir


ANALYSIS_PROFILES: Mapping[str, AnalysisProfile] = {
    "smoking": AnalysisProfile(
        name="smoking",
        results_subdir="smoking",
        description="Smoking-cessation trial, 5 imputations, BA/Var moderator lasso.",
    ),
    "simulation": AnalysisProfile(
        name="simulation",
        n_imputations=0,
        results_subdir="simulation",
        description="Cluster-randomized design simulations (no input data).",
    ),
}


def list_profiles() -> List[str]:
    """Return the available analysis profile names."""
    return sorted(ANALYSIS_PROFILES.keys())


def get_profile(name: str) -> AnalysisProfile:
    """Fetch an analysis profile by name."""
    try:
        return ANALYSIS_PROFILES[name]
    except KeyError as exc:
        raise KeyError(f"Unknown analysis profile '{name}'. Available: {list_profiles()}") from exc


def get_simulation_profile(family: str) -> SimulationProfile:
    """Fetch the default simulation parameters for an outcome family."""
    try:
        return SIMULATION_PROFILES[family]
    except KeyError as exc:
        raise KeyError(
            f"Unknown outcome family '{family}'. Available: {sorted(SIMULATION_PROFILES)}"
        ) from exc
