"""Grid search over cluster counts and cost ratios for the trial simulators."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence, Tuple

import pandas as pd
from joblib import Parallel, delayed

from clinstats.config.project_profiles import SimulationProfile
from .cluster_simulation import METRIC_COLUMNS, SimulationResult, sim_normal, sim_poisson
from .errors import InfeasibleDesign

logger = logging.getLogger(__name__)

VALID_OUTER = ("n_clusters", "c1_c2_ratio")
FAILURE_COLUMNS = ["n_clusters", "c1_c2_ratio", "error", "message"]
SIMULATORS: Dict[str, Callable[..., SimulationResult]] = {
    "normal": sim_normal,
    "poisson": sim_poisson,
}


@dataclass
class GridSearchResult:
    table: pd.DataFrame
    failures: pd.DataFrame

    @property
    def n_infeasible(self) -> int:
        return len(self.failures)


def design_grid(
    n_clusters_seq: Sequence[int],
    c1_c2_ratios: Sequence[float],
    outer: str = "n_clusters",
) -> List[Tuple[int, float]]:
    """Return (n_clusters, c1_c2_ratio) pairs in nested-loop order."""
    if outer == "n_clusters":
        return [(g, r) for g in n_clusters_seq for r in c1_c2_ratios]
    if outer == "c1_c2_ratio":
        return [(g, r) for r in c1_c2_ratios for g in n_clusters_seq]
    raise ValueError(f"outer must be one of {VALID_OUTER}, got '{outer}'")


def _evaluate_design_point(
    simulator: Callable[..., SimulationResult],
    n_clusters: int,
    c1_c2_ratio: float,
    fixed: Dict[str, Any],
) -> Tuple[str, Any]:
    try:
        result = simulator(n_clusters=n_clusters, c1_c2_ratio=c1_c2_ratio, **fixed)
    except InfeasibleDesign as exc:
        return "failed", {
            "n_clusters": n_clusters,
            "c1_c2_ratio": c1_c2_ratio,
            "error": exc.kind,
            "message": str(exc),
        }
    return "ok", result.metrics.assign(c1_c2_ratio=c1_c2_ratio)


def run_design_grid(
    simulator: Callable[..., SimulationResult],
    n_clusters_seq: Sequence[int],
    c1_c2_ratios: Sequence[float],
    *,
    outer: str = "n_clusters",
    n_jobs: int = 1,
    **fixed: Any,
) -> GridSearchResult:
    """
    Evaluate ``simulator`` at every design point and stack the metrics rows.

    Rows follow the nested-loop order given by ``outer``; infeasible design
    points are logged, recorded in ``failures`` and skipped.
    """
    pairs = design_grid(n_clusters_seq, c1_c2_ratios, outer=outer)
    if n_jobs == 1:
        outcomes = [_evaluate_design_point(simulator, g, r, fixed) for g, r in pairs]
    else:
        outcomes = Parallel(n_jobs=n_jobs)(
            delayed(_evaluate_design_point)(simulator, g, r, fixed) for g, r in pairs
        )

    rows: List[pd.DataFrame] = []
    failures: List[Dict[str, Any]] = []
    for status, payload in outcomes:
        if status == "ok":
            rows.append(payload)
        else:
            logger.warning(
                "Skipping design point G=%s, c1/c2=%s: %s",
                payload["n_clusters"], payload["c1_c2_ratio"], payload["message"],
            )
            failures.append(payload)

    if rows:
        table = pd.concat(rows, ignore_index=True)
    else:
        table = pd.DataFrame(columns=[*METRIC_COLUMNS, "c1_c2_ratio"])
    return GridSearchResult(table=table, failures=pd.DataFrame(failures, columns=FAILURE_COLUMNS))


def sim_normal_opt(
    n_clusters_seq: Sequence[int],
    c1_c2_ratios: Sequence[float],
    B: float,
    c1: float,
    alpha: float,
    beta: float,
    sigma2: float,
    gamma2: float,
    n_sim: int,
    alpha_level: float = 0.05,
    seed: int = 2550,
    n_jobs: int = 1,
) -> GridSearchResult:
    """Normal-outcome grid; the cluster count is the outer loop."""
    return run_design_grid(
        sim_normal,
        n_clusters_seq,
        c1_c2_ratios,
        outer="n_clusters",
        n_jobs=n_jobs,
        B=B,
        c1=c1,
        alpha=alpha,
        beta=beta,
        gamma2=gamma2,
        sigma2=sigma2,
        n_sim=n_sim,
        alpha_level=alpha_level,
        seed=seed,
    )


def sim_poisson_opt(
    n_clusters_seq: Sequence[int],
    c1_c2_ratios: Sequence[float],
    B: float,
    c1: float,
    alpha: float,
    beta: float,
    gamma2: float,
    n_sim: int,
    alpha_level: float = 0.05,
    seed: int = 2550,
    n_jobs: int = 1,
) -> GridSearchResult:
    """Poisson-outcome grid; the cost ratio is the outer loop."""
    return run_design_grid(
        sim_poisson,
        n_clusters_seq,
        c1_c2_ratios,
        outer="c1_c2_ratio",
        n_jobs=n_jobs,
        B=B,
        c1=c1,
        alpha=alpha,
        beta=beta,
        gamma2=gamma2,
        n_sim=n_sim,
        alpha_level=alpha_level,
        seed=seed,
    )


def run_profile_grid(profile: SimulationProfile, n_jobs: int = 1) -> GridSearchResult:
    """Run the grid search described by a :class:`SimulationProfile`."""
    if profile.family not in SIMULATORS:
        raise KeyError(f"Unknown outcome family '{profile.family}'. Available: {sorted(SIMULATORS)}")
    return run_design_grid(
        SIMULATORS[profile.family],
        profile.n_clusters_seq,
        profile.c1_c2_ratios,
        outer=profile.outer,
        n_jobs=n_jobs,
        **profile.simulation_kwargs(),
    )
