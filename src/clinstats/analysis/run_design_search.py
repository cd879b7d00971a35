"""
クラスター無作為化試験デザインのシミュレーション用エントリポイント。
予算と費用比からクラスター当たりの観測数を導出し、Normal / Poisson 各モデルで
バイアス・分散・検出力・CI被覆率をグリッド探索して CSV に保存する。
"""
from __future__ import annotations

import argparse
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import pandas as pd

from clinstats.analysis.statistics.design_search import SIMULATORS, GridSearchResult, run_profile_grid
from clinstats.config.project_profiles import SimulationProfile, get_simulation_profile
from clinstats.utils.project_context import ProjectContext
from clinstats.utils.timing import record_phase_timing


def _save_dataframe(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    print(f"[save] {path} ({len(df)} rows)")


def resolve_profile(args, family: str) -> SimulationProfile:
    """Apply CLI overrides on top of the default profile for ``family``."""
    profile = get_simulation_profile(family)
    overrides = {
        "budget": args.budget,
        "c1": args.c1,
        "alpha": args.alpha,
        "beta": args.beta,
        "gamma2": args.gamma2,
        "sigma2": args.sigma2,
        "n_sim": args.n_sim,
        "alpha_level": args.alpha_level,
        "seed": args.seed,
        "outer": args.outer,
    }
    if args.n_clusters:
        overrides["n_clusters_seq"] = tuple(args.n_clusters)
    if args.ratios:
        overrides["c1_c2_ratios"] = tuple(args.ratios)
    return replace(profile, **{k: v for k, v in overrides.items() if v is not None})


def run_example(profile: SimulationProfile, n_clusters: int, ratio: float, output_dir: Path) -> None:
    """Simulate a single design point and keep its last simulated trial."""
    kwargs = profile.simulation_kwargs()
    simulator = SIMULATORS[profile.family]
    result = simulator(n_clusters=n_clusters, c1_c2_ratio=ratio, show_progress=True, **kwargs)
    _save_dataframe(result.metrics, output_dir / f"sim_{profile.family}_metrics.csv")
    _save_dataframe(result.simulated_data, output_dir / f"sim_{profile.family}_dat.csv")


def run_grid(profile: SimulationProfile, n_jobs: int, output_dir: Path) -> GridSearchResult:
    start_time = time.time()
    n_points = len(profile.n_clusters_seq) * len(profile.c1_c2_ratios)
    print(f"[{profile.family}] グリッド探索中... ({n_points} 点 × {profile.n_sim} 回, 外側ループ: {profile.outer})")
    result = run_profile_grid(profile, n_jobs=n_jobs)
    elapsed = time.time() - start_time
    print(f"[{profile.family}] 完了: {elapsed:.2f}秒 (実行不能: {result.n_infeasible})")
    _save_dataframe(result.table, output_dir / f"res_{profile.family}_opt.csv")
    if result.n_infeasible:
        _save_dataframe(result.failures, output_dir / f"res_{profile.family}_infeasible.csv")
    return result


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cluster-randomized trial design search (Normal / Poisson)")
    parser.add_argument("--family", choices=["normal", "poisson", "all"], default="all")
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Override the output directory (default: results/simulation/design_search)",
    )
    parser.add_argument("--n-clusters", type=int, nargs="+", default=None, help="Cluster counts to evaluate.")
    parser.add_argument("--ratios", type=float, nargs="+", default=None, help="c1/c2 cost ratios to evaluate.")
    parser.add_argument("--outer", choices=["n_clusters", "c1_c2_ratio"], default=None, help="Outer loop variable.")
    parser.add_argument("--budget", type=float, default=None)
    parser.add_argument("--c1", type=float, default=None, help="Cost of the first observation in a cluster.")
    parser.add_argument("--alpha", type=float, default=None, help="True intercept.")
    parser.add_argument("--beta", type=float, default=None, help="True treatment effect.")
    parser.add_argument("--gamma2", type=float, default=None, help="Cluster random-effect variance.")
    parser.add_argument("--sigma2", type=float, default=None, help="Residual variance (Normal only).")
    parser.add_argument("--n-sim", type=int, default=None, help="Simulated trials per design point.")
    parser.add_argument("--alpha-level", type=float, default=None, help="Significance level.")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--n-jobs", type=int, default=1, help="Parallel jobs over design points.")
    parser.add_argument(
        "--example",
        type=float,
        nargs=2,
        metavar=("N_CLUSTERS", "RATIO"),
        default=None,
        help="Simulate one design point and save its last simulated dataset instead of the grid.",
    )
    parser.add_argument("--log-mlflow", action="store_true", help="Log each grid table to MLflow.")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    phase_started = time.perf_counter()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    context = ProjectContext(profile_name="simulation")
    output_dir = Path(args.output_dir) if args.output_dir else context.results_dir() / "design_search"
    output_dir.mkdir(parents=True, exist_ok=True)

    families = ["normal", "poisson"] if args.family == "all" else [args.family]
    results = {}
    for family in families:
        profile = resolve_profile(args, family)
        if args.example:
            run_example(profile, int(args.example[0]), args.example[1], output_dir)
            continue
        results[family] = run_grid(profile, args.n_jobs, output_dir)

    if args.log_mlflow and results:
        import mlflow

        from clinstats.utils.mlflow_utils import auto_experiment_from_repo, log_artifact_file, log_params_dict

        auto_experiment_from_repo("design_search")
        for family in results:
            profile = resolve_profile(args, family)
            with mlflow.start_run(run_name=f"design_search_{family}"):
                log_params_dict(
                    {
                        "family": family,
                        "budget": profile.budget,
                        "c1": profile.c1,
                        "beta": profile.beta,
                        "n_sim": profile.n_sim,
                        "n_clusters_seq": profile.n_clusters_seq,
                        "c1_c2_ratios": profile.c1_c2_ratios,
                    }
                )
                log_artifact_file(str(output_dir / f"res_{family}_opt.csv"), "design_search")

    if args.example:
        n_points = len(families)
    else:
        n_points = sum(len(res.table) + res.n_infeasible for res in results.values())
    record_phase_timing(
        context=context,
        phase="design_search",
        started_at=phase_started,
        seed=resolve_profile(args, families[0]).seed,
        n_units=n_points,
        n_excluded=sum(res.n_infeasible for res in results.values()),
        metadata={
            "families": families,
            "example": args.example,
            "n_sim": {family: resolve_profile(args, family).n_sim for family in families},
            "n_jobs": args.n_jobs,
            "output_dir": str(output_dir),
        },
        cli_args=argv if argv is not None else sys.argv[1:],
    )


if __name__ == "__main__":
    main()
