"""
LASSO ブートストラップ解析のエントリポイント。
多重代入済みデータセット（既定 5 件）それぞれでブートストラップを行い、交互作用つき L1 ロジスティック回帰の
係数・罰則パラメータ・テスト AUC を集計して CSV に保存する。
"""
from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from clinstats.analysis.statistics.lasso_bootstrap import LassoBootstrapResult, perform_cv_lasso
from clinstats.config.project_profiles import list_profiles
from clinstats.data.dataset_loader import load_imputed_datasets
from clinstats.utils.project_context import ProjectContext, profile_help_text
from clinstats.utils.timing import record_phase_timing


def _save_dataframe(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    print(f"[save] {path} ({len(df)} rows)")


def save_lasso_outputs(result: LassoBootstrapResult, output_dir: Path, exponentiate: bool = False) -> Path:
    """Write coefficient, AUC/lambda and failure tables plus the AUC summary JSON."""
    _save_dataframe(result.coefficient_summary(exponentiate=exponentiate), output_dir / "lasso_coefficients.csv")
    _save_dataframe(result.lambda_table(), output_dir / "lasso_replicates.csv")
    _save_dataframe(result.failure_table(), output_dir / "lasso_failures.csv")
    summary_path = output_dir / "lasso_auc_summary.json"
    summary = {k: (None if isinstance(v, float) and np.isnan(v) else v) for k, v in result.auc_summary().items()}
    summary_path.write_text(json.dumps(summary, indent=2))
    print(f"[save] {summary_path}")
    return summary_path


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LASSO with bootstrap over multiply imputed datasets")
    parser.add_argument(
        "--profile",
        type=str,
        choices=list_profiles(),
        default="smoking",
        help=f"Analysis profile ({profile_help_text()})",
    )
    parser.add_argument("--data-dir", type=str, default="data", help="Root directory of imputed CSVs.")
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Override the output directory (default: results/<profile>/lasso)",
    )
    parser.add_argument("--seed", type=int, default=1234, help="Base seed; bootstrap b uses seed + b.")
    parser.add_argument("--bootstrap-iterations", type=int, default=10, help="Bootstrap resamples per imputation.")
    parser.add_argument("--n-folds", type=int, default=10, help="CV folds for penalty selection.")
    parser.add_argument("--train-size", type=float, default=0.7, help="Training share of each resample.")
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=1,
        help="Parallel jobs over replicates (1 = sequential, -1 = all CPUs). Default: 1.",
    )
    parser.add_argument(
        "--exponentiate",
        action="store_true",
        help="Report averaged coefficients as odds ratios instead of log-odds.",
    )
    parser.add_argument("--log-mlflow", action="store_true", help="Log parameters and AUC summary to MLflow.")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    phase_started = time.perf_counter()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    context = ProjectContext(profile_name=args.profile, data_dir=args.data_dir)
    output_dir = Path(args.output_dir) if args.output_dir else context.results_dir() / "lasso"
    output_dir.mkdir(parents=True, exist_ok=True)

    print(f"[lasso] 代入データを読み込み中... ({context.data_dir})")
    datasets = load_imputed_datasets(context)
    print(f"[lasso] 読み込み完了: {len(datasets)} 件")

    start_time = time.time()
    mode = "逐次処理" if args.n_jobs == 1 else f"並列処理: {args.n_jobs} jobs"
    print(f"[lasso] ブートストラップ実行中... (回数: {args.bootstrap_iterations}, {mode})")
    result = perform_cv_lasso(
        datasets,
        seed=args.seed,
        bootstrap_iterations=args.bootstrap_iterations,
        spec=context.model_spec,
        n_folds=args.n_folds,
        train_size=args.train_size,
        n_jobs=args.n_jobs,
        show_progress=args.n_jobs == 1,
    )
    elapsed = time.time() - start_time
    print(
        f"[lasso] 完了: {elapsed:.2f}秒 (有効: {len(result.replicates)}, 除外: {result.n_excluded})"
    )

    summary_path = save_lasso_outputs(result, output_dir, exponentiate=args.exponentiate)

    if args.log_mlflow:
        import mlflow

        from clinstats.utils.mlflow_utils import (
            auto_experiment_from_repo,
            log_artifact_file,
            log_metrics_dict,
            log_params_dict,
        )

        auto_experiment_from_repo("lasso")
        with mlflow.start_run(run_name=f"lasso_{args.profile}"):
            log_params_dict(
                {
                    "profile": args.profile,
                    "seed": args.seed,
                    "bootstrap_iterations": args.bootstrap_iterations,
                    "n_folds": args.n_folds,
                    "train_size": args.train_size,
                }
            )
            log_metrics_dict(result.auc_summary())
            log_artifact_file(str(summary_path), "lasso")
            log_artifact_file(str(output_dir / "lasso_coefficients.csv"), "lasso")

    record_phase_timing(
        context=context,
        phase="lasso_bootstrap",
        started_at=phase_started,
        seed=args.seed,
        n_units=len(result.replicates) + result.n_excluded,
        n_excluded=result.n_excluded,
        metadata={
            "n_imputations": len(datasets),
            "bootstrap_iterations": args.bootstrap_iterations,
            "n_folds": args.n_folds,
            "n_jobs": args.n_jobs,
            "auc_mean": result.auc_summary()["auc_mean"],
            "output_dir": str(output_dir),
        },
        cli_args=argv if argv is not None else sys.argv[1:],
    )


if __name__ == "__main__":
    main()
