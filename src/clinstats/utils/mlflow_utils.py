"""
MLflow utilities.
Shared helpers for experiment tracking of analysis runs.
"""
import os
import subprocess
from pathlib import Path
from typing import Optional, Dict, Any
import mlflow


def get_repo_name() -> str:
    """
    Return the git repository name.

    Returns:
        Repository name, or the current directory name when git is unavailable.
    """
    try:
        result = subprocess.run(
            ["git", "config", "--get", "remote.origin.url"],
            capture_output=True,
            text=True,
            check=True
        )
        url = result.stdout.strip()
        if url.endswith(".git"):
            url = url[:-4]
        return url.split("/")[-1]
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path.cwd().name


def _default_local_tracking_uri() -> str:
    """
    Return the local file:// tracking URI, creating ``mlruns`` on demand.
    """
    local_dir = Path.cwd() / "mlruns"
    local_dir.mkdir(parents=True, exist_ok=True)
    return f"file://{local_dir}"


def resolve_tracking_uri() -> str:
    """
    Resolve the tracking URI following this precedence:

    1. ``MLFLOW_TRACKING_URI`` environment variable (user override)
    2. ``file://`` store inside the repository (no MLflow server required)
    """
    env_uri = os.getenv("MLFLOW_TRACKING_URI")
    if env_uri:
        return env_uri
    return _default_local_tracking_uri()


def auto_experiment_from_repo(suffix: Optional[str] = None) -> str:
    """
    Set the MLflow experiment named after the repository.

    Args:
        suffix: Appended to the repository name (e.g. ``"design_search"``).

    Returns:
        The experiment name that was activated.
    """
    experiment_name = get_repo_name()
    if suffix:
        experiment_name = f"{experiment_name}-{suffix}"

    tracking_uri = resolve_tracking_uri()
    mlflow.set_tracking_uri(tracking_uri)

    try:
        experiment = mlflow.get_experiment_by_name(experiment_name)
        if experiment is None:
            experiment_id = mlflow.create_experiment(experiment_name)
            print(f"✓ Created new experiment: {experiment_name} (ID: {experiment_id})")
        else:
            print(f"✓ Using existing experiment: {experiment_name} (ID: {experiment.experiment_id})")
    except Exception as e:
        print(f"Warning: Could not set experiment on '{tracking_uri}': {e}")
        fallback_uri = _default_local_tracking_uri()
        if fallback_uri == tracking_uri:
            raise
        print(f"  Falling back to local MLflow store at {fallback_uri}")
        mlflow.set_tracking_uri(fallback_uri)

    mlflow.set_experiment(experiment_name)
    return experiment_name


def log_params_dict(params: Dict[str, Any]) -> None:
    """
    Log a dict of parameters in one go.

    Args:
        params: Parameter mapping; ``None`` values are skipped.
    """
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            mlflow.log_param(key, str(value))
        else:
            mlflow.log_param(key, value)


def log_metrics_dict(metrics: Dict[str, float], step: Optional[int] = None) -> None:
    """
    Log a dict of metrics in one go.

    Args:
        metrics: Metric mapping; non-numeric and ``None`` values are skipped.
        step: Optional step number.
    """
    for key, value in metrics.items():
        if value is not None and isinstance(value, (int, float)):
            mlflow.log_metric(key, value, step=step)


def log_artifact_file(file_path: str, artifact_path: Optional[str] = None) -> None:
    """
    Log a single file as an artifact.

    Args:
        file_path: File to upload.
        artifact_path: Destination folder inside the run (optional).
    """
    if os.path.exists(file_path):
        mlflow.log_artifact(file_path, artifact_path=artifact_path)
    else:
        print(f"Warning: File not found: {file_path}")
