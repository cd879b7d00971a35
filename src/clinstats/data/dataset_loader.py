"""
Loader for the multiply imputed analysis datasets.

Expected layout: ``data/<profile>/imputed_<i>.csv`` for ``i = 1..n_imputations``,
one completed copy of the study table per file.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict

import pandas as pd

from clinstats.config.project_profiles import ModeratorModelSpec
from clinstats.utils.project_context import ProjectContext


def load_imputed_dataset(path: Path, spec: ModeratorModelSpec) -> pd.DataFrame:
    """
    Read one imputed CSV and check the model columns are present and complete.
    """
    if not path.exists():
        raise FileNotFoundError(f"Imputed dataset not found: {path}")
    df = pd.read_csv(path)
    missing = [col for col in spec.required_columns() if col not in df.columns]
    if missing:
        raise ValueError(f"{path} is missing columns: {missing}")
    incomplete = [col for col in spec.required_columns() if df[col].isna().any()]
    if incomplete:
        raise ValueError(f"{path} still has missing values in: {incomplete}")
    return df


def load_imputed_datasets(context: ProjectContext) -> Dict[int, pd.DataFrame]:
    """
    Resolve the profile's imputed files and load them keyed by imputation index.
    """
    paths = context.imputed_paths()
    if not paths:
        raise ValueError(f"Profile '{context.profile_name}' defines no imputed datasets")
    return {idx: load_imputed_dataset(path, context.model_spec) for idx, path in paths.items()}
