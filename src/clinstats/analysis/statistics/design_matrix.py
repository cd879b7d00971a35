"""Treatment-moderator design matrices built from an explicit interaction list."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from clinstats.config.project_profiles import ModeratorModelSpec


@dataclass(frozen=True)
class InteractionTerm:
    """A single ``treatment x covariate`` product."""

    treatment: str
    covariate: str

    @property
    def name(self) -> str:
        return f"{self.treatment}:{self.covariate}"


def enumerate_interactions(spec: ModeratorModelSpec) -> List[InteractionTerm]:
    """Return every (treatment, covariate) pair, grouped by treatment."""
    return [
        InteractionTerm(treatment=treatment, covariate=covariate)
        for treatment in spec.treatments
        for covariate in spec.covariates
    ]


def categorical_levels(df: pd.DataFrame, spec: ModeratorModelSpec) -> Dict[str, List]:
    """Collect the sorted levels of each categorical covariate.

    Levels are taken from the full imputed dataset so that every bootstrap
    train/test split is encoded with the same dummy columns.
    """
    levels: Dict[str, List] = {}
    for col in spec.categorical:
        if col not in df.columns:
            raise ValueError(f"Categorical covariate '{col}' missing from dataset")
        levels[col] = sorted(pd.unique(df[col].dropna()).tolist())
    return levels


def _expand_covariate(
    df: pd.DataFrame,
    column: str,
    levels: Optional[Sequence],
) -> pd.DataFrame:
    if levels is None:
        return pd.DataFrame({column: df[column].astype(float)}, index=df.index)
    cat = pd.Categorical(df[column], categories=list(levels))
    dummies = pd.get_dummies(cat, drop_first=True, dtype=float)
    dummies.columns = [f"{column}{level}" for level in dummies.columns]
    dummies.index = df.index
    return dummies


def build_design_matrix(
    df: pd.DataFrame,
    spec: ModeratorModelSpec,
    levels: Optional[Mapping[str, Sequence]] = None,
    interactions: Optional[Sequence[InteractionTerm]] = None,
) -> pd.DataFrame:
    """
    Build the moderator design matrix (no intercept column).

    Column order: treatment main effects, covariate main effects (dummy
    columns for categoricals), then ``treatment:covariate`` products in the
    order of ``interactions``.

    Args:
        df: Rows to encode.
        spec: Model specification naming treatments and covariates.
        levels: Fixed levels per categorical covariate; derived from ``df``
            when omitted.
        interactions: Interaction list; defaults to every treatment crossed
            with every covariate.
    """
    missing = [col for col in (*spec.treatments, *spec.covariates) if col not in df.columns]
    if missing:
        raise ValueError(f"Dataset is missing model columns: {missing}")
    levels = dict(levels) if levels is not None else categorical_levels(df, spec)
    interactions = list(interactions) if interactions is not None else enumerate_interactions(spec)

    blocks: Dict[str, pd.DataFrame] = {}
    for covariate in spec.covariates:
        blocks[covariate] = _expand_covariate(df, covariate, levels.get(covariate))

    columns: Dict[str, pd.Series] = {}
    for treatment in spec.treatments:
        columns[treatment] = df[treatment].astype(float)
    for covariate in spec.covariates:
        for name, values in blocks[covariate].items():
            columns[name] = values
    for term in interactions:
        treatment = df[term.treatment].astype(float)
        for name, values in blocks[term.covariate].items():
            columns[f"{term.treatment}:{name}"] = treatment * values

    design = pd.DataFrame(columns, index=df.index)
    if not np.isfinite(design.to_numpy()).all():
        raise ValueError("Design matrix contains missing or non-finite values")
    return design
