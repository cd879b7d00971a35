"""
Pre-processing of the marathon performance table (race, sex, age, weather).

The raw export labels its coded columns inline, e.g.
``Race (0=Boston, 1=Chicago, 2=NYC, 3=TC, 4=D)``; both that header and the
dot-mangled form produced by R's ``read.csv`` are accepted.
"""
from __future__ import annotations

from typing import Dict, Sequence

import numpy as np
import pandas as pd

COLUMN_RENAMES: Dict[str, str] = {
    "Race (0=Boston, 1=Chicago, 2=NYC, 3=TC, 4=D)": "Race",
    "Race..0.Boston..1.Chicago..2.NYC..3.TC..4.D.": "Race",
    "Sex (0=F, 1=M)": "Sex",
    "Sex..0.F..1.M.": "Sex",
    "Age (yr)": "Age",
    "Age..yr.": "Age",
    "%rh": "rh",
    "X.rh": "rh",
}

AGE_BREAKS: Sequence[float] = (0, 24, 39, 54, 69, np.inf)
AGE_LABELS: Sequence[str] = ("< 25 yrs", "25-39 yrs", "40-54 yrs", "55-69 yrs", ">= 70 yrs")


def add_age_groups(df: pd.DataFrame, age_col: str = "Age") -> pd.DataFrame:
    """Bin ages into five ordered groups (right-closed, lowest bin includes 0)."""
    out = df.copy()
    out["age_grp"] = pd.cut(
        out[age_col],
        bins=list(AGE_BREAKS),
        labels=list(AGE_LABELS),
        include_lowest=True,
        right=True,
    )
    return out


def normalize_humidity(values: pd.Series) -> pd.Series:
    """Relative humidity stored as a fraction (<= 1) is rescaled to percent."""
    return values.where(~(values <= 1), values * 100)


def prepare_marathon_records(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Return an analysis-ready copy of the marathon table.

    - coded race/sex headers renamed to ``Race`` / ``Sex`` and cast to categoricals
    - blank ``Flag`` entries become missing, ``Flag`` is categorical
    - ``age_grp`` added from ``Age``
    - ``rh`` expressed in percent
    """
    df = raw.rename(columns={k: v for k, v in COLUMN_RENAMES.items() if k in raw.columns})
    for col in ("Race", "Sex", "Age"):
        if col not in df.columns:
            raise ValueError(f"Marathon table is missing the '{col}' column")
    df["Race"] = df["Race"].astype("category")
    df["Sex"] = df["Sex"].astype("category")
    if "Flag" in df.columns:
        flag = df["Flag"].replace(r"^\s*$", np.nan, regex=True)
        df["Flag"] = flag.astype("category")
    df = add_age_groups(df)
    if "rh" in df.columns:
        df["rh"] = normalize_humidity(df["rh"].astype(float))
    return df
