"""Bootstrap-validated L1 logistic regression over multiply imputed datasets.

For every imputed dataset and bootstrap index the procedure resamples rows,
splits 70/30 stratified by treatment group, assigns group-stratified CV folds,
selects the lasso penalty by cross-validated deviance, refits on the training
split and scores the held-out split by AUC.  Each replicate is a pure function
of ``(dataset, BootstrapKey, seed)`` so replicates can run in any order.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegressionCV
from sklearn.metrics import roc_auc_score, roc_curve
from sklearn.model_selection import PredefinedSplit, train_test_split
from sklearn.preprocessing import StandardScaler
from tqdm import tqdm

from clinstats.config.project_profiles import ModeratorModelSpec
from .design_matrix import build_design_matrix, categorical_levels, enumerate_interactions
from .errors import AnalysisError, DegenerateSplit

logger = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"
DEFAULT_CS = np.logspace(-3, 2, 30)


class BootstrapKey(NamedTuple):
    imputation: int
    bootstrap: int


@dataclass(frozen=True)
class BootstrapReplicate:
    """Outcome of one (imputation, bootstrap) iteration."""

    key: BootstrapKey
    seed: int
    train: pd.DataFrame
    test: pd.DataFrame
    fold_ids: np.ndarray
    best_c: float
    best_lambda: float
    coefficients: pd.Series
    auc: float
    fpr: np.ndarray
    tpr: np.ndarray


@dataclass(frozen=True)
class ReplicateFailure:
    """An excluded replicate; ``train``/``test`` are set when the split itself succeeded."""

    key: BootstrapKey
    kind: str
    message: str
    train: Optional[pd.DataFrame] = field(default=None, repr=False, compare=False)
    test: Optional[pd.DataFrame] = field(default=None, repr=False, compare=False)


def bootstrap_resample(df: pd.DataFrame, seed: int) -> pd.DataFrame:
    """Draw ``len(df)`` rows with replacement."""
    rng = np.random.default_rng(seed)
    idx = rng.integers(0, len(df), size=len(df))
    return df.iloc[idx].reset_index(drop=True)


def stratified_split(
    df: pd.DataFrame,
    group: str,
    seed: int,
    train_size: float = 0.7,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split ``df`` into train/test keeping the group proportions."""
    try:
        train, test = train_test_split(
            df,
            train_size=train_size,
            stratify=df[group],
            random_state=seed,
        )
    except ValueError as exc:
        raise DegenerateSplit(f"Cannot stratify on '{group}': {exc}") from exc
    return train.reset_index(drop=True), test.reset_index(drop=True)


def assign_stratified_folds(
    labels: Union[pd.Series, np.ndarray],
    n_folds: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Assign fold ids ``1..n_folds`` separately within each group.

    Each group receives ``1..n_folds`` repeated to its size and shuffled, so
    fold sizes within a group differ by at most one.
    """
    if n_folds < 2:
        raise ValueError("n_folds must be at least 2")
    labels = np.asarray(labels)
    fold_ids = np.zeros(labels.size, dtype=int)
    for group in pd.unique(labels):
        mask = labels == group
        fold_ids[mask] = rng.permutation(np.resize(np.arange(1, n_folds + 1), int(mask.sum())))
    return fold_ids


def _check_outcome_folds(y: np.ndarray, fold_ids: np.ndarray) -> None:
    if np.unique(y).size < 2:
        raise DegenerateSplit("Training split holds a single outcome class")
    for fold in np.unique(fold_ids):
        held = y[fold_ids == fold]
        kept = y[fold_ids != fold]
        if np.unique(held).size < 2 or np.unique(kept).size < 2:
            raise DegenerateSplit(f"CV fold {fold} holds a single outcome class")


def held_out_auc(y_true: np.ndarray, scores: np.ndarray) -> Tuple[float, np.ndarray, np.ndarray]:
    """Return (AUC, fpr, tpr); a single-class ``y_true`` raises ``DegenerateSplit``."""
    y_true = np.asarray(y_true)
    if np.unique(y_true).size < 2:
        raise DegenerateSplit("Test split holds a single outcome class; AUC undefined")
    fpr, tpr, _ = roc_curve(y_true, scores)
    return float(roc_auc_score(y_true, scores)), fpr, tpr


def draw_bootstrap_split(
    data: pd.DataFrame,
    key: BootstrapKey,
    *,
    seed: int,
    spec: ModeratorModelSpec,
    train_size: float = 0.7,
) -> Tuple[int, pd.DataFrame, pd.DataFrame]:
    """Resample ``data`` and split it; returns ``(derived_seed, train, test)``."""
    derived_seed = seed + key.bootstrap
    sample = bootstrap_resample(data, derived_seed)
    train, test = stratified_split(sample, spec.group, derived_seed, train_size=train_size)
    return derived_seed, train, test


def fit_bootstrap_split(
    train: pd.DataFrame,
    test: pd.DataFrame,
    key: BootstrapKey,
    *,
    derived_seed: int,
    spec: ModeratorModelSpec,
    levels: Mapping[str, Sequence],
    n_folds: int = 10,
    Cs: Sequence[float] = DEFAULT_CS,
    max_iter: int = 2000,
) -> BootstrapReplicate:
    """Select the penalty by CV on ``train``, refit and score ``test``."""
    interactions = enumerate_interactions(spec)
    fold_ids = assign_stratified_folds(
        train[spec.group], n_folds, np.random.default_rng(derived_seed)
    )

    x_train = build_design_matrix(train, spec, levels, interactions)
    y_train = train[spec.outcome].astype(int).to_numpy()
    _check_outcome_folds(y_train, fold_ids)

    scaler = StandardScaler().fit(x_train.to_numpy())
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=ConvergenceWarning)
        # l1_ratios=(1.0,) is the pure lasso path
        model = LogisticRegressionCV(
            Cs=list(Cs),
            l1_ratios=(1.0,),
            cv=PredefinedSplit(test_fold=fold_ids - 1),
            solver="saga",
            scoring="neg_log_loss",
            max_iter=max_iter,
            refit=True,
            random_state=derived_seed,
            use_legacy_attributes=False,
        ).fit(scaler.transform(x_train.to_numpy()), y_train)

    best_c = float(np.ravel(model.C_)[0])
    # back to the unstandardized predictor scale
    slopes = np.ravel(model.coef_) / scaler.scale_
    intercept = float(np.ravel(model.intercept_)[0] - np.sum(slopes * scaler.mean_))
    coefficients = pd.Series(
        np.concatenate([[intercept], slopes]),
        index=[INTERCEPT, *x_train.columns],
        name=key,
    )

    x_test = build_design_matrix(test, spec, levels, interactions)
    scores = model.predict_proba(scaler.transform(x_test.to_numpy()))[:, 1]
    auc, fpr, tpr = held_out_auc(test[spec.outcome].astype(int).to_numpy(), scores)

    return BootstrapReplicate(
        key=key,
        seed=derived_seed,
        train=train,
        test=test,
        fold_ids=fold_ids,
        best_c=best_c,
        best_lambda=1.0 / (best_c * len(train)),
        coefficients=coefficients,
        auc=auc,
        fpr=fpr,
        tpr=tpr,
    )


def run_bootstrap_replicate(
    data: pd.DataFrame,
    key: BootstrapKey,
    *,
    seed: int,
    spec: ModeratorModelSpec,
    levels: Optional[Mapping[str, Sequence]] = None,
    n_folds: int = 10,
    train_size: float = 0.7,
    Cs: Sequence[float] = DEFAULT_CS,
    max_iter: int = 2000,
) -> BootstrapReplicate:
    """Run one bootstrap iteration; degenerate splits raise ``DegenerateSplit``."""
    levels = levels if levels is not None else categorical_levels(data, spec)
    derived_seed, train, test = draw_bootstrap_split(
        data, key, seed=seed, spec=spec, train_size=train_size
    )
    return fit_bootstrap_split(
        train, test, key,
        derived_seed=derived_seed, spec=spec, levels=levels,
        n_folds=n_folds, Cs=Cs, max_iter=max_iter,
    )


def _replicate_or_failure(
    data: pd.DataFrame,
    key: BootstrapKey,
    kwargs: Dict,
) -> Union[BootstrapReplicate, ReplicateFailure]:
    train = test = None
    try:
        derived_seed, train, test = draw_bootstrap_split(
            data, key, seed=kwargs["seed"], spec=kwargs["spec"], train_size=kwargs["train_size"]
        )
        return fit_bootstrap_split(
            train, test, key,
            derived_seed=derived_seed,
            spec=kwargs["spec"],
            levels=kwargs["levels"],
            n_folds=kwargs["n_folds"],
            Cs=kwargs["Cs"],
        )
    except AnalysisError as exc:
        return ReplicateFailure(key=key, kind=exc.kind, message=str(exc), train=train, test=test)


def average_coefficients(
    coefficients: Mapping[BootstrapKey, pd.Series],
) -> Tuple[pd.DataFrame, pd.Series]:
    """
    Stack coefficient vectors by term name and average them.

    Terms missing from a replicate contribute 0 to that replicate's column.

    Returns:
        (terms x replicates matrix, averaged coefficients)
    """
    if not coefficients:
        return pd.DataFrame(), pd.Series(dtype=float)
    keys = sorted(coefficients)
    matrix = pd.concat([coefficients[k].rename(None) for k in keys], axis=1, sort=False)
    matrix.columns = pd.MultiIndex.from_tuples(keys, names=list(BootstrapKey._fields))
    matrix = matrix.fillna(0.0)
    return matrix, matrix.mean(axis=1, skipna=True)


@dataclass
class LassoBootstrapResult:
    replicates: Dict[BootstrapKey, BootstrapReplicate]
    failures: List[ReplicateFailure]
    coef_matrix: pd.DataFrame
    avg_coef: pd.Series
    train_data_full: pd.DataFrame = field(repr=False)
    test_data_full: pd.DataFrame = field(repr=False)

    @property
    def n_excluded(self) -> int:
        return len(self.failures)

    @property
    def best_lambdas(self) -> Dict[BootstrapKey, float]:
        return {key: rep.best_lambda for key, rep in self.replicates.items()}

    @property
    def auc_values(self) -> pd.Series:
        keys = sorted(self.replicates)
        index = pd.MultiIndex.from_tuples(keys, names=list(BootstrapKey._fields))
        return pd.Series([self.replicates[k].auc for k in keys], index=index, name="auc", dtype=float)

    def lambda_table(self) -> pd.DataFrame:
        rows = [
            {
                "imputation": key.imputation,
                "bootstrap": key.bootstrap,
                "seed": rep.seed,
                "best_c": rep.best_c,
                "best_lambda": rep.best_lambda,
                "auc": rep.auc,
            }
            for key, rep in sorted(self.replicates.items())
        ]
        return pd.DataFrame(
            rows, columns=["imputation", "bootstrap", "seed", "best_c", "best_lambda", "auc"]
        )

    def failure_table(self) -> pd.DataFrame:
        rows = [
            {"imputation": f.key.imputation, "bootstrap": f.key.bootstrap, "error": f.kind, "message": f.message}
            for f in self.failures
        ]
        return pd.DataFrame(rows, columns=["imputation", "bootstrap", "error", "message"])

    def auc_summary(self) -> Dict[str, float]:
        auc = self.auc_values.to_numpy()
        return {
            "n_valid": int(auc.size),
            "n_excluded": self.n_excluded,
            "auc_mean": float(auc.mean()) if auc.size else np.nan,
            "auc_sd": float(auc.std(ddof=1)) if auc.size > 1 else np.nan,
            "auc_min": float(auc.min()) if auc.size else np.nan,
            "auc_max": float(auc.max()) if auc.size else np.nan,
        }

    def coefficient_summary(self, exponentiate: bool = False) -> pd.DataFrame:
        """Averaged coefficients (log-odds, or odds ratios) with selection frequency."""
        if self.coef_matrix.empty:
            return pd.DataFrame(columns=["term", "estimate", "selection_frequency"])
        estimate = np.exp(self.avg_coef) if exponentiate else self.avg_coef
        selected = (self.coef_matrix != 0).mean(axis=1)
        return pd.DataFrame(
            {
                "term": self.avg_coef.index,
                "estimate": estimate.to_numpy(),
                "selection_frequency": selected.to_numpy(),
            }
        )


def _as_mapping(data: Union[Mapping[int, pd.DataFrame], Sequence[pd.DataFrame]]) -> Dict[int, pd.DataFrame]:
    if isinstance(data, Mapping):
        return {int(k): v for k, v in data.items()}
    return {i: df for i, df in enumerate(data, start=1)}


def _stack_frames(frames: Dict[BootstrapKey, Tuple[pd.DataFrame, bool]]) -> pd.DataFrame:
    if not frames:
        return pd.DataFrame()
    parts = []
    for key in sorted(frames):
        frame, valid = frames[key]
        part = frame.copy()
        part.insert(0, "valid", valid)
        part.insert(0, "bootstrap", key.bootstrap)
        part.insert(0, "imputation", key.imputation)
        parts.append(part)
    return pd.concat(parts, ignore_index=True)


def perform_cv_lasso(
    data: Union[Mapping[int, pd.DataFrame], Sequence[pd.DataFrame]],
    seed: int = 2550,
    bootstrap_iterations: int = 10,
    spec: Optional[ModeratorModelSpec] = None,
    n_folds: int = 10,
    train_size: float = 0.7,
    Cs: Sequence[float] = DEFAULT_CS,
    n_jobs: int = 1,
    show_progress: bool = False,
) -> LassoBootstrapResult:
    """
    Run the lasso bootstrap over every imputed dataset.

    Args:
        data: Imputed datasets keyed by imputation index (or a sequence,
            numbered from 1).
        seed: Base seed; bootstrap ``b`` uses ``seed + b`` for both the
            resample and the split.
        bootstrap_iterations: Bootstrap resamples per imputed dataset.
        spec: Model specification (defaults to the smoking-cessation model).
        n_folds: CV folds for penalty selection.
        train_size: Training share of each resample.
        Cs: Inverse penalty strengths scanned by cross-validation.
        n_jobs: joblib workers (1 = sequential).
        show_progress: Display a tqdm bar in sequential mode.

    Returns:
        LassoBootstrapResult with per-replicate records, failures and averages.
    """
    spec = spec or ModeratorModelSpec()
    datasets = _as_mapping(data)
    if not datasets:
        raise ValueError("No imputed datasets supplied")
    if bootstrap_iterations < 1:
        raise ValueError("bootstrap_iterations must be positive")
    for idx, df in datasets.items():
        missing = [c for c in spec.required_columns() if c not in df.columns]
        if missing:
            raise ValueError(f"Imputed dataset {idx} is missing columns: {missing}")

    tasks = []
    for idx, df in datasets.items():
        kwargs = {
            "seed": seed,
            "spec": spec,
            "levels": categorical_levels(df, spec),
            "n_folds": n_folds,
            "train_size": train_size,
            "Cs": Cs,
        }
        for b in range(1, bootstrap_iterations + 1):
            tasks.append((df, BootstrapKey(idx, b), kwargs))

    if n_jobs == 1:
        outcomes = [
            _replicate_or_failure(df, key, kwargs)
            for df, key, kwargs in tqdm(tasks, desc="lasso bootstrap", disable=not show_progress)
        ]
    else:
        outcomes = Parallel(n_jobs=n_jobs)(
            delayed(_replicate_or_failure)(df, key, kwargs) for df, key, kwargs in tasks
        )

    replicates: Dict[BootstrapKey, BootstrapReplicate] = {}
    failures: List[ReplicateFailure] = []
    for outcome in outcomes:
        if isinstance(outcome, ReplicateFailure):
            logger.warning(
                "Excluding replicate %s (%s): %s", tuple(outcome.key), outcome.kind, outcome.message
            )
            failures.append(outcome)
        else:
            replicates[outcome.key] = outcome

    coef_matrix, avg_coef = average_coefficients(
        {key: rep.coefficients for key, rep in replicates.items()}
    )
    # every replicate whose split succeeded, failed fits included
    train_frames = {k: (r.train, True) for k, r in replicates.items()}
    test_frames = {k: (r.test, True) for k, r in replicates.items()}
    for failure in failures:
        if failure.train is not None:
            train_frames[failure.key] = (failure.train, False)
            test_frames[failure.key] = (failure.test, False)
    return LassoBootstrapResult(
        replicates=replicates,
        failures=failures,
        coef_matrix=coef_matrix,
        avg_coef=avg_coef,
        train_data_full=_stack_frames(train_frames),
        test_data_full=_stack_frames(test_frames),
    )
