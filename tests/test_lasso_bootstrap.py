"""
Tests for the bootstrap-validated lasso over imputed datasets.
"""
import warnings

import numpy as np
import pandas as pd
import pytest

from clinstats.analysis.statistics.design_matrix import build_design_matrix, enumerate_interactions
from clinstats.analysis.statistics.errors import DegenerateSplit
from clinstats.analysis.statistics.lasso_bootstrap import (
    INTERCEPT,
    BootstrapKey,
    _check_outcome_folds,
    assign_stratified_folds,
    average_coefficients,
    held_out_auc,
    perform_cv_lasso,
    run_bootstrap_replicate,
)
from clinstats.config.project_profiles import ModeratorModelSpec

SPEC = ModeratorModelSpec(
    outcome="abst",
    group="Group",
    treatments=("BA", "Var"),
    covariates=("age_ps", "ftcd_score", "Race"),
    categorical=("Race",),
)


def make_trial(n: int = 320, seed: int = 0, outcome_rate=None) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    ba = rng.integers(0, 2, size=n)
    var = rng.integers(0, 2, size=n)
    age = rng.normal(45, 10, size=n)
    ftcd = rng.integers(0, 11, size=n).astype(float)
    race = rng.choice(["A", "B", "C"], size=n)
    if outcome_rate is None:
        logit = -0.5 + 0.9 * ba + 0.4 * var - 0.15 * (ftcd - 5) + 0.6 * ba * (race == "B")
        abst = (rng.random(n) < 1 / (1 + np.exp(-logit))).astype(int)
    else:
        abst = np.full(n, outcome_rate, dtype=int)
    return pd.DataFrame(
        {
            "abst": abst,
            "Group": 2 * ba + var,
            "BA": ba,
            "Var": var,
            "age_ps": age,
            "ftcd_score": ftcd,
            "Race": race,
        }
    )


def test_design_matrix_has_full_interactions():
    """Every treatment is crossed with every (dummy-coded) covariate."""
    df = make_trial(60)
    design = build_design_matrix(df, SPEC)
    assert "(Intercept)" not in design.columns
    assert list(design.columns[:2]) == ["BA", "Var"]
    for name in ["RaceB", "RaceC", "BA:age_ps", "Var:ftcd_score", "BA:RaceB", "Var:RaceC"]:
        assert name in design.columns
    assert "RaceA" not in design.columns
    assert len(enumerate_interactions(SPEC)) == 6
    np.testing.assert_allclose(design["BA:age_ps"], df["BA"] * df["age_ps"])


def test_fold_assignment_is_balanced_within_groups():
    """Fold sizes differ by at most one inside each group."""
    labels = np.array([0] * 23 + [1] * 17 + [2] * 10)
    folds = assign_stratified_folds(labels, 10, np.random.default_rng(3))
    assert set(np.unique(folds)) <= set(range(1, 11))
    for group in (0, 1, 2):
        counts = np.bincount(folds[labels == group], minlength=11)[1:]
        assert counts.max() - counts.min() <= 1


def test_average_coefficients_fills_absent_terms_with_zero():
    """A term missing from a replicate counts as 0, not as missing."""
    coefs = {
        BootstrapKey(1, 1): pd.Series({"a": 1.0, "b": 2.0}),
        BootstrapKey(1, 2): pd.Series({"a": 3.0}),
    }
    matrix, avg = average_coefficients(coefs)
    assert matrix.shape == (2, 2)
    assert avg["a"] == pytest.approx(2.0)
    assert avg["b"] == pytest.approx(1.0)


def test_held_out_auc_rejects_single_class():
    """AUC on a single-class test split is flagged instead of coerced."""
    with pytest.raises(DegenerateSplit):
        held_out_auc(np.zeros(5), np.linspace(0, 1, 5))
    auc, fpr, tpr = held_out_auc(np.array([0, 0, 1, 1]), np.array([0.1, 0.4, 0.35, 0.8]))
    assert auc == pytest.approx(0.75)
    assert fpr[0] == 0 and tpr[-1] == 1


def test_perform_cv_lasso_records_every_replicate():
    """Replicates are keyed by (imputation, bootstrap) and AUCs stay in [0, 1]."""
    data = {1: make_trial(seed=1), 2: make_trial(seed=2)}
    result = perform_cv_lasso(data, seed=1234, bootstrap_iterations=2, spec=SPEC)

    assert len(result.replicates) + result.n_excluded == 4
    assert set(result.replicates) | {f.key for f in result.failures} == {
        BootstrapKey(i, b) for i in (1, 2) for b in (1, 2)
    }
    auc = result.auc_values
    assert ((auc >= 0) & (auc <= 1)).all()
    assert INTERCEPT in result.avg_coef.index
    assert "BA:RaceB" in result.avg_coef.index
    assert result.coef_matrix.shape[1] == len(result.replicates)
    assert not result.avg_coef.isna().any()
    assert {"imputation", "bootstrap", "valid"} <= set(result.train_data_full.columns)

    table = result.lambda_table()
    assert len(table) == len(result.replicates)
    assert (table["best_lambda"] > 0).all()

    summary = result.coefficient_summary(exponentiate=True)
    assert (summary["estimate"] > 0).all()
    assert summary["selection_frequency"].between(0, 1).all()


def test_perform_cv_lasso_is_deterministic():
    """Same seed and inputs give identical coefficients and AUCs."""
    data = [make_trial(seed=5)]
    first = perform_cv_lasso(data, seed=99, bootstrap_iterations=2, spec=SPEC)
    second = perform_cv_lasso(data, seed=99, bootstrap_iterations=2, spec=SPEC)
    pd.testing.assert_series_equal(first.avg_coef, second.avg_coef)
    pd.testing.assert_series_equal(first.auc_values, second.auc_values)


def test_single_class_outcome_is_excluded_and_counted():
    """Degenerate replicates are reported as failures, never averaged."""
    data = {1: make_trial(n=120, seed=7, outcome_rate=0)}
    result = perform_cv_lasso(data, seed=1, bootstrap_iterations=3, spec=SPEC)
    assert result.n_excluded == 3
    assert all(f.kind == "degenerate_split" for f in result.failures)
    assert result.avg_coef.empty
    assert result.auc_summary()["n_valid"] == 0
    assert len(result.failure_table()) == 3
    # the splits themselves succeeded, so their rows are kept and flagged
    assert len(result.train_data_full) == 3 * 84
    assert len(result.test_data_full) == 3 * 36
    assert not result.train_data_full["valid"].any()
    assert sorted(result.train_data_full["bootstrap"].unique()) == [1, 2, 3]


def test_outcome_fold_check_flags_single_class_fold():
    y = np.array([1, 0, 1, 0, 1, 0])
    _check_outcome_folds(y, np.array([1, 1, 2, 2, 3, 3]))
    with pytest.raises(DegenerateSplit, match="CV fold 2"):
        _check_outcome_folds(np.array([1, 1, 0, 0, 0, 0]), np.array([1, 1, 2, 2, 3, 3]))


def test_rare_outcome_fails_at_cv_folds():
    """A handful of positives leaves some CV fold without a positive case."""
    df = make_trial(n=200, seed=11)
    df["abst"] = 0
    df.loc[[5, 70, 150], "abst"] = 1
    result = perform_cv_lasso({1: df}, seed=4, bootstrap_iterations=5, spec=SPEC)
    assert result.n_excluded == 5
    assert all(f.kind == "degenerate_split" for f in result.failures)
    assert any("CV fold" in f.message for f in result.failures)
    assert len(result.train_data_full) == 5 * 140


def test_parallel_run_matches_sequential():
    data = {1: make_trial(seed=21), 2: make_trial(seed=22)}
    seq = perform_cv_lasso(data, seed=8, bootstrap_iterations=2, spec=SPEC)
    par = perform_cv_lasso(data, seed=8, bootstrap_iterations=2, spec=SPEC, n_jobs=2)
    pd.testing.assert_series_equal(seq.avg_coef, par.avg_coef)
    pd.testing.assert_series_equal(seq.auc_values, par.auc_values)
    pd.testing.assert_frame_equal(seq.lambda_table(), par.lambda_table())


def test_missing_columns_are_rejected():
    """Datasets without the model columns fail before any resampling."""
    df = make_trial(50).drop(columns=["Race"])
    with pytest.raises(ValueError):
        perform_cv_lasso({1: df}, bootstrap_iterations=1, spec=SPEC)


def test_lasso_fit_uses_current_estimator_arguments():
    """The penalty path is set without arguments scikit-learn has deprecated."""
    df = make_trial(seed=31)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        replicate = run_bootstrap_replicate(df, BootstrapKey(1, 1), seed=3, spec=SPEC)
    deprecated = [
        str(w.message)
        for w in caught
        if issubclass(w.category, FutureWarning)
        and any(name in str(w.message) for name in ("penalty", "l1_ratios", "use_legacy_attributes"))
    ]
    assert deprecated == []
    assert replicate.best_c > 0
