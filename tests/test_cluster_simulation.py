"""
Tests for the budget-constrained cluster-trial simulators.
"""
import numpy as np
import pytest

from clinstats.analysis.statistics import cluster_simulation
from clinstats.analysis.statistics.cluster_design import derive_cluster_design
from clinstats.analysis.statistics.cluster_simulation import (
    METRIC_COLUMNS,
    TrialFit,
    sim_normal,
    sim_poisson,
    simulate_normal_trial,
    simulate_poisson_trial,
)
from clinstats.analysis.statistics.errors import InfeasibleDesign, NonConvergence


def test_obs_per_cluster_matches_budget_formula():
    """G=5, B=2000, c1=20, ratio=5 -> c2=4 and 96 observations per cluster."""
    design = derive_cluster_design(5, 2000, 20, 5)
    assert design.c2 == pytest.approx(4.0)
    assert design.n_obs_per_cluster == 96
    assert design.total_cost <= 2000


def test_odd_cluster_count_alternates_with_extra_control():
    design = derive_cluster_design(5, 2000, 20, 5)
    assert design.treatment.tolist() == [0, 1, 0, 1, 0]


@pytest.mark.parametrize(
    "n_clusters, budget, c1, ratio",
    [
        (200, 2000, 20, 5),
        (1, 2000, 20, 5),
        (10, 2000, 0, 5),
        (10, 2000, 20, -1),
    ],
)
def test_infeasible_designs_raise(n_clusters, budget, c1, ratio):
    with pytest.raises(InfeasibleDesign):
        derive_cluster_design(n_clusters, budget, c1, ratio)


def test_simulated_trials_have_cluster_structure():
    """Each cluster contributes R rows with a constant treatment label."""
    design = derive_cluster_design(6, 2000, 20, 2)
    rng = np.random.default_rng(0)
    normal = simulate_normal_trial(design, rng, alpha=2, beta=1.5, gamma2=1, sigma2=1)
    counts = simulate_poisson_trial(design, rng, alpha=1, beta=0.5, gamma2=0.5)
    for data in (normal, counts):
        assert len(data) == design.n_obs
        assert list(data.columns) == ["cluster_id", "X", "Y"]
        assert (data.groupby("cluster_id")["X"].nunique() == 1).all()
        assert (data.groupby("cluster_id").size() == design.n_obs_per_cluster).all()
    assert (counts["Y"] >= 0).all()
    assert np.issubdtype(counts["Y"].dtype, np.integer)


def test_sim_normal_metrics_row():
    """Normal simulator returns one metrics row and the last simulated trial."""
    result = sim_normal(
        n_clusters=10, B=2000, c1=20, c1_c2_ratio=2,
        alpha=2, beta=1.5, gamma2=1, sigma2=1, n_sim=6,
    )
    row = result.metrics.iloc[0]
    assert list(result.metrics.columns) == METRIC_COLUMNS
    assert row["n_obs_per_cluster"] == 19
    assert row["n_converged"] + row["n_failed"] == 6
    assert 0 <= row["power"] <= 1
    assert 0 <= row["ci_coverage"] <= 1
    assert row["min_beta_est"] <= row["beta_est_mean"] <= row["max_beta_est"]
    assert row["beta_bias_mean"] == pytest.approx(row["beta_est_mean"] - 1.5)
    assert len(result.simulated_data) == 10 * 19
    assert len(result.fits) == 6


def test_sim_normal_is_deterministic():
    kwargs = dict(n_clusters=8, B=2000, c1=20, c1_c2_ratio=5, alpha=2, beta=1.0,
                  gamma2=1, sigma2=1, n_sim=4, seed=11)
    first = sim_normal(**kwargs)
    second = sim_normal(**kwargs)
    assert first.metrics.equals(second.metrics)
    assert first.simulated_data.equals(second.simulated_data)


def test_power_does_not_decrease_with_effect_size():
    """Larger |beta| with identical draws never lowers power."""
    kwargs = dict(n_clusters=10, B=2000, c1=20, c1_c2_ratio=2, alpha=2,
                  gamma2=1, sigma2=1, n_sim=15, seed=3)
    null = sim_normal(beta=0.0, **kwargs).metrics.iloc[0]
    strong = sim_normal(beta=3.0, **kwargs).metrics.iloc[0]
    assert strong["power"] >= null["power"]
    assert strong["power"] >= 0.8


def test_non_converged_fits_are_excluded_and_counted(monkeypatch):
    """Failed fits shrink the denominator instead of counting as misses."""
    calls = {"n": 0}

    def flaky_fit(data, alpha_level):
        calls["n"] += 1
        if calls["n"] % 2 == 0:
            raise NonConvergence("optimizer failed")
        return TrialFit(estimate=1.5, std_error=0.1, ci_lower=1.3, ci_upper=1.7, p_value=0.001)

    monkeypatch.setattr(cluster_simulation, "fit_normal_trial", flaky_fit)
    result = sim_normal(
        n_clusters=6, B=2000, c1=20, c1_c2_ratio=2,
        alpha=2, beta=1.5, gamma2=1, sigma2=1, n_sim=6,
    )
    row = result.metrics.iloc[0]
    assert row["n_failed"] == 3
    assert row["n_converged"] == 3
    assert row["power"] == 1.0
    assert row["ci_coverage"] == 1.0
    assert result.fits["converged"].sum() == 3


def test_all_failed_fits_give_nan_metrics(monkeypatch):
    def broken_fit(data, alpha_level):
        raise NonConvergence("singular")

    monkeypatch.setattr(cluster_simulation, "fit_poisson_trial", broken_fit)
    result = sim_poisson(
        n_clusters=4, B=2000, c1=20, c1_c2_ratio=2,
        alpha=1, beta=0.5, gamma2=0.5, n_sim=3,
    )
    row = result.metrics.iloc[0]
    assert result.n_failed == 3
    assert np.isnan(row["power"]) and np.isnan(row["beta_est_mean"])


def test_sim_poisson_runs_glmm():
    """Poisson simulator fits a random-intercept GLMM per trial."""
    result = sim_poisson(
        n_clusters=6, B=2000, c1=20, c1_c2_ratio=2,
        alpha=1, beta=0.5, gamma2=0.5, n_sim=3,
    )
    row = result.metrics.iloc[0]
    assert row["n_obs_per_cluster"] == 32
    assert row["n_converged"] + row["n_failed"] == 3
    converged = result.fits[result.fits["converged"]]
    assert np.isfinite(converged["estimate"]).all()
    assert (converged["ci_lower"] < converged["ci_upper"]).all()


def test_poisson_fits_at_optimum_are_not_dropped():
    """Fits that stop on BFGS precision loss at the MAP still count as converged."""
    result = sim_poisson(
        n_clusters=30, B=2000, c1=20, c1_c2_ratio=5,
        alpha=2, beta=1.5, gamma2=1, n_sim=40, seed=7,
    )
    assert result.n_failed == 0
    assert result.metrics["n_converged"].iloc[0] == 40


def test_poisson_fit_rejects_gradient_above_tolerance(monkeypatch):
    design = derive_cluster_design(6, 2000, 20, 2)
    data = simulate_poisson_trial(design, np.random.default_rng(2), alpha=1, beta=0.5, gamma2=0.5)
    monkeypatch.setattr(cluster_simulation, "POISSON_GRADIENT_TOL", 1e-12)
    with pytest.raises(NonConvergence, match="gradient"):
        cluster_simulation.fit_poisson_trial(data, 0.05)


def test_poisson_power_does_not_decrease_with_effect_size():
    kwargs = dict(n_clusters=10, B=2000, c1=20, c1_c2_ratio=2, alpha=1,
                  gamma2=0.25, n_sim=10, seed=5)
    null = sim_poisson(beta=0.0, **kwargs).metrics.iloc[0]
    strong = sim_poisson(beta=1.5, **kwargs).metrics.iloc[0]
    assert strong["power"] >= null["power"]
    assert strong["power"] >= 0.8


def test_normal_ci_coverage_is_near_nominal():
    result = sim_normal(
        n_clusters=30, B=2000, c1=20, c1_c2_ratio=5,
        alpha=2, beta=1.5, gamma2=1, sigma2=1, n_sim=100, seed=13,
    )
    row = result.metrics.iloc[0]
    assert row["n_converged"] >= 95
    assert 0.85 <= row["ci_coverage"] <= 1.0
    assert abs(row["beta_bias_mean"]) < 0.3
