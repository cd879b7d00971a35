"""
Tests for the (n_clusters x cost ratio) grid-search drivers.
"""
import pandas as pd
import pytest

from clinstats.analysis.statistics.cluster_design import derive_cluster_design
from clinstats.analysis.statistics.cluster_simulation import SimulationResult, summarize_fits
from clinstats.analysis.statistics.design_search import (
    design_grid,
    run_design_grid,
    run_profile_grid,
    sim_normal_opt,
)
from clinstats.config.project_profiles import SimulationProfile


def fake_simulator(n_clusters, c1_c2_ratio, B, c1, beta, n_sim, **_):
    """Cheap stand-in that only derives the design."""
    design = derive_cluster_design(n_clusters, B, c1, c1_c2_ratio)
    metrics = summarize_fits(design, [], beta, n_sim, 0.05)
    return SimulationResult(metrics=metrics, simulated_data=pd.DataFrame(), fits=pd.DataFrame())


def test_design_grid_orders():
    assert design_grid([10, 20], [2, 5]) == [(10, 2), (10, 5), (20, 2), (20, 5)]
    assert design_grid([10, 20], [2, 5], outer="c1_c2_ratio") == [(10, 2), (20, 2), (10, 5), (20, 5)]
    with pytest.raises(ValueError):
        design_grid([10], [2], outer="budget")


def test_grid_row_count_and_ratio_tags():
    """One row per design point, tagged with the ratio that generated it."""
    n_seq, ratios = [10, 15, 20], [2.0, 5.0, 10.0, 20.0]
    result = run_design_grid(
        fake_simulator, n_seq, ratios, outer="c1_c2_ratio", B=2000, c1=20, beta=1.5, n_sim=1
    )
    assert len(result.table) == len(n_seq) * len(ratios)
    expected = design_grid(n_seq, ratios, outer="c1_c2_ratio")
    assert list(zip(result.table["n_clusters"], result.table["c1_c2_ratio"])) == expected
    assert result.n_infeasible == 0


def test_infeasible_points_are_recorded_and_skipped():
    """An unaffordable design point does not stop the grid."""
    result = run_design_grid(
        fake_simulator, [10, 200], [2.0, 5.0], B=2000, c1=20, beta=1.5, n_sim=1
    )
    assert result.table["n_clusters"].tolist() == [10, 10]
    assert result.n_infeasible == 2
    assert set(result.failures["error"]) == {"infeasible_design"}
    assert result.failures["c1_c2_ratio"].tolist() == [2.0, 5.0]


def test_parallel_grid_matches_sequential():
    kwargs = dict(B=2000, c1=20, beta=1.5, n_sim=1)
    seq = run_design_grid(fake_simulator, [10, 20], [2.0, 5.0], **kwargs)
    par = run_design_grid(fake_simulator, [10, 20], [2.0, 5.0], n_jobs=2, **kwargs)
    pd.testing.assert_frame_equal(seq.table, par.table)


def test_sim_normal_opt_end_to_end():
    """Real Normal simulations over a small grid, cluster count as outer loop."""
    result = sim_normal_opt(
        n_clusters_seq=[4, 6],
        c1_c2_ratios=[2, 5],
        B=2000, c1=20, alpha=2, beta=1.5, sigma2=1, gamma2=1, n_sim=2,
    )
    assert len(result.table) == 4
    assert result.table["n_clusters"].tolist() == [4, 4, 6, 6]
    assert result.table["c1_c2_ratio"].tolist() == [2, 5, 2, 5]
    assert (result.table["n_obs_per_cluster"] >= 1).all()


def test_run_profile_grid_uses_profile_parameters():
    profile = SimulationProfile(
        family="normal", n_sim=2, n_clusters_seq=(4,), c1_c2_ratios=(2.0,), outer="n_clusters"
    )
    result = run_profile_grid(profile)
    assert len(result.table) == 1
    assert result.table["true_beta"].iloc[0] == profile.beta
    with pytest.raises(KeyError):
        run_profile_grid(SimulationProfile(family="binomial"))
