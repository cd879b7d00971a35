"""Statistical core: bootstrap-validated lasso and cluster-trial design simulation.

The lasso bootstrap estimates treatment-moderator effects across multiply
imputed datasets; the simulators score cluster-randomized designs under a
fixed budget by bias, variance, power and CI coverage.
"""
from .cluster_design import ClusterDesign, derive_cluster_design, obs_per_cluster
from .cluster_simulation import (
    SimulationResult,
    TrialFit,
    fit_normal_trial,
    fit_poisson_trial,
    sim_normal,
    sim_poisson,
    simulate_normal_trial,
    simulate_poisson_trial,
)
from .design_matrix import InteractionTerm, build_design_matrix, enumerate_interactions
from .design_search import GridSearchResult, run_design_grid, run_profile_grid, sim_normal_opt, sim_poisson_opt
from .errors import AnalysisError, DegenerateSplit, InfeasibleDesign, NonConvergence
from .lasso_bootstrap import (
    BootstrapKey,
    BootstrapReplicate,
    LassoBootstrapResult,
    ReplicateFailure,
    average_coefficients,
    draw_bootstrap_split,
    fit_bootstrap_split,
    perform_cv_lasso,
    run_bootstrap_replicate,
)

__all__ = [
    "AnalysisError",
    "BootstrapKey",
    "BootstrapReplicate",
    "ClusterDesign",
    "DegenerateSplit",
    "GridSearchResult",
    "InfeasibleDesign",
    "InteractionTerm",
    "LassoBootstrapResult",
    "NonConvergence",
    "ReplicateFailure",
    "SimulationResult",
    "TrialFit",
    "average_coefficients",
    "build_design_matrix",
    "derive_cluster_design",
    "draw_bootstrap_split",
    "enumerate_interactions",
    "fit_bootstrap_split",
    "fit_normal_trial",
    "fit_poisson_trial",
    "obs_per_cluster",
    "perform_cv_lasso",
    "run_bootstrap_replicate",
    "run_design_grid",
    "run_profile_grid",
    "sim_normal",
    "sim_normal_opt",
    "sim_poisson",
    "sim_poisson_opt",
    "simulate_normal_trial",
    "simulate_poisson_trial",
]
