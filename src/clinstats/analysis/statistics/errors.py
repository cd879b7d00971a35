"""Failure taxonomy shared by the bootstrap and simulation procedures."""
from __future__ import annotations


class AnalysisError(Exception):
    """Base class for failures that exclude a unit of work from aggregation."""

    kind = "analysis_error"


class InfeasibleDesign(AnalysisError):
    """The budget cannot pay for at least one observation per cluster."""

    kind = "infeasible_design"


class DegenerateSplit(AnalysisError):
    """A train/test split or CV fold holds a single outcome class."""

    kind = "degenerate_split"


class NonConvergence(AnalysisError):
    """A mixed-model fit for a simulated trial did not converge."""

    kind = "non_convergence"
