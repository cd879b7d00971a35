"""
Configuration helpers shared across the project.
"""

from .project_profiles import (
    ANALYSIS_PROFILES,
    SIMULATION_PROFILES,
    AnalysisProfile,
    ModeratorModelSpec,
    SimulationProfile,
    get_profile,
    get_simulation_profile,
    list_profiles,
)

__all__ = [
    "ANALYSIS_PROFILES",
    "SIMULATION_PROFILES",
    "AnalysisProfile",
    "ModeratorModelSpec",
    "SimulationProfile",
    "get_profile",
    "get_simulation_profile",
    "list_profiles",
]
