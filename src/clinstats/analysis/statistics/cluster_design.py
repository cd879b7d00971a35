"""Budget-constrained sample-size derivation for cluster-randomized trials."""
from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from .errors import InfeasibleDesign


@dataclass(frozen=True)
class ClusterDesign:
    """A design point with its derived per-cluster sample size.

    ``c1`` is the cost of the first observation in a cluster and ``c2`` the
    cost of every additional one.
    """

    n_clusters: int
    budget: float
    c1: float
    c1_c2_ratio: float
    c2: float
    n_obs_per_cluster: int

    @property
    def treatment(self) -> np.ndarray:
        # control, treatment, control, ...; odd counts get the extra control
        return np.arange(self.n_clusters) % 2

    @property
    def n_obs(self) -> int:
        return self.n_clusters * self.n_obs_per_cluster

    @property
    def total_cost(self) -> float:
        return self.n_clusters * (self.c1 + (self.n_obs_per_cluster - 1) * self.c2)


def obs_per_cluster(n_clusters: int, budget: float, c1: float, c2: float) -> int:
    """``floor((B - G*c1) / (G*c2)) + 1``; may be < 1 for unaffordable designs."""
    return int(math.floor((budget - n_clusters * c1) / (n_clusters * c2))) + 1


def derive_cluster_design(
    n_clusters: int,
    B: float,
    c1: float,
    c1_c2_ratio: float,
) -> ClusterDesign:
    """
    Derive ``c2`` and the per-cluster sample size for one design point.

    Raises:
        InfeasibleDesign: fewer than two clusters, non-positive costs, or a
            budget that cannot cover one observation per cluster.
    """
    if int(n_clusters) != n_clusters:
        raise ValueError(f"n_clusters must be an integer, got {n_clusters}")
    n_clusters = int(n_clusters)
    if n_clusters < 2:
        raise InfeasibleDesign(f"Need at least 2 clusters to randomize, got {n_clusters}")
    if c1 <= 0 or c1_c2_ratio <= 0:
        raise InfeasibleDesign(f"Costs must be positive (c1={c1}, c1/c2={c1_c2_ratio})")
    c2 = c1 / c1_c2_ratio
    n_obs = obs_per_cluster(n_clusters, B, c1, c2)
    if n_obs < 1:
        raise InfeasibleDesign(
            f"Budget {B} cannot fund {n_clusters} clusters at c1={c1} "
            f"(derived n_obs_per_cluster={n_obs})"
        )
    return ClusterDesign(
        n_clusters=n_clusters,
        budget=float(B),
        c1=float(c1),
        c1_c2_ratio=float(c1_c2_ratio),
        c2=float(c2),
        n_obs_per_cluster=n_obs,
    )
