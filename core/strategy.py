"""
Clustering step strategies for distributed expectation-maximization.

The coordination engine never does the statistics itself. It hands slices
of work to remote workers, and each worker runs one of the strategies
defined here:

- estimate: membership of a contiguous block of rows in every cluster
- update: re-estimate one cluster from its full membership row
- check_convergence: decide, on the coordinator, whether to iterate again
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple
import logging

import torch

logger = logging.getLogger(__name__)


# Numerical floors shared by the strategies
SMALLEST_NORMAL = 1e-38
LARGEST_NORMAL = 1e38


class ClusteringStrategy(ABC):
    """
    Interface for one EM-style clustering computation.

    A strategy instance holds the model (the clusters). The coordinator owns
    the authoritative copy; every worker rebuilds its own copy from the
    latest checkpoint.
    """

    name: str = "abstract"

    @property
    @abstractmethod
    def num_clusters(self) -> int:
        """Current number of clusters (maximize work units)."""

    @abstractmethod
    def initialize(self, data: torch.Tensor) -> None:
        """Create initial clusters for data of shape (N, D), if none exist."""

    @abstractmethod
    def estimate(self, data: torch.Tensor, begin: int, end: int) -> torch.Tensor:
        """
        Compute membership of rows [begin, end) in every cluster.

        Returns:
            Tensor of shape (num_clusters, end - begin)
        """

    @abstractmethod
    def update(
        self,
        data: torch.Tensor,
        member_row: torch.Tensor,
        unit: int
    ) -> Tuple[float, List[torch.Tensor]]:
        """
        Re-estimate cluster `unit` from its membership row of shape (N,).

        Updates the local copy of the cluster and returns the change metric
        together with the cluster's new serialized parameters.
        """

    @abstractmethod
    def apply_update(self, unit: int, params: List[torch.Tensor]) -> None:
        """Install parameters produced by update() on another host."""

    @abstractmethod
    def check_convergence(
        self,
        data: torch.Tensor,
        member: torch.Tensor,
        changes: List[float]
    ) -> bool:
        """
        Decide whether the computation has converged.

        May restructure the model (split or merge clusters), in which case
        it must return False.
        """

    @abstractmethod
    def state_dict(self) -> Dict[str, Any]:
        """Full model state for checkpointing."""

    @abstractmethod
    def load_state_dict(self, state: Dict[str, Any]) -> None:
        """Restore model state written by state_dict()."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(clusters={self.num_clusters})"


def create_strategy(name: str, **options) -> ClusteringStrategy:
    """
    Create a clustering strategy by name.

    Args:
        name: "gaussian_mixture" or "kmeans"
        **options: Strategy constructor arguments

    Returns:
        Strategy instance

    Raises:
        ValueError: If the name is unknown
    """
    # Local imports keep the concrete strategies out of the interface module
    from core.gaussian_mixture import GaussianMixture
    from core.kmeans import KMeans

    strategies = {
        GaussianMixture.name: GaussianMixture,
        KMeans.name: KMeans,
    }

    if name not in strategies:
        raise ValueError(
            f"Unknown strategy: {name}. Available: {list(strategies.keys())}"
        )

    logger.debug(f"Creating strategy {name} with options {options}")
    return strategies[name](**options)


def list_strategies() -> List[str]:
    """Names accepted by create_strategy()."""
    return ["gaussian_mixture", "kmeans"]
