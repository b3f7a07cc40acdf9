"""
Hard-assignment k-means clustering strategy.

The simpler of the two strategies: every row belongs to exactly one
cluster and clusters carry only a center.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import torch

from core.strategy import ClusteringStrategy


logger = logging.getLogger(__name__)


class KMeans(ClusteringStrategy):
    """K-means with a fixed number of clusters."""

    name = "kmeans"

    def __init__(self, k: int = 5, tolerance: float = 1e-4, seed: Optional[int] = 0):
        """
        Args:
            k: Number of clusters
            tolerance: Largest center displacement considered converged
            seed: Random seed for choosing initial centers
        """
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")

        self.k = k
        self.tolerance = tolerance
        self.seed = seed
        self.centers: Optional[torch.Tensor] = None

    @property
    def num_clusters(self) -> int:
        return 0 if self.centers is None else self.centers.shape[0]

    def initialize(self, data: torch.Tensor) -> None:
        if self.centers is not None:
            logger.info(f"KMeans already initialized with {self.num_clusters} centers")
            return

        k = min(self.k, data.shape[0])
        generator = torch.Generator()
        if self.seed is not None:
            generator.manual_seed(self.seed)
        rows = torch.randperm(data.shape[0], generator=generator)[:k]
        self.centers = data[rows].clone().float()
        logger.info(f"Initialized {k} centers from random rows")

    def estimate(self, data: torch.Tensor, begin: int, end: int) -> torch.Tensor:
        points = data[begin:end]
        nearest = torch.cdist(points, self.centers).argmin(dim=1)
        member = torch.zeros(self.num_clusters, points.shape[0])
        member[nearest, torch.arange(points.shape[0])] = 1.0
        return member

    def update(
        self,
        data: torch.Tensor,
        member_row: torch.Tensor,
        unit: int
    ) -> Tuple[float, List[torch.Tensor]]:
        weights = member_row.float()
        total = float(weights.sum())
        old_center = self.centers[unit]

        if total > 0:
            center = (weights.unsqueeze(1) * data).sum(dim=0) / total
        else:
            # Empty cluster stays where it is
            center = old_center.clone()

        change = float(torch.linalg.vector_norm(center - old_center))
        self.centers[unit] = center
        return change, [center.clone()]

    def apply_update(self, unit: int, params: List[torch.Tensor]) -> None:
        if len(params) != 1 or params[0].numel() != self.centers.shape[1]:
            raise ValueError(f"Invalid center parameters for cluster {unit}")
        self.centers[unit] = params[0].reshape(-1).float()

    def check_convergence(
        self,
        data: torch.Tensor,
        member: torch.Tensor,
        changes: List[float]
    ) -> bool:
        largest_change = max(changes) if changes else 0.0
        logger.info(f"Largest center displacement: {largest_change:.6f}")
        return largest_change < self.tolerance

    def state_dict(self) -> Dict[str, Any]:
        return {
            'k': self.k,
            'tolerance': self.tolerance,
            'seed': self.seed,
            'centers': None if self.centers is None else self.centers.clone(),
        }

    def load_state_dict(self, state: Dict[str, Any]) -> None:
        self.k = state['k']
        self.tolerance = state['tolerance']
        self.seed = state.get('seed')
        centers = state['centers']
        self.centers = None if centers is None else centers.clone().float()
