"""
Gaussian mixture clustering strategy.

Each cluster is a full-covariance Gaussian with a mixing weight. The
number of clusters adapts between iterations: once the centers stop
moving, an oversized cluster is split along its dominant axis and
clusters closer than min_size are merged.
"""

import math
import logging
from typing import Any, Dict, List, Optional, Tuple

import torch

from core.strategy import ClusteringStrategy, SMALLEST_NORMAL, LARGEST_NORMAL


logger = logging.getLogger(__name__)


# Length of the change and velocity histories used for convergence
HISTORY_LENGTH = 4


class GaussianComponent:
    """One Gaussian cluster with cached inverse square-root covariance."""

    def __init__(
        self,
        center: torch.Tensor,
        covariance: Optional[torch.Tensor] = None,
        alpha: float = 1.0
    ):
        """
        Args:
            center: Mean vector of shape (D,)
            covariance: Covariance of shape (D, D), identity if None
            alpha: Mixing weight
        """
        self.alpha = float(alpha)
        self.center = center.detach().clone().float()
        dim = self.center.shape[0]
        if covariance is None:
            covariance = torch.eye(dim)
        self.covariance = covariance.detach().clone().float()
        self.prepare_inverse()

    def prepare_inverse(self):
        """Recompute eigen-decomposition, whitening matrix and log-normalizer."""
        eigenvalues, eigenvectors = torch.linalg.eigh(self.covariance.double())

        if (eigenvalues < 0).any():
            logger.warning("Covariance has a negative eigenvalue")

        scale = eigenvalues.abs().sqrt()
        inverse_scale = torch.where(scale > 0, 1.0 / scale, torch.zeros_like(scale))

        self.eigenvalues = eigenvalues.float()
        self.eigenvectors = eigenvectors.float()
        # Row i is eigenvector i divided by its standard deviation
        self.eigenverse = (eigenvectors.T * inverse_scale.unsqueeze(1)).float()

        log_terms = torch.log(
            (2.0 * math.pi * eigenvalues.abs()).clamp_min(SMALLEST_NORMAL)
        )
        self.log_det = 0.5 * float(log_terms.sum())

    def distance(self, points: torch.Tensor) -> torch.Tensor:
        """
        Negative log-likelihood (up to a constant) of each row of points.

        Args:
            points: Tensor of shape (n, D)

        Returns:
            Tensor of shape (n,)
        """
        whitened = (points - self.center) @ self.eigenverse.T
        d2 = (whitened * whitened).sum(dim=1).clamp_max(LARGEST_NORMAL)
        return d2 / 2.0 - math.log(max(self.alpha, SMALLEST_NORMAL)) + self.log_det

    def to_params(self) -> List[torch.Tensor]:
        """Serializable parameters: [alpha, center, covariance]."""
        return [
            torch.tensor([self.alpha], dtype=torch.float32),
            self.center.clone(),
            self.covariance.clone(),
        ]

    @classmethod
    def from_params(cls, params: List[torch.Tensor]) -> 'GaussianComponent':
        """Rebuild a component from to_params() output."""
        if len(params) != 3:
            raise ValueError(f"Expected 3 parameter tensors, got {len(params)}")
        alpha, center, covariance = params
        dim = center.numel()
        if covariance.shape != (dim, dim):
            raise ValueError(
                f"Covariance shape {tuple(covariance.shape)} does not match center of size {dim}"
            )
        return cls(center.reshape(dim), covariance, float(alpha.reshape(-1)[0]))


class GaussianMixture(ClusteringStrategy):
    """
    Adaptive Gaussian mixture model fitted by expectation-maximization.

    Convergence is detected from the trend of the largest center movement:
    a least-squares slope over the last few changes gives a velocity, and
    the slope of the velocities an acceleration.
    """

    name = "gaussian_mixture"

    def __init__(
        self,
        max_size: float = 10.0,
        min_size: float = 0.1,
        initial_k: int = 5,
        max_k: int = 10,
        seed: Optional[int] = 0
    ):
        """
        Args:
            max_size: Largest allowed cluster radius (sqrt of an eigenvalue)
            min_size: Clusters whose centers are closer than this are merged
            initial_k: Number of clusters created at initialization
            max_k: Upper bound on the number of clusters
            seed: Random seed for initial placement
        """
        self.max_size = max_size
        self.min_size = min_size
        self.initial_k = initial_k
        self.max_k = max_k
        self.seed = seed

        self.clusters: List[GaussianComponent] = []
        self.changes: List[float] = []
        self.velocities: List[float] = []

    @property
    def num_clusters(self) -> int:
        return len(self.clusters)

    def initialize(self, data: torch.Tensor) -> None:
        k = max(1, min(self.initial_k, data.shape[0] // 2))
        if len(self.clusters) >= k:
            logger.info(
                f"Mixture already initialized with {len(self.clusters)} clusters "
                f"(max_size={self.max_size}, min_size={self.min_size}, max_k={self.max_k})"
            )
            return

        logger.info(f"Creating {k - len(self.clusters)} clusters")

        center = data.mean(dim=0)
        delta = data - center
        covariance = delta.T @ delta / data.shape[0]

        eigenvalues, eigenvectors = torch.linalg.eigh(covariance.double())
        basis = (eigenvectors * eigenvalues.abs().sqrt()).float()
        logger.debug(
            f"Data eigenvalue range: {eigenvalues.abs().min().sqrt():.4f} "
            f"{eigenvalues.abs().max().sqrt():.4f}"
        )

        generator = torch.Generator()
        if self.seed is not None:
            generator.manual_seed(self.seed)

        for _ in range(len(self.clusters), k):
            offset = torch.randn(center.shape[0], generator=generator)
            point = center + basis @ offset
            self.clusters.append(GaussianComponent(point, alpha=1.0 / k))

    def estimate(self, data: torch.Tensor, begin: int, end: int) -> torch.Tensor:
        points = data[begin:end]
        distances = torch.stack([c.distance(points) for c in self.clusters])
        # Normalizing in log space avoids the underflow of exp(-distance)
        member = torch.softmax(-distances, dim=0).clamp_min(SMALLEST_NORMAL)
        return member / member.sum(dim=0, keepdim=True)

    def update(
        self,
        data: torch.Tensor,
        member_row: torch.Tensor,
        unit: int
    ) -> Tuple[float, List[torch.Tensor]]:
        cluster = self.clusters[unit]
        weights = member_row.float()
        total = float(weights.sum())

        if total <= SMALLEST_NORMAL:
            logger.warning(f"Cluster {unit} has no members; keeping its center")
            center = cluster.center.clone()
        else:
            center = (weights.unsqueeze(1) * data).sum(dim=0) / total

        cluster.alpha = total / data.shape[0]
        if cluster.alpha <= SMALLEST_NORMAL:
            logger.warning(f"Alpha of cluster {unit} got too small: {cluster.alpha}")
            cluster.alpha = SMALLEST_NORMAL

        delta = data - center
        covariance = (delta * weights.unsqueeze(1)).T @ delta / max(total, SMALLEST_NORMAL)
        if float(covariance.abs().sum()) == 0.0:
            logger.warning(f"Covariance of cluster {unit} went to zero")
            covariance = torch.eye(center.shape[0]) * SMALLEST_NORMAL

        change = float(torch.linalg.vector_norm(center - cluster.center))
        cluster.center = center
        cluster.covariance = covariance
        cluster.prepare_inverse()

        return change, cluster.to_params()

    def apply_update(self, unit: int, params: List[torch.Tensor]) -> None:
        self.clusters[unit] = GaussianComponent.from_params(params)

    def check_convergence(
        self,
        data: torch.Tensor,
        member: torch.Tensor,
        changes: List[float]
    ) -> bool:
        largest_change = max(changes) if changes else 0.0
        largest_change /= self.max_size * math.sqrt(data.shape[1])

        converged = False
        self.changes.append(largest_change)
        if len(self.changes) > HISTORY_LENGTH:
            self.changes.pop(0)
            velocity = _slope(self.changes)

            self.velocities.append(velocity)
            if len(self.velocities) > HISTORY_LENGTH:
                self.velocities.pop(0)
                acceleration = _slope(self.velocities)
                logger.info(
                    f"change={largest_change:.6f} velocity={velocity:.6f} "
                    f"acceleration={acceleration:.6f}"
                )
                if abs(acceleration) < 1e-4 and velocity > -1e-2:
                    converged = True

        if largest_change < 1e-4:
            converged = True

        if converged:
            if self._split():
                converged = False
            if self._merge(data, member):
                converged = False

        return converged

    def _split(self) -> bool:
        """Split the cluster with the largest radius if it exceeds max_size."""
        largest_eigenvalue = 0.0
        largest_cluster = -1
        axis = None
        for i, cluster in enumerate(self.clusters):
            # eigh() sorts ascending, so check both ends
            for column in (0, cluster.eigenvalues.shape[0] - 1):
                value = abs(float(cluster.eigenvalues[column]))
                if value > largest_eigenvalue:
                    largest_eigenvalue = value
                    largest_cluster = i
                    axis = cluster.eigenvectors[:, column]

        radius = math.sqrt(largest_eigenvalue)
        if largest_cluster < 0 or radius <= self.max_size or len(self.clusters) >= self.max_k:
            return False

        cluster = self.clusters[largest_cluster]
        offset = axis * (radius / 2)
        new_center = cluster.center + offset
        cluster.center = cluster.center - offset
        cluster.alpha /= 2
        cluster.prepare_inverse()
        self.clusters.append(
            GaussianComponent(new_center, cluster.covariance, cluster.alpha)
        )
        logger.info(f"Splitting cluster {largest_cluster} (radius {radius:.4f})")
        return True

    def _merge(self, data: torch.Tensor, member: torch.Tensor) -> bool:
        """Merge the closest pair of clusters nearer than min_size."""
        # Only clusters with a membership row from this iteration can merge
        count = min(len(self.clusters), member.shape[0])
        closest = LARGEST_NORMAL
        pair = None
        for i in range(count):
            for j in range(i + 1, count):
                distance = float(torch.linalg.vector_norm(
                    self.clusters[i].center - self.clusters[j].center
                ))
                if distance < self.min_size and distance < closest:
                    closest = distance
                    pair = (i, j)

        if pair is None:
            return False

        keep, remove = pair
        logger.info(f"Merging cluster {remove} into {keep} (distance {closest:.4f})")
        member[keep] += member[remove]
        self.update(data, member[keep], keep)
        del self.clusters[remove]
        return True

    def state_dict(self) -> Dict[str, Any]:
        return {
            'max_size': self.max_size,
            'min_size': self.min_size,
            'initial_k': self.initial_k,
            'max_k': self.max_k,
            'seed': self.seed,
            'clusters': [c.to_params() for c in self.clusters],
            'changes': list(self.changes),
            'velocities': list(self.velocities),
        }

    def load_state_dict(self, state: Dict[str, Any]) -> None:
        self.max_size = state['max_size']
        self.min_size = state['min_size']
        self.initial_k = state['initial_k']
        self.max_k = state['max_k']
        self.seed = state.get('seed')
        self.clusters = [GaussianComponent.from_params(p) for p in state['clusters']]
        self.changes = list(state['changes'])
        self.velocities = list(state['velocities'])


def _slope(values: List[float]) -> float:
    """Least-squares slope of values against their index."""
    n = len(values)
    xbar = (n - 1) / 2.0
    sxx = sum((x - xbar) ** 2 for x in range(n))
    sxy = sum(x * y for x, y in enumerate(values)) - xbar * sum(values)
    return sxy / sxx
