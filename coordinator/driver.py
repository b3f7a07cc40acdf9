"""
Iteration driver of the distributed EM computation.

Each iteration:
1. Write a checkpoint and publish its freshness stamp
2. Estimating: one unit per block of rows, wait until all complete
3. Maximizing: one unit per cluster, wait until all complete
4. Checking: ask the strategy whether the model has converged

Work is done by remote workers through session handlers; the driver only
loads the queue, waits for it to drain and owns the model being updated.
"""

import math
import time
import logging
from typing import Any, Dict, List, Optional, Tuple

import torch

from communication.protocol import ProtocolError
from coordinator.phase_state import Phase, PhaseState
from core.checkpoint import CheckpointStore, build_checkpoint
from core.strategy import ClusteringStrategy


logger = logging.getLogger(__name__)


class IterationDriver:
    """
    Runs the outer convergence loop.

    The driver is the only component that changes the phase or sets the
    number of pending units. Session handlers feed results back through
    apply_estimate() and apply_update(); each unit touches a disjoint part
    of the model, so no further locking is needed.
    """

    def __init__(
        self,
        strategy: ClusteringStrategy,
        data: torch.Tensor,
        state: PhaseState,
        store: CheckpointStore,
        block_size: int = 1000,
        max_iterations: int = 0
    ):
        """
        Args:
            strategy: Clustering strategy holding the model
            data: Data set of shape (N, D)
            state: Shared phase state
            store: Checkpoint store written at every iteration
            block_size: Rows per estimate work unit
            max_iterations: Iteration cap, 0 for none
        """
        if block_size <= 0:
            raise ValueError(f"block_size must be positive, got {block_size}")
        if data.dim() != 2 or data.shape[0] == 0:
            raise ValueError(f"Expected a non-empty (N, D) data matrix, got {tuple(data.shape)}")

        self.strategy = strategy
        self.data = data.float().contiguous()
        self.state = state
        self.store = store
        self.block_size = block_size
        self.max_iterations = max_iterations

        self.iteration = 0
        self.converged = False
        self.member = torch.zeros(0, self.num_rows)
        self.changes: List[float] = []
        self.history: List[Dict[str, Any]] = []

    @property
    def num_rows(self) -> int:
        return self.data.shape[0]

    @property
    def num_clusters(self) -> int:
        return self.strategy.num_clusters

    @property
    def num_blocks(self) -> int:
        return math.ceil(self.num_rows / self.block_size)

    def unit_range(self, unit: int) -> Tuple[int, int]:
        """Row range [begin, end) of an estimate unit."""
        begin = unit * self.block_size
        end = min(begin + self.block_size, self.num_rows)
        return begin, end

    # Results from sessions

    def apply_estimate(self, unit: int, block: torch.Tensor):
        """Store a worker's membership block for an estimate unit."""
        begin, end = self.unit_range(unit)
        self.member[:, begin:end] = block

    def member_row(self, unit: int) -> torch.Tensor:
        """Full membership row of one cluster."""
        return self.member[unit]

    def apply_update(self, unit: int, change: float, params: List[torch.Tensor]):
        """
        Install a worker's re-estimated cluster.

        Raises:
            ProtocolError: If the strategy rejects the parameters
        """
        try:
            self.strategy.apply_update(unit, params)
        except (ValueError, IndexError) as e:
            raise ProtocolError(f"Invalid parameters for cluster {unit}: {e}") from e
        self.changes.append(change)

    # Main loop

    async def run(self) -> bool:
        """
        Iterate until converged, capped or stopped.

        Returns:
            True if the strategy reported convergence
        """
        self.strategy.initialize(self.data)
        if self.num_clusters == 0:
            raise ValueError(f"{self.strategy.name} produced no clusters for {self.num_rows} rows")
        logger.info(
            f"Starting {self.strategy.name}: {self.num_rows} rows, "
            f"{self.num_clusters} clusters, {self.num_blocks} blocks of {self.block_size}"
        )

        while not self.converged and not self.state.stopped:
            if self.max_iterations and self.iteration >= self.max_iterations:
                logger.warning(f"Stopping after {self.iteration} iterations without convergence")
                break

            logger.info("=" * 60)
            logger.info(f"Iteration {self.iteration}")
            started = time.monotonic()

            # Dumping state every iteration is cheap next to the iteration itself
            record = self.store.write(self._checkpoint())
            self.state.begin_iteration(self.iteration, record)

            # Estimation: membership of every row in every cluster
            self.member = torch.zeros(self.num_clusters, self.num_rows)
            self.state.begin_phase(Phase.ESTIMATING, range(self.num_blocks))
            if not await self.state.wait_drained():
                break

            # Maximization: re-estimate every cluster from its membership row
            self.changes = []
            self.state.begin_phase(Phase.MAXIMIZING, range(self.num_clusters))
            if not await self.state.wait_drained():
                break

            self.state.begin_phase(Phase.CHECKING)
            self.converged = self.strategy.check_convergence(self.data, self.member, self.changes)

            elapsed = time.monotonic() - started
            largest_change = max(self.changes) if self.changes else 0.0
            self.history.append({
                'iteration': self.iteration,
                'clusters': self.num_clusters,
                'largest_change': largest_change,
                'converged': self.converged,
                'seconds': elapsed,
            })
            logger.info(
                f"Iteration {self.iteration} done in {elapsed:.2f}s: "
                f"largest change={largest_change:.6f}, clusters={self.num_clusters}, "
                f"converged={self.converged}"
            )
            self.iteration += 1

        if self.state.stopped:
            logger.info(f"Driver stopped during iteration {self.iteration}")
        elif self.converged:
            self.store.write(self._checkpoint())
            logger.info(f"Converged after {self.iteration} iterations")

        return self.converged

    def _checkpoint(self) -> Dict[str, Any]:
        return build_checkpoint(
            self.strategy,
            iteration=self.iteration,
            block_size=self.block_size,
            num_rows=self.num_rows,
        )

    def status(self) -> Dict[str, Any]:
        """Status dictionary for API responses."""
        last: Optional[Dict[str, Any]] = self.history[-1] if self.history else None
        return {
            'strategy': self.strategy.name,
            'iteration': self.iteration,
            'rows': self.num_rows,
            'clusters': self.num_clusters,
            'block_size': self.block_size,
            'converged': self.converged,
            'last_iteration': last,
        }
