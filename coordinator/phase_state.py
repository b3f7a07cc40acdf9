"""
Shared phase and work-queue state of the clustering coordinator.

One PhaseState is shared by the iteration driver and every session handler.
All of its methods that mutate state are synchronous and never await, so on
the coordinator's event loop each call is an atomic critical section and no
I/O ever happens while state is being changed.

Bookkeeping invariant:

    units_pending == len(queue) + units currently claimed by sessions
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from core.checkpoint import CheckpointRecord


logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Coordinator-wide stage of the computation."""
    INITIALIZING = "initializing"
    ESTIMATING = "estimating"
    MAXIMIZING = "maximizing"
    CHECKING = "checking"


# Phases only ever advance around this cycle
ALLOWED_TRANSITIONS = {
    Phase.INITIALIZING: {Phase.ESTIMATING},
    Phase.ESTIMATING: {Phase.MAXIMIZING},
    Phase.MAXIMIZING: {Phase.CHECKING},
    Phase.CHECKING: {Phase.ESTIMATING},
}


class PhaseTransitionError(RuntimeError):
    """Illegal phase change, or a phase entered with work still queued."""


@dataclass
class Claim:
    """A work unit taken from the queue, with the context it was issued in."""
    phase: Phase
    unit: int
    iteration: int
    checkpoint: Optional[CheckpointRecord]


class PhaseState:
    """
    Phase, work queue, pending counter and stop flag.

    Only the iteration driver calls begin_iteration() and begin_phase().
    Session handlers call claim(), then exactly one of complete() or
    requeue() for every unit they claim.
    """

    def __init__(self):
        self.phase = Phase.INITIALIZING
        self.iteration = -1
        self.checkpoint: Optional[CheckpointRecord] = None

        self.units_pending = 0
        self.units_issued = 0
        self.phase_history: List[Phase] = [Phase.INITIALIZING]

        # Completion count per unit for the current phase
        self.completions: Dict[int, int] = {}

        self._work_units: List[int] = []
        self._stop = asyncio.Event()
        self._drained = asyncio.Event()
        self._work_available = asyncio.Event()
        self._drained.set()

    # Driver side

    def begin_iteration(self, iteration: int, checkpoint: CheckpointRecord):
        """Publish a new iteration number and its checkpoint stamp."""
        self.iteration = iteration
        self.checkpoint = checkpoint
        logger.debug(f"Iteration {iteration} published (checkpoint size={checkpoint.size})")

    def begin_phase(self, phase: Phase, units: Sequence[int] = ()):
        """
        Advance to a new phase and load its work units.

        Args:
            phase: Next phase
            units: Work unit identifiers for the phase

        Raises:
            PhaseTransitionError: On an out-of-order transition or a
                non-empty queue
        """
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise PhaseTransitionError(f"Cannot go from {self.phase.value} to {phase.value}")
        if self._work_units:
            raise PhaseTransitionError(
                f"Non-empty work queue entering {phase.value}: {len(self._work_units)} units"
            )

        self.phase = phase
        self.phase_history.append(phase)
        self._work_units = list(units)
        self.units_pending = len(self._work_units)
        self.units_issued = len(self._work_units)
        self.completions = {}

        if self._work_units:
            self._drained.clear()
            self._work_available.set()
        else:
            self._drained.set()
            self._work_available.clear()

        logger.info(f"Phase {phase.value}: {self.units_issued} units")

    # Session side

    def claim(self) -> Optional[Claim]:
        """
        Take one unit from the queue.

        Returns:
            The claim, or None if nothing is claimable or a stop was requested
        """
        if self.stopped or not self._work_units:
            return None

        unit = self._work_units.pop()
        if not self._work_units:
            self._work_available.clear()

        return Claim(
            phase=self.phase,
            unit=unit,
            iteration=self.iteration,
            checkpoint=self.checkpoint,
        )

    def complete(self, unit: int):
        """Record the successful completion of a claimed unit."""
        self.completions[unit] = self.completions.get(unit, 0) + 1
        if self.completions[unit] > 1:
            logger.warning(f"Unit {unit} completed {self.completions[unit]} times")

        if self.units_pending <= 0:
            logger.error(f"Completion of unit {unit} with no units pending; ignored")
            return

        self.units_pending -= 1
        if self.units_pending == 0:
            self._drained.set()

    def requeue(self, unit: int):
        """Return a claimed unit whose exchange failed."""
        self._work_units.append(unit)
        self._work_available.set()

    # Stop flag

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def request_stop(self):
        """Set the cooperative stop flag."""
        if not self._stop.is_set():
            logger.info("Stop requested")
        self._stop.set()
        # Wake idle sessions so they observe the flag
        self._work_available.set()

    async def wait_stopped(self):
        await self._stop.wait()

    # Waiting

    async def wait_drained(self) -> bool:
        """
        Wait until every unit of the current phase has completed.

        Returns:
            True if drained, False if a stop was requested first
        """
        if self.stopped or self._drained.is_set():
            return not self.stopped

        drained = asyncio.create_task(self._drained.wait())
        stopped = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({drained, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            drained.cancel()
            stopped.cancel()

        return not self.stopped

    async def wait_for_work(self, timeout: float):
        """Wait up to timeout seconds for a unit to become claimable."""
        if self._work_available.is_set():
            return
        try:
            await asyncio.wait_for(self._work_available.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    # Introspection

    @property
    def queue_depth(self) -> int:
        return len(self._work_units)

    def queued_units(self) -> List[int]:
        """Copy of the units currently waiting in the queue."""
        return list(self._work_units)

    def snapshot(self) -> Dict[str, Any]:
        """Status dictionary for API responses."""
        return {
            'phase': self.phase.value,
            'iteration': self.iteration,
            'units_issued': self.units_issued,
            'units_pending': self.units_pending,
            'queue_depth': self.queue_depth,
            'stopped': self.stopped,
            'checkpoint': self.checkpoint.to_dict() if self.checkpoint else None,
        }
