"""
Per-connection session handler.

Drives the wire protocol with one worker: claim a unit, make sure the worker
has resynced to the current iteration, send the phase's command, apply the
reply. Any failure of the exchange puts the unit back in the queue and ends
the session; the worker (or another one) reconnects to pick the work up.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from communication.protocol import (
    ProtocolError,
    encode_estimate,
    encode_maximize,
    encode_resync,
    read_maximize_reply,
    read_tensor,
    send,
)
from coordinator.phase_state import Claim, Phase, PhaseState

if TYPE_CHECKING:
    from coordinator.driver import IterationDriver


logger = logging.getLogger(__name__)


# Exceptions that mean the peer (or the link to it) failed mid-exchange
PEER_FAILURES = (
    asyncio.IncompleteReadError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
    ProtocolError,
)


class SessionHandler:
    """Protocol driver for one worker connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str,
        state: PhaseState,
        driver: 'IterationDriver',
        io_timeout: float = 60.0,
        idle_interval: float = 1.0,
        resync_timeout: float = 120.0
    ):
        """
        Args:
            reader: Stream from the worker
            writer: Stream to the worker
            peer: Printable peer address
            state: Shared phase state
            driver: Iteration driver owning the model and membership matrix
            io_timeout: Bound on every read and write
            idle_interval: Max wait when no unit is claimable
            resync_timeout: Extra time allowed for the first reply after a
                resync, while the worker waits for the checkpoint to appear
        """
        self.reader = reader
        self.writer = writer
        self.peer = peer
        self.state = state
        self.driver = driver
        self.io_timeout = io_timeout
        self.idle_interval = idle_interval
        self.resync_timeout = resync_timeout

        # Iteration whose checkpoint this worker was last told to load
        self.last_iteration = -1
        self.units_completed = 0

    async def run(self):
        """Serve units until the connection fails or stop is requested."""
        logger.info(f"{self.peer} session started")

        try:
            while not self.state.stopped:
                claim = self.state.claim()
                if claim is None:
                    await self.state.wait_for_work(self.idle_interval)
                    continue

                try:
                    await self._exchange(claim)
                except PEER_FAILURES as e:
                    self.state.requeue(claim.unit)
                    logger.warning(
                        f"{self.peer} put back {claim.phase.value} unit {claim.unit}: {e!r}"
                    )
                    break

                self.state.complete(claim.unit)
                self.units_completed += 1
        finally:
            await self._close()
            logger.info(f"{self.peer} session ended ({self.units_completed} units completed)")

    async def _exchange(self, claim: Claim):
        """One request/reply round for a claimed unit."""
        reply_timeout = self.io_timeout
        if claim.iteration != self.last_iteration:
            await send(self.writer, encode_resync(claim.checkpoint), self.io_timeout)
            self.last_iteration = claim.iteration
            reply_timeout += self.resync_timeout
            logger.debug(f"{self.peer} told to resync to iteration {claim.iteration}")

        if claim.phase == Phase.ESTIMATING:
            begin, end = self.driver.unit_range(claim.unit)
            await send(self.writer, encode_estimate(claim.unit), self.io_timeout)
            block = await read_tensor(
                self.reader,
                expected_shape=(self.driver.num_clusters, end - begin),
                timeout=reply_timeout
            )
            self.driver.apply_estimate(claim.unit, block)
            logger.debug(f"{self.peer} estimated rows {begin}-{end - 1}")

        elif claim.phase == Phase.MAXIMIZING:
            row = self.driver.member_row(claim.unit)
            await send(self.writer, encode_maximize(claim.unit, row), self.io_timeout)
            change, params = await read_maximize_reply(self.reader, timeout=reply_timeout)
            self.driver.apply_update(claim.unit, change, params)
            logger.debug(f"{self.peer} maximized cluster {claim.unit}: change={change:.6f}")

        else:
            raise ProtocolError(f"No work is defined for phase {claim.phase.value}")

    async def _close(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
