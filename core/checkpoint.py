"""
Checkpoint store for the clustering coordinator.

The coordinator serializes its full model to a well-known path at the start
of every iteration. Workers use the same file to resynchronize: the
coordinator tells them the size and modification time it observed after
writing, and a worker polls the (network-shared) path until it sees a copy
at least that fresh before reading it.

This relies on the shared filesystem propagating writes within a bounded,
externally known delay (resync_timeout on the worker).
"""

import asyncio
import io
import os
import sys
import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Union

import torch

from core.strategy import ClusteringStrategy, create_strategy


logger = logging.getLogger(__name__)


class ResyncTimeoutError(TimeoutError):
    """A fresh enough checkpoint did not appear within the resync timeout."""


@dataclass
class CheckpointRecord:
    """Freshness stamp of the most recent checkpoint write."""
    size: int
    mtime: float
    iteration: int = 0

    def is_satisfied_by(self, size: int, mtime: float) -> bool:
        """True if an observed file is at least as fresh as this record."""
        return size >= self.size and mtime >= self.mtime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'size': self.size,
            'mtime': self.mtime,
            'iteration': self.iteration,
        }


def build_checkpoint(
    strategy: ClusteringStrategy,
    iteration: int,
    block_size: int,
    num_rows: int
) -> Dict[str, Any]:
    """
    Assemble the checkpoint payload for a strategy.

    Args:
        strategy: Strategy holding the model
        iteration: Iteration the checkpoint starts
        block_size: Rows per estimate work unit
        num_rows: Number of rows in the data set

    Returns:
        Checkpoint dictionary
    """
    return {
        'strategy': strategy.name,
        'iteration': iteration,
        'block_size': block_size,
        'num_rows': num_rows,
        'state': strategy.state_dict(),
    }


def restore_strategy(checkpoint: Dict[str, Any]) -> ClusteringStrategy:
    """
    Rebuild a strategy from a checkpoint payload.

    Args:
        checkpoint: Dictionary produced by build_checkpoint()

    Returns:
        Strategy with the checkpointed model loaded
    """
    strategy = create_strategy(checkpoint['strategy'])
    strategy.load_state_dict(checkpoint['state'])
    return strategy


class CheckpointStore:
    """
    Reads and writes checkpoints at a single path.

    When no path is configured, writes go to standard output instead
    (rewound first when it is seekable, so a redirected file holds only the
    latest snapshot). Such a store cannot be read back.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        stream: Optional[BinaryIO] = None
    ):
        """
        Args:
            path: Checkpoint file path, or None for stream output
            stream: Output stream used when path is None (default: stdout)
        """
        self.path = Path(path) if path is not None else None
        self._stream = stream
        self.last_record: Optional[CheckpointRecord] = None

    def write(self, checkpoint: Dict[str, Any]) -> CheckpointRecord:
        """
        Write a checkpoint, replacing the previous one.

        Args:
            checkpoint: Payload from build_checkpoint()

        Returns:
            Freshness record for inclusion in resync messages
        """
        buffer = io.BytesIO()
        torch.save(checkpoint, buffer)
        payload = buffer.getvalue()
        iteration = checkpoint.get('iteration', 0)

        if self.path is None:
            record = self._write_stream(payload, iteration)
        else:
            record = self._write_file(payload, iteration)

        self.last_record = record
        logger.info(
            f"Checkpoint written: iteration={iteration} size={record.size} "
            f"mtime={record.mtime:.6f}"
        )
        return record

    def _write_file(self, payload: bytes, iteration: int) -> CheckpointRecord:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")

        with open(temp_path, 'wb') as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self.path)

        stats = os.stat(self.path)
        return CheckpointRecord(size=stats.st_size, mtime=stats.st_mtime, iteration=iteration)

    def _write_stream(self, payload: bytes, iteration: int) -> CheckpointRecord:
        stream = self._stream if self._stream is not None else sys.stdout.buffer

        if stream.seekable():
            stream.seek(0)
            stream.truncate()
        stream.write(payload)
        stream.flush()

        return CheckpointRecord(size=len(payload), mtime=time.time(), iteration=iteration)

    def load(self) -> Dict[str, Any]:
        """
        Read the checkpoint at the configured path.

        Raises:
            RuntimeError: If this store writes to a stream
            FileNotFoundError: If no checkpoint exists yet
        """
        if self.path is None:
            raise RuntimeError("Checkpoint store has no path to read from")

        checkpoint = torch.load(self.path, weights_only=True)
        logger.debug(f"Checkpoint loaded: {self.path} (iteration {checkpoint.get('iteration')})")
        return checkpoint

    def observe(self) -> Optional[os.stat_result]:
        """Stat the checkpoint file, or None if it does not exist yet."""
        try:
            return os.stat(self.path)
        except FileNotFoundError:
            return None

    async def wait_until_fresh(
        self,
        expected: CheckpointRecord,
        timeout: float = 120.0,
        poll_interval: float = 1.0
    ) -> os.stat_result:
        """
        Poll the checkpoint path until it is at least as fresh as expected.

        Args:
            expected: Size and mtime announced by the coordinator
            timeout: Overall bound in seconds
            poll_interval: Seconds between polls

        Returns:
            The stat result that satisfied the gate

        Raises:
            ResyncTimeoutError: If the timeout elapses first
        """
        if self.path is None:
            raise RuntimeError("Checkpoint store has no path to poll")

        start = time.monotonic()
        while True:
            stats = self.observe()
            if stats is not None:
                logger.debug(
                    f"Checking checkpoint: size={stats.st_size} mtime={stats.st_mtime:.6f} "
                    f"(expecting size={expected.size} mtime={expected.mtime:.6f})"
                )
                if expected.is_satisfied_by(stats.st_size, stats.st_mtime):
                    return stats

            if time.monotonic() - start > timeout:
                raise ResyncTimeoutError(
                    f"Checkpoint {self.path} not synchronized after {timeout:.1f}s "
                    f"(expected size>={expected.size}, mtime>={expected.mtime:.6f})"
                )

            await asyncio.sleep(poll_interval)

    async def resync(
        self,
        expected: CheckpointRecord,
        timeout: float = 120.0,
        poll_interval: float = 1.0
    ) -> Dict[str, Any]:
        """
        Wait for a fresh checkpoint, then load it.

        Returns:
            Checkpoint payload
        """
        await self.wait_until_fresh(expected, timeout=timeout, poll_interval=poll_interval)
        return self.load()
