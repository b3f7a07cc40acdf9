"""
Unit tests for the checkpoint store and resync gate.
"""

import asyncio
import io
import os
import time
from unittest.mock import patch

import pytest
import torch

from core.checkpoint import (
    CheckpointRecord,
    CheckpointStore,
    ResyncTimeoutError,
    build_checkpoint,
    restore_strategy,
)
from core.kmeans import KMeans


@pytest.fixture
def strategy():
    """Initialized k-means strategy."""
    kmeans = KMeans(k=3, seed=1)
    kmeans.initialize(torch.randn(50, 2))
    return kmeans


class TestCheckpointRecord:
    """Test the freshness gate predicate."""

    def test_satisfied(self):
        record = CheckpointRecord(size=1000, mtime=50.0)
        assert record.is_satisfied_by(1000, 50.0)
        assert record.is_satisfied_by(2000, 60.0)

    def test_not_satisfied(self):
        record = CheckpointRecord(size=1000, mtime=50.0)
        assert not record.is_satisfied_by(999, 60.0)
        assert not record.is_satisfied_by(1000, 49.0)


class TestCheckpointWrite:
    """Test writing checkpoints."""

    def test_write_file(self, tmp_path, strategy):
        """Test the record matches the file on disk."""
        store = CheckpointStore(tmp_path / "model.ckpt")

        record = store.write(build_checkpoint(strategy, iteration=4, block_size=10, num_rows=50))

        stats = os.stat(tmp_path / "model.ckpt")
        assert record.size == stats.st_size
        assert record.mtime == stats.st_mtime
        assert record.iteration == 4
        assert store.last_record is record
        assert not (tmp_path / "model.ckpt.tmp").exists()

    def test_write_replaces(self, tmp_path, strategy):
        """Test each write supersedes the previous checkpoint."""
        store = CheckpointStore(tmp_path / "model.ckpt")
        store.write(build_checkpoint(strategy, iteration=0, block_size=10, num_rows=50))
        store.write(build_checkpoint(strategy, iteration=1, block_size=10, num_rows=50))

        assert store.load()['iteration'] == 1

    def test_round_trip_strategy(self, tmp_path, strategy):
        """Test a strategy rebuilt from a checkpoint has the same model."""
        store = CheckpointStore(tmp_path / "model.ckpt")
        store.write(build_checkpoint(strategy, iteration=2, block_size=10, num_rows=50))

        checkpoint = store.load()
        restored = restore_strategy(checkpoint)

        assert checkpoint['strategy'] == "kmeans"
        assert checkpoint['block_size'] == 10
        assert checkpoint['num_rows'] == 50
        assert isinstance(restored, KMeans)
        assert torch.equal(restored.centers, strategy.centers)

    def test_write_stream(self, strategy):
        """Test stream mode rewinds and records the byte count."""
        stream = io.BytesIO(b"x" * 100000)
        store = CheckpointStore(stream=stream)

        before = time.time()
        record = store.write(build_checkpoint(strategy, iteration=0, block_size=10, num_rows=50))

        assert record.size == len(stream.getvalue())
        assert record.mtime >= before
        assert not stream.getvalue().startswith(b"xxxx")

    def test_stream_store_cannot_load(self, strategy):
        """Test reading from a stream store is refused."""
        store = CheckpointStore(stream=io.BytesIO())
        with pytest.raises(RuntimeError):
            store.load()


class TestResync:
    """Test the read-side resync protocol."""

    @pytest.mark.asyncio
    async def test_resync_fresh_file(self, tmp_path, strategy):
        """Test a worker loads a checkpoint that is already fresh."""
        writer = CheckpointStore(tmp_path / "model.ckpt")
        record = writer.write(build_checkpoint(strategy, iteration=3, block_size=10, num_rows=50))

        reader = CheckpointStore(tmp_path / "model.ckpt")
        checkpoint = await reader.resync(record, timeout=1.0, poll_interval=0.01)

        assert checkpoint['iteration'] == 3

    @pytest.mark.asyncio
    async def test_resync_waits_for_file(self, tmp_path, strategy):
        """Test polling continues until the file appears."""
        path = tmp_path / "model.ckpt"
        reader = CheckpointStore(path)
        expected = CheckpointRecord(size=1, mtime=0.0)

        waiter = asyncio.create_task(reader.resync(expected, timeout=5.0, poll_interval=0.01))
        await asyncio.sleep(0.05)
        assert not waiter.done()

        CheckpointStore(path).write(build_checkpoint(strategy, iteration=1, block_size=10, num_rows=50))

        checkpoint = await asyncio.wait_for(waiter, 5.0)
        assert checkpoint['iteration'] == 1

    @pytest.mark.asyncio
    async def test_resync_gate_times_out(self, tmp_path):
        """Test a file that never gets fresh enough is never loaded."""
        path = tmp_path / "model.ckpt"
        path.write_bytes(b"\0" * 10)
        stale = os.stat(path)
        expected = CheckpointRecord(size=1000, mtime=stale.st_mtime)

        store = CheckpointStore(path)
        with patch.object(store, "load") as load:
            with pytest.raises(ResyncTimeoutError):
                await store.resync(expected, timeout=0.1, poll_interval=0.02)
            load.assert_not_called()

    @pytest.mark.asyncio
    async def test_resync_gate_rejects_old_mtime(self, tmp_path):
        """Test a large enough but older file does not pass the gate."""
        path = tmp_path / "model.ckpt"
        path.write_bytes(b"\0" * 2000)
        stale = os.stat(path)
        expected = CheckpointRecord(size=1000, mtime=stale.st_mtime + 60.0)

        store = CheckpointStore(path)
        with pytest.raises(ResyncTimeoutError):
            await store.wait_until_fresh(expected, timeout=0.1, poll_interval=0.02)
