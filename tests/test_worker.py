"""
Unit tests for worker components.

Tests:
- Configuration
- Client agent command loop against a scripted coordinator
- Command-line entry point
"""

import asyncio
import logging
import struct

import pytest
import torch

from communication.protocol import (
    Command,
    ProtocolError,
    encode_estimate,
    encode_maximize,
    encode_resync,
    read_maximize_reply,
    read_tensor,
)
from core.checkpoint import (
    CheckpointRecord,
    CheckpointStore,
    ResyncTimeoutError,
    build_checkpoint,
)
from core.dataset import make_blobs, save_dataset
from core.kmeans import KMeans
from worker.client import ClientAgent, ConnectionLostError, build_config, main, parse_args
from worker.config import WorkerConfig


NUM_ROWS = 30
BLOCK_SIZE = 10


@pytest.fixture
def data():
    points, _ = make_blobs(NUM_ROWS, centers=[[0.0, 0.0], [10.0, 10.0]], std=0.5, seed=1)
    return points


@pytest.fixture
def checkpoint(tmp_path, data):
    """Checkpoint file for a two-cluster model; yields (path, record)."""
    strategy = KMeans(k=2)
    strategy.centers = torch.tensor([[0.0, 0.0], [10.0, 10.0]])
    store = CheckpointStore(tmp_path / "model.ckpt")
    record = store.write(
        build_checkpoint(strategy, iteration=0, block_size=BLOCK_SIZE, num_rows=NUM_ROWS)
    )
    return tmp_path / "model.ckpt", record


async def scripted_coordinator(script):
    """
    Start a one-connection server running script(reader, writer).

    Returns:
        (server, port, task result future)
    """
    done = asyncio.get_running_loop().create_future()

    async def handle(reader, writer):
        try:
            done.set_result(await script(reader, writer))
        except Exception as e:
            done.set_exception(e)
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port, done


def make_config(port, checkpoint_path=None, **kwargs):
    return WorkerConfig(
        worker_id="test_worker",
        coordinator_host="127.0.0.1",
        coordinator_port=port,
        connect_timeout=2.0,
        io_timeout=5.0,
        checkpoint_path=str(checkpoint_path) if checkpoint_path else None,
        resync_poll_interval=0.05,
        **kwargs
    )


class TestWorkerConfig:
    """Test worker configuration."""

    def test_default_config(self):
        """Test default configuration values."""
        config = WorkerConfig()

        assert config.worker_id.startswith("worker_")
        assert config.coordinator_host == "localhost"
        assert config.coordinator_port == 60000
        assert config.io_timeout is None
        assert config.resync_timeout == 120.0

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            WorkerConfig(coordinator_port=0)
        with pytest.raises(ValueError):
            WorkerConfig(resync_timeout=0)

    def test_json_round_trip(self, tmp_path):
        """Test saving and loading configuration."""
        config = WorkerConfig(worker_id="w1", checkpoint_path="/shared/model.ckpt")
        path = tmp_path / "worker.json"

        config.to_json_file(str(path))
        loaded = WorkerConfig.from_json_file(str(path))

        assert loaded.to_dict() == config.to_dict()

    def test_build_config_from_args(self):
        """Test host:port parsing and overrides."""
        args = parse_args([
            "--coordinator", "head-node:61000",
            "--checkpoint", "/shared/model.ckpt",
            "--resync-timeout", "30",
        ])
        config = build_config(args)

        assert config.coordinator_host == "head-node"
        assert config.coordinator_port == 61000
        assert config.checkpoint_path == "/shared/model.ckpt"
        assert config.resync_timeout == 30.0


class TestClientAgent:
    """Test the worker command loop."""

    @pytest.mark.asyncio
    async def test_resync_estimate_maximize(self, data, checkpoint):
        """Test a full command sequence and the replies sent back."""
        path, record = checkpoint

        async def script(reader, writer):
            writer.write(encode_resync(record))
            writer.write(encode_estimate(2))
            await writer.drain()
            block = await read_tensor(reader, expected_shape=(2, BLOCK_SIZE))

            row = torch.zeros(NUM_ROWS)
            row[:5] = 1.0
            writer.write(encode_maximize(1, row))
            await writer.drain()
            change, params = await read_maximize_reply(reader)
            return block, change, params

        server, port, done = await scripted_coordinator(script)
        agent = ClientAgent(make_config(port, path), data=data)
        async with server:
            await asyncio.wait_for(agent.run(), 5.0)
            block, change, params = await done

        assert torch.equal(block, agent.strategy.estimate(data, 20, 30))
        assert torch.equal(block.sum(dim=0), torch.ones(BLOCK_SIZE))
        assert torch.allclose(params[0], data[:5].mean(dim=0), atol=1e-5)
        assert change == pytest.approx(
            float(torch.linalg.vector_norm(data[:5].mean(dim=0) - torch.tensor([10.0, 10.0]))),
            rel=1e-5
        )
        assert agent.iteration == 0
        assert agent.block_size == BLOCK_SIZE
        assert agent.commands_handled == 3
        assert agent.state == "closed"

    @pytest.mark.asyncio
    async def test_close_after_reply_warns(self, data, checkpoint, caplog):
        """Test a close right after a work reply is logged as a warning."""
        path, record = checkpoint

        async def script(reader, writer):
            writer.write(encode_resync(record))
            writer.write(encode_estimate(0))
            await writer.drain()
            await read_tensor(reader, expected_shape=(2, BLOCK_SIZE))

        server, port, done = await scripted_coordinator(script)
        agent = ClientAgent(make_config(port, path), data=data)
        with caplog.at_level(logging.INFO, logger="worker.client"):
            async with server:
                await asyncio.wait_for(agent.run(), 5.0)
                await done

        assert agent.last_command == Command.ESTIMATE
        warnings = [
            r for r in caplog.records
            if r.name == "worker.client" and r.levelno == logging.WARNING
        ]
        assert len(warnings) == 1
        assert "after replying to estimate" in warnings[0].getMessage()

    @pytest.mark.asyncio
    async def test_close_after_resync_is_quiet(self, data, checkpoint, caplog):
        """Test a close with no work outstanding is an ordinary shutdown."""
        path, record = checkpoint

        async def script(reader, writer):
            writer.write(encode_resync(record))
            await writer.drain()

        server, port, _ = await scripted_coordinator(script)
        agent = ClientAgent(make_config(port, path), data=data)
        with caplog.at_level(logging.INFO, logger="worker.client"):
            async with server:
                await asyncio.wait_for(agent.run(), 5.0)

        assert agent.last_command == Command.RESYNC
        assert not [
            r for r in caplog.records
            if r.name == "worker.client" and r.levelno >= logging.WARNING
        ]

    @pytest.mark.asyncio
    async def test_unknown_command(self, data):
        """Test an unrecognized command code ends the loop with an error."""
        async def script(reader, writer):
            writer.write(struct.pack("<i", 42))
            await writer.drain()
            await reader.read()

        server, port, _ = await scripted_coordinator(script)
        agent = ClientAgent(make_config(port), data=data)
        async with server:
            with pytest.raises(ProtocolError):
                await asyncio.wait_for(agent.run(), 5.0)

    @pytest.mark.asyncio
    async def test_resync_timeout(self, data, checkpoint):
        """Test a checkpoint that never catches up is a fatal error."""
        path, record = checkpoint
        future = CheckpointRecord(size=record.size * 10, mtime=record.mtime)

        async def script(reader, writer):
            writer.write(encode_resync(future))
            await writer.drain()
            await reader.read()

        server, port, _ = await scripted_coordinator(script)
        agent = ClientAgent(make_config(port, path, resync_timeout=0.2), data=data)
        async with server:
            with pytest.raises(ResyncTimeoutError):
                await asyncio.wait_for(agent.run(), 5.0)

        assert agent.strategy is None

    @pytest.mark.asyncio
    async def test_close_mid_command(self, data):
        """Test the connection ending inside a command is not a clean exit."""
        async def script(reader, writer):
            writer.write(struct.pack("<i", Command.ESTIMATE) + b"\x01")
            await writer.drain()

        server, port, _ = await scripted_coordinator(script)
        agent = ClientAgent(make_config(port), data=data)
        async with server:
            with pytest.raises(ConnectionLostError):
                await asyncio.wait_for(agent.run(), 5.0)

    @pytest.mark.asyncio
    async def test_work_before_resync(self, data):
        """Test work is refused until a model has been loaded."""
        async def script(reader, writer):
            writer.write(encode_estimate(0))
            await writer.drain()
            await reader.read()

        server, port, _ = await scripted_coordinator(script)
        agent = ClientAgent(make_config(port), data=data)
        async with server:
            with pytest.raises(ProtocolError):
                await asyncio.wait_for(agent.run(), 5.0)

    def test_checkpoint_for_other_data(self, data):
        """Test a checkpoint for a different row count is rejected."""
        agent = ClientAgent(WorkerConfig(), data=data)
        strategy = KMeans(k=2)
        strategy.initialize(data)

        with pytest.raises(ProtocolError):
            agent.load_checkpoint(
                build_checkpoint(strategy, iteration=0, block_size=10, num_rows=NUM_ROWS + 1)
            )

    def test_requires_data(self):
        with pytest.raises(ValueError):
            ClientAgent(WorkerConfig())


class TestMain:
    """Test process exit status."""

    @pytest.mark.asyncio
    async def test_clean_close_exits_zero(self, tmp_path, data, checkpoint):
        path, record = checkpoint
        save_dataset(data, tmp_path / "points.npy")

        async def script(reader, writer):
            writer.write(encode_resync(record))
            await writer.drain()

        server, port, _ = await scripted_coordinator(script)
        config = make_config(port, path, data_path=str(tmp_path / "points.npy"))
        async with server:
            assert await asyncio.wait_for(main(config), 5.0) == 0

    @pytest.mark.asyncio
    async def test_connect_failure_exits_one(self, tmp_path, data):
        save_dataset(data, tmp_path / "points.npy")
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        config = make_config(port, data_path=str(tmp_path / "points.npy"))
        assert await asyncio.wait_for(main(config), 5.0) == 1
