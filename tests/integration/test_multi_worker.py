"""
Integration tests with a coordinator and several workers.

Everything runs on one event loop over real loopback connections and a
checkpoint file in a temporary directory standing in for the shared
filesystem.
"""

import asyncio
from unittest.mock import patch

import pytest
import torch

from communication.protocol import Command, read_command, read_resync, read_unit
from coordinator.config import CoordinatorConfig
from coordinator.service import CoordinatorService
from core.checkpoint import CheckpointStore, restore_strategy
from core.dataset import make_blobs
from core.kmeans import KMeans
from worker.client import ClientAgent
from worker.config import WorkerConfig


BLOB_CENTERS = [[0.0, 0.0], [12.0, 0.0], [0.0, 12.0]]


@pytest.fixture
def data():
    points, _ = make_blobs(2500, centers=BLOB_CENTERS, std=1.0, seed=11)
    return points


def coordinator_config(tmp_path, **kwargs):
    values = dict(
        host="127.0.0.1",
        port=0,
        block_size=1000,
        checkpoint_path=str(tmp_path / "model.ckpt"),
        accept_wake_interval=0.1,
        idle_interval=0.05,
        io_timeout=10.0,
    )
    values.update(kwargs)
    return CoordinatorConfig(**values)


def worker_agent(tmp_path, port, data, name):
    config = WorkerConfig(
        worker_id=name,
        coordinator_host="127.0.0.1",
        coordinator_port=port,
        connect_timeout=5.0,
        checkpoint_path=str(tmp_path / "model.ckpt"),
        resync_timeout=10.0,
        resync_poll_interval=0.02,
    )
    return ClientAgent(config, data=data)


def seeded_kmeans():
    strategy = KMeans(k=3)
    strategy.centers = torch.tensor([[1.0, 1.0], [10.0, 1.0], [1.0, 10.0]])
    return strategy


@pytest.mark.asyncio
async def test_two_workers_converge(tmp_path, data):
    """Test two workers share the units and the run converges."""
    service = CoordinatorService(coordinator_config(tmp_path), data=data, strategy=seeded_kmeans())
    await service.start()

    agents = [worker_agent(tmp_path, service.port, data, f"worker_{i}") for i in range(2)]
    workers = [asyncio.create_task(agent.run()) for agent in agents]
    for _ in range(500):
        if service.acceptor.connections_accepted == 2:
            break
        await asyncio.sleep(0.01)

    try:
        converged = await asyncio.wait_for(service.driver.run(), 60.0)
    finally:
        await service.stop()
    await asyncio.wait_for(asyncio.gather(*workers), 10.0)

    assert converged is True
    assert service.acceptor.connections_accepted == 2
    assert sum(agent.commands_handled for agent in agents) > 0
    assert service.state.units_pending == 0

    centers = sorted(service.driver.strategy.centers.round().tolist())
    assert centers == sorted(BLOB_CENTERS)

    # Final checkpoint holds the converged model
    final = restore_strategy(CheckpointStore(tmp_path / "model.ckpt").load())
    assert torch.equal(final.centers, service.driver.strategy.centers)


@pytest.mark.asyncio
async def test_worker_loss_requeues_unit(tmp_path, data):
    """Test a worker vanishing mid-unit has its unit redone by another."""
    service = CoordinatorService(coordinator_config(tmp_path), data=data, strategy=seeded_kmeans())
    await service.start()

    # A worker that takes one estimate unit and disconnects without replying
    reader, writer = await asyncio.open_connection("127.0.0.1", service.port)

    with patch.object(service.state, "requeue", wraps=service.state.requeue) as requeue:
        driver = asyncio.create_task(service.driver.run())

        assert await asyncio.wait_for(read_command(reader), 5.0) == Command.RESYNC
        await read_resync(reader)
        assert await read_command(reader) == Command.ESTIMATE
        lost_unit = await read_unit(reader)
        writer.close()

        for _ in range(200):
            if requeue.called:
                break
            await asyncio.sleep(0.01)

        agent = worker_agent(tmp_path, service.port, data, "survivor")
        worker = asyncio.create_task(agent.run())

        try:
            converged = await asyncio.wait_for(driver, 60.0)
        finally:
            await service.stop()
        await asyncio.wait_for(worker, 10.0)

    requeue.assert_called_once_with(lost_unit)
    assert converged is True
    assert service.acceptor.connections_accepted == 2


@pytest.mark.asyncio
async def test_gaussian_mixture_iterations(tmp_path, data):
    """Test the mixture strategy runs capped iterations across workers."""
    config = coordinator_config(
        tmp_path,
        strategy="gaussian_mixture",
        strategy_options={'initial_k': 3, 'max_k': 3, 'seed': 0},
        max_iterations=3,
    )
    service = CoordinatorService(config, data=data)
    await service.start()

    agents = [worker_agent(tmp_path, service.port, data, f"worker_{i}") for i in range(2)]
    workers = [asyncio.create_task(agent.run()) for agent in agents]
    for _ in range(500):
        if service.acceptor.connections_accepted == 2:
            break
        await asyncio.sleep(0.01)

    try:
        await asyncio.wait_for(service.driver.run(), 60.0)
    finally:
        await service.stop()
    await asyncio.wait_for(asyncio.gather(*workers), 10.0)

    driver = service.driver
    assert 1 <= driver.iteration <= 3
    assert len(driver.history) == driver.iteration
    assert driver.num_clusters >= 1
    assert sum(agent.commands_handled for agent in agents) > 0


@pytest.mark.asyncio
async def test_stop_during_run(tmp_path, data):
    """Test a stop request with no workers ends the run without convergence."""
    service = CoordinatorService(coordinator_config(tmp_path), data=data, strategy=seeded_kmeans())

    run = asyncio.create_task(service.run())
    for _ in range(200):
        if service.state.units_pending:
            break
        await asyncio.sleep(0.01)

    service.state.request_stop()

    assert await asyncio.wait_for(run, 5.0) is False
    assert service.driver.history == []
