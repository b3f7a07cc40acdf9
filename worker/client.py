"""
Worker client for Cohort distributed clustering.

Connects once to the coordinator and then executes its commands until the
connection ends:

- resync: wait for the shared checkpoint to catch up, then reload the model
- estimate: compute membership for one block of rows and send it back
- maximize: re-estimate one cluster from its membership row, send it back

Usage:
    cohort-worker --coordinator host:60000 --checkpoint /shared/model.ckpt --data points.npy
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import torch

from communication.protocol import (
    Command,
    ProtocolError,
    encode_estimate_reply,
    encode_maximize_reply,
    read_command,
    read_resync,
    read_tensor,
    read_unit,
    send,
)
from core.checkpoint import CheckpointStore, ResyncTimeoutError, restore_strategy
from core.dataset import load_dataset
from core.strategy import ClusteringStrategy
from worker.config import WorkerConfig


logger = logging.getLogger(__name__)


class ConnectionLostError(ConnectionError):
    """The coordinator connection ended in the middle of a command."""


class ClientAgent:
    """
    Single-connection command loop run on each worker host.

    State machine: idle -> awaiting command -> executing -> idle. Any
    unrecognized command or I/O failure ends the loop.
    """

    def __init__(self, config: WorkerConfig, data: Optional[torch.Tensor] = None):
        """
        Args:
            config: Worker configuration
            data: Data set; loaded from config.data_path if None
        """
        self.config = config

        if data is None:
            if not config.data_path:
                raise ValueError("No data given and no data_path configured")
            data = load_dataset(config.data_path)
        self.data = data.float().contiguous()

        self.store = CheckpointStore(config.checkpoint_path) if config.checkpoint_path else None
        self.strategy: Optional[ClusteringStrategy] = None
        self.iteration = -1
        self.block_size = 0

        self.state = "idle"
        self.commands_handled = 0
        self.last_command: Optional[Command] = None

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def connect(self):
        """Open the connection to the coordinator."""
        host, port = self.config.coordinator_host, self.config.coordinator_port
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            self.config.connect_timeout
        )
        logger.info(f"Connection complete: {host}:{port} ({self.config.hostname})")

    async def run(self):
        """
        Serve commands until the coordinator closes the connection.

        Raises:
            ResyncTimeoutError: If a resync could not complete in time
            ProtocolError: On an unrecognized command or malformed message
            ConnectionLostError: If the connection ends mid-command
        """
        if self._reader is None:
            await self.connect()

        try:
            while True:
                self.state = "awaiting"
                command = await read_command(self._reader, self.config.io_timeout)
                if command is None:
                    if self.last_command in (Command.ESTIMATE, Command.MAXIMIZE):
                        # Also what a coordinator that timed out on our reply looks like
                        logger.warning(
                            f"Coordinator closed the connection after replying to "
                            f"{self.last_command.name.lower()}"
                        )
                    else:
                        logger.info("Coordinator closed the connection")
                    break

                self.state = "executing"
                try:
                    await self._dispatch(command)
                except asyncio.IncompleteReadError as e:
                    raise ConnectionLostError(
                        f"Connection closed during {command.name.lower()}"
                    ) from e

                self.commands_handled += 1
                self.last_command = command
                self.state = "idle"
        finally:
            self.state = "closed"
            await self.close()

    async def _dispatch(self, command: Command):
        if command == Command.RESYNC:
            await self._resync()
        elif command == Command.ESTIMATE:
            await self._estimate()
        elif command == Command.MAXIMIZE:
            await self._maximize()
        else:
            raise ProtocolError(f"Unrecognized command: {command}")

    async def _resync(self):
        expected = await read_resync(self._reader, self.config.io_timeout)
        logger.info(f"Resync requested: size={expected.size} mtime={expected.mtime:.6f}")

        if self.store is None:
            raise ResyncTimeoutError("No checkpoint path configured; cannot resync")

        checkpoint = await self.store.resync(
            expected,
            timeout=self.config.resync_timeout,
            poll_interval=self.config.resync_poll_interval,
        )
        self.load_checkpoint(checkpoint)

    def load_checkpoint(self, checkpoint):
        """Install the model and blocking parameters from a checkpoint."""
        if checkpoint['num_rows'] != self.data.shape[0]:
            raise ProtocolError(
                f"Checkpoint is for {checkpoint['num_rows']} rows, "
                f"local data has {self.data.shape[0]}"
            )
        self.strategy = restore_strategy(checkpoint)
        self.iteration = checkpoint['iteration']
        self.block_size = checkpoint['block_size']
        logger.info(
            f"Loaded iteration {self.iteration}: {self.strategy.num_clusters} clusters"
        )

    def _require_model(self):
        if self.strategy is None:
            raise ProtocolError("Work received before any resync")

    async def _estimate(self):
        unit = await read_unit(self._reader, self.config.io_timeout)
        self._require_model()

        begin = unit * self.block_size
        end = min(begin + self.block_size, self.data.shape[0])
        if begin >= end:
            raise ProtocolError(f"Estimate unit {unit} is outside the data set")

        logger.debug(f"Estimating unit {unit}: rows {begin}-{end - 1}")
        block = self.strategy.estimate(self.data, begin, end)
        await send(self._writer, encode_estimate_reply(block), self.config.io_timeout)

    async def _maximize(self):
        unit = await read_unit(self._reader, self.config.io_timeout)
        self._require_model()
        row = await read_tensor(
            self._reader,
            expected_shape=(self.data.shape[0],),
            timeout=self.config.io_timeout
        )
        if unit >= self.strategy.num_clusters:
            raise ProtocolError(f"Maximize unit {unit} is not a known cluster")

        logger.debug(f"Maximizing cluster {unit}")
        change, params = self.strategy.update(self.data, row, unit)
        await send(self._writer, encode_maximize_reply(change, params), self.config.io_timeout)

    async def close(self):
        """Close the coordinator connection."""
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        self._writer = None


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure root logging for the worker process."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


async def main(config: WorkerConfig) -> int:
    """
    Run one worker until the coordinator goes away.

    Returns:
        Process exit status: 0 when the coordinator closed the connection
        between commands, 1 on any fatal condition
    """
    agent = ClientAgent(config)

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, task.cancel)

    try:
        await agent.run()
    except ResyncTimeoutError as e:
        logger.error(f"Checkpoint took too long to synchronize: {e}")
        return 1
    except ProtocolError as e:
        logger.error(f"Exiting due to protocol error: {e}")
        return 1
    except (ConnectionError, OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
        logger.error(f"Exiting due to bad connection: {e!r}")
        return 1
    except asyncio.CancelledError:
        logger.info("Interrupted")
        return 1

    logger.info(f"Worker done after {agent.commands_handled} commands")
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cohort distributed clustering worker")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--coordinator", help="Coordinator address as host:port")
    parser.add_argument("--checkpoint", help="Checkpoint path on the shared filesystem")
    parser.add_argument("--data", help="Data set path (.npy, .pt or text)")
    parser.add_argument("--resync-timeout", type=float, help="Seconds to wait for a checkpoint")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> WorkerConfig:
    """Merge a JSON config file with command-line overrides."""
    config = WorkerConfig.from_json_file(args.config) if args.config else WorkerConfig()

    if args.coordinator:
        host, _, port = args.coordinator.rpartition(":")
        if host:
            config.coordinator_host = host
            config.coordinator_port = int(port)
        else:
            config.coordinator_host = args.coordinator
    if args.checkpoint:
        config.checkpoint_path = args.checkpoint
    if args.data:
        config.data_path = args.data
    if args.resync_timeout:
        config.resync_timeout = args.resync_timeout
    if args.log_level:
        config.log_level = args.log_level

    return config


def cli(argv=None) -> int:
    """Console entry point."""
    config = build_config(parse_args(argv))
    setup_logging(config.log_level, config.log_file)
    logger.info(f"Starting worker: {config}")
    return asyncio.run(main(config))


if __name__ == "__main__":
    sys.exit(cli())
