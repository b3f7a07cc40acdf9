"""
Coordinator process for Cohort distributed clustering.

Wires together the listener, the session handlers, the iteration driver and
the optional status API, and provides the `cohort-coordinator` entry point.

Usage:
    cohort-coordinator --data points.npy --checkpoint /shared/model.ckpt
    cohort-coordinator --config coordinator.json --port 60000 --last-port 60010
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import BinaryIO, Optional

import torch

from coordinator import server as status_api
from coordinator.acceptor import Acceptor, BindError, ListenerError, bind_listener
from coordinator.config import CoordinatorConfig
from coordinator.driver import IterationDriver
from coordinator.phase_state import PhaseState
from coordinator.session import SessionHandler
from core.checkpoint import CheckpointStore, restore_strategy
from core.dataset import load_dataset
from core.strategy import ClusteringStrategy, create_strategy, list_strategies


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure root logging for a Cohort process.

    Args:
        level: Log level name
        log_file: Optional file to log to in addition to stderr
    """
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


class CoordinatorService:
    """
    One distributed clustering run.

    Binding happens in start(), before any work is queued, so a startup
    failure is reported before the computation begins.
    """

    def __init__(
        self,
        config: CoordinatorConfig,
        data: Optional[torch.Tensor] = None,
        strategy: Optional[ClusteringStrategy] = None,
        checkpoint_stream: Optional[BinaryIO] = None
    ):
        """
        Args:
            config: Coordinator configuration
            data: Data set; loaded from config.data_path if None
            strategy: Strategy instance; built from config if None
            checkpoint_stream: Output used when no checkpoint path is set
        """
        self.config = config

        if data is None:
            if not config.data_path:
                raise ValueError("No data given and no data_path configured")
            data = load_dataset(config.data_path)

        if strategy is None:
            strategy = create_strategy(config.strategy, **config.strategy_options)

        self.state = PhaseState()
        self.store = CheckpointStore(config.checkpoint_path, stream=checkpoint_stream)
        self.driver = IterationDriver(
            strategy,
            data,
            self.state,
            self.store,
            block_size=config.block_size,
            max_iterations=config.max_iterations,
        )

        self.acceptor: Optional[Acceptor] = None
        self._acceptor_task: Optional[asyncio.Task] = None
        self._status_server = None
        self._status_task: Optional[asyncio.Task] = None

    @property
    def port(self) -> Optional[int]:
        """Port the worker listener is bound to."""
        return self.acceptor.port if self.acceptor else None

    async def _serve_session(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str
    ):
        handler = SessionHandler(
            reader,
            writer,
            peer,
            self.state,
            self.driver,
            io_timeout=self.config.io_timeout,
            idle_interval=self.config.idle_interval,
            resync_timeout=self.config.resync_timeout,
        )
        await handler.run()

    async def start(self):
        """
        Bind the listener and start accepting workers.

        Raises:
            BindError: If no port could be bound within the scan timeout
        """
        sock, port = await bind_listener(
            self.config.host,
            self.config.port,
            last_port=self.config.last_port,
            scan_timeout=self.config.scan_timeout,
            rescan_interval=self.config.rescan_interval,
        )

        self.acceptor = Acceptor(
            sock,
            self.state,
            self._serve_session,
            wake_interval=self.config.accept_wake_interval,
        )
        self._acceptor_task = asyncio.create_task(self.acceptor.run())
        self._acceptor_task.add_done_callback(self._on_acceptor_done)

        status_api.attach(self.state, self.driver, self.acceptor)
        if self.config.status_port is not None:
            self._status_server = status_api.create_status_server(
                self.config.status_host, self.config.status_port
            )
            self._status_task = asyncio.create_task(self._status_server.serve())
            logger.info(
                f"Status API on http://{self.config.status_host}:{self.config.status_port}"
            )

        logger.info(f"Coordinator ready for workers on port {port}")

    def _on_acceptor_done(self, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            # Without a listener no new worker can join; end the run
            self.state.request_stop()

    async def run(self) -> bool:
        """
        Run the computation to completion.

        Returns:
            True if the model converged

        Raises:
            BindError: On startup failure
            ListenerError: If the listening socket failed during the run
            ValueError: If the strategy cannot model the data
        """
        await self.start()
        try:
            converged = await self.driver.run()
        finally:
            await self.stop()

        if self._acceptor_task is not None and not self._acceptor_task.cancelled():
            error = self._acceptor_task.exception()
            if error is not None:
                raise error

        return converged

    async def stop(self):
        """Set the stop flag and wait for the listener and all sessions."""
        self.state.request_stop()

        if self._acceptor_task is not None:
            await asyncio.gather(self._acceptor_task, return_exceptions=True)
        if self.acceptor is not None:
            await self.acceptor.wait_sessions()

        if self._status_server is not None:
            self._status_server.should_exit = True
            await asyncio.gather(self._status_task, return_exceptions=True)

        logger.info("Coordinator stopped")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cohort distributed clustering coordinator")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--data", help="Data set path (.npy, .pt or text)")
    parser.add_argument("--checkpoint", help="Checkpoint path on the shared filesystem")
    parser.add_argument("--resume", action="store_true",
                        help="Start from the model in the existing checkpoint")
    parser.add_argument("--host", help="Interface for the worker listener")
    parser.add_argument("--port", type=int, help="First port to try")
    parser.add_argument("--last-port", type=int, help="Last port to try")
    parser.add_argument("--block-size", type=int, help="Rows per estimate work unit")
    parser.add_argument("--strategy", choices=list_strategies(), help="Clustering strategy")
    parser.add_argument("--options", help="Strategy options as a JSON object")
    parser.add_argument("--max-iterations", type=int, help="Iteration cap (0 for none)")
    parser.add_argument("--resync-timeout", type=float,
                        help="Seconds a worker may take to load each checkpoint")
    parser.add_argument("--status-port", type=int, help="Enable the status API on this port")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CoordinatorConfig:
    """Merge a JSON config file with command-line overrides."""
    values = {}
    if args.config:
        with open(args.config, 'r') as f:
            values = json.load(f)

    overrides = {
        'data_path': args.data,
        'checkpoint_path': args.checkpoint,
        'host': args.host,
        'port': args.port,
        'last_port': args.last_port,
        'block_size': args.block_size,
        'strategy': args.strategy,
        'strategy_options': json.loads(args.options) if args.options else None,
        'max_iterations': args.max_iterations,
        'resync_timeout': args.resync_timeout,
        'status_port': args.status_port,
        'log_level': args.log_level,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return CoordinatorConfig.from_dict(values)


async def main(config: CoordinatorConfig, resume: bool = False) -> int:
    """
    Run a coordinator until it converges or is stopped.

    Returns:
        Process exit status
    """
    strategy = None
    if resume:
        if not config.checkpoint_path:
            logger.error("--resume needs a checkpoint path")
            return 1
        strategy = restore_strategy(CheckpointStore(config.checkpoint_path).load())
        logger.info(f"Resuming from {config.checkpoint_path}: {strategy}")

    service = CoordinatorService(config, strategy=strategy)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, service.state.request_stop)

    try:
        converged = await service.run()
    except BindError as e:
        logger.error(f"Startup failed: {e}")
        return 1
    except ListenerError as e:
        logger.error(f"Listener failed: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Cannot cluster the data: {e}")
        return 1

    logger.info("Converged" if converged else "Finished without convergence")
    return 0


def cli(argv=None) -> int:
    """Console entry point."""
    args = parse_args(argv)
    config = build_config(args)
    setup_logging(config.log_level, config.log_file)
    logger.info(f"Starting coordinator: {config}")
    return asyncio.run(main(config, resume=args.resume))


if __name__ == "__main__":
    sys.exit(cli())
