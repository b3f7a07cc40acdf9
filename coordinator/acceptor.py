"""
Listening endpoint of the clustering coordinator.

Binds the first free port of a configured range (rescanning for a while if
every port is busy), then accepts worker connections and starts one session
task per connection until the stop flag is set.
"""

import asyncio
import errno
import logging
import socket
import time
from typing import Awaitable, Callable, Optional, Set, Tuple

from coordinator.phase_state import PhaseState


logger = logging.getLogger(__name__)


# accept() errors that mean the listening socket itself is unusable
FATAL_LISTENER_ERRNOS = {
    errno.EBADF,
    errno.ENOTSOCK,
    errno.EOPNOTSUPP,
    errno.EINVAL,
    errno.EFAULT,
}


SessionFactory = Callable[[asyncio.StreamReader, asyncio.StreamWriter, str], Awaitable[None]]


class BindError(RuntimeError):
    """No port of the configured range could be bound."""


class ListenerError(RuntimeError):
    """The listening socket failed and cannot accept any more connections."""


def _try_bind(host: str, port: int) -> Optional[socket.socket]:
    """
    Bind and listen on one port.

    Returns:
        Listening non-blocking socket, or None if the port is in use

    Raises:
        BindError: On any bind failure other than "address in use"
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        sock.listen(socket.SOMAXCONN)
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            return None
        raise BindError(f"Unable to bind {host}:{port}: {e}") from e

    sock.setblocking(False)
    return sock


async def bind_listener(
    host: str,
    port: int,
    last_port: Optional[int] = None,
    scan_timeout: float = 30.0,
    rescan_interval: float = 1.0
) -> Tuple[socket.socket, int]:
    """
    Bind the first free port in [port, last_port].

    If every port is in use, waits rescan_interval and scans again, until
    scan_timeout has elapsed.

    Args:
        host: Interface to bind
        port: First port to try
        last_port: Last port to try (default: port)
        scan_timeout: Overall bound in seconds
        rescan_interval: Pause between scans of the whole range

    Returns:
        (listening socket, bound port)

    Raises:
        BindError: If no port could be bound in time
    """
    if last_port is None:
        last_port = port

    start = time.monotonic()
    while True:
        for candidate in range(port, last_port + 1):
            sock = _try_bind(host, candidate)
            if sock is not None:
                bound = sock.getsockname()[1]
                logger.info(f"Listening on {host}:{bound}")
                return sock, bound
            logger.debug(f"Port {candidate} in use")

        if time.monotonic() - start + rescan_interval > scan_timeout:
            raise BindError(
                f"All ports {port}-{last_port} stayed in use for {scan_timeout:.1f}s"
            )

        logger.warning(f"All ports {port}-{last_port} in use; rescanning in {rescan_interval}s")
        await asyncio.sleep(rescan_interval)


class Acceptor:
    """
    Accepts worker connections and runs one session task per connection.

    Session tasks are tracked so shutdown can wait for them; each one ends
    on its own once it observes the stop flag or loses its connection.
    """

    def __init__(
        self,
        sock: socket.socket,
        state: PhaseState,
        session_factory: SessionFactory,
        wake_interval: float = 10.0
    ):
        """
        Args:
            sock: Bound, listening, non-blocking socket
            state: Shared phase state (for the stop flag)
            session_factory: Coroutine run for each accepted connection
            wake_interval: Max wait for a connection before rechecking stop
        """
        self.sock = sock
        self.port = sock.getsockname()[1]
        self.state = state
        self.session_factory = session_factory
        self.wake_interval = wake_interval

        self._sessions: Set[asyncio.Task] = set()
        self.connections_accepted = 0

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    async def run(self):
        """
        Accept connections until stop is requested.

        Raises:
            ListenerError: On a fatal error of the listening socket
        """
        loop = asyncio.get_running_loop()
        logger.info(f"Acceptor started on port {self.port}")

        try:
            while not self.state.stopped:
                accept = asyncio.ensure_future(loop.sock_accept(self.sock))
                stopped = asyncio.ensure_future(self.state.wait_stopped())
                try:
                    await asyncio.wait(
                        {accept, stopped},
                        timeout=self.wake_interval,
                        return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    stopped.cancel()

                if not accept.done():
                    accept.cancel()
                    try:
                        await accept
                    except asyncio.CancelledError:
                        pass
                    continue

                try:
                    connection, address = accept.result()
                except OSError as e:
                    if e.errno in FATAL_LISTENER_ERRNOS:
                        logger.error(f"Acceptor shutting down due to error: {e}")
                        raise ListenerError(f"Listening socket failed: {e}") from e
                    # Not fatal to listening in general, so resume
                    logger.debug(f"accept failed: {e}")
                    continue

                self._spawn(connection, address)
        finally:
            self.sock.close()
            logger.info("Acceptor stopped")

    def _spawn(self, connection: socket.socket, address: Tuple[str, int]):
        peer = f"{address[0]}:{address[1]}"
        self.connections_accepted += 1
        logger.info(f"Connection accepted from {peer}")

        task = asyncio.create_task(self._run_session(connection, peer))
        self._sessions.add(task)
        task.add_done_callback(self._sessions.discard)

    async def _run_session(self, connection: socket.socket, peer: str):
        try:
            reader, writer = await asyncio.open_connection(sock=connection)
        except OSError as e:
            logger.warning(f"Could not open stream for {peer}: {e}")
            connection.close()
            return

        try:
            await self.session_factory(reader, writer, peer)
        except Exception as e:
            logger.error(f"Session with {peer} failed: {e!r}")

    async def wait_sessions(self):
        """Wait for every running session task to finish."""
        if self._sessions:
            await asyncio.gather(*list(self._sessions), return_exceptions=True)
