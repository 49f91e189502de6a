"""
Server runner for the REViewer relay.

The relay binds its own loopback socket so it can fall back to the next
port when the configured one is taken, then hands that socket to
uvicorn. The effective port is written back to the relay context;
callers must read it from there (or from RelayServer.port) rather than
assume the configured one.
"""

import asyncio
import errno
import os
import socket
import threading
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .context import RelayContext
from .errors import PortInUse
from .shared.logger import get_logger

logger = get_logger(__name__)

# Windows reports WSAEADDRINUSE instead of EADDRINUSE
_ADDR_IN_USE = {errno.EADDRINUSE, 10048}


def bind_loopback(host: str, port: int) -> socket.socket:
    """Bind a listening-ready socket on ``port``, retrying once on ``port + 1``.

    There is no fallback when ``port`` is 65535.

    Raises:
        PortInUse: If both ports are occupied.
    """
    if host == "localhost":
        host = "127.0.0.1"
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    candidates = (port, port + 1) if port < 65535 else (port,)

    for candidate in candidates:
        sock = socket.socket(family, socket.SOCK_STREAM)
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, candidate))
        except OSError as e:
            sock.close()
            if e.errno not in _ADDR_IN_USE:
                raise
            if candidate != candidates[-1]:
                logger.warning("Port %d in use, trying %d", port, port + 1)
                continue
            raise PortInUse(port) from e
        sock.set_inheritable(True)
        return sock

    raise PortInUse(port)


class RelayServer:
    """
    Runs the relay app on a loopback socket with uvicorn.

    Use serve() inside an existing event loop, or start()/stop() to run
    the relay on a background thread next to other work.
    """

    def __init__(self, app: FastAPI, relay: Optional[RelayContext] = None):
        self._app = app
        self._relay: RelayContext = relay or app.state.relay
        self._server: Optional[uvicorn.Server] = None
        self._socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._relay.port

    def is_running(self) -> bool:
        return self._server is not None and self._server.started and not self._server.should_exit

    def _prepare(self) -> uvicorn.Server:
        config = self._relay.config
        self._socket = bind_loopback(config.host, config.port)
        self._relay.port = self._socket.getsockname()[1]

        self._server = uvicorn.Server(
            uvicorn.Config(
                self._app,
                log_level=config.log_level.lower(),
                access_log=False,
            )
        )
        logger.info("REViewer relay listening on http://%s:%d", config.host, self._relay.port)
        return self._server

    async def serve(self) -> None:
        """Bind and serve until the server is asked to exit."""
        server = self._server or self._prepare()
        try:
            await server.serve(sockets=[self._socket])
        finally:
            self._close_socket()

    def start(self, timeout: float = 10.0) -> int:
        """Serve on a background thread; returns the effective port."""
        if self._thread is not None:
            logger.info("REViewer relay already running on port %d", self.port)
            return self.port

        server = self._prepare()
        self._thread = threading.Thread(
            target=lambda: asyncio.run(self.serve()),
            name="reviewer-relay",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not server.started:
            if not self._thread.is_alive():
                raise RuntimeError("REViewer relay failed to start")
            if time.monotonic() > deadline:
                raise TimeoutError(f"REViewer relay did not start within {timeout}s")
            time.sleep(0.01)
        return self.port

    def stop(self, timeout: float = 5.0) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._close_socket()
        self._server = None
        logger.info("REViewer relay stopped")

    def _close_socket(self) -> None:
        if self._socket is None:
            return
        try:
            self._socket.close()
        except OSError as e:
            logger.warning("Failed to close relay socket: %s", e)
        self._socket = None
