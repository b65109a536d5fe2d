"""Supervised uvicorn runner for the peer transfer endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from enum import StrEnum

import uvicorn
from fastapi import FastAPI

logger = logging.getLogger(__name__)

DEFAULT_TRANSFER_PORT = 8765
DEFAULT_FALLBACK_PORT = 8767


class ServerState(StrEnum):
    """Listener lifecycle state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    BACKOFF = "backoff"
    DISABLED = "disabled"


class TransferServer:
    """
    Runs the transfer app on a pre-bound socket and restarts it if it dies.

    Binding tries the configured port, then the fallback port once; if both
    fail the endpoint is disabled for the session. An unexpected exit of the
    serving task is retried with exponential backoff capped at ``max_delay``,
    at most ``max_restart_attempts`` times.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_TRANSFER_PORT,
        fallback_port: int | None = DEFAULT_FALLBACK_PORT,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_restart_attempts: int = 5,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._fallback_port = fallback_port
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_restart_attempts = max_restart_attempts

        self._state = ServerState.STOPPED
        self._bound_port: int | None = None
        self._sock: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._restart_attempts = 0

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def port(self) -> int | None:
        """Port actually bound, or None while not listening."""
        return self._bound_port

    @property
    def restart_attempts(self) -> int:
        return self._restart_attempts

    async def start(self) -> bool:
        """Bind and start serving.

        Returns:
            False if neither port could be bound (state ``DISABLED``).
        """
        if self._state in (ServerState.RUNNING, ServerState.STARTING, ServerState.BACKOFF):
            return True

        self._state = ServerState.STARTING
        self._stopping = False
        self._restart_attempts = 0

        sock = self._bind(self._port)
        if sock is None and self._fallback_port and self._fallback_port != self._port:
            sock = self._bind(self._fallback_port)
        if sock is None:
            self._state = ServerState.DISABLED
            logger.warning("Transfer endpoint disabled: no port available")
            return False

        self._sock = sock
        self._bound_port = sock.getsockname()[1]
        self._task = asyncio.create_task(self._supervise())
        logger.info("Transfer endpoint listening on %s:%d", self._host, self._bound_port)
        return True

    async def stop(self, timeout: float = 5.0) -> None:
        self._stopping = True
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None
        self._close_socket()
        if self._state != ServerState.DISABLED:
            self._state = ServerState.STOPPED

    async def _supervise(self) -> None:
        while not self._stopping:
            self._state = ServerState.RUNNING
            requested = False
            try:
                requested = await self._serve_once()
            except SystemExit:
                # uvicorn exits instead of raising when startup fails
                logger.error("Transfer server failed to start")
            except Exception:
                logger.error("Transfer server crashed", exc_info=True)

            if self._stopping or requested:
                break

            self._restart_attempts += 1
            if self._restart_attempts > self._max_restart_attempts:
                logger.warning(
                    "Transfer endpoint disabled after %d restart attempts",
                    self._max_restart_attempts,
                )
                self._state = ServerState.DISABLED
                self._close_socket()
                return

            delay = self.backoff_delay(self._restart_attempts)
            self._state = ServerState.BACKOFF
            logger.info(
                "Restarting transfer endpoint in %.1fs (attempt %d)",
                delay,
                self._restart_attempts,
            )
            await asyncio.sleep(delay)

            if self._sock is None or self._sock.fileno() == -1:
                self._sock = self._bind(self._bound_port or self._port)
                if self._sock is None:
                    continue

        self._state = ServerState.STOPPED

    def backoff_delay(self, attempt: int) -> float:
        """Delay before restart number ``attempt`` (1-based)."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    async def _serve_once(self) -> bool:
        """Serve until the server exits.

        Returns:
            True if the exit was requested (``should_exit`` was set).
        """
        if self._sock is None:
            raise OSError("Transfer socket is not bound")
        config = uvicorn.Config(self._app, log_level="warning", lifespan="off")
        self._server = uvicorn.Server(config)
        await self._server.serve(sockets=[self._sock])
        return self._server.should_exit

    def _bind(self, port: int) -> socket.socket | None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, port))
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            logger.warning("Cannot bind transfer port %d: %s", port, e)
            return None
        return sock

    def _close_socket(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self._bound_port = None
