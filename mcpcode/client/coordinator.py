"""
Process-wide admission control and client registry.

All shared mutable state of the connection layer lives in one
ConnectionCoordinator: the count of live connections, the set of client
instances, and the shutdown hook that drains them on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Set

if TYPE_CHECKING:
    from mcpcode.client.client import MCPClient

logger = logging.getLogger(__name__)

MAX_CONCURRENT_CLIENTS = 8

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ConnectionCoordinator:
    """
    Admission counter plus client registry behind a single lock.

    Invariant: ``0 <= active_count <= max_concurrent``. Slots are taken with
    ``try_admit()`` (check and increment in one step) and given back with
    ``release()``.
    """

    def __init__(
        self,
        max_concurrent: int = MAX_CONCURRENT_CLIENTS,
        handle_signals: bool = True,
        exit_func: Callable[[int], Any] = sys.exit,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.handle_signals = handle_signals
        self._exit = exit_func
        self._lock = threading.Lock()
        self._active = 0
        self._clients: Set["MCPClient"] = set()
        self._handlers_installed = False
        self._shutting_down = False
        self._drain_task: Optional[asyncio.Task] = None

    # ── Admission ─────────────────────────────────────────────────────────

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    def has_capacity(self) -> bool:
        with self._lock:
            return self._active < self.max_concurrent

    def try_admit(self) -> bool:
        """Take a connection slot if one is free."""
        with self._lock:
            if self._active >= self.max_concurrent:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        """Give a connection slot back. Never goes below zero."""
        with self._lock:
            if self._active > 0:
                self._active -= 1

    # ── Registry ──────────────────────────────────────────────────────────

    def register(self, client: "MCPClient") -> None:
        with self._lock:
            self._clients.add(client)

    def unregister(self, client: "MCPClient") -> None:
        with self._lock:
            self._clients.discard(client)

    def is_registered(self, client: "MCPClient") -> bool:
        with self._lock:
            return client in self._clients

    def clients(self) -> List["MCPClient"]:
        """Snapshot of the registered clients."""
        with self._lock:
            return list(self._clients)

    # ── Shutdown ──────────────────────────────────────────────────────────

    async def shutdown(self) -> List[Any]:
        """
        Close every registered client concurrently and wait for all of them.

        Individual failures are logged and returned, never raised.
        """
        clients = self.clients()
        if not clients:
            return []
        logger.info("Closing %d MCP client(s)", len(clients))
        results = await asyncio.gather(
            *(client.close() for client in clients), return_exceptions=True
        )
        for client, result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.error("Error closing MCP client for %s: %s", client.server_name, result)
        return list(results)

    def install_shutdown_handlers(self) -> bool:
        """
        Install SIGINT/SIGTERM handlers that drain all clients, then exit.

        The handlers are process-wide (``signal.signal``), so they outlive
        any one event loop; ``_on_signal`` hops onto whichever loop is
        running when the signal arrives. Runs at most once per coordinator.
        Returns True if handlers were installed by this call.
        """
        with self._lock:
            if self._handlers_installed or not self.handle_signals:
                return False

            installed = False
            for sig in SHUTDOWN_SIGNALS:
                try:
                    signal.signal(sig, self._handle_signal)
                    installed = True
                except ValueError:
                    # signal.signal only works from the main thread
                    logger.debug("Cannot install handler for %s outside the main thread", sig)
            self._handlers_installed = installed
        return installed

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self._on_signal(signum)

    def _on_signal(self, signum: int) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Received signal %s, closing MCP clients", signum)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            loop.call_soon_threadsafe(self._start_drain, loop)
        else:
            asyncio.run(self.shutdown())
            self._exit(0)

    def _start_drain(self, loop: asyncio.AbstractEventLoop) -> None:
        self._drain_task = loop.create_task(self._drain_and_exit())

    async def _drain_and_exit(self) -> None:
        await self.shutdown()
        self._exit(0)


_coordinator: Optional[ConnectionCoordinator] = None
_coordinator_lock = threading.Lock()


def get_coordinator() -> ConnectionCoordinator:
    """Return the process-wide coordinator, creating it on first use."""
    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            _coordinator = ConnectionCoordinator()
        return _coordinator
