"""
Spawn-and-handshake supervision for stdio MCP connections.

The supervisor starts the server process, races the MCP handshake against a
fixed timer, and only then takes an admission slot. Whatever goes wrong on
the way, the process is torn down and no timer or slot is leaked.
"""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import Callable, Dict, Optional

from mcpcode.client.coordinator import ConnectionCoordinator
from mcpcode.client.transport import MCPTransport
from mcpcode.errors import MCPConnectionError
from mcpcode.validation.command import ValidatedCommand

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_MS = 30_000

# Niceness applied to spawned servers
SERVER_PRIORITY = 10

TransportFactory = Callable[..., MCPTransport]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class Connection:
    """One client's link to a server process: state, transport and handshake timer."""

    def __init__(self, server_name: str):
        self.server_name = server_name
        self.state = ConnectionState.DISCONNECTED
        self.transport: Optional[MCPTransport] = None
        self.timer: Optional[asyncio.TimerHandle] = None
        self.admitted = False
        self.reaper: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.transport.pid if self.transport is not None else None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def __repr__(self) -> str:
        return f"Connection({self.server_name!r}, state={self.state.value})"


def lower_priority(pid: Optional[int], increment: int = SERVER_PRIORITY) -> bool:
    """Best-effort renice of a child process. Returns False when the OS refuses."""
    if pid is None:
        return False
    try:
        os.setpriority(os.PRIO_PROCESS, pid, increment)
    except (AttributeError, OSError) as exc:
        logger.debug("Could not lower priority of pid %s: %s", pid, exc)
        return False
    return True


def build_child_env(command: ValidatedCommand, environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Process environment overlaid with the server's (already expanded) env entries."""
    base = dict(os.environ if environ is None else environ)
    base.update(command.env)
    return base


class ConnectionSupervisor:
    """
    Drives a Connection from DISCONNECTED to CONNECTED, or back on failure.

    Args:
        coordinator: Admission counter shared by every client in the process.
        timeout_ms: Handshake deadline; also bounds each later request.
        transport_factory: Builds the transport; swapped out in tests.
    """

    def __init__(
        self,
        coordinator: ConnectionCoordinator,
        timeout_ms: int = CONNECT_TIMEOUT_MS,
        transport_factory: TransportFactory = MCPTransport,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.coordinator = coordinator
        self.timeout_ms = timeout_ms
        self.transport_factory = transport_factory
        self.environ = environ

    # ── Connect ───────────────────────────────────────────────────────────

    async def connect(self, connection: Connection, command: ValidatedCommand, executable: str) -> None:
        """
        Spawn ``executable`` and complete the MCP handshake.

        Raises:
            MCPConnectionError: already connected, closed, over budget,
                spawn/handshake failure or timeout. State is fully unwound.
        """
        name = connection.server_name
        self.check_connectable(connection)
        if not self.coordinator.has_capacity():
            raise self._budget_error(name)

        connection.state = ConnectionState.CONNECTING
        transport = self.transport_factory(
            executable,
            list(command.args),
            env=build_child_env(command, self.environ),
            on_close=lambda: self._on_transport_close(connection, transport),
            on_error=lambda exc: self._on_transport_error(connection, exc),
            request_timeout=self.timeout_ms / 1000,
            label=name,
        )
        connection.transport = transport

        try:
            await transport.start()
            await self._race_handshake(connection, transport)

            if connection.state is not ConnectionState.CONNECTING or connection.transport is not transport:
                raise self._closed_error(name)
            if not self.coordinator.try_admit():
                raise self._budget_error(name)
            connection.admitted = True
            connection.state = ConnectionState.CONNECTED
        except MCPConnectionError:
            await self._unwind(connection, transport)
            raise
        except Exception as exc:
            closed_meanwhile = connection.state is ConnectionState.CLOSED
            await self._unwind(connection, transport)
            if closed_meanwhile:
                raise self._closed_error(name) from exc
            raise
        except BaseException:
            await self._unwind(connection, transport)
            raise

        lower_priority(transport.pid)
        logger.info("Connected to MCP server %s (pid %s)", name, transport.pid)

    @staticmethod
    def check_connectable(connection: Connection) -> None:
        """Reject connecting a connection that is live, mid-handshake, or closed."""
        name = connection.server_name
        if connection.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            raise MCPConnectionError(f'MCP client for "{name}" is already connected', server_name=name)
        if connection.state is ConnectionState.CLOSED:
            raise MCPConnectionError(f'MCP client for "{name}" has been closed', server_name=name)

    async def _race_handshake(self, connection: Connection, transport: MCPTransport) -> None:
        """Run the handshake against the timer; exactly one of them wins."""
        loop = asyncio.get_running_loop()
        handshake = loop.create_task(transport.initialize())
        expired = False

        def _expire() -> None:
            nonlocal expired
            expired = True
            handshake.cancel()

        connection.timer = loop.call_later(self.timeout_ms / 1000, _expire)
        try:
            await handshake
        except asyncio.CancelledError:
            if expired:
                raise MCPConnectionError(
                    f'Timed out after {self.timeout_ms}ms connecting to "{connection.server_name}"',
                    server_name=connection.server_name,
                ) from None
            raise
        finally:
            connection.cancel_timer()
            if not handshake.done():
                handshake.cancel()

    async def _unwind(self, connection: Connection, transport: MCPTransport) -> None:
        connection.cancel_timer()
        try:
            await transport.close()
        except Exception as exc:
            logger.error("Error closing MCP transport for %s: %s", connection.server_name, exc)
        if connection.transport is transport:
            connection.transport = None
        self._release(connection)
        if connection.state is ConnectionState.CONNECTING:
            connection.state = ConnectionState.DISCONNECTED

    def _closed_error(self, name: str) -> MCPConnectionError:
        return MCPConnectionError(
            f'Connection to "{name}" was closed before the handshake completed',
            server_name=name,
        )

    def _budget_error(self, name: str) -> MCPConnectionError:
        return MCPConnectionError(
            f"Maximum concurrent MCP connections ({self.coordinator.max_concurrent}) reached",
            server_name=name,
        )

    # ── Teardown ──────────────────────────────────────────────────────────

    async def close(self, connection: Connection) -> None:
        """
        Tear the connection down. Idempotent.

        A connect still racing its handshake sees the state change and fails.
        The slot is released even when closing the transport raises. If the
        server already exited on its own, waits for that process to be reaped.
        """
        connection.cancel_timer()
        transport, connection.transport = connection.transport, None
        connection.state = ConnectionState.CLOSED
        try:
            if transport is not None:
                await transport.close()
        finally:
            self._release(connection)
            reaper, connection.reaper = connection.reaper, None
            if reaper is not None:
                await asyncio.gather(reaper, return_exceptions=True)

    def _release(self, connection: Connection) -> None:
        if connection.admitted:
            connection.admitted = False
            self.coordinator.release()

    def _on_transport_close(self, connection: Connection, transport: MCPTransport) -> None:
        if connection.transport is not transport:
            return
        if connection.state is not ConnectionState.CONNECTED:
            # A pending handshake fails on its own and unwinds.
            return
        logger.warning("MCP server %s closed the connection", connection.server_name)
        connection.state = ConnectionState.CLOSED
        connection.transport = None
        self._release(connection)
        # stdout EOF does not mean the process is gone; reap it.
        connection.reaper = asyncio.ensure_future(transport.close())

    def _on_transport_error(self, connection: Connection, exc: Exception) -> None:
        logger.warning("MCP transport error for %s: %s", connection.server_name, exc)
