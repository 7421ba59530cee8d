"""MCPClient - the object callers hold to talk to one stdio MCP server."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from mcpcode.client.coordinator import ConnectionCoordinator, get_coordinator
from mcpcode.client.resolver import resolve_executable
from mcpcode.client.schema import MCPTool
from mcpcode.client.supervisor import (
    CONNECT_TIMEOUT_MS,
    Connection,
    ConnectionState,
    ConnectionSupervisor,
    TransportFactory,
)
from mcpcode.client.transport import MCPTransport, MCPTransportError
from mcpcode.errors import MCPConnectionError
from mcpcode.validation.command import ConnectionDescriptor, validate_descriptor
from mcpcode.validation.config import HttpServerConfig, StdioServerConfig, is_http_config, is_stdio_config

logger = logging.getLogger(__name__)

ConnectTarget = Union[StdioServerConfig, HttpServerConfig, ConnectionDescriptor]


class MCPClient:
    """
    Client for a single MCP server spoken to over stdio.

    Each instance registers itself with the process-wide coordinator when
    created and leaves it on ``close()``. A client connects at most once; if
    ``connect()`` fails, build a new client to try again.

    Example:
        >>> client = MCPClient("github")
        >>> await client.connect(config.get_server_config("github"))
        >>> tools = await client.list_tools()
        >>> await client.close()
    """

    def __init__(
        self,
        server_name: str,
        coordinator: Optional[ConnectionCoordinator] = None,
        timeout_ms: int = CONNECT_TIMEOUT_MS,
        transport_factory: TransportFactory = MCPTransport,
    ):
        self.server_name = server_name
        self._coordinator = coordinator or get_coordinator()
        self._supervisor = ConnectionSupervisor(
            self._coordinator,
            timeout_ms=timeout_ms,
            transport_factory=transport_factory,
        )
        self._connection = Connection(server_name)
        self._attempted = False
        self._coordinator.register(self)
        self._coordinator.install_shutdown_handlers()

    def __repr__(self) -> str:
        return f"MCPClient({self.server_name!r}, state={self.state.value})"

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def pid(self) -> Optional[int]:
        return self._connection.pid

    async def __aenter__(self) -> "MCPClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ── Connect ───────────────────────────────────────────────────────────

    async def connect(self, config: ConnectTarget) -> None:
        """
        Validate, resolve and start the server, then complete the handshake.

        Raises:
            MCPConnectionError: For every failure. CommandValidationError and
                ExecutableNotFoundError are raised for unsafe or missing
                commands, before any process is started.
        """
        try:
            self._supervisor.check_connectable(self._connection)
            if self._attempted:
                raise MCPConnectionError(
                    f'MCP client for "{self.server_name}" already failed to connect; '
                    "create a new client to retry",
                    server_name=self.server_name,
                )
            self._attempted = True
            if is_http_config(config):
                raise MCPConnectionError(
                    f'Server "{self.server_name}" is misconfigured: only STDIO transport is supported',
                    server_name=self.server_name,
                )
            descriptor = self._descriptor(config)
            validated = validate_descriptor(descriptor)
            executable = resolve_executable(validated.command, validated.server_name)
            await self._supervisor.connect(self._connection, validated, executable)
        except MCPConnectionError:
            raise
        except Exception as exc:
            raise MCPConnectionError(
                f'Failed to connect to MCP server "{self.server_name}": {exc}',
                server_name=self.server_name,
            ) from exc

    def _descriptor(self, config: ConnectTarget) -> ConnectionDescriptor:
        if isinstance(config, ConnectionDescriptor):
            if config.server_name != self.server_name:
                raise MCPConnectionError(
                    f'Descriptor for "{config.server_name}" passed to MCP client for "{self.server_name}"',
                    server_name=self.server_name,
                )
            return config
        if not is_stdio_config(config):
            raise MCPConnectionError(
                f'Unsupported configuration for server "{self.server_name}": {type(config).__name__}',
                server_name=self.server_name,
            )
        return ConnectionDescriptor.from_config(self.server_name, config)

    # ── Tools ─────────────────────────────────────────────────────────────

    def _require_transport(self) -> MCPTransport:
        transport = self._connection.transport
        if not self._connection.is_connected or transport is None:
            raise MCPConnectionError(
                f'MCP client for "{self.server_name}" is not connected',
                server_name=self.server_name,
            )
        return transport

    async def list_tools(self) -> List[MCPTool]:
        """List every tool the server exposes, in server order."""
        transport = self._require_transport()
        try:
            raw_tools = await transport.list_tools()
            return [MCPTool.from_raw(raw) for raw in raw_tools]
        except (MCPTransportError, KeyError, ValueError, TypeError) as exc:
            raise MCPConnectionError(
                f'Failed to list tools from server "{self.server_name}": {exc}',
                server_name=self.server_name,
            ) from exc

    async def call_tool(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """
        Invoke a tool and return the first content block of its result.

        Returns ``{}`` when the server sends no content.
        """
        transport = self._require_transport()
        try:
            response = await transport.call_tool(tool_name, arguments or {})
        except MCPTransportError as exc:
            raise MCPConnectionError(
                f'Failed to call tool "{tool_name}" on server "{self.server_name}": {exc}',
                server_name=self.server_name,
                tool_name=tool_name,
            ) from exc

        content = response.get("content")
        if isinstance(content, list):
            content = content[0] if content else None
        return content if content is not None else {}

    # ── Close ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """
        Stop the server process and leave the registry. Safe to call repeatedly.

        Raises:
            MCPConnectionError: If the transport failed to close; the client
                is unregistered and its slot released regardless.
        """
        try:
            await self._supervisor.close(self._connection)
        except Exception as exc:
            logger.error("Error closing MCP client for %s: %s", self.server_name, exc)
            raise MCPConnectionError(
                f'Error closing MCP client for "{self.server_name}": {exc}',
                server_name=self.server_name,
            ) from exc
        finally:
            self._coordinator.unregister(self)
