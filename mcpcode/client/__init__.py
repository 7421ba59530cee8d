"""
Hardened stdio MCP client.

Commands are sanitized and resolved on disk before a server process is
spawned; connections are admission-controlled process-wide and torn down
on close, on server exit, or on SIGINT/SIGTERM.
"""

from mcpcode.client.client import MCPClient
from mcpcode.client.coordinator import MAX_CONCURRENT_CLIENTS, ConnectionCoordinator, get_coordinator
from mcpcode.client.resolver import resolve_executable
from mcpcode.client.schema import DiscoveredTool, DiscoveryResult, MCPTool
from mcpcode.client.supervisor import CONNECT_TIMEOUT_MS, ConnectionState

__all__ = [
    "CONNECT_TIMEOUT_MS",
    "ConnectionCoordinator",
    "ConnectionState",
    "DiscoveredTool",
    "DiscoveryResult",
    "MAX_CONCURRENT_CLIENTS",
    "MCPClient",
    "MCPTool",
    "get_coordinator",
    "resolve_executable",
]
