"""
mcpcode - hardened connection manager for stdio MCP servers.

Turns an untrusted server entry from ``mcp.config.json`` into a supervised
child process speaking MCP over stdin/stdout:

- Commands, arguments and labels are sanitized before anything runs
- Executables are resolved on PATH (PATHEXT-aware on Windows)
- At most eight live connections per process
- Handshakes are raced against a 30 second timeout
- Every client is closed on SIGINT/SIGTERM
"""

__version__ = "1.0.0"
__author__ = "mcpcode Team"
__license__ = "Apache-2.0"

from mcpcode.client import MCPClient, MCPTool
from mcpcode.discovery import ToolDiscovery
from mcpcode.errors import (
    CommandValidationError,
    ConfigError,
    ExecutableNotFoundError,
    MCPCodeError,
    MCPConnectionError,
)
from mcpcode.validation import Config, ConnectionDescriptor

__all__ = [
    "CommandValidationError",
    "Config",
    "ConfigError",
    "ConnectionDescriptor",
    "ExecutableNotFoundError",
    "MCPClient",
    "MCPCodeError",
    "MCPConnectionError",
    "MCPTool",
    "ToolDiscovery",
    "__version__",
]
