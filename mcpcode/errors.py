"""Exception hierarchy shared across mcpcode."""

from typing import Optional


class MCPCodeError(Exception):
    """Base class for all mcpcode errors."""


class ConfigError(MCPCodeError):
    """Raised when the MCP server configuration cannot be loaded or is invalid."""


class MCPConnectionError(MCPCodeError):
    """
    Raised for any failure to connect to, talk to, or close an MCP server.

    ``server_name`` is always the label of the server involved; ``tool_name``
    is set when the failure happened during a tool call.
    """

    def __init__(
        self,
        message: str,
        server_name: Optional[str] = None,
        tool_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.server_name = server_name
        self.tool_name = tool_name


class CommandValidationError(MCPConnectionError):
    """Raised when a server command, its arguments or its label are unsafe."""

    def __init__(self, message: str, server_name: Optional[str] = None, field: str = ""):
        super().__init__(message, server_name=server_name)
        self.field = field


class ExecutableNotFoundError(MCPConnectionError):
    """Raised when a server command does not resolve to an executable file."""
