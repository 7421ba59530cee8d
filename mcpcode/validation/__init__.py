"""
mcpcode validation module.

This module provides configuration loading and command sanitization.
"""

from mcpcode.validation.command import (
    ConnectionDescriptor,
    ValidatedCommand,
    expand_env,
    validate_descriptor,
)
from mcpcode.validation.config import (
    Config,
    HttpServerConfig,
    MCPConfig,
    ServerConfig,
    StdioServerConfig,
)

__all__ = [
    "Config",
    "ConnectionDescriptor",
    "HttpServerConfig",
    "MCPConfig",
    "ServerConfig",
    "StdioServerConfig",
    "ValidatedCommand",
    "expand_env",
    "validate_descriptor",
]
