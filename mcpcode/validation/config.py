"""
mcpcode Configuration - MCP server configuration loading and validation.

This module provides the Config class for loading the ``mcpServers`` map
from ``mcp.config.json`` (or a YAML equivalent). Validation here is
structural only; commands are sanitized later by
``mcpcode.validation.command`` right before a connection is attempted.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mcpcode.errors import ConfigError
from mcpcode.validation.command import SERVER_NAME_PATTERN

MAX_URL_LENGTH = 2048

CONFIG_FILE_NAMES = ("mcp.config.json", "mcp.config.yaml", "mcp.config.yml")


class StdioServerConfig(BaseModel):
    """Configuration for an MCP server launched as a child process."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[Literal["stdio"]] = None
    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None


class HttpServerConfig(BaseModel):
    """Configuration for a network MCP server. Parsed, but never connected to."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["http", "sse"] = "http"
    url: str = Field(min_length=1, max_length=MAX_URL_LENGTH)
    headers: Optional[Dict[str, str]] = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("Invalid URL format")
        return value


ServerConfig = Union[StdioServerConfig, HttpServerConfig]


class MCPConfig(BaseModel):
    """Complete MCP configuration schema."""

    model_config = ConfigDict(populate_by_name=True)

    mcp_servers: Dict[str, ServerConfig] = Field(default_factory=dict, alias="mcpServers")

    @field_validator("mcp_servers")
    @classmethod
    def _check_server_names(cls, servers: Dict[str, ServerConfig]) -> Dict[str, ServerConfig]:
        for name in servers:
            if not name.strip():
                raise ValueError("Server name must not be empty")
            if not SERVER_NAME_PATTERN.match(name):
                raise ValueError(
                    f'Server name "{name}" may only contain letters, numbers, ".", "-", and "_"'
                )
        return servers


def is_stdio_config(config: Any) -> bool:
    return isinstance(config, StdioServerConfig)


def is_http_config(config: Any) -> bool:
    return isinstance(config, HttpServerConfig)


def _format_validation_error(error: ValidationError) -> str:
    """Flatten pydantic issues into ``loc: message`` parts, de-duplicated."""
    messages: List[str] = []
    for issue in error.errors():
        loc = [str(part) for part in issue["loc"]]
        # A union failure on a server entry reports once per member; collapse it.
        if len(loc) > 2 and loc[0] == "mcpServers":
            message = (
                f"mcpServers.{loc[1]}: Server config must have either "
                '"command" (for STDIO) or "url" (for HTTP/SSE)'
            )
            if issue["type"] not in ("missing", "extra_forbidden") and len(loc) > 3:
                message = f"mcpServers.{loc[1]}.{'.'.join(loc[3:])}: {issue['msg']}"
        else:
            prefix = f"{'.'.join(loc)}: " if loc else ""
            message = f"{prefix}{issue['msg']}"
        if message not in messages:
            messages.append(message)
    return "; ".join(messages)


class Config:
    """
    MCP configuration manager.

    Example:
        >>> config = Config.load("mcp.config.json")
        >>> config.get_server_names()
        ['filesystem', 'github']
        >>> server = config.get_server_config("github")
    """

    def __init__(self, config: Optional[MCPConfig] = None, path: Optional[Path] = None):
        self.config = config or MCPConfig()
        self.path = path

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Config":
        """
        Load configuration from a file.

        Args:
            path: Config file. When omitted, walks up from the current
                directory looking for ``mcp.config.json``/``.yaml``/``.yml``.

        Raises:
            ConfigError: If the file is missing, unreadable, or invalid.
        """
        config_path = Path(path) if path is not None else cls._find_config()
        if config_path is None:
            raise ConfigError(
                f"Config file not found: none of {', '.join(CONFIG_FILE_NAMES)} in "
                f"{Path.cwd()} or its parents"
            )
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        data = cls._load_file(config_path)
        return cls(config=cls.validate_config(data), path=config_path)

    @classmethod
    def _load_file(cls, path: Path) -> Dict[str, Any]:
        """Load a JSON or YAML file, chosen by extension."""
        try:
            with open(path, encoding="utf-8") as f:
                if path.suffix.lower() in (".yaml", ".yml"):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e
        return data if data is not None else {}

    @classmethod
    def _find_config(cls) -> Optional[Path]:
        """Find a config file by walking up the directory tree."""
        current = Path.cwd()
        while True:
            for name in CONFIG_FILE_NAMES:
                candidate = current / name
                if candidate.exists():
                    return candidate
            if current == current.parent:
                return None
            current = current.parent

    @staticmethod
    def validate_config(data: Any) -> MCPConfig:
        """Validate raw configuration data into an MCPConfig."""
        if not isinstance(data, dict):
            raise ConfigError("Invalid MCP configuration: top level must be an object")
        try:
            return MCPConfig.model_validate(data)
        except ValidationError as e:
            messages = _format_validation_error(e)
            if messages:
                raise ConfigError(f"Invalid MCP configuration: {messages}") from e
            raise ConfigError("Invalid MCP configuration") from e

    def get_server_names(self) -> List[str]:
        """Server names in file order."""
        return list(self.config.mcp_servers.keys())

    def get_server_config(self, server_name: str) -> ServerConfig:
        """Get configuration for a single server."""
        server = self.config.mcp_servers.get(server_name)
        if server is None:
            raise ConfigError(f'Server "{server_name}" not found in config')
        return server
