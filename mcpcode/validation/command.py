"""
Command sanitization - the trust boundary in front of process spawning.

Every server command, argument list, environment overlay and label passes
through ``validate_descriptor`` before anything touches the filesystem or
starts a process.
"""

import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Sequence, Tuple

from mcpcode.errors import CommandValidationError

if TYPE_CHECKING:
    from mcpcode.validation.config import StdioServerConfig

MAX_COMMAND_LENGTH = 256
MAX_ARG_LENGTH = 2048
MAX_ARGS = 64

CONTROL_CHAR_PATTERN = re.compile(r"[\0\r\n]")
PATH_SEPARATOR_PATTERN = re.compile(r"[\\/]")
SERVER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
ENV_PLACEHOLDER_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Raw, untrusted description of how to start an MCP server."""

    server_name: str
    command: str
    args: Tuple[str, ...] = ()
    env: Optional[Mapping[str, str]] = None

    @classmethod
    def from_config(cls, server_name: str, config: "StdioServerConfig") -> "ConnectionDescriptor":
        """Build a descriptor from a parsed stdio server config entry."""
        return cls(
            server_name=server_name,
            command=config.command,
            args=tuple(config.args),
            env=dict(config.env) if config.env is not None else None,
        )


@dataclass(frozen=True)
class ValidatedCommand:
    """Sanitized projection of a ConnectionDescriptor. Only built by ``validate_descriptor``."""

    server_name: str
    command: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)


def expand_env(
    overlay: Optional[Mapping[str, str]],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Expand ``${NAME}`` placeholders in environment overlay values.

    Unset names expand to the empty string, so ``"${HOME}/bin"`` becomes
    ``"/bin"`` when ``HOME`` is not defined.
    """
    if not overlay:
        return {}
    source = os.environ if environ is None else environ

    def _substitute(match: "re.Match[str]") -> str:
        return source.get(match.group(1), "") or ""

    return {key: ENV_PLACEHOLDER_PATTERN.sub(_substitute, value) for key, value in overlay.items()}


def is_explicit_relative(command: str) -> bool:
    return command.startswith("./") or command.startswith(".\\")


def has_path_separator(command: str) -> bool:
    return PATH_SEPARATOR_PATTERN.search(command) is not None


def validate_server_name(server_name: str) -> str:
    """Check a server label; returns it unchanged."""
    if not isinstance(server_name, str) or not server_name:
        raise CommandValidationError(
            "Server name must not be empty", server_name=server_name, field="server_name"
        )
    if CONTROL_CHAR_PATTERN.search(server_name):
        raise CommandValidationError(
            f"Server name {server_name!r} contains invalid control characters",
            server_name=server_name,
            field="server_name",
        )
    if not SERVER_NAME_PATTERN.match(server_name):
        raise CommandValidationError(
            f'Server name "{server_name}" may only contain letters, numbers, ".", "-", and "_"',
            server_name=server_name,
            field="server_name",
        )
    return server_name


def sanitize_command(command: str, server_name: str) -> str:
    """Trim and check a server command string."""
    if CONTROL_CHAR_PATTERN.search(command):
        raise CommandValidationError(
            f'Server "{server_name}" command contains invalid control characters',
            server_name=server_name,
            field="command",
        )

    trimmed = command.strip()
    if not trimmed or len(trimmed) > MAX_COMMAND_LENGTH:
        raise CommandValidationError(
            f'Server "{server_name}" command must be between 1 and {MAX_COMMAND_LENGTH} characters',
            server_name=server_name,
            field="command",
        )

    segments = [segment for segment in PATH_SEPARATOR_PATTERN.split(trimmed) if segment]
    if ".." in segments:
        raise CommandValidationError(
            f'Server "{server_name}" command must not include parent directory segments',
            server_name=server_name,
            field="command",
        )

    if has_path_separator(trimmed) and not os.path.isabs(trimmed) and not is_explicit_relative(trimmed):
        raise CommandValidationError(
            f'Server "{server_name}" command path must be absolute or start with "./"',
            server_name=server_name,
            field="command",
        )

    return trimmed


def sanitize_args(args: Sequence[str], server_name: str) -> Tuple[str, ...]:
    """Trim and check every argument; returns them in the same order."""
    if len(args) > MAX_ARGS:
        raise CommandValidationError(
            f'Server "{server_name}" has too many arguments (max {MAX_ARGS})',
            server_name=server_name,
            field="args",
        )

    sanitized = []
    for index, arg in enumerate(args):
        if CONTROL_CHAR_PATTERN.search(arg):
            raise CommandValidationError(
                f'Argument {index} for server "{server_name}" contains control characters',
                server_name=server_name,
                field=f"args[{index}]",
            )
        trimmed = arg.strip()
        if len(trimmed) > MAX_ARG_LENGTH:
            raise CommandValidationError(
                f'Argument {index} for server "{server_name}" exceeds {MAX_ARG_LENGTH} characters',
                server_name=server_name,
                field=f"args[{index}]",
            )
        sanitized.append(trimmed)
    return tuple(sanitized)


def sanitize_env(
    overlay: Optional[Mapping[str, str]],
    server_name: str,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Expand placeholders in an env overlay and reject values a child process cannot receive."""
    expanded = expand_env(overlay, environ)
    for key, value in expanded.items():
        if not key or "=" in key or "\0" in key:
            raise CommandValidationError(
                f'Environment variable name {key!r} for server "{server_name}" is invalid',
                server_name=server_name,
                field=f"env.{key}",
            )
        if "\0" in value:
            raise CommandValidationError(
                f'Environment variable "{key}" for server "{server_name}" contains a NUL character',
                server_name=server_name,
                field=f"env.{key}",
            )
    return expanded


def validate_descriptor(
    descriptor: ConnectionDescriptor,
    environ: Optional[Mapping[str, str]] = None,
) -> ValidatedCommand:
    """
    Sanitize a descriptor into a ValidatedCommand.

    Raises:
        CommandValidationError: naming the offending field and server label.
    """
    server_name = validate_server_name(descriptor.server_name)
    return ValidatedCommand(
        server_name=server_name,
        command=sanitize_command(descriptor.command, server_name),
        args=sanitize_args(descriptor.args, server_name),
        env=sanitize_env(descriptor.env, server_name, environ),
    )
