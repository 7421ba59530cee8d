"""Locate a server executable on disk before anything is spawned."""

import os
import sys
from typing import List, Mapping, Optional

from mcpcode.errors import ExecutableNotFoundError
from mcpcode.validation.command import has_path_separator

DEFAULT_WINDOWS_EXTENSIONS = [".exe", ".cmd", ".bat", ".com"]


def _is_windows(platform: Optional[str]) -> bool:
    return (platform or sys.platform) == "win32"


def is_executable(path: str, platform: Optional[str] = None) -> bool:
    """True for an existing regular file we may execute (plain existence on Windows)."""
    if not os.path.isfile(path):
        return False
    if _is_windows(platform):
        return True
    return os.access(path, os.X_OK)


def executable_extensions(
    command: str,
    platform: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """
    Suffixes to try when looking a bare command up on PATH.

    Non-Windows platforms have no suffix convention and get ``[""]``. On
    Windows the list comes from ``PATHEXT``, unless the command already
    carries one of those suffixes.
    """
    if not _is_windows(platform):
        return [""]

    env = os.environ if environ is None else environ
    raw_exts = [ext.strip() for ext in (env.get("PATHEXT") or "").split(";") if ext.strip()]
    if raw_exts:
        extensions = [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in raw_exts]
    else:
        extensions = list(DEFAULT_WINDOWS_EXTENSIONS)

    command_lower = command.lower()
    if any(ext and command_lower.endswith(ext) for ext in extensions):
        return [""]
    return extensions


def candidate_paths(directory: str, command: str, extensions: List[str]) -> List[str]:
    if not extensions:
        return [os.path.join(directory, command)]
    return [os.path.join(directory, f"{command}{ext}") for ext in extensions]


def resolve_executable(
    command: str,
    server_name: str,
    environ: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    platform: Optional[str] = None,
) -> str:
    """
    Resolve a sanitized command to an absolute executable path.

    Commands containing a path separator are taken as absolute or relative
    to ``cwd``; bare names are searched for on ``PATH`` in order.

    Raises:
        ExecutableNotFoundError: If no executable candidate exists.
    """
    if has_path_separator(command):
        candidate = command if os.path.isabs(command) else os.path.join(cwd or os.getcwd(), command)
        candidate = os.path.normpath(candidate)
        if is_executable(candidate, platform):
            return candidate
        raise ExecutableNotFoundError(
            f'Executable "{command}" for server "{server_name}" not found or not executable',
            server_name=server_name,
        )

    env = os.environ if environ is None else environ
    path_env = env.get("PATH")
    if not path_env:
        raise ExecutableNotFoundError(
            f'Unable to resolve command "{command}" for server "{server_name}" '
            "because PATH is not defined",
            server_name=server_name,
        )

    directories = [directory for directory in path_env.split(os.pathsep) if directory]
    extensions = executable_extensions(command, platform, env)

    for directory in directories:
        for candidate in candidate_paths(directory, command, extensions):
            if is_executable(candidate, platform):
                return os.path.abspath(candidate)

    raise ExecutableNotFoundError(
        f'Executable "{command}" for server "{server_name}" was not found in PATH',
        server_name=server_name,
    )
