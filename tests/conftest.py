"""Shared fixtures: a tiny stdio MCP server and an isolated coordinator."""

import sys
import textwrap
from pathlib import Path

import pytest

from mcpcode.client.coordinator import ConnectionCoordinator
from mcpcode.client.transport import MCPTransport
from mcpcode.validation.config import StdioServerConfig

FAKE_SERVER = textwrap.dedent(
    '''
    import json
    import os
    import sys

    MODE = os.environ.get("FAKE_MCP_MODE", "normal")
    TOOLS = [
        {
            "name": "echo",
            "description": "Echo the input back",
            "inputSchema": {
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        },
        {"name": "env", "inputSchema": {"type": "object"}},
        {"name": "quit", "description": "Reply, then exit", "inputSchema": {"type": "object"}},
    ]


    def reply(msg_id, result=None, error=None):
        out = {"jsonrpc": "2.0", "id": msg_id}
        if error is not None:
            out["error"] = error
        else:
            out["result"] = result
        sys.stdout.write(json.dumps(out) + "\\n")
        sys.stdout.flush()


    for line in sys.stdin:
        msg = json.loads(line)
        method = msg.get("method")
        msg_id = msg.get("id")
        if msg_id is None:
            continue
        if method == "initialize":
            if MODE == "hang":
                continue
            if MODE == "exit_on_init":
                sys.exit(3)
            print("fake server starting", file=sys.stderr, flush=True)
            reply(msg_id, {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "0"},
            })
        elif method == "tools/list":
            cursor = (msg.get("params") or {}).get("cursor")
            if cursor is None:
                reply(msg_id, {"tools": TOOLS[:1], "nextCursor": "page-2"})
            else:
                reply(msg_id, {"tools": TOOLS[1:]})
        elif method == "tools/call":
            params = msg["params"]
            name = params["name"]
            args = params.get("arguments") or {}
            if name == "echo":
                reply(msg_id, {"content": [{"type": "text", "text": args.get("text", "")}]})
            elif name == "env":
                reply(msg_id, {"content": [{"type": "text", "text": os.environ.get(args["name"], "")}]})
            elif name == "garble":
                sys.stdout.flush()
                sys.stdout.buffer.write(b'{"x": "\\x80"}\\n')
                sys.stdout.buffer.flush()
                reply(msg_id, {"content": [{"type": "text", "text": "after garble"}]})
            elif name == "quit":
                reply(msg_id, {"content": []})
                sys.exit(0)
            else:
                reply(msg_id, error={"code": -32602, "message": "Unknown tool: " + name})
        else:
            reply(msg_id, error={"code": -32601, "message": "Method not found"})
    '''
)


@pytest.fixture
def server_script(tmp_path: Path) -> Path:
    """Write the fake MCP server to a temp file."""
    path = tmp_path / "fake_server.py"
    path.write_text(FAKE_SERVER)
    return path


@pytest.fixture
def server_config(server_script: Path):
    """Factory for stdio configs that launch the fake server."""

    def _make(mode: str = "normal", **env: str) -> StdioServerConfig:
        return StdioServerConfig(
            command=sys.executable,
            args=[str(server_script)],
            env={"FAKE_MCP_MODE": mode, **env},
        )

    return _make


@pytest.fixture
def coordinator() -> ConnectionCoordinator:
    """A coordinator of our own, without signal handlers."""
    return ConnectionCoordinator(handle_signals=False)


class RecordingTransportFactory:
    """Builds real transports and keeps them for inspection."""

    def __init__(self):
        self.transports = []

    def __call__(self, *args, **kwargs) -> MCPTransport:
        transport = MCPTransport(*args, **kwargs)
        self.transports.append(transport)
        return transport


@pytest.fixture
def recording_factory() -> RecordingTransportFactory:
    return RecordingTransportFactory()
