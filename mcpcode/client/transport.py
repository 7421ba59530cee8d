"""MCP server communication via stdio subprocess transport."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcpcode", "version": "1.0.0"}

# Grace period between SIGTERM and SIGKILL when stopping the server
TERMINATE_TIMEOUT = 5.0

# Largest single JSON-RPC line accepted from the server
MAX_LINE_BYTES = 16 * 1024 * 1024

METHOD_NOT_FOUND = -32601


class MCPTransportError(Exception):
    """Raised when MCP transport communication fails."""


class MCPRequestError(MCPTransportError):
    """JSON-RPC error object returned by the server."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


class MCPTransport:
    """
    Communicate with an MCP server over stdin/stdout (newline-delimited JSON-RPC).

    The subprocess is started by ``start()`` and stopped by ``close()``.
    Responses are matched to requests by id from a background reader task,
    so several requests may be in flight at once.

    ``on_close`` fires exactly once, when the server's stdout reaches EOF or
    the transport is closed. ``on_error`` receives errors that are not tied
    to a request (malformed lines, unmatched responses); they are logged
    when no callback is given.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        on_close: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        request_timeout: Optional[float] = None,
        label: str = "",
    ):
        self.command = command
        self.args = args or []
        self.env = env
        self.on_close = on_close
        self.on_error = on_error
        self.request_timeout = request_timeout
        self.label = label or command
        self._process: Optional[asyncio.subprocess.Process] = None
        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._closed = False
        self._close_notified = False

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the MCP server subprocess."""
        if self._closed:
            raise MCPTransportError("MCP transport has been closed")
        if self.is_running:
            return  # already running

        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=MAX_LINE_BYTES,
            )
        except FileNotFoundError as exc:
            raise MCPTransportError(f"MCP server command not found: {self.command}") from exc
        except OSError as exc:
            raise MCPTransportError(f"Failed to start MCP server {self.command}: {exc}") from exc

        if self._closed:
            # close() ran while the spawn was in flight and had nothing to stop.
            self._process = process
            await self._stop_process(process)
            raise MCPTransportError("MCP transport was closed while the server was starting")

        self._process = process
        self._reader_task = asyncio.ensure_future(self._read_stdout())
        self._stderr_task = asyncio.ensure_future(self._read_stderr())

    async def close(self) -> None:
        """Terminate the MCP server subprocess. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._process is not None:
            await self._stop_process(self._process)

        tasks = [task for task in (self._reader_task, self._stderr_task) if task is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._fail_pending(MCPTransportError("MCP transport closed"))
        self._notify_close()

    async def _stop_process(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), TERMINATE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("MCP server %s ignored SIGTERM, killing it", self.label)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        return (
            not self._closed
            and self._process is not None
            and self._process.returncode is None
        )

    # ── Background readers ────────────────────────────────────────────────

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                line = raw.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except ValueError as exc:
                    # JSONDecodeError and UnicodeDecodeError: drop the line, keep reading
                    self._report_error(MCPTransportError(f"Invalid JSON from MCP server: {exc}"))
                    continue
                self._dispatch(message)
        except (OSError, ValueError) as exc:
            # Framing failure (line over MAX_LINE_BYTES) or broken pipe
            self._report_error(MCPTransportError(f"MCP transport read failed: {exc}"))
        finally:
            self._fail_pending(MCPTransportError("MCP server closed connection"))
            self._notify_close()

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        try:
            while True:
                raw = await stderr.readline()
                if not raw:
                    break
                logger.debug("[%s] %s", self.label, raw.decode(errors="replace").rstrip())
        except (OSError, ValueError) as exc:
            logger.debug("stderr reader for %s stopped: %s", self.label, exc)

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            self._report_error(MCPTransportError(f"Unexpected MCP message: {message!r}"))
            return

        if "id" in message and ("result" in message or "error" in message):
            future = self._pending.pop(message["id"], None)
            if future is None:
                self._report_error(
                    MCPTransportError(f"Response for unknown request id {message['id']!r}")
                )
                return
            if future.done():
                return
            if "error" in message:
                err = message["error"] or {}
                future.set_exception(
                    MCPRequestError(err.get("code"), err.get("message", ""), err.get("data"))
                )
            else:
                future.set_result(message.get("result") or {})
        elif "method" in message and "id" in message:
            self._answer_server_request(message)
        elif "method" in message:
            logger.debug("[%s] notification %s", self.label, message["method"])
        else:
            self._report_error(MCPTransportError(f"Unexpected MCP message: {message!r}"))

    def _answer_server_request(self, message: Dict[str, Any]) -> None:
        if message["method"] == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {message['method']}"},
            }
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            return
        process.stdin.write((json.dumps(reply) + "\n").encode())

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    def _notify_close(self) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        if self.on_close is not None:
            self.on_close()

    def _report_error(self, exc: Exception) -> None:
        if self.on_error is not None:
            self.on_error(exc)
        else:
            logger.warning("MCP transport error for %s: %s", self.label, exc)

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def _write(self, message: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise MCPTransportError("MCP transport is not running")
        line = json.dumps(message) + "\n"
        async with self._write_lock:
            try:
                process.stdin.write(line.encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                raise MCPTransportError(f"MCP transport error: {exc}") from exc

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a JSON-RPC request and return the result, bounded by ``request_timeout``."""
        return await self._request(method, params, self.request_timeout)

    async def _request(
        self,
        method: str,
        params: Optional[Dict[str, Any]],
        timeout: Optional[float],
    ) -> Dict[str, Any]:
        if not self.is_running:
            raise MCPTransportError("MCP transport is not running")

        self._request_id += 1
        request_id = self._request_id
        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params:
            request["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(request)
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise MCPTransportError(f"MCP request {method} timed out after {timeout}s") from exc
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification (no response expected)."""
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._write(message)

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform the MCP initialize handshake. Unbounded; callers race it against a timer."""
        result = await self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
            None,
        )
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch the full tool list from the MCP server, following pagination cursors."""
        tools: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            result = await self.send("tools/list", {"cursor": cursor} if cursor else None)
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call a tool on the MCP server."""
        return await self.send("tools/call", {"name": name, "arguments": arguments or {}})

    # ── Cleanup ───────────────────────────────────────────────────────────

    def __del__(self):
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except (ProcessLookupError, RuntimeError, OSError):
                pass
