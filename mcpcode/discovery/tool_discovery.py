"""Tool discovery - connect to each configured server and collect its tools."""

from __future__ import annotations

from typing import Iterable, List, Optional

from rich.console import Console
from rich.markup import escape

from mcpcode.client.client import MCPClient
from mcpcode.client.coordinator import ConnectionCoordinator
from mcpcode.client.schema import DiscoveredTool, DiscoveryResult
from mcpcode.client.supervisor import CONNECT_TIMEOUT_MS
from mcpcode.errors import ConfigError, MCPCodeError
from mcpcode.validation.config import Config


class ToolDiscovery:
    """
    Discovers tools across the servers of a Config.

    Servers are visited one at a time. A server that fails to connect or
    list its tools yields a DiscoveryResult with ``error`` set; its client
    is closed either way.
    """

    def __init__(
        self,
        config: Config,
        console: Optional[Console] = None,
        coordinator: Optional[ConnectionCoordinator] = None,
        timeout_ms: int = CONNECT_TIMEOUT_MS,
    ):
        self.config = config
        self.console = console or Console(stderr=True)
        self._coordinator = coordinator
        self._timeout_ms = timeout_ms

    async def discover_all(self, server_names: Optional[Iterable[str]] = None) -> List[DiscoveryResult]:
        """Discover every server (or just ``server_names``), in config order."""
        names = list(server_names) if server_names is not None else self.config.get_server_names()
        self.console.print(f"\n[blue]Discovering tools from {len(names)} server(s)...[/blue]\n")

        results: List[DiscoveryResult] = []
        for name in names:
            results.append(await self.discover_server(name))
        return results

    async def discover_server(self, server_name: str) -> DiscoveryResult:
        try:
            server_config = self.config.get_server_config(server_name)
        except ConfigError as e:
            return DiscoveryResult(server_name=server_name, error=str(e))

        self.console.print(f"[cyan]Connecting to server: {server_name}...[/cyan]")
        client = MCPClient(server_name, coordinator=self._coordinator, timeout_ms=self._timeout_ms)

        try:
            await client.connect(server_config)
            self.console.print(f"[green]✓ Connected to {server_name}[/green]")

            self.console.print(f"[cyan]  Fetching tools from {server_name}...[/cyan]")
            tools = await client.list_tools()
            self.console.print(f"[green]✓ Found {len(tools)} tool(s) in {server_name}[/green]")
            result = DiscoveryResult(server_name=server_name, tools=tools)
        except MCPCodeError as e:
            self.console.print(f"[red]✗ Failed to connect to {server_name}: {escape(str(e))}[/red]")
            result = DiscoveryResult(server_name=server_name, error=str(e))

        try:
            await client.close()
        except MCPCodeError as e:
            self.console.print(f"[yellow]Error closing {server_name}: {escape(str(e))}[/yellow]")
        return result

    @staticmethod
    def flatten_tools(results: Iterable[DiscoveryResult]) -> List[DiscoveredTool]:
        """All tools of all successful servers, tagged with their server name."""
        flattened: List[DiscoveredTool] = []
        for result in results:
            for tool in result.tools:
                flattened.append(DiscoveredTool(server_name=result.server_name, **tool.model_dump()))
        return flattened

    def print_summary(self, results: List[DiscoveryResult]) -> None:
        rule = "=" * 50
        self.console.print(f"\n[blue]{rule}[/blue]")
        self.console.print("[bold]Discovery Summary[/bold]")
        self.console.print(f"[blue]{rule}[/blue]\n")

        total_tools = 0
        succeeded = 0
        failed = 0
        for result in results:
            if result.error:
                self.console.print(f"[red]✗ {result.server_name}: {escape(result.error)}[/red]")
                failed += 1
            else:
                self.console.print(f"[green]✓ {result.server_name}: {len(result.tools)} tool(s)[/green]")
                total_tools += len(result.tools)
                succeeded += 1

        self.console.print(f"\n[blue]{rule}[/blue]")
        self.console.print(f"[bold]Total: {total_tools} tool(s) from {succeeded} server(s)[/bold]")
        if failed:
            self.console.print(f"[yellow]Failed servers: {failed}[/yellow]")
        self.console.print(f"[blue]{rule}[/blue]\n")
