"""
mcpcode CLI - discover and call tools on configured MCP servers.

Reads ``mcp.config.json`` (or ``-c PATH``) and talks to each stdio server
through the hardened client.
"""

import asyncio
import json
import logging
import sys
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from mcpcode import __version__
from mcpcode.client.client import MCPClient
from mcpcode.discovery.tool_discovery import ToolDiscovery
from mcpcode.errors import MCPCodeError
from mcpcode.validation.config import Config

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _load_config(config_path: Optional[str]) -> Config:
    try:
        return Config.load(config_path.strip() if config_path else None)
    except MCPCodeError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--version", "-V", is_flag=True, help="Show version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """
    mcpcode - hardened client for stdio MCP servers.

    \b
    Examples:
        mcpcode discover                        # List tools of every server
        mcpcode discover -s github --json       # One server, JSON output
        mcpcode call github search_repos -a '{"query": "mcp"}'
    """
    if version:
        console.print(f"mcpcode v{__version__}")
        return
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--config", "-c", "config_path", default=None, help="Path to MCP config file")
@click.option("--server", "-s", "servers", multiple=True, help="Only discover these servers")
@click.option("--json", "as_json", is_flag=True, help="Print discovered tools as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging (includes server stderr)")
def discover(config_path: Optional[str], servers: Tuple[str, ...], as_json: bool, verbose: bool) -> None:
    """Connect to each configured server and list its tools."""
    _setup_logging(verbose)
    config = _load_config(config_path)

    discovery = ToolDiscovery(config, console=err_console)
    results = asyncio.run(discovery.discover_all(servers or None))
    discovery.print_summary(results)

    if as_json:
        tools = ToolDiscovery.flatten_tools(results)
        click.echo(json.dumps([tool.model_dump(by_alias=True) for tool in tools], indent=2))
    else:
        table = Table(title="Discovered tools")
        table.add_column("Tool", style="cyan")
        table.add_column("Description")
        for tool in ToolDiscovery.flatten_tools(results):
            description = (tool.description or "").splitlines()[0] if tool.description else ""
            table.add_row(tool.qualified_name, escape(description))
        console.print(table)

    if any(result.error for result in results):
        sys.exit(1)


async def _call(config: Config, server: str, tool: str, arguments: dict) -> object:
    async with MCPClient(server) as client:
        await client.connect(config.get_server_config(server))
        return await client.call_tool(tool, arguments)


@cli.command()
@click.argument("server")
@click.argument("tool")
@click.option("--args", "-a", "raw_args", default="{}", help="Tool arguments as a JSON object")
@click.option("--config", "-c", "config_path", default=None, help="Path to MCP config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging (includes server stderr)")
def call(server: str, tool: str, raw_args: str, config_path: Optional[str], verbose: bool) -> None:
    """Call TOOL on SERVER and print the result."""
    _setup_logging(verbose)
    try:
        arguments = json.loads(raw_args)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")
    if not isinstance(arguments, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    config = _load_config(config_path)
    try:
        result = asyncio.run(_call(config, server, tool, arguments))
    except MCPCodeError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    if isinstance(result, dict) and result.get("type") == "text":
        click.echo(result.get("text", ""))
    else:
        click.echo(json.dumps(result, indent=2))


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
