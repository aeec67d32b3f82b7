"""Command line entry point for Termpilot."""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from termpilot.config import Config, get_config, set_config
from termpilot.logging import configure_logging, log
from termpilot.mcp import MCPClientManager, ServerStatus, YamlFileStore
from termpilot.terminal import AsyncTaskManager, LocalTerminalBackend
from termpilot.tools import ToolRegistry, register_builtin_tools
from termpilot.tools.catalog import ToolCatalog

app = typer.Typer(help="Termpilot - MCP tool servers and an autonomous terminal agent")
console = Console()

_STATUS_STYLES = {
    ServerStatus.CONNECTED: "green",
    ServerStatus.CONNECTING: "yellow",
    ServerStatus.ERROR: "red",
    ServerStatus.DISCONNECTED: "dim",
}


@app.callback()
def main(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Load configuration and set up logging for every command."""
    if verbose:
        os.environ["TERMPILOT_LOGGING__LEVEL"] = "DEBUG"

    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            console.print(f"[red]Failed to load config {config}: {e}[/red]")
            raise typer.Exit(1)
    else:
        cfg = Config.load()
    set_config(cfg)
    configure_logging()


def _build_manager(cfg: Config) -> MCPClientManager:
    return MCPClientManager(YamlFileStore(cfg.resolved_servers_path()), settings=cfg.mcp)


async def _with_manager(coro_factory: Any) -> Any:
    cfg = get_config()
    manager = _build_manager(cfg)
    try:
        return await coro_factory(manager)
    finally:
        await manager.close()


def _servers_table(manager: MCPClientManager) -> Table:
    table = Table(title="MCP Servers", show_header=True, header_style="bold cyan")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Transport")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Tools", justify="right")
    table.add_column("Error")
    for state in manager.get_all_servers():
        style = _STATUS_STYLES.get(state.status, "")
        table.add_row(
            state.id,
            state.config.name,
            state.config.transport,
            "yes" if state.config.enabled else "no",
            f"[{style}]{state.status.value}[/{style}]" if style else state.status.value,
            str(state.tool_count),
            state.error or "",
        )
    return table


@app.command()
def servers(
    connect: bool = typer.Option(True, "--connect/--no-connect", help="Auto-connect before listing"),
) -> None:
    """List configured MCP servers and their status."""

    async def _run(manager: MCPClientManager) -> None:
        if connect:
            manager.start()
            await manager.wait_until_started()
        console.print(_servers_table(manager))

    asyncio.run(_with_manager(_run))


@app.command("import-servers")
def import_servers(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file with an mcpServers mapping"),
) -> None:
    """Import servers from a foreign mcpServers JSON file."""
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {file}: {e}[/red]")
        raise typer.Exit(1)

    async def _run(manager: MCPClientManager) -> int:
        imported = await manager.import_servers(data)
        console.print(_servers_table(manager))
        return len(imported)

    try:
        count = asyncio.run(_with_manager(_run))
    except ValueError as e:
        console.print(f"[red]Import failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Imported {count} server(s)[/green]")


@app.command()
def tools() -> None:
    """Connect enabled servers and print the full tool catalog."""
    cfg = get_config()

    async def _run(manager: MCPClientManager) -> None:
        manager.start()
        await manager.wait_until_started()
        backend = LocalTerminalBackend(cfg.terminal)
        tasks = AsyncTaskManager(backend, default_timeout=cfg.terminal.async_task_timeout)
        catalog = ToolCatalog(register_builtin_tools(ToolRegistry(), backend, tasks), manager)

        table = Table(title="Tool Catalog", show_header=True, header_style="bold cyan")
        table.add_column("Name")
        table.add_column("Description")
        for definition in catalog.definitions():
            table.add_row(definition.name, definition.description)
        console.print(table)

    asyncio.run(_with_manager(_run))


@app.command()
def call(
    name: str = typer.Argument(..., help="Composite tool name, e.g. mcp_<server>_<tool>"),
    args: str = typer.Option("{}", "--args", help="Tool arguments as a JSON object"),
) -> None:
    """Invoke one MCP tool by its composite name."""
    try:
        arguments = json.loads(args)
    except json.JSONDecodeError as e:
        console.print(f"[red]--args is not valid JSON: {e}[/red]")
        raise typer.Exit(2)
    if not isinstance(arguments, dict):
        console.print("[red]--args must be a JSON object[/red]")
        raise typer.Exit(2)

    async def _run(manager: MCPClientManager) -> Any:
        manager.start()
        await manager.wait_until_started()
        return await manager.execute_mcp_tool(name, arguments)

    result = asyncio.run(_with_manager(_run))
    if result.success:
        console.print(result.content)
        return
    console.print(f"[red]Error: {result.error}[/red]")
    raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from termpilot import __version__

    console.print(f"Termpilot v{__version__}")


def run() -> None:
    """Console script entry point."""
    try:
        app()
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    run()
