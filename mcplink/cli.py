"""Command line entry point: run a server, list or call its tools."""
import asyncio
import json
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from mcplink import __version__
from mcplink.config import Settings
from mcplink.logging_utils import configure_logging, ensure_log_file
from mcplink.protocol import (
    CallToolResult,
    ClientSession,
    McpError,
    ToolDescriptor,
    open_server_session,
)

app = typer.Typer(
    name="mcplink",
    help="Talk to an MCP server over stdio.",
    no_args_is_help=True,
)

console = Console()

_PASSTHROUGH = {"allow_extra_args": True, "ignore_unknown_options": True}


def _setup(log_level: Optional[str], debug: bool, log_file: bool) -> Settings:
    settings = Settings.from_env()
    if log_level:
        settings.log_level = log_level.upper()
    configure_logging("DEBUG" if debug else settings.log_level)
    if log_file:
        path = ensure_log_file("mcplink")
        console.print(f"[dim]Logging to {path}[/dim]")
    return settings


def _print_server(session: ClientSession) -> None:
    info = session.server_info
    console.print("[bold green]MCP initialization successful[/bold green]")
    console.print(f"Protocol version: {session.protocol_version or 'not specified'}")
    if info:
        console.print(f"Server: {info.get('name', 'not specified')} {info.get('version', '')}")
    for capability, value in session.server_capabilities.items():
        console.print(f" - {capability}: {json.dumps(value)}")


def _print_tools(tools: list[ToolDescriptor]) -> None:
    if not tools:
        console.print("[yellow]Server exposes no tools.[/yellow]")
        return

    table = Table(title="Tools")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Parameters", style="dim")
    for tool in tools:
        properties = tool.input_schema.get("properties") or {}
        table.add_row(tool.name, tool.description, ", ".join(properties))
    console.print(table)


def _print_result(result: CallToolResult) -> None:
    style = "red" if result.is_error else "green"
    console.print(f"[{style}]Tool returned {len(result.content)} content block(s)[/{style}]")
    for block in result.content:
        if block.get("type") == "text":
            console.print(block.get("text", ""))
        else:
            console.print_json(data=block)


async def _list_tools(command: list[str], settings: Settings, wait: bool) -> None:
    async with open_server_session(
        command,
        working_dir=settings.working_dir,
        timeout=settings.request_timeout,
    ) as session:
        _print_server(session)
        tools = await asyncio.wait_for(session.list_tools(), timeout=settings.request_timeout)
        _print_tools(tools)

        if wait:
            console.print("\nPress Ctrl+C to exit...")
            if session.connection is not None:
                await session.connection.wait_closed()


async def _call_tool(
    command: list[str],
    settings: Settings,
    name: str,
    arguments: dict[str, Any],
) -> CallToolResult:
    async with open_server_session(
        command,
        working_dir=settings.working_dir,
        timeout=settings.request_timeout,
    ) as session:
        return await asyncio.wait_for(
            session.call_tool(name, arguments),
            timeout=settings.request_timeout,
        )


def _resolve_command(ctx: typer.Context, command: Optional[List[str]], settings: Settings) -> list[str]:
    argv = [arg for arg in [*(command or []), *ctx.args] if arg != "--"]
    if not argv:
        argv = settings.server_command
    if not argv:
        console.print("[red]Error:[/red] no server command given (pass it after -- or set MCPLINK_SERVER_COMMAND)")
        raise typer.Exit(2)
    return argv


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\nShutting down client and server...")
        raise typer.Exit(0)
    except (McpError, asyncio.TimeoutError) as e:
        console.print(f"[red]Error:[/red] {str(e) or 'request timed out'}")
        raise typer.Exit(1)


@app.command(context_settings=_PASSTHROUGH)
def tools(
    ctx: typer.Context,
    command: Optional[List[str]] = typer.Argument(None, help="Server command, e.g. -- node server.js ."),
    wait: bool = typer.Option(False, "--wait", "-w", help="Stay connected until Ctrl+C"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Console log level"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Log every frame sent and received"),
    log_file: bool = typer.Option(False, "--log-file", help="Also write logs to ~/.mcplink/logs"),
):
    """Start a server, perform the handshake and list its tools."""
    settings = _setup(log_level, debug, log_file)
    argv = _resolve_command(ctx, command, settings)
    _run(_list_tools(argv, settings, wait))


@app.command(context_settings=_PASSTHROUGH)
def call(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tool name"),
    command: Optional[List[str]] = typer.Argument(None, help="Server command"),
    args: str = typer.Option("{}", "--args", "-a", help="Tool arguments as a JSON object"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Console log level"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Log every frame sent and received"),
    log_file: bool = typer.Option(False, "--log-file", help="Also write logs to ~/.mcplink/logs"),
):
    """Start a server and call one of its tools."""
    try:
        arguments = json.loads(args)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"not valid JSON: {e}", param_hint="--args")
    if not isinstance(arguments, dict):
        raise typer.BadParameter("must be a JSON object", param_hint="--args")

    settings = _setup(log_level, debug, log_file)
    argv = _resolve_command(ctx, command, settings)
    result = _run(_call_tool(argv, settings, name, arguments))
    _print_result(result)
    if result.is_error:
        raise typer.Exit(1)


@app.command()
def version():
    """Show the mcplink version."""
    console.print(f"mcplink {__version__}")


if __name__ == "__main__":
    app()
