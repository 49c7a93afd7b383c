"""
MCPorter CLI - list servers and tools, call a tool from the shell.

    mcporter list
    mcporter list figma
    mcporter call figma get_document_info
    mcporter call figma create_rectangle x=100 y=100 width=200 height=150 name="Test"
"""

import asyncio
import json
import logging
import os
import re
import shlex
import sys
from typing import Any, Dict, Optional, Sequence

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from mcporter import __version__
from mcporter.errors import MCPorterError
from mcporter.runtime import Runtime, create_runtime

console = Console()
err_console = Console(stderr=True)

CHANNEL_ENV_VAR = "MCPORTER_CHANNEL"

_INT = re.compile(r"^-?\d+$")
_FLOAT = re.compile(r"^-?\d+\.\d+$")


def parse_arguments(pairs: Sequence[str]) -> Dict[str, Any]:
    """
    Turn ``key=value`` pairs into tool arguments.

    Values are coerced to int, float, bool or None where they look like one;
    surrounding quotes are stripped from everything else.
    """
    result: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="ARGS")
        result[key] = coerce_value(value)
    return result


def coerce_value(value: str) -> Any:
    if _INT.match(value):
        return int(value)
    if _FLOAT.match(value):
        return float(value)
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "null":
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _build_runtime(config_path: Optional[str], server: Optional[str] = None, stdio: Optional[str] = None) -> Runtime:
    servers = None
    if stdio:
        argv = shlex.split(stdio)
        if not argv:
            raise click.BadParameter("empty command", param_hint="--stdio")
        servers = [{"name": server, "command": argv[0], "args": argv[1:], "cwd": os.getcwd()}]
    return create_runtime(config_path=config_path, servers=servers)


def _print_result(result, raw: bool) -> None:
    if raw:
        console.print(Syntax(json.dumps(result.raw(), indent=2, default=str), "json"))
        return

    text = result.text()
    if text:
        console.print("[bold]Result:[/bold]")
        console.print(text, markup=False, highlight=False)

    data = result.json()
    if isinstance(data, (dict, list)):
        console.print("\n[bold]JSON:[/bold]")
        console.print(Syntax(json.dumps(data, indent=2), "json"))

    if not text and data is None:
        console.print("[dim](empty result)[/dim]")


def _fail(exc: Exception) -> None:
    err_console.print(f"[red]Error: {escape(str(exc))}[/red]", highlight=False)
    sys.exit(1)


@click.group()
@click.version_option(__version__, "--version", "-v", prog_name="mcporter")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="Server config file (YAML or JSON)")
@click.option("--verbose", is_flag=True, help="Log transport traffic")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """
    MCPorter - call MCP tool servers from the command line.

    \b
    Examples:
        mcporter list                          # Configured servers
        mcporter list context7                 # Tools of one server
        mcporter call context7 resolve-library-id query=react
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=err_console, show_path=False)],
        )


@cli.command("list")
@click.argument("server", required=False)
@click.option("--schema", "schema_tool", metavar="TOOL", help="Show the full schema of one tool")
@click.pass_context
def list_command(ctx: click.Context, server: Optional[str], schema_tool: Optional[str]) -> None:
    """List configured servers, or the tools of SERVER."""
    try:
        ok = asyncio.run(_list(ctx.obj["config_path"], server, schema_tool))
    except MCPorterError as exc:
        _fail(exc)
    if not ok:
        sys.exit(1)


async def _list(config_path: Optional[str], server: Optional[str], schema_tool: Optional[str]) -> bool:
    runtime = _build_runtime(config_path)
    async with runtime:
        if server is None:
            table = Table(title="Servers")
            table.add_column("Name", style="cyan")
            table.add_column("Kind")
            table.add_column("Session")
            table.add_column("Command", style="dim")
            for name in runtime.list_servers():
                spec = runtime.server_spec(name)
                session = spec.session.handshake_tool if spec.session else ""
                table.add_row(name, spec.kind.value, session, " ".join(spec.command_line()))
            console.print(table)
            return True

        tools = await runtime.list_tools(server)
        if schema_tool:
            match = next((t for t in tools if t.name == schema_tool), None)
            if match is None:
                err_console.print(f"[yellow]Tool not found: {escape(server)}.{escape(schema_tool)}[/yellow]")
                return False
            console.print(match.full_schema_text(), markup=False)
            return True

        console.print(f"[bold]Available tools ({len(tools)}):[/bold]")
        for tool in tools:
            console.print(f"  {tool.summary_line()}", markup=False)
        return True


@cli.command("call")
@click.argument("server")
@click.argument("tool")
@click.argument("args", nargs=-1)
@click.option("--channel", envvar=CHANNEL_ENV_VAR, help="Channel id for session-scoped servers")
@click.option("--timeout", type=float, help="Seconds to wait for the tool")
@click.option("--stdio", help="Run SERVER as this command instead of the configured one")
@click.option("--raw", is_flag=True, help="Print the raw response payload")
@click.pass_context
def call_command(
    ctx: click.Context,
    server: str,
    tool: str,
    args: tuple,
    channel: Optional[str],
    timeout: Optional[float],
    stdio: Optional[str],
    raw: bool,
) -> None:
    """
    Call TOOL on SERVER with key=value ARGS.

    \b
    Examples:
        mcporter call figma get_selection
        mcporter call figma create_rectangle x=100 y=100 width=200 height=150
        mcporter call docs search --stdio "npx -y docs-mcp" query="async io"
    """
    arguments = parse_arguments(args)
    try:
        ok = asyncio.run(_call(ctx.obj["config_path"], server, tool, arguments, channel, timeout, stdio, raw))
    except MCPorterError as exc:
        _fail(exc)
    if not ok:
        sys.exit(1)


async def _call(
    config_path: Optional[str],
    server: str,
    tool: str,
    arguments: Dict[str, Any],
    channel: Optional[str],
    timeout: Optional[float],
    stdio: Optional[str],
    raw: bool,
) -> bool:
    runtime = _build_runtime(config_path, server, stdio)
    async with runtime:
        spec = runtime.server_spec(server)
        if spec.session and tool != spec.session.handshake_tool:
            state = await runtime.establish_session(server, channel)
            console.print(f"[green]✓[/green] Connected to channel: {state.channel_id}\n")
        elif spec.session and channel and spec.session.channel_argument not in arguments:
            arguments[spec.session.channel_argument] = channel

        console.print(f"[dim]Calling: {server}.{tool}[/dim]")
        if arguments:
            console.print(f"[dim]Arguments: {escape(json.dumps(arguments))}[/dim]")

        result = await runtime.invoke(server, tool, arguments, timeout=timeout)
        _print_result(result, raw)
        return not result.is_error


def main() -> None:
    """Entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
