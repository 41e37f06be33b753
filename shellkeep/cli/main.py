"""shellkeep CLI.

`shellkeep` with no arguments installs; `shellkeep --uninstall` removes
the block. The injected bashrc block calls `shellkeep ensure`.
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from shellkeep.exceptions import KeepError

console = Console()
err_console = Console(stderr=True)

APP = "shellkeep"

_app = typer.Typer(
    name="shellkeep",
    help="Keep a background worker alive across interactive shell sessions.",
    add_completion=False,
)


def _ok(message: str) -> None:
    console.print(f"{escape(f'[{APP}]')} {escape(message)}")


def _die(message: str) -> None:
    err_console.print(f"{escape(f'[{APP}]')} [red]ERROR:[/red] {escape(message)}")
    raise typer.Exit(1)


@_app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    uninstall: bool = typer.Option(
        False, "--uninstall", help="Remove the autostart block and exit."
    ),
):
    """Install the autostart block (and payload, if a URL is configured)."""
    if ctx.invoked_subcommand is not None:
        return

    from shellkeep import bootstrap
    from shellkeep.cli.context import init_cli

    settings = init_cli()
    try:
        if uninstall:
            bootstrap.uninstall(settings)
            _ok("Removed autostart block.")
            return

        with console.status("[bold cyan]installing...", spinner="dots"):
            report = asyncio.run(bootstrap.install(settings))
    except KeepError as e:
        _die(str(e))
    except OSError as e:
        _die(f"Cannot update {e.filename or settings.rc_path or 'bash.bashrc'}: {e.strerror or e}")

    if report.payload is not None:
        _ok(f"Payload {report.payload.value}: {settings.payload_path}")
    _ok(f"Updated: {report.rc_path}")


@_app.command("ensure")
def ensure():
    """Start the worker unless it is already running. Never fails."""
    from shellkeep import bootstrap
    from shellkeep.cli.context import init_cli

    try:
        settings = init_cli()
    except Exception:
        # Broken environment config: nothing to start this time.
        return
    bootstrap.ensure(settings)


@_app.command(
    "guard",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def guard(
    command: str = typer.Argument(help="Guarded command to run (cat, less, vim, ...)"),
    args: Optional[list[str]] = typer.Argument(None, help="Arguments for the command (after `--` for --help)"),
):
    """Run a viewer or editor, refusing it on the protected file.

    Options such as --help are read by shellkeep itself. Put them after
    `--` to hand them to the command: `shellkeep guard less -- --help`.
    """
    from shellkeep.cli.context import init_cli
    from shellkeep.guard import CommandGuard, ProtectedPath

    settings = init_cli()
    cmd_guard = CommandGuard(ProtectedPath(settings.guarded_path()))
    try:
        status = cmd_guard.run(command, args or [], cwd=os.getcwd())
    except KeepError as e:
        _die(str(e))
    raise typer.Exit(status)


@_app.command("status")
def status():
    """Show where things are and whether the worker is running."""
    from shellkeep import rcblock
    from shellkeep.cli.context import init_cli
    from shellkeep.processes.matcher import find_worker
    from shellkeep.processes.supervisor import is_alive, resolve_interpreter

    settings = init_cli()
    rc_path = settings.resolve_rc_path()
    installed = rc_path is not None and rcblock.has_block(rc_path, settings.tag)
    interpreter = resolve_interpreter(settings.python_bin)
    pid = find_worker(settings.worker())
    running = pid is not None and is_alive(pid)

    def _flag(ok: bool, yes: str, no: str) -> str:
        return f"[green]{escape(yes)}[/green]" if ok else f"[red]{escape(no)}[/red]"

    console.print(Panel(
        f"rc file:      {_flag(rc_path is not None, str(rc_path), 'not found')}\n"
        f"Block:        {_flag(installed, 'installed', 'not installed')}\n"
        f"Payload:      {_flag(settings.payload_path.is_file(), str(settings.payload_path), str(settings.payload_path) + ' (missing)')}\n"
        f"Interpreter:  {_flag(interpreter is not None, str(interpreter), 'not found')}\n"
        f"Autostart:    {'on' if settings.autostart else 'off'}\n"
        f"Worker:       {_flag(running, f'running (pid {pid})', 'not running')}",
        title="shellkeep",
        border_style="cyan",
    ))


@_app.command("version")
def version_cmd():
    """Show shellkeep version."""
    from shellkeep import __version__
    console.print(f"shellkeep v{__version__}")


def app(args: list[str] | None = None) -> None:
    """Console-script entry point."""
    argv = args if args is not None else sys.argv[1:]
    _app(args=argv, prog_name=APP)
