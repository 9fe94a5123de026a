"""
Root Typer application for the procpool CLI.

Each sub-command is one scenario of the process runner: a single child,
a parallel run with various callback wiring, the descriptor-inheritance
check, or a full testsuite run.
"""

from __future__ import annotations

import click
import typer
from pydantic import ValidationError
from typer import Typer
from typer.core import TyperGroup

from procpool.cli import commands
from procpool.cli.testsuite import testsuite
from procpool.cli.utils import PASSTHROUGH, die
from procpool.core.errors import ConfigError
from procpool.core.logging import configure_logging
from procpool.core.settings import get_settings


class ProcpoolGroup(TyperGroup):
    """Root command group whose usage errors exit with status 1.

    Covers unknown sub-commands, bad option values, and missing
    arguments, both for the root and for every sub-command.
    """

    def make_context(self, *args, **kwargs) -> click.Context:
        try:
            return super().make_context(*args, **kwargs)
        except click.UsageError as exc:
            exc.exit_code = 1
            raise

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except click.UsageError as exc:
            exc.exit_code = 1
            raise


app = Typer(
    name="procpool",
    cls=ProcpoolGroup,
    help="procpool: run child processes through a bounded parallel pool.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from procpool import __version__

        typer.echo(f"procpool {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="Log level (default from PROCPOOL_LOG_LEVEL)."
    ),
    log_json: bool | None = typer.Option(
        None, "--log-json/--no-log-json", help="Force JSON or console log rendering."
    ),
) -> None:
    """procpool CLI: run commands, parallel scenarios, and testsuites."""
    try:
        settings = get_settings()
        configure_logging(
            level=log_level or settings.log_level,
            json_format=log_json if log_json is not None else settings.log_json,
        )
    except ValidationError as exc:
        die(f"invalid PROCPOOL_* setting: {exc.errors()[0]['msg']}")
    except ConfigError as exc:
        die(exc.message)


# ── Sub-command registration ─────────────────────────────────────────────

app.command("run-command", context_settings=PASSTHROUGH)(commands.run_command_cmd)
app.command("start-command-ENOENT", context_settings=PASSTHROUGH)(commands.start_command_enoent)
app.command("run-command-parallel", context_settings=PASSTHROUGH)(commands.run_command_parallel)
app.command("run-command-abort", context_settings=PASSTHROUGH)(commands.run_command_abort)
app.command("run-command-no-jobs", context_settings=PASSTHROUGH)(commands.run_command_no_jobs)
app.command("inherited-handle")(commands.inherited_handle)
app.command("inherited-handle-child")(commands.inherited_handle_child)
app.command("testsuite", context_settings={"allow_interspersed_args": False})(testsuite)
