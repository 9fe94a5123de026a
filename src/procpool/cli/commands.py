"""
CLI: single-command and parallel-run scenarios.

    procpool run-command [--env E]... ARGV...
    procpool start-command-ENOENT [--env E]... ARGV...
    procpool run-command-parallel JOBS ARGV...
    procpool run-command-abort JOBS ARGV...
    procpool run-command-no-jobs JOBS ARGV...
    procpool inherited-handle
    procpool inherited-handle-child

The parallel scenarios feed the scheduler from :class:`PreloadedTasks`,
which hands out the same command four times and writes
``preloaded output of a child`` into each task's buffer.
"""

from __future__ import annotations

import asyncio
import io
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import typer

from procpool.cli.utils import apply_env, die, parse_jobs, require_argv
from procpool.core.errors import StartError
from procpool.core.host import effective_jobs
from procpool.execution.child import ChildProcess, ExitStatus, StreamMode, run_command
from procpool.execution.parallel import TaskSlot, run_processes_parallel
from procpool.execution.protocols import NO_MORE_TASKS, TASK_READY, TaskFinished, TaskSource

ENV_HELP = "Set NAME=VALUE (or unset NAME) in the child environment. Repeatable."


# ── Stub task sources and callbacks ──────────────────────────────────────


@dataclass
class PreloadedTasks:
    """Task source handing out *argv* up to *limit* times."""

    argv: list[str]
    env: list[str] = field(default_factory=list)
    limit: int = 4
    handed_out: int = 0

    def __call__(self, child: ChildProcess, out: io.StringIO, ctx: object, slot: TaskSlot) -> int:
        if self.handed_out >= self.limit:
            return NO_MORE_TASKS

        child.add_args(*self.argv)
        apply_env(child, self.env)
        out.write("preloaded output of a child\n")
        self.handed_out += 1
        return TASK_READY


def no_job(child: ChildProcess, out: io.StringIO, ctx: object, slot: TaskSlot) -> int:
    out.write("no further jobs available\n")
    return NO_MORE_TASKS


def request_stop(result: ExitStatus, out: io.StringIO, ctx: object, data: object) -> int:
    out.write("asking for a quick stop\n")
    return 1


# ── Single-command scenarios ─────────────────────────────────────────────


def run_command_cmd(
    argv: list[str] | None = typer.Argument(None, help="Command and arguments to run."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help=ENV_HELP),
) -> None:
    """Run one command and exit with its status (127 if it cannot start)."""
    argv = require_argv(argv, "run-command [--env E]... <argv>...")
    child = apply_env(ChildProcess(argv=argv), env)
    try:
        status = run_command(child)
    except StartError as exc:
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(code=127)
    raise typer.Exit(code=status.code)


async def _start_fails_not_found(child: ChildProcess) -> bool:
    try:
        await child.start()
    except StartError as exc:
        return exc.not_found
    await child.wait()
    return False


def start_command_enoent(
    argv: list[str] | None = typer.Argument(None, help="Command expected to be missing."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help=ENV_HELP),
) -> None:
    """Succeed only if starting the command fails with "not found"."""
    argv = require_argv(argv, "start-command-ENOENT [--env E]... <argv>...")
    child = apply_env(ChildProcess(argv=argv), env)
    if asyncio.run(_start_fails_not_found(child)):
        return
    typer.echo("FAIL start-command-ENOENT", err=True)
    raise typer.Exit(code=1)


# ── Parallel scenarios ───────────────────────────────────────────────────


def _run_scenario(
    jobs: str | None,
    argv: list[str] | None,
    env: list[str] | None,
    usage: str,
    source: TaskSource | None,
    finished: TaskFinished | None,
) -> None:
    argv = require_argv(argv, usage)
    if source is None:
        source = PreloadedTasks(argv=argv, env=list(env or []))
    result = run_processes_parallel(effective_jobs(parse_jobs(jobs)), source, None, finished)
    raise typer.Exit(code=result)


def run_command_parallel(
    jobs: str | None = typer.Argument(None, help="Parallel job count (<= 0 or non-numeric: one per CPU)."),
    argv: list[str] | None = typer.Argument(None, help="Command run by every task."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help=ENV_HELP),
) -> None:
    """Run four copies of a command in parallel."""
    _run_scenario(jobs, argv, env, "run-command-parallel <jobs> <argv>...", None, None)


def run_command_abort(
    jobs: str | None = typer.Argument(None, help="Parallel job count (<= 0 or non-numeric: one per CPU)."),
    argv: list[str] | None = typer.Argument(None, help="Command run by every task."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help=ENV_HELP),
) -> None:
    """Like run-command-parallel, but every completion asks for a stop."""
    _run_scenario(jobs, argv, env, "run-command-abort <jobs> <argv>...", None, request_stop)


def run_command_no_jobs(
    jobs: str | None = typer.Argument(None, help="Parallel job count (<= 0 or non-numeric: one per CPU)."),
    argv: list[str] | None = typer.Argument(None, help="Ignored; no task is ever produced."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help=ENV_HELP),
) -> None:
    """Run with a task source that has no work at all."""
    _run_scenario(jobs, argv, env, "run-command-no-jobs <jobs> <argv>...", no_job, request_stop)


# ── Descriptor inheritance ───────────────────────────────────────────────


async def _check_inherited_handle(child: ChildProcess, fd: int, path: Path) -> None:
    try:
        await child.start()
    except StartError:
        os.close(fd)
        path.unlink()
        die("Could not start child process")

    # The child must not hold the temp file open, or deleting it fails on
    # platforms that refuse to remove open files.
    os.close(fd)
    try:
        path.unlink()
    except OSError:
        child.kill()
        await child.wait()
        die(f"Could not delete '{path}'")

    child.close_stream("stdin")
    status = await child.wait()
    if not status.ok:
        die("Child did not finish")


def inherited_handle() -> None:
    """Check that a temp file opened here does not leak into a child."""
    fd, name = tempfile.mkstemp(prefix="out-", dir=".")
    child = ChildProcess(
        argv=[sys.executable, "-m", "procpool", "inherited-handle-child"],
        stdin=StreamMode.PIPE,
        stdout=StreamMode.DISCARD,
        stderr=StreamMode.DISCARD,
    )
    asyncio.run(_check_inherited_handle(child, fd, Path(name)))


def inherited_handle_child() -> None:
    """Read all of standard input and echo it back."""
    data = sys.stdin.buffer.read()
    typer.echo(f"Received {data.decode(errors='replace')}")
