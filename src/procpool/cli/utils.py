"""
CLI utility helpers -- consoles, fatal errors, and argv passthrough.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape

from procpool.execution.child import ChildProcess

err_console = Console(stderr=True)

# Stop option parsing at the first positional so a child's own flags
# (``sh -c ...``, ``--quiet``) reach it untouched.
PASSTHROUGH = {"ignore_unknown_options": True, "allow_interspersed_args": False}


_LEADING_INT = re.compile(r"\s*([+-]?\d+)", re.ASCII)


def parse_jobs(text: str | None) -> int | None:
    """Leading integer of a JOBS argument, or 0 when there is none.

    ``"4"`` -> 4, ``"4x"`` -> 4, ``"x"`` -> 0 (one job per CPU after
    normalization). ``None`` stays ``None`` so callers can report usage.
    """
    if text is None:
        return None
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def die(message: str, code: int = 1) -> NoReturn:
    """Print a fatal error to stderr and exit."""
    err_console.print(f"[bold red]fatal:[/bold red] {escape(message)}", highlight=False)
    raise typer.Exit(code=code)


def require_argv(argv: Sequence[str] | None, usage: str) -> list[str]:
    """Return *argv* as a list, or exit 1 with a usage line when it is empty."""
    if not argv:
        err_console.print(f"usage: procpool {escape(usage)}", highlight=False)
        raise typer.Exit(code=1)
    return list(argv)


def apply_env(child: ChildProcess, specs: Sequence[str] | None) -> ChildProcess:
    """Apply ``--env`` specifiers (``NAME=VALUE`` or ``NAME``) to *child*."""
    for spec in specs or ():
        try:
            child.push_env(spec)
        except ValueError as exc:
            die(str(exc))
    return child
