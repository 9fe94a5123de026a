"""
CLI: ``procpool testsuite`` -- run the shell test scripts in the current directory.
"""

from __future__ import annotations

import typer

from procpool.cli.utils import die
from procpool.core.errors import DiscoveryError
from procpool.core.host import effective_jobs
from procpool.core.settings import get_settings
from procpool.testsuite import Testsuite, discover_tests, run_testsuite


def testsuite(
    patterns: list[str] | None = typer.Argument(None, help="Glob patterns selecting tests (default: all)."),
    immediate: bool = typer.Option(False, "--immediate", "-i", help="Stop at first failed test case(s)."),
    jobs: int | None = typer.Option(None, "--jobs", "-j", help="Run <N> jobs in parallel (<= 0: one per CPU)."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Be terse."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Be verbose."),
    trace: bool = typer.Option(False, "--trace", "-x", help="Trace shell commands."),
) -> None:
    """Run t[0-9][0-9][0-9][0-9]-*.sh scripts in parallel and list the failures.

    Flags other than ``--jobs`` are forwarded to every script.

    Example::

        procpool testsuite -j 4 't00*'
    """
    settings = get_settings()
    requested = jobs if jobs is not None else settings.jobs

    try:
        suite = Testsuite(
            tests=discover_tests(".", patterns or [], settings.test_pattern),
            quiet=quiet,
            immediate=immediate,
            verbose=verbose,
            trace=trace,
            shell=settings.shell,
        )
        ret = run_testsuite(suite, effective_jobs(requested))
    except DiscoveryError as exc:
        die(exc.message)

    raise typer.Exit(code=ret)
