"""Run a directory of shell test scripts through the parallel scheduler.

The suite object is the scheduler's caller context: ``next_test`` hands
out scripts in discovery order, ``test_finished`` and ``test_failed``
record failures. All three run on the scheduler's coordinator, so the
suite needs no locking.

Report format (written to the report stream, one block per test)::

    Output of 't0001-basic.sh':
    <script output>
    SUCCESS: 't0001-basic.sh'
"""

from __future__ import annotations

import io
import sys
from dataclasses import dataclass, field
from typing import TextIO

from procpool.core.errors import DiscoveryError
from procpool.core.logging import LogContext, get_logger
from procpool.execution.child import ChildProcess, ExitStatus
from procpool.execution.parallel import TaskSlot, run_processes_parallel
from procpool.execution.protocols import NO_MORE_TASKS, TASK_READY

logger = get_logger(__name__)


@dataclass
class Testsuite:
    """State shared by the testsuite callbacks."""

    tests: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    next: int = 0
    quiet: bool = False
    immediate: bool = False
    verbose: bool = False
    trace: bool = False
    shell: str = "sh"

    # not a pytest test class
    __test__ = False

    def script_args(self) -> list[str]:
        """Flags forwarded to every test script."""
        args = []
        if self.quiet:
            args.append("--quiet")
        if self.immediate:
            args.append("-i")
        if self.verbose:
            args.append("-v")
        if self.trace:
            args.append("-x")
        return args


def next_test(child: ChildProcess, out: io.StringIO, suite: Testsuite, slot: TaskSlot[str]) -> int:
    if suite.next >= len(suite.tests):
        return NO_MORE_TASKS

    test = suite.tests[suite.next]
    suite.next += 1
    child.add_args(suite.shell, test, *suite.script_args())

    out.write(f"Output of '{test}':\n")
    slot.data = test
    return TASK_READY


def test_finished(result: ExitStatus, out: io.StringIO, suite: Testsuite, name: str) -> int:
    if not result.ok:
        suite.failed.append(name)

    out.write(f"{'SUCCESS' if result.ok else 'FAIL'}: '{name}'\n")
    return 0


def test_failed(out: io.StringIO, suite: Testsuite, name: str) -> int:
    suite.failed.append(name)
    out.write(f"FAILED TO START: '{name}'\n")
    return 0


def run_testsuite(suite: Testsuite, jobs: int, report: TextIO | None = None) -> int:
    """Run every test in *suite* with up to *jobs* in parallel.

    *jobs* must already be normalized (>= 1); it is clamped to the number
    of tests. Returns 1 if any test failed or could not be started.

    Raises:
        DiscoveryError: the suite has no tests.
    """
    report = report if report is not None else sys.stderr
    if not suite.tests:
        raise DiscoveryError("No tests match!")
    jobs = min(jobs, len(suite.tests))

    report.write(f"Running {len(suite.tests)} tests ({jobs} at a time)\n")
    report.flush()

    with LogContext(run="testsuite", jobs=jobs):
        ret = run_processes_parallel(
            jobs, next_test, test_failed, test_finished, suite, report=report
        )
        logger.debug("testsuite_finished", tests=len(suite.tests), failed=len(suite.failed))

    if suite.failed:
        ret = 1
        report.write(f"{len(suite.failed)} tests failed:\n\n")
        for name in suite.failed:
            report.write(f"\t{name}\n")
        report.flush()

    return 1 if ret else 0
