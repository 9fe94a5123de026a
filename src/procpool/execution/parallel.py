"""Parallel scheduler -- run many child processes through a fixed pool of slots.

WHY
───
Test suites, build steps, and batch jobs often boil down to "run these
N commands, at most J at a time, and tell me which ones failed". The
commands are independent, but their output must not interleave in the
report, a command that cannot even be launched must be reported
differently from one that fails, and a caller must be able to say
"stop starting new work" without killing what is already running.

ARCHITECTURE
────────────
::

    ParallelScheduler(jobs, get_next_task, start_failure, task_finished, ctx)
      │
      │  IDLE ──► FILLING ──► DRAINING ──► DONE
      │
      ├── _fill()      pull tasks while a slot is free and no stop was requested
      │     └── get_next_task(child, out, ctx, slot) -> 0 | 1
      │           1: child.start()
      │                ├─ StartError ─► start_failure(out, ctx, data)
      │                └─ ok ─────────► slot busy, output collected in background
      │
      ├── _wait_any()  asyncio.wait(FIRST_COMPLETED) over running slots
      │     └── task_finished(status, out, ctx, data)   (in finish order)
      │
      └── result = OR of every callback return value

    One coordinator owns every slot. Callbacks run on it one at a time,
    so caller state shared between callbacks needs no locking.

OUTPUT
──────
Each task gets an ``io.StringIO`` buffer. The task source writes into it,
the child's merged stdout/stderr is appended when the child exits, then
the completion callback adds its own lines. The whole buffer is written
to the report stream in one piece, so concurrent tasks never interleave.
Blocks appear in completion order, not start order. Child output is
decoded as UTF-8 with ``surrogateescape``, and streams that expose a
binary ``buffer`` receive the original bytes unchanged.

CANCELLATION
────────────
A non-zero callback return sets ``stop_requested``: no further pulls,
but running children are always drained to completion. There is no
timeout: a child that never exits keeps the run waiting. Only a fatal
error (``WaitError``, a callback raising, a protocol violation) kills
the remaining children before the exception propagates.

Example::

    def next_task(child, out, ctx, slot):
        if not ctx:
            return NO_MORE_TASKS
        name = ctx.pop()
        child.add_args("sh", name)
        slot.data = name
        return TASK_READY

    result = run_processes_parallel(4, next_task, ctx=["a.sh", "b.sh"])
"""

from __future__ import annotations

import asyncio
import io
import sys
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Generic, TextIO, TypeVar

from procpool.core.errors import ProtocolMisuseError, StartError
from procpool.core.logging import get_logger
from procpool.execution.child import ChildProcess, ExitStatus, StreamMode
from procpool.execution.protocols import (
    StartFailure,
    TaskFinished,
    TaskSource,
    default_start_failure,
    default_task_finished,
)

logger = get_logger(__name__)

C = TypeVar("C")
T = TypeVar("T")


class SchedulerPhase(str, Enum):
    IDLE = "idle"
    FILLING = "filling"
    DRAINING = "draining"
    DONE = "done"


@dataclass
class SchedulerRunState:
    """Counters and flags for one scheduler run."""

    jobs: int
    phase: SchedulerPhase = SchedulerPhase.IDLE
    running: int = 0
    peak_running: int = 0
    pulls: int = 0
    started: int = 0
    completions: int = 0
    start_failures: int = 0
    stop_requested: bool = False
    exhausted: bool = False
    result: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


@dataclass(eq=False)
class TaskSlot(Generic[T]):
    """One position in the worker pool.

    ``data`` is the caller's correlation value. The task source sets it
    when it hands out a task, and it is passed back unchanged to whichever
    callback reports that task.
    """

    index: int
    child: ChildProcess | None = None
    out: io.StringIO | None = None
    data: T | None = None
    finished_at: float | None = None

    @property
    def busy(self) -> bool:
        return self.child is not None

    def assign(self, child: ChildProcess, out: io.StringIO) -> None:
        self.child = child
        self.out = out
        self.data = None
        self.finished_at = None

    def release(self) -> None:
        self.child = None
        self.out = None
        self.data = None
        self.finished_at = None


class ParallelScheduler(Generic[C, T]):
    """Runs tasks from a pull-based source with at most ``jobs`` children alive.

    Args:
        jobs: Number of slots (>= 1). Callers map "0 = one per CPU"
            before constructing the scheduler.
        get_next_task: Task source, polled only when a slot is free.
        start_failure: Called for tasks whose child could not be launched.
        task_finished: Called for tasks whose child has exited.
        ctx: Caller context handed to every callback.
        report: Stream receiving each task's buffered output
            (defaults to ``sys.stderr`` at run time).
    """

    def __init__(
        self,
        jobs: int,
        get_next_task: TaskSource[C, T],
        start_failure: StartFailure[C, T] | None = None,
        task_finished: TaskFinished[C, T] | None = None,
        ctx: C | None = None,
        *,
        report: TextIO | None = None,
    ) -> None:
        if jobs < 1:
            raise ValueError(f"jobs must be >= 1, got {jobs}")
        self._get_next_task = get_next_task
        self._start_failure = start_failure or default_start_failure
        self._task_finished = task_finished or default_task_finished
        self._ctx = ctx
        self._report = report
        self.slots: list[TaskSlot[T]] = [TaskSlot(index=i) for i in range(jobs)]
        self.state = SchedulerRunState(jobs=jobs)
        self._running: dict[asyncio.Task[ExitStatus], TaskSlot[T]] = {}

    @property
    def jobs(self) -> int:
        return self.state.jobs

    @property
    def report(self) -> TextIO:
        return self._report if self._report is not None else sys.stderr

    async def run(self) -> int:
        """Run until the source is exhausted or a stop was requested, and
        every started child has been reported.

        Returns:
            The OR of every callback return value (0 when all went well).

        Raises:
            WaitError: a child's exit status could not be collected.
            ProtocolMisuseError: the task source broke its contract, or the
                scheduler was run twice.
        """
        if self.state.phase is not SchedulerPhase.IDLE:
            raise ProtocolMisuseError("a scheduler instance can only run once")

        self.state.phase = SchedulerPhase.FILLING
        logger.debug("run_started", jobs=self.jobs)
        try:
            while True:
                await self._fill()
                if not self._running:
                    break
                await self._wait_any()
        except BaseException:
            await self._abort_running()
            raise

        self.state.phase = SchedulerPhase.DONE
        logger.debug("run_finished", **self.state.to_dict())
        return self.state.result

    # ------------------------------------------------------------------
    # Filling
    # ------------------------------------------------------------------

    def _should_pull(self) -> bool:
        return not (self.state.stop_requested or self.state.exhausted)

    def _free_slot(self) -> TaskSlot[T] | None:
        for slot in self.slots:
            if not slot.busy:
                return slot
        return None

    async def _fill(self) -> None:
        while self._should_pull():
            slot = self._free_slot()
            if slot is None:
                return
            await self._start_one(slot)
        self.state.phase = SchedulerPhase.DRAINING

    async def _start_one(self, slot: TaskSlot[T]) -> None:
        child = ChildProcess()
        out = io.StringIO()
        slot.assign(child, out)

        code = self._get_next_task(child, out, self._ctx, slot)
        self.state.pulls += 1
        if not code:
            self.state.exhausted = True
            logger.debug("task_source_exhausted", pulls=self.state.pulls)
            self._flush(out)
            slot.release()
            return

        if not child.argv:
            data = slot.data
            slot.release()
            raise ProtocolMisuseError(
                "task source reported a task but left the argument vector empty"
            ).with_context(task=repr(data))

        # The scheduler owns redirection while the task runs.
        child.stdin = StreamMode.DISCARD
        child.stdout = StreamMode.PIPE
        child.stderr = StreamMode.STDOUT
        logger.debug("task_pulled", slot=slot.index, argv=child.argv)

        try:
            await child.start()
        except StartError as exc:
            out.write(f"error: {exc.message}\n")
            self.state.start_failures += 1
            logger.debug("task_start_failed", slot=slot.index, **exc.to_dict())
            code = self._start_failure(out, self._ctx, slot.data)
            self.state.result |= code
            if code:
                self._request_stop("start_failure", slot)
            self._flush(out)
            slot.release()
            return

        self.state.started += 1
        self.state.running += 1
        self.state.peak_running = max(self.state.peak_running, self.state.running)
        logger.debug("task_started", slot=slot.index, pid=child.pid)

        task = asyncio.create_task(self._collect(slot), name=f"procpool-slot-{slot.index}")
        self._running[task] = slot

    async def _collect(self, slot: TaskSlot[T]) -> ExitStatus:
        child = slot.child
        output = await child.read_output()
        status = await child.wait()
        slot.finished_at = time.monotonic()
        slot.out.write(output.decode("utf-8", errors="surrogateescape"))
        return status

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _wait_any(self) -> None:
        done, _ = await asyncio.wait(self._running, return_when=asyncio.FIRST_COMPLETED)
        for task in sorted(done, key=lambda t: self._running[t].finished_at or 0.0):
            slot = self._running.pop(task)
            self.state.running -= 1
            self._finish_one(slot, task.result())

    def _finish_one(self, slot: TaskSlot[T], status: ExitStatus) -> None:
        self.state.completions += 1
        logger.debug(
            "task_finished",
            slot=slot.index,
            pid=slot.child.pid,
            status=status.describe(),
        )
        code = self._task_finished(status, slot.out, self._ctx, slot.data)
        self.state.result |= code
        if code:
            self._request_stop("task_finished", slot)
        self._flush(slot.out)
        slot.release()

    def _request_stop(self, reason: str, slot: TaskSlot[T]) -> None:
        if not self.state.stop_requested:
            logger.debug("stop_requested", reason=reason, slot=slot.index, running=self.state.running)
        self.state.stop_requested = True

    def _flush(self, out: io.StringIO) -> None:
        text = out.getvalue()
        if not text:
            return
        report = self.report
        binary = getattr(report, "buffer", None)
        if binary is None:
            report.write(text)
            report.flush()
            return
        # Child bytes that are not UTF-8 were decoded with surrogateescape;
        # encoding the same way writes them back unchanged.
        report.flush()
        binary.write(text.encode("utf-8", errors="surrogateescape"))
        binary.flush()

    async def _abort_running(self) -> None:
        if not self._running:
            return
        tasks = list(self._running)
        logger.warning("run_aborted", killing=len(tasks))
        # Collectors may be stuck reading a pipe a grandchild still holds,
        # so cancel them and reap the killed children directly.
        for task, slot in self._running.items():
            slot.child.kill()
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(*(slot.child.reap() for slot in self._running.values()))
        for slot in self._running.values():
            slot.release()
        self._running.clear()
        self.state.running = 0


def run_processes_parallel(
    jobs: int,
    get_next_task: TaskSource[C, T],
    start_failure: StartFailure[C, T] | None = None,
    task_finished: TaskFinished[C, T] | None = None,
    ctx: C | None = None,
    *,
    report: TextIO | None = None,
) -> int:
    """Synchronous entry point: build a :class:`ParallelScheduler` and run it
    on a fresh event loop. Returns the aggregate result."""
    scheduler: ParallelScheduler[C, T] = ParallelScheduler(
        jobs,
        get_next_task,
        start_failure,
        task_finished,
        ctx,
        report=report,
    )
    return asyncio.run(scheduler.run())


__all__ = [
    "ParallelScheduler",
    "SchedulerPhase",
    "SchedulerRunState",
    "TaskSlot",
    "run_processes_parallel",
]
