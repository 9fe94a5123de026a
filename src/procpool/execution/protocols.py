"""
Callback protocols for the parallel scheduler.

The scheduler never sees a task list. It asks a caller-supplied
*task source* for one task at a time, only when a slot is free, and
reports every task back through exactly one of two callbacks:

- ``StartFailure`` when the child could not be launched at all, or
- ``TaskFinished`` when a started child has exited.

All three run on the coordinator, one at a time, so they may mutate the
shared caller context without locking. They are expected to return
quickly: the coordinator does nothing else while a callback runs.

Architecture:
    ::

        TaskSource(child, out, ctx, slot) -> int
            0  no more tasks
            1  ``child`` populated, ``slot.data`` set to the correlation value

        StartFailure(out, ctx, data) -> int
            ORed into the run result; non-zero also requests a stop

        TaskFinished(result, out, ctx, data) -> int
            ORed into the run result; non-zero requests a graceful stop

    ``out`` is the task's ``io.StringIO`` buffer. Everything written to it
    is printed as one contiguous block when the task is done.

Tags:
    protocol, callbacks, scheduler, procpool
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Protocol, TypeVar

if TYPE_CHECKING:
    from procpool.execution.child import ChildProcess, ExitStatus
    from procpool.execution.parallel import TaskSlot

C = TypeVar("C", contravariant=True)
T = TypeVar("T")

NO_MORE_TASKS = 0
TASK_READY = 1


class TaskSource(Protocol[C, T]):
    """Produces the next task by populating ``child``."""

    def __call__(
        self,
        child: ChildProcess,
        out: io.StringIO,
        ctx: C,
        slot: TaskSlot[T],
    ) -> int: ...


class StartFailure(Protocol[C, T]):
    """Called when a pulled task's child could not be launched."""

    def __call__(self, out: io.StringIO, ctx: C, data: T | None) -> int: ...


class TaskFinished(Protocol[C, T]):
    """Called once a started child has exited, whatever its status."""

    def __call__(
        self,
        result: ExitStatus,
        out: io.StringIO,
        ctx: C,
        data: T | None,
    ) -> int: ...


def default_start_failure(out: io.StringIO, ctx: object, data: object) -> int:
    return 0


def default_task_finished(result: ExitStatus, out: io.StringIO, ctx: object, data: object) -> int:
    return 0


__all__ = [
    "NO_MORE_TASKS",
    "TASK_READY",
    "TaskSource",
    "StartFailure",
    "TaskFinished",
    "default_start_failure",
    "default_task_finished",
]
