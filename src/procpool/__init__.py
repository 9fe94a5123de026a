"""
procpool - run many child processes through a small fixed worker pool.

A pull-based scheduler asks the caller for one task at a time, keeps at
most ``jobs`` children alive, buffers each child's output so concurrent
tasks never interleave, and reports every task exactly once, either as
a start failure or with its exit status.
"""

__version__ = "0.1.0"

from procpool.core.errors import ProcpoolError, ProtocolMisuseError, StartError, WaitError
from procpool.execution import (
    NO_MORE_TASKS,
    TASK_READY,
    ChildProcess,
    ExitStatus,
    ParallelScheduler,
    StreamMode,
    TaskSlot,
    run_command,
    run_processes_parallel,
)

__all__ = [
    "__version__",
    "ProcpoolError",
    "ProtocolMisuseError",
    "StartError",
    "WaitError",
    "NO_MORE_TASKS",
    "TASK_READY",
    "ChildProcess",
    "ExitStatus",
    "ParallelScheduler",
    "StreamMode",
    "TaskSlot",
    "run_command",
    "run_processes_parallel",
]
