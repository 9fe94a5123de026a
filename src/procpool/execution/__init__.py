"""procpool execution -- child process handles and the parallel scheduler.

Architecture::

    child.py       ChildProcess, StreamMode, ExitStatus, run_command
    protocols.py   TaskSource / StartFailure / TaskFinished callback contracts
    parallel.py    ParallelScheduler, TaskSlot, run_processes_parallel
"""

from procpool.execution.child import (
    ChildProcess,
    ExitStatus,
    ProcessState,
    StreamMode,
    run_command,
)
from procpool.execution.parallel import (
    ParallelScheduler,
    SchedulerPhase,
    SchedulerRunState,
    TaskSlot,
    run_processes_parallel,
)
from procpool.execution.protocols import (
    NO_MORE_TASKS,
    TASK_READY,
    StartFailure,
    TaskFinished,
    TaskSource,
)

__all__ = [
    "ChildProcess",
    "ExitStatus",
    "ProcessState",
    "StreamMode",
    "run_command",
    "ParallelScheduler",
    "SchedulerPhase",
    "SchedulerRunState",
    "TaskSlot",
    "run_processes_parallel",
    "NO_MORE_TASKS",
    "TASK_READY",
    "StartFailure",
    "TaskFinished",
    "TaskSource",
]
