"""Host capabilities used to normalize job counts before a run."""

from __future__ import annotations

import os


def online_cpus() -> int:
    """Number of CPUs this process may run on (at least 1)."""
    if hasattr(os, "sched_getaffinity"):
        return max(1, len(os.sched_getaffinity(0)))
    return os.cpu_count() or 1


def effective_jobs(requested: int) -> int:
    """Map a requested job count to a usable one.

    Zero or negative means "use available parallelism".
    """
    if requested <= 0:
        return online_cpus()
    return requested
