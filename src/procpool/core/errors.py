"""
Structured error types for procpool.

Every failure the runner can observe falls into one of a few buckets, and
each bucket is handled differently by the scheduler:

- **StartError:** the child could not be launched at all (not found,
  permission denied, bad working directory). Reported through the
  start-failure callback; the run continues.
- **WaitError:** the OS could not report a child's exit status. Fatal to
  the run, since process bookkeeping is no longer trustworthy.
- **ProtocolMisuseError:** a caller broke the contract (e.g. a task source
  claimed to have work but left the argument vector empty). Fails loudly.
- **DiscoveryError:** the testsuite runner could not build its task list.
- **ConfigError:** a setting or CLI override is unusable (e.g. an unknown
  log level).

A child that runs and exits non-zero is *not* an error here. Its exit
status is an ordinary result routed through the completion callback.

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────┐
        │                      ProcpoolError                         │
        │               (category, context, cause)                   │
        ├───────────────────────────────────────────────────────────┤
        │  StartError        WaitError        ProtocolMisuseError    │
        │  (START, errno)    (WAIT)           (PROTOCOL)             │
        │                                                            │
        │  DiscoveryError    ConfigError                             │
        │  (DISCOVERY)       (CONFIG)                                │
        └───────────────────────────────────────────────────────────┘

Examples:
    >>> err = StartError.from_os_error(["no-such-cmd"], FileNotFoundError(2, "No such file"))
    >>> err.not_found
    True
    >>> err.category
    <ErrorCategory.START: 'START'>

Tags:
    error-handling, exception-hierarchy, procpool, subprocess
"""

from __future__ import annotations

import errno as errno_codes
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for classification and logging."""

    START = "START"              # Child could not be launched
    WAIT = "WAIT"                # OS-level failure observing exit status
    PROTOCOL = "PROTOCOL"        # Caller broke the callback/handle contract
    DISCOVERY = "DISCOVERY"      # Task list could not be built
    CONFIG = "CONFIG"            # Invalid settings
    INTERNAL = "INTERNAL"        # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only fields that are set end up in ``to_dict()``, so the same context
    type serves both process-level errors (argv, pid) and runner-level
    errors (task name).

    Attributes:
        argv: Argument vector of the child involved, if any
        pid: OS process identifier, once known
        task: Caller-side correlation value rendered as text
        metadata: Additional key-value pairs
    """

    argv: list[str] | None = None
    pid: int | None = None
    task: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["argv", "pid", "task"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ProcpoolError(Exception):
    """
    Base exception for all procpool errors.

    Subclasses set ``default_category`` so callers rarely pass a category
    explicitly. The underlying exception, when there is one, is kept both as
    ``cause`` and as ``__cause__`` so tracebacks show the full chain.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ProcpoolError:
        """
        Add context to this error (fluent API).

        Usage:
            raise WaitError("wait failed").with_context(pid=1234, task="t0001-basic.sh")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class StartError(ProcpoolError):
    """
    The child process could not be launched.

    Distinguishable from "ran and exited non-zero" because it is raised by
    ``ChildProcess.start()`` and never produces an exit status. ``errno``
    carries the OS indicator (``ENOENT`` for a missing executable,
    ``EACCES`` for a non-executable file, ...).
    """

    default_category = ErrorCategory.START

    def __init__(
        self,
        message: str,
        *,
        errno: int | None = None,
        strerror: str | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, context=context, cause=cause)
        self.errno = errno
        self.strerror = strerror

    @classmethod
    def from_os_error(cls, argv: Sequence[str], exc: OSError) -> StartError:
        """Wrap the ``OSError`` raised while spawning *argv*."""
        program = argv[0] if argv else "<empty>"
        strerror = exc.strerror or str(exc)
        return cls(
            f"cannot run {program}: {strerror}",
            errno=exc.errno,
            strerror=strerror,
            context=ErrorContext(argv=list(argv)),
            cause=exc,
        )

    @property
    def not_found(self) -> bool:
        return self.errno == errno_codes.ENOENT

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.errno is not None:
            result["errno"] = errno_codes.errorcode.get(self.errno, self.errno)
        return result


class WaitError(ProcpoolError):
    """Exit status of a started child could not be observed."""

    default_category = ErrorCategory.WAIT


class ProtocolMisuseError(ProcpoolError):
    """A caller violated the handle lifecycle or the task-source contract."""

    default_category = ErrorCategory.PROTOCOL


class DiscoveryError(ProcpoolError):
    """The testsuite runner could not build a list of tests to run."""

    default_category = ErrorCategory.DISCOVERY


class ConfigError(ProcpoolError):
    """A setting or command-line override has an unusable value."""

    default_category = ErrorCategory.CONFIG


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ProcpoolError",
    "StartError",
    "WaitError",
    "ProtocolMisuseError",
    "DiscoveryError",
    "ConfigError",
]
