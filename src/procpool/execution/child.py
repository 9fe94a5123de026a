"""Child process handle -- one OS process with explicit I/O redirection.

``ChildProcess`` describes a single child: its argument vector,
environment overrides, working directory, and what happens to each of
its standard streams. It is populated by a caller (usually a task
source), started and waited on by whoever owns it, and discarded after
its exit status has been reported.

Architecture:

    .. code-block:: text

        ChildProcess lifecycle
        ┌────────────┐  start()   ┌─────────┐  wait()   ┌──────────┐
        │ UNSTARTED  │ ─────────► │ RUNNING │ ────────► │ FINISHED │
        └────────────┘            └─────────┘           └──────────┘
              │ start() raises StartError
              ▼
        (stays UNSTARTED, never produces an ExitStatus)

        StreamMode  │ asyncio.subprocess equivalent
        ────────────┼───────────────────────────────
        INHERIT     │ None (parent's descriptor)
        DISCARD     │ DEVNULL
        PIPE        │ PIPE
        STDOUT      │ STDOUT (stderr only: merge into stdout)

Descriptor inheritance:
    Every descriptor the parent owns is closed in the child except the
    three standard streams and whatever is listed in ``pass_fds``. Python
    creates descriptors non-inheritable already; ``close_fds=True``
    additionally covers descriptors a caller made inheritable on purpose.
    A temp file opened in the parent therefore never leaks into a child
    unless it is handed over explicitly.

Example:
    >>> child = ChildProcess(argv=["sh", "-c", "cat"], stdin=StreamMode.PIPE,
    ...                      stdout=StreamMode.DISCARD)
    >>> await child.start()
    >>> child.close_stream("stdin")   # child sees EOF
    >>> status = await child.wait()
    >>> status.ok
    True

Tags:
    procpool, execution, subprocess, asyncio, child-process
"""

from __future__ import annotations

import asyncio
import os
import signal as signal_module
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

from procpool.core.errors import ErrorContext, ProtocolMisuseError, StartError, WaitError
from procpool.core.logging import get_logger

logger = get_logger(__name__)

StreamName = Literal["stdin", "stdout", "stderr"]

# Characters that force a command through the shell instead of exec.
_SHELL_METACHARS = frozenset("|&;<>()$`\\\"' \t\n*?[#~=%")


class StreamMode(str, Enum):
    """Redirection policy for one standard stream."""

    INHERIT = "inherit"
    DISCARD = "discard"
    PIPE = "pipe"
    STDOUT = "stdout"


class ProcessState(str, Enum):
    UNSTARTED = "unstarted"
    RUNNING = "running"
    FINISHED = "finished"


_ASYNCIO_STREAMS = {
    StreamMode.INHERIT: None,
    StreamMode.DISCARD: asyncio.subprocess.DEVNULL,
    StreamMode.PIPE: asyncio.subprocess.PIPE,
    StreamMode.STDOUT: asyncio.subprocess.STDOUT,
}


@dataclass(frozen=True)
class ExitStatus:
    """How a child process ended.

    Exactly one of ``exit_code`` / ``signal`` is set. ``code`` folds both
    into a single integer using the shell convention (128 + signal).
    """

    returncode: int

    @property
    def signaled(self) -> bool:
        return self.returncode < 0

    @property
    def exited(self) -> bool:
        return not self.signaled

    @property
    def exit_code(self) -> int | None:
        return self.returncode if self.exited else None

    @property
    def signal(self) -> int | None:
        return -self.returncode if self.signaled else None

    @property
    def code(self) -> int:
        if self.signaled:
            return 128 + -self.returncode
        return self.returncode

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        """Human-readable summary, e.g. ``killed by signal SIGKILL``."""
        if self.signaled:
            try:
                name = signal_module.Signals(self.signal).name
            except ValueError:
                name = str(self.signal)
            return f"killed by signal {name}"
        return f"exited with status {self.returncode}"


@dataclass(eq=False)
class ChildProcess:
    """Handle for a single child process.

    Configuration fields are set by the owner before ``start()`` and are
    not consulted again afterwards. Runtime fields (``state``, ``pid``,
    ``status``) are maintained by the handle itself.
    """

    argv: list[str] = field(default_factory=list)
    env: dict[str, str | None] = field(default_factory=dict)
    inherit_env: bool = True
    cwd: str | Path | None = None
    stdin: StreamMode = StreamMode.INHERIT
    stdout: StreamMode = StreamMode.INHERIT
    stderr: StreamMode = StreamMode.INHERIT
    use_shell: bool = False
    shell: str = "sh"
    pass_fds: tuple[int, ...] = ()

    state: ProcessState = field(default=ProcessState.UNSTARTED, init=False)
    status: ExitStatus | None = field(default=None, init=False)
    _process: asyncio.subprocess.Process | None = field(default=None, init=False, repr=False)
    _closed: set[str] = field(default_factory=set, init=False, repr=False)

    # ------------------------------------------------------------------
    # Population helpers
    # ------------------------------------------------------------------

    def add_args(self, *args: str) -> ChildProcess:
        self.argv.extend(args)
        return self

    def push_env(self, spec: str) -> ChildProcess:
        """Apply a ``NAME=VALUE`` (set) or ``NAME`` (unset) specifier."""
        name, sep, value = spec.partition("=")
        if not name:
            raise ValueError(f"invalid environment specifier: {spec!r}")
        self.env[name] = value if sep else None
        return self

    def build_env(self) -> dict[str, str] | None:
        """Environment for the child, or ``None`` to pass ours through untouched."""
        if self.inherit_env and not self.env:
            return None
        env = dict(os.environ) if self.inherit_env else {}
        for name, value in self.env.items():
            if value is None:
                env.pop(name, None)
            else:
                env[name] = value
        return env

    def prepare_argv(self) -> list[str]:
        """Argument vector actually executed, after shell preparation."""
        argv = list(self.argv)
        if not self.use_shell or not argv:
            return argv
        if not any(ch in _SHELL_METACHARS for ch in argv[0]):
            return argv
        command = argv[0] if len(argv) == 1 else f'{argv[0]} "$@"'
        return [self.shell, "-c", command, *argv]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        """Spawn the process.

        Raises:
            StartError: the executable could not be found or exec'd.
            ProtocolMisuseError: the handle was already started, has no
                argument vector, or asks to merge a stream other than stderr.
        """
        if self.state is not ProcessState.UNSTARTED:
            raise ProtocolMisuseError(
                f"child already {self.state.value}",
                context=ErrorContext(argv=list(self.argv), pid=self.pid),
            )
        if not self.argv:
            raise ProtocolMisuseError("cannot start a child with an empty argument vector")
        if StreamMode.STDOUT in (self.stdin, self.stdout):
            raise ProtocolMisuseError("only stderr can be merged into stdout")

        argv = self.prepare_argv()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=_ASYNCIO_STREAMS[self.stdin],
                stdout=_ASYNCIO_STREAMS[self.stdout],
                stderr=_ASYNCIO_STREAMS[self.stderr],
                env=self.build_env(),
                cwd=str(self.cwd) if self.cwd is not None else None,
                close_fds=True,
                pass_fds=self.pass_fds,
            )
        except OSError as exc:
            raise StartError.from_os_error(argv, exc) from exc

        self.state = ProcessState.RUNNING
        logger.debug("child_started", pid=self._process.pid, argv=argv)

    async def read_output(self) -> bytes:
        """Read piped stdout and stderr until EOF.

        Both pipes are drained concurrently so a chatty stderr cannot stall
        a child blocked on stdout. Returns stdout bytes followed by stderr
        bytes; with stderr merged into stdout this is a single stream.
        """
        process = self._require_started()
        readers = [s for s in (process.stdout, process.stderr) if s is not None]
        chunks = await asyncio.gather(*(reader.read() for reader in readers))
        return b"".join(chunks)

    async def write_stdin(self, data: bytes) -> None:
        process = self._require_started()
        if process.stdin is None or "stdin" in self._closed:
            raise ProtocolMisuseError("stdin is not an open pipe")
        process.stdin.write(data)
        await process.stdin.drain()

    def close_stream(self, name: StreamName) -> bool:
        """Release the parent's end of a piped stream.

        Only stdin can be released early: closing it is how a child reading
        standard input learns that no more data is coming. Output pipes are
        released once the child has been waited on. Returns ``False`` when
        there was nothing to close (stream inherited/discarded, or already
        closed).
        """
        if name not in ("stdin", "stdout", "stderr"):
            raise ValueError(f"unknown stream: {name!r}")
        if name != "stdin":
            raise ProtocolMisuseError(f"{name} is released by wait(), not closed early")
        process = self._require_started()
        if process.stdin is None or name in self._closed:
            return False
        process.stdin.close()
        self._closed.add(name)
        return True

    async def wait(self) -> ExitStatus:
        """Block until the child exits and return its status.

        A non-zero exit is a normal result. Only an OS-level failure to
        observe the child raises.

        Raises:
            WaitError: the exit status could not be collected.
        """
        process = self._require_started()
        if self.status is not None:
            return self.status
        try:
            returncode = await process.wait()
        except OSError as exc:
            raise WaitError(
                f"waitpid for {process.pid} failed: {exc}",
                context=ErrorContext(argv=list(self.argv), pid=process.pid),
                cause=exc,
            ) from exc

        return self._finish(process, returncode)

    async def reap(self, poll_interval: float = 0.01) -> ExitStatus:
        """Wait for the exit status only, ignoring the output pipes.

        ``wait()`` can keep blocking after the child is gone while a
        grandchild still holds its stdout open. After ``kill()`` the
        output no longer matters, so this polls the return code instead.
        """
        process = self._require_started()
        if self.status is not None:
            return self.status
        while process.returncode is None:
            await asyncio.sleep(poll_interval)
        return self._finish(process, process.returncode)

    def _finish(self, process: asyncio.subprocess.Process, returncode: int) -> ExitStatus:
        if process.stdin is not None and "stdin" not in self._closed:
            process.stdin.close()
            self._closed.add("stdin")

        self.status = ExitStatus(returncode)
        self.state = ProcessState.FINISHED
        if self.status.signaled:
            logger.info("child_killed", pid=process.pid, status=self.status.describe())
        else:
            logger.debug("child_exited", pid=process.pid, returncode=returncode)
        return self.status

    def kill(self) -> None:
        """Forcibly terminate a running child. No-op once it has exited."""
        if self._process is None or self.state is not ProcessState.RUNNING:
            return
        with suppress(ProcessLookupError):
            self._process.kill()

    def _require_started(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise ProtocolMisuseError(
                "child has not been started",
                context=ErrorContext(argv=list(self.argv)),
            )
        return self._process


async def _run(child: ChildProcess) -> ExitStatus:
    await child.start()
    return await child.wait()


def run_command(child: ChildProcess) -> ExitStatus:
    """Start *child*, wait for it, and return its exit status.

    Runs on a private event loop, so it must not be called from inside a
    running loop. Streams set to ``PIPE`` are not read; use the async API
    when output has to be collected.

    Raises:
        StartError: the child could not be launched.
    """
    return asyncio.run(_run(child))


__all__ = [
    "ChildProcess",
    "ExitStatus",
    "ProcessState",
    "StreamMode",
    "StreamName",
    "run_command",
]
