"""Tests for ParallelScheduler: pull protocol, bounded concurrency, stop and drain.

Tests:
    - Preloaded scenarios (normal, abort, no tasks)
    - Correlation values survive from pull to completion
    - Running children never exceed the job count
    - Start failures are reported through their own callback only
    - Output blocks stay contiguous per task
    - Fatal errors kill what is still running and propagate
"""

import asyncio
import io
import sys
import time
from dataclasses import dataclass, field

import pytest

from procpool.core.errors import ProtocolMisuseError, WaitError
from procpool.execution.child import ChildProcess
from procpool.execution.parallel import (
    ParallelScheduler,
    SchedulerPhase,
    TaskSlot,
    run_processes_parallel,
)
from procpool.execution.protocols import NO_MORE_TASKS, TASK_READY

PRELOADED = "preloaded output of a child\n"


def py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@dataclass
class Preloaded:
    """Hands out the same argv ``limit`` times, like the CLI stub."""

    argv: list[str]
    limit: int = 4
    pulls: int = 0
    finished: list = field(default_factory=list)

    def next_task(self, child, out, ctx, slot):
        self.pulls += 1
        if self.pulls > self.limit:
            return NO_MORE_TASKS
        child.add_args(*self.argv)
        out.write(PRELOADED)
        slot.data = self.pulls
        return TASK_READY

    def task_finished(self, result, out, ctx, data):
        self.finished.append((data, result))
        return 0


@dataclass
class Recorder:
    """Runs a fixed list of (name, argv) tasks and records every callback."""

    tasks: list
    pulled: list = field(default_factory=list)
    finished: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    children: dict = field(default_factory=dict)
    finish_code: int = 0
    failure_code: int = 0

    def next_task(self, child: ChildProcess, out: io.StringIO, ctx, slot: TaskSlot) -> int:
        if len(self.pulled) >= len(self.tasks):
            return NO_MORE_TASKS
        name, argv = self.tasks[len(self.pulled)]
        self.pulled.append(name)
        child.add_args(*argv)
        self.children[name] = child
        out.write(f"[{name}]\n")
        slot.data = name
        return TASK_READY

    def task_finished(self, result, out, ctx, name) -> int:
        self.finished.append((name, result))
        out.write(f"done {name}\n")
        return self.finish_code

    def start_failure(self, out, ctx, name) -> int:
        self.failed.append(name)
        out.write(f"failed {name}\n")
        return self.failure_code


class TestPreloadedScenarios:
    def test_parallel_runs_every_task(self, report):
        source = Preloaded(argv=py("print('Hello'); print('World')"))
        result = run_processes_parallel(
            2, source.next_task, None, source.task_finished, report=report
        )
        assert result == 0
        assert len(source.finished) == 4
        assert sorted(data for data, _ in source.finished) == [1, 2, 3, 4]
        assert all(status.ok for _, status in source.finished)
        assert report.getvalue() == (PRELOADED + "Hello\nWorld\n") * 4

    @pytest.mark.asyncio
    async def test_abort_stops_pulling_but_drains(self, report):
        source = Preloaded(argv=py("raise SystemExit(1)"))

        def ask_stop(result, out, ctx, data):
            source.finished.append((data, result))
            out.write("asking for a quick stop\n")
            return 1

        scheduler = ParallelScheduler(2, source.next_task, None, ask_stop, report=report)
        result = await scheduler.run()

        assert result == 1
        # Both slots were filled before the first completion; nothing after.
        assert source.pulls == 2
        assert len(source.finished) == 2
        assert scheduler.state.stop_requested
        assert scheduler.state.running == 0
        assert scheduler.state.phase is SchedulerPhase.DONE
        assert report.getvalue() == (PRELOADED + "asking for a quick stop\n") * 2

    @pytest.mark.asyncio
    async def test_abort_with_three_jobs_reports_three(self, report):
        source = Preloaded(argv=py("raise SystemExit(1)"))

        def ask_stop(result, out, ctx, data):
            out.write("asking for a quick stop\n")
            return 1

        scheduler = ParallelScheduler(3, source.next_task, None, ask_stop, report=report)
        assert await scheduler.run() == 1
        assert scheduler.state.completions == 3
        assert report.getvalue().count("asking for a quick stop\n") == 3

    def test_no_tasks(self, report):
        calls = []

        def no_job(child, out, ctx, slot):
            out.write("no further jobs available\n")
            return NO_MORE_TASKS

        def finished(*args):
            calls.append(args)
            return 1

        result = run_processes_parallel(3, no_job, None, finished, report=report)
        assert result == 0
        assert calls == []
        assert report.getvalue() == "no further jobs available\n"


class TestCorrelation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("jobs", [1, 2, 5])
    async def test_each_task_reported_once_with_its_value(self, jobs, report):
        tasks = [(f"task-{i}", py(f"print({i})")) for i in range(5)]
        rec = Recorder(tasks)
        scheduler = ParallelScheduler(
            jobs, rec.next_task, rec.start_failure, rec.task_finished, report=report
        )
        assert await scheduler.run() == 0
        assert rec.pulled == [name for name, _ in tasks]
        assert sorted(name for name, _ in rec.finished) == sorted(rec.pulled)
        assert rec.failed == []
        for i in range(5):
            assert f"[task-{i}]\n{i}\ndone task-{i}\n" in report.getvalue()

    @pytest.mark.asyncio
    async def test_completion_follows_finish_order(self, report):
        rec = Recorder([
            ("slow", py("import time; time.sleep(0.5)")),
            ("fast", py("pass")),
        ])
        await ParallelScheduler(2, rec.next_task, None, rec.task_finished, report=report).run()
        assert rec.pulled == ["slow", "fast"]
        assert [name for name, _ in rec.finished] == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_ctx_is_passed_to_every_callback(self, report):
        seen = []

        def source(child, out, ctx, slot):
            seen.append(ctx)
            if len(seen) > 1:
                return NO_MORE_TASKS
            child.add_args(*py("pass"))
            return TASK_READY

        def finished(result, out, ctx, data):
            seen.append(ctx)
            return 0

        ctx = object()
        await ParallelScheduler(1, source, None, finished, ctx, report=report).run()
        assert seen == [ctx, ctx, ctx]

    @pytest.mark.asyncio
    async def test_failing_child_is_a_completion(self, report):
        rec = Recorder([("bad", py("raise SystemExit(7)"))])
        result = await ParallelScheduler(1, rec.next_task, rec.start_failure, rec.task_finished,
                                         report=report).run()
        assert result == 0
        assert rec.failed == []
        assert rec.finished[0][1].exit_code == 7


class TestConcurrencyBound:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("jobs", [1, 2, 3])
    async def test_running_never_exceeds_jobs(self, jobs, report):
        code = (
            "import time\n"
            "print('start', time.time(), flush=True)\n"
            "time.sleep(0.2)\n"
            "print('end', time.time(), flush=True)\n"
        )
        intervals = []

        rec = Recorder([(f"t{i}", py(code)) for i in range(6)])

        def finished(result, out, ctx, name):
            lines = out.getvalue().splitlines()
            start = float(next(line for line in lines if line.startswith("start")).split()[1])
            end = float(next(line for line in lines if line.startswith("end")).split()[1])
            intervals.append((start, end))
            return 0

        scheduler = ParallelScheduler(jobs, rec.next_task, None, finished, report=report)
        await scheduler.run()

        assert len(intervals) == 6
        assert scheduler.state.peak_running == jobs
        for start, _ in intervals:
            overlapping = sum(1 for s, e in intervals if s <= start < e)
            assert overlapping <= jobs

    @pytest.mark.asyncio
    async def test_more_jobs_than_tasks(self, report):
        rec = Recorder([(f"t{i}", py("pass")) for i in range(3)])
        scheduler = ParallelScheduler(8, rec.next_task, None, rec.task_finished, report=report)
        assert await scheduler.run() == 0
        assert len(rec.finished) == 3
        assert scheduler.state.peak_running == 3


class TestStartFailure:
    @pytest.mark.asyncio
    async def test_start_failure_reported_separately(self, report):
        rec = Recorder([
            ("ok-1", py("pass")),
            ("missing", ["procpool-no-such-program-xyz"]),
            ("ok-2", py("pass")),
        ])
        scheduler = ParallelScheduler(
            2, rec.next_task, rec.start_failure, rec.task_finished, report=report
        )
        assert await scheduler.run() == 0

        assert rec.failed == ["missing"]
        assert sorted(name for name, _ in rec.finished) == ["ok-1", "ok-2"]
        assert scheduler.state.start_failures == 1
        assert scheduler.state.started == 2
        assert "[missing]\nerror: cannot run procpool-no-such-program-xyz" in report.getvalue()
        assert "failed missing\n" in report.getvalue()

    @pytest.mark.asyncio
    async def test_nonzero_start_failure_stops_pulling(self, report):
        rec = Recorder([
            ("missing", ["procpool-no-such-program-xyz"]),
            ("never", py("pass")),
        ], failure_code=2)
        result = await ParallelScheduler(
            1, rec.next_task, rec.start_failure, rec.task_finished, report=report
        ).run()
        assert result == 2
        assert rec.pulled == ["missing"]

    @pytest.mark.asyncio
    async def test_default_start_failure_returns_zero(self, report):
        rec = Recorder([("missing", ["procpool-no-such-program-xyz"])])
        assert await ParallelScheduler(1, rec.next_task, report=report).run() == 0


class TestResultAggregation:
    @pytest.mark.asyncio
    async def test_results_are_ored(self, report):
        codes = iter([2, 4])
        rec = Recorder([("a", py("pass")), ("b", py("pass"))])

        def finished(result, out, ctx, name):
            return next(codes)

        result = await ParallelScheduler(1, rec.next_task, None, finished, report=report).run()
        # The first non-zero return stops pulling, so only one code lands.
        assert result == 2

    @pytest.mark.asyncio
    async def test_drained_tasks_still_or_in(self, report):
        rec = Recorder([("a", py("pass")), ("b", py("import time; time.sleep(0.3)"))])
        codes = {"a": 1, "b": 4}

        def finished(result, out, ctx, name):
            return codes[name]

        result = await ParallelScheduler(2, rec.next_task, None, finished, report=report).run()
        assert result == 5


class TestOutput:
    @pytest.mark.asyncio
    async def test_blocks_are_contiguous(self, report):
        code = (
            "import sys, time\n"
            "for i in range(5):\n"
            "    print(sys.argv[1], i, flush=True)\n"
            "    time.sleep(0.02)\n"
        )
        rec = Recorder([(name, [*py(code), name]) for name in ("a", "b", "c")])
        await ParallelScheduler(3, rec.next_task, None, rec.task_finished, report=report).run()

        text = report.getvalue()
        for name in ("a", "b", "c"):
            block = f"[{name}]\n" + "".join(f"{name} {i}\n" for i in range(5)) + f"done {name}\n"
            assert block in text

    @pytest.mark.asyncio
    async def test_child_stdin_is_empty(self, report):
        rec = Recorder([("stdin", py("import sys; print(repr(sys.stdin.read()))"))])
        await ParallelScheduler(1, rec.next_task, None, rec.task_finished, report=report).run()
        assert "''\n" in report.getvalue()

    @pytest.mark.asyncio
    async def test_report_defaults_to_stderr(self, capsys):
        rec = Recorder([("x", py("print('to-report')"))])
        await ParallelScheduler(1, rec.next_task, None, rec.task_finished).run()
        captured = capsys.readouterr()
        assert "to-report" in captured.err
        assert "to-report" not in captured.out


class TestFatalErrors:
    def test_jobs_must_be_positive(self):
        with pytest.raises(ValueError):
            ParallelScheduler(0, lambda *a: NO_MORE_TASKS)

    @pytest.mark.asyncio
    async def test_run_twice_is_misuse(self, report):
        scheduler = ParallelScheduler(1, lambda *a: NO_MORE_TASKS, report=report)
        await scheduler.run()
        with pytest.raises(ProtocolMisuseError):
            await scheduler.run()

    @pytest.mark.asyncio
    async def test_task_without_argv_is_misuse(self, report):
        def lazy(child, out, ctx, slot):
            slot.data = "empty"
            return TASK_READY

        with pytest.raises(ProtocolMisuseError) as exc_info:
            await ParallelScheduler(1, lazy, report=report).run()
        assert exc_info.value.context.task == "'empty'"

    @pytest.mark.asyncio
    async def test_wait_error_kills_running_children(self, report, monkeypatch):
        original_wait = ChildProcess.wait

        async def flaky_wait(self):
            if self.argv[-1] == "boom":
                raise WaitError("simulated waitpid failure")
            return await original_wait(self)

        monkeypatch.setattr(ChildProcess, "wait", flaky_wait)
        rec = Recorder([
            ("long", py("import time; time.sleep(60)")),
            ("boom", [*py("pass"), "boom"]),
        ])
        scheduler = ParallelScheduler(2, rec.next_task, None, rec.task_finished, report=report)

        with pytest.raises(WaitError):
            await asyncio.wait_for(scheduler.run(), timeout=30)

        assert rec.finished == []
        assert rec.children["long"].status.signaled
        assert scheduler.state.running == 0

    @pytest.mark.asyncio
    async def test_callback_exception_propagates(self, report):
        rec = Recorder([("a", py("pass")), ("b", py("import time; time.sleep(60)"))])

        def broken(result, out, ctx, name):
            raise RuntimeError("callback bug")

        scheduler = ParallelScheduler(2, rec.next_task, None, broken, report=report)
        with pytest.raises(RuntimeError, match="callback bug"):
            await asyncio.wait_for(scheduler.run(), timeout=30)
        assert rec.children["b"].status.signaled

    @pytest.mark.asyncio
    async def test_abort_does_not_wait_for_grandchild_holding_pipe(self, report):
        rec = Recorder([
            ("a", py("pass")),
            ("holder", ["sh", "-c", "sleep 5; echo done"]),
        ])

        def broken(result, out, ctx, name):
            raise RuntimeError("callback bug")

        scheduler = ParallelScheduler(2, rec.next_task, None, broken, report=report)
        started = time.monotonic()
        with pytest.raises(RuntimeError, match="callback bug"):
            await asyncio.wait_for(scheduler.run(), timeout=30)
        assert time.monotonic() - started < 3
        assert rec.children["holder"].status.signaled
        assert scheduler.state.running == 0


class TestBinaryOutput:
    @pytest.mark.asyncio
    async def test_undecodable_bytes_pass_through(self):
        raw = io.BytesIO()
        report = io.TextIOWrapper(raw, encoding="utf-8")
        rec = Recorder([("bin", py(r"import sys; sys.stdout.buffer.write(b'\xff\xfe\n')"))])

        await ParallelScheduler(1, rec.next_task, None, rec.task_finished, report=report).run()
        report.flush()
        assert raw.getvalue() == b"[bin]\n\xff\xfe\ndone bin\n"

    @pytest.mark.asyncio
    async def test_text_report_keeps_escaped_bytes(self, report):
        rec = Recorder([("bin", py(r"import sys; sys.stdout.buffer.write(b'\xff\n')"))])
        await ParallelScheduler(1, rec.next_task, None, rec.task_finished, report=report).run()
        assert report.getvalue().encode("utf-8", "surrogateescape") == b"[bin]\n\xff\ndone bin\n"
