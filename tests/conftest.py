"""
Shared pytest fixtures for procpool tests.

This module provides:
- Settings cache isolation between tests
- A report buffer standing in for the scheduler's stderr stream
- Helpers building ``python -c`` command lines for portable children
- A scratch directory of shell test scripts for testsuite tests
"""

import io
import sys
from pathlib import Path

import pytest

from procpool.core.logging import configure_logging
from procpool.core.settings import clear_settings_cache


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark every test as unit unless it says otherwise."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def quiet_logging():
    """Reset logging to WARNING; unconfigured structlog logs every level to stdout."""
    configure_logging(level="WARNING", json_format=True)


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Isolate tests from PROCPOOL_* variables and the settings cache."""
    for name in ("PROCPOOL_JOBS", "PROCPOOL_LOG_LEVEL", "PROCPOOL_LOG_JSON",
                 "PROCPOOL_TEST_PATTERN", "PROCPOOL_SHELL"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def report() -> io.StringIO:
    """Stream receiving the scheduler's per-task output blocks."""
    return io.StringIO()


def python_argv(code: str) -> list[str]:
    """Argument vector running *code* with the current interpreter."""
    return [sys.executable, "-c", code]


@pytest.fixture
def py():
    return python_argv


@pytest.fixture
def script_dir(tmp_path: Path, monkeypatch) -> Path:
    """Directory with passing, failing, and non-matching shell scripts; made cwd."""
    scripts = {
        "t0001-pass.sh": "echo passing\nexit 0\n",
        "t0002-fail.sh": "echo failing\nexit 1\n",
        "t0003-args.sh": 'echo "args: $*"\n',
        "t123-short.sh": "exit 0\n",
        "x0001-wrong-letter.sh": "exit 0\n",
        "t0004-not-a-script.txt": "exit 0\n",
    }
    for name, body in scripts.items():
        (tmp_path / name).write_text(body)
    monkeypatch.chdir(tmp_path)
    return tmp_path
