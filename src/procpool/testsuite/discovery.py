"""Find test scripts in a directory.

A file is a test script when its name matches the configured shape
(``t`` + four digits + ``-`` + anything + ``.sh`` by default). The
whole name must match, and only ASCII digits count as digits. When
glob patterns are given, a script is kept if it matches any of them;
matching is case-sensitive and ``*`` also matches ``/``.
"""

from __future__ import annotations

import os
import re
from collections.abc import Sequence
from fnmatch import fnmatchcase
from pathlib import Path

from procpool.core.errors import DiscoveryError, ErrorContext

DEFAULT_TEST_PATTERN = r"t\d{4}-.*\.sh"


def matches_any(name: str, patterns: Sequence[str]) -> bool:
    """True if *name* matches one of *patterns*, or if there are none."""
    if not patterns:
        return True
    return any(fnmatchcase(name, pattern) for pattern in patterns)


def discover_tests(
    directory: str | Path = ".",
    patterns: Sequence[str] = (),
    name_pattern: str = DEFAULT_TEST_PATTERN,
) -> list[str]:
    """Return the sorted names of test scripts in *directory*.

    Raises:
        DiscoveryError: the directory could not be listed.
    """
    shape = re.compile(name_pattern, re.ASCII)
    try:
        entries = sorted(os.listdir(directory))
    except OSError as exc:
        raise DiscoveryError(
            "Could not open the current directory"
            if str(directory) == "."
            else f"Could not open directory {directory}",
            context=ErrorContext(metadata={"directory": str(directory)}),
            cause=exc,
        ) from exc

    return [
        name
        for name in entries
        if shape.fullmatch(name) and matches_any(name, patterns)
    ]
