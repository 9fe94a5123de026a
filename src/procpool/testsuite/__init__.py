"""Sample scheduler consumer: discover shell test scripts and run them in parallel."""

from procpool.testsuite.discovery import DEFAULT_TEST_PATTERN, discover_tests, matches_any
from procpool.testsuite.runner import (
    Testsuite,
    next_test,
    run_testsuite,
    test_failed,
    test_finished,
)

__all__ = [
    "DEFAULT_TEST_PATTERN",
    "discover_tests",
    "matches_any",
    "Testsuite",
    "next_test",
    "run_testsuite",
    "test_failed",
    "test_finished",
]
