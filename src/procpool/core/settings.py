"""Runtime settings for procpool.

Settings are read from ``PROCPOOL_*`` environment variables and an
optional ``.env`` file, validated by pydantic, and cached for the life
of the process. CLI flags override individual values per invocation.

Examples:
    >>> from procpool.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.jobs
    1

Tags:
    settings, configuration, pydantic, environment, procpool
"""

from __future__ import annotations

import re

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from procpool.core.logging import LOG_LEVELS


class ProcpoolSettings(BaseSettings):
    """Settings shared by the library helpers and the CLI.

    Fields
    ──────
    jobs          : Default parallel job count (<= 0 means one per CPU)
    log_level     : structlog level
    log_json      : Force JSON (True) or console (False) log rendering
    test_pattern  : Regex a file name must match to count as a test script
    shell         : Interpreter used to run test scripts
    """

    model_config = SettingsConfigDict(
        env_prefix="PROCPOOL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Execution ────────────────────────────────────────────────
    jobs: int = 1
    shell: str = "sh"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "WARNING"
    log_json: bool | None = None

    # ── Testsuite discovery ──────────────────────────────────────
    test_pattern: str = Field(
        default=r"t\d{4}-.*\.sh",
        description="Regular expression a whole test script name must match (ASCII)",
    )

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {list(LOG_LEVELS)}")
        return value

    @field_validator("test_pattern")
    @classmethod
    def _check_test_pattern(cls, value: str) -> str:
        try:
            re.compile(value, re.ASCII)
        except re.error as exc:
            raise ValueError(f"invalid test_pattern: {exc}") from exc
        return value


_settings_cache: dict[str, ProcpoolSettings] = {}


def get_settings(*, _force_reload: bool = False) -> ProcpoolSettings:
    """Load, validate, and cache a :class:`ProcpoolSettings` instance."""
    if _force_reload or "default" not in _settings_cache:
        _settings_cache["default"] = ProcpoolSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
