"""procpool core -- errors, logging, settings, and host helpers.

Architecture::

    errors.py      Structured error hierarchy (ProcpoolError, StartError, WaitError)
    logging.py     structlog configuration (configure_logging, get_logger)
    settings.py    pydantic-settings backed configuration (PROCPOOL_* env vars)
    host.py        CPU count and job-count normalization
"""

from procpool.core.errors import (
    ConfigError,
    DiscoveryError,
    ErrorCategory,
    ErrorContext,
    ProcpoolError,
    ProtocolMisuseError,
    StartError,
    WaitError,
)
from procpool.core.host import effective_jobs, online_cpus

__all__ = [
    "ConfigError",
    "DiscoveryError",
    "ErrorCategory",
    "ErrorContext",
    "ProcpoolError",
    "ProtocolMisuseError",
    "StartError",
    "WaitError",
    "effective_jobs",
    "online_cpus",
]
