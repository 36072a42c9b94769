"""
Correlation ID tracking for deployment runs.

Every orchestration run and scheduled job gets its own correlation ID so the
interleaved lines of a shared log file can be grouped per run.
"""

import uuid
from contextvars import ContextVar
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar(
    "service_deployer_correlation_id", default=None
)


def get_correlation_id() -> Optional[str]:
    """Return the correlation ID of the current run, if one was started."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set the correlation ID for the current run.

    Args:
        correlation_id: Explicit ID to use; a short random ID is generated if omitted

    Returns:
        The correlation ID now in effect
    """
    value = correlation_id or uuid.uuid4().hex[:12]
    _correlation_id.set(value)
    return value


def clear_correlation_id() -> None:
    """Forget the correlation ID of the current run."""
    _correlation_id.set(None)
