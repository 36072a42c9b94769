"""
Logging utilities for the service deployer.

Provides helper functions for formatting log messages with error codes,
correlation IDs, and sanitized data, plus the one-time logging setup used by
the cron entry point and the CLI.

Usage:
    from service_deployer.logging_utils import format_error_log

    logger.error(
        format_error_log("DEPLOY-ROTATE-001", "Staging tree missing"),
        extra={"correlation_id": get_correlation_id()},
    )
"""

import logging
import sys
from typing import Any, Optional, TextIO

from service_deployer.correlation import get_correlation_id

LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"
)
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Sensitive field names that should be redacted in logs
SENSITIVE_FIELDS = {
    "password",
    "token",
    "api_key",
    "api_token",
    "secret",
    "authorization",
    "x-auth-key",
    "private_key",
}


class CorrelationIdFilter(logging.Filter):
    """Ensure every record carries a correlation_id attribute for the formatter."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id() or "-"
        return True


def configure_logging(
    level: str = "INFO", stream: Optional[TextIO] = None
) -> logging.Handler:
    """
    Configure root logging for a deployment run.

    Lines go to stdout by default so that a cron redirect of the combined
    output stream captures the full narrative of each run.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream (default: sys.stdout)

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_service_deployer", False):
            root.removeHandler(existing)
    handler._service_deployer = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())
    return handler


def format_error_log(error_code: str, message: str, **context) -> str:
    """
    Format an error log message with error code and optional context.

    Args:
        error_code: Error code in format {SUBSYSTEM}-{CATEGORY}-{NUMBER}
        message: Human-readable error message
        **context: Additional context key-value pairs to include

    Returns:
        Formatted log message: "[{ERROR_CODE}] message key1=value1 key2=value2"

    Examples:
        >>> format_error_log("DEPLOY-BUILD-001", "Build failed", returncode=101)
        '[DEPLOY-BUILD-001] Build failed returncode=101'

        >>> format_error_log("DNS-API-002", "Record update rejected")
        '[DNS-API-002] Record update rejected'
    """
    parts = [f"[{error_code}]", message]

    if context:
        context_str = " ".join(f"{k}={v}" for k, v in context.items())
        parts.append(context_str)

    return " ".join(parts)


def sanitize_for_logging(data: Any) -> Any:
    """
    Sanitize data for logging by redacting sensitive information.

    Nested dictionaries are sanitized recursively.

    Args:
        data: Data to sanitize (dict, string, or other type)

    Returns:
        Sanitized copy of data with sensitive fields redacted

    Examples:
        >>> sanitize_for_logging({"email": "ops@example.com", "api_key": "secret"})
        {'email': 'ops@example.com', 'api_key': '***REDACTED***'}

        >>> sanitize_for_logging("plain string")
        'plain string'
    """
    if data is None:
        return None

    if not isinstance(data, dict):
        return data

    sanitized = {}
    for key, value in data.items():
        if str(key).lower() in SENSITIVE_FIELDS:
            sanitized[key] = "***REDACTED***"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_for_logging(value)
        else:
            sanitized[key] = value

    return sanitized
