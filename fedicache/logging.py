"""Logging setup using Loguru.

This module configures structured logging with:
- JSON output for production environments
- Context variables for identity and operation tracking
- Optional file output with rotation and compression

Example:
    >>> from fedicache.logging import logger, set_log_context
    >>> set_log_context(identity_id="6f1c...", operation="insert_page")
    >>> logger.info("Merging page", timeline="home", size=40)
"""

import json
import sys
import traceback
from contextvars import ContextVar
from pathlib import Path
from typing import Any

from loguru import logger as loguru_logger

from fedicache.config import settings

# Context variables maintain values across async calls
identity_id_var: ContextVar[str | None] = ContextVar("identity_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)


def serialize(record: dict[str, Any]) -> str:
    """Custom JSON serializer for production logs.

    Includes context variables (identity_id, operation) when set.
    """
    subset = {
        "time": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }

    if identity_id := identity_id_var.get():
        subset["identity_id"] = identity_id
    if operation := operation_var.get():
        subset["operation"] = operation

    subset.update(record["extra"])

    if exc := record["exception"]:
        subset["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value),
            "traceback": traceback.format_exception(
                exc.type, exc.value, exc.traceback
            ),
        }

    return json.dumps(subset, default=str)


def patching(record: dict[str, Any]) -> None:
    """Patch log records with serialized JSON."""
    record["extra"]["serialized"] = serialize(record)


def custom_formatter(record: dict[str, Any]) -> str:
    """Formatter emitting the pre-serialized JSON line."""
    return "{extra[serialized]}\n"


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Path | None = None,
    colorize: bool = True,
) -> Any:
    """Configure Loguru.

    1. Removes default Loguru handler
    2. Patches logger with custom JSON serialization
    3. Adds stderr handler (JSON or human-readable)
    4. Optionally adds file handler with rotation/compression

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Output JSON format (True for production)
        log_file: Optional file path for log output
        colorize: Enable colored output for human-readable logs

    Returns:
        Configured Loguru logger instance
    """
    loguru_logger.remove()

    patched_logger = loguru_logger.patch(patching)

    if json_logs:
        patched_logger.add(
            sys.stderr,
            level=level,
            format=custom_formatter,
            serialize=False,
        )
    else:
        format_str = (
            "<green>{time:HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )

        patched_logger.add(
            sys.stderr,
            level=level,
            format=format_str,
            colorize=colorize,
        )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

        patched_logger.add(
            log_file,
            level=level,
            format=custom_formatter if json_logs else "{time} | {level} | {message}",
            rotation="50 MB",
            retention="14 days",
            compression="zip",
            enqueue=True,
        )

    return patched_logger


logger = setup_logging(
    level=settings.log_level,
    json_logs=settings.log_json,
    log_file=settings.data_dir / "fedicache.log" if settings.log_to_file else None,
    colorize=not settings.log_json,
)


def set_log_context(
    identity_id: str | None = None,
    operation: str | None = None,
) -> None:
    """Set context variables for the current async context.

    These values are included in every JSON log line emitted within the
    current async context.
    """
    if identity_id is not None:
        identity_id_var.set(identity_id)
    if operation is not None:
        operation_var.set(operation)


def clear_log_context() -> None:
    """Clear all context variables for the current async context."""
    identity_id_var.set(None)
    operation_var.set(None)


def get_log_context() -> dict[str, str | None]:
    """Get current context variable values."""
    return {
        "identity_id": identity_id_var.get(),
        "operation": operation_var.get(),
    }


__all__ = [
    "logger",
    "identity_id_var",
    "operation_var",
    "set_log_context",
    "clear_log_context",
    "get_log_context",
    "setup_logging",
]
