"""Centralized logging configuration for the synchronizer."""

import logging
import sys
import uuid
from typing import Any

import structlog

from todosync.models.config import LoggingConfig


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    log_file: str | None = None,
) -> None:
    """
    Configure structured logging for the application.

    This function sets up structlog with:
    - JSON formatting for unattended runs (when json_logs=True)
    - Console formatting for interactive use (when json_logs=False)
    - Context variables merged into every event, so log lines emitted during
      a sync run carry its ``sync_run_id``
    - Optional file output with rotation

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, output JSON logs. If False, use console format.
        log_file: Optional path to log file. If None, logs only to stdout.

    Example:
        >>> configure_logging(log_level="DEBUG", json_logs=False)
        >>> log = structlog.stdlib.get_logger()
        >>> log.info("sync_started", list_id="L1")
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        stream=sys.stdout,
    )

    if log_file:
        from logging.handlers import RotatingFileHandler

        # 10MB per file, five backups
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setLevel(numeric_level)
        logging.root.addHandler(file_handler)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ],
        ),
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_from_config(config: LoggingConfig) -> None:
    """Configure logging from the ``logging`` section of AppConfig."""
    configure_logging(
        log_level=config.log_level,
        json_logs=config.json_logs,
        log_file=config.log_file,
    )


def bind_sync_run(reason: str) -> str:
    """
    Bind a fresh run id (and the trigger reason) to the logging context.

    Returns:
        The generated run id
    """
    run_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(sync_run_id=run_id, sync_reason=reason)
    return run_id


def clear_sync_run() -> None:
    """Remove run-scoped keys from the logging context."""
    structlog.contextvars.unbind_contextvars("sync_run_id", "sync_reason")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Optional logger name. If None, uses the calling module's name.

    Returns:
        Configured structlog logger
    """
    return structlog.stdlib.get_logger(name)
