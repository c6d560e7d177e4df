"""Structured logging configuration using structlog.

The controller usually runs inside a pod where stdout is collected, so the
console handler is the primary sink. A rotating JSON file can be enabled for
long-running local sessions.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5
RETENTION_DAYS = 14

# Chatty third-party loggers that drown out tick summaries at DEBUG
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "kubernetes.client.rest")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _cleanup_old_logs(log_file: Path) -> None:
    """Delete rotated copies of ``log_file`` older than RETENTION_DAYS."""
    log_dir = log_file.parent
    if not log_dir.exists():
        return
    cutoff = datetime.now() - timedelta(days=RETENTION_DAYS)
    for candidate in log_dir.glob(f"{log_file.name}*"):
        try:
            if datetime.fromtimestamp(candidate.stat().st_mtime) < cutoff:
                candidate.unlink()
        except OSError:
            pass  # Another process may have rotated it away


def _setup_file_logging(log_file: Path) -> None:
    """Attach a rotating JSON file handler to the root logger."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    _cleanup_old_logs(log_file)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_shared_processors(),
        )
    )
    logging.getLogger().addHandler(file_handler)


def configure_logging(
    verbose: bool = False,
    debug: bool = False,
    json_output: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure structured logging for the sync controller.

    Args:
        verbose: Enable verbose (INFO level) output.
        debug: Enable debug mode (DEBUG level).
        json_output: Render console logs as JSON lines (for log collectors).
        log_file: Optional path for an additional rotating JSON log file.
    """
    if debug:
        log_level = logging.DEBUG
    elif verbose:
        log_level = logging.INFO
    else:
        log_level = logging.WARNING

    shared_processors = _shared_processors()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stdout.isatty(),
            exception_formatter=structlog.dev.RichTracebackFormatter(show_locals=debug),
        )
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Handlers filter
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    if log_file is not None:
        _setup_file_logging(log_file)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Get a configured logger with optional initial context.

    Args:
        name: Logger name. If None, uses the calling module's name.
        **initial_context: Initial context variables to bind to the logger.

    Returns:
        A bound structlog logger.
    """
    logger: structlog.BoundLogger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger
