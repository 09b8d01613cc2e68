from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from backend.app.config import AppSettings

ROOT_LOGGER_NAME = "yt_orchestrator"
LOG_FILE_NAME = "yt-orchestrator.log"
TELEMETRY_LOG_FILE_NAME = "yt-orchestrator-telemetry.log"

# Library loggers routed into our handlers. APScheduler reports misfired and
# skipped cache jobs at WARNING; the discovery cache warning is noise.
_LIBRARY_LOG_LEVELS: dict[str, int] = {
    "apscheduler": logging.WARNING,
    "googleapiclient": logging.WARNING,
    "googleapiclient.discovery_cache": logging.ERROR,
    "google.auth": logging.WARNING,
}


def configure_application_logging(settings: AppSettings) -> Path:
    """Console + rotating JSON file for `yt_orchestrator.*`, telemetry in its own file.

    Safe to call more than once; previous handlers are closed and replaced.
    Returns the path of the main log file.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME

    _configure_structlog()

    handlers: list[logging.Handler] = [
        _console_handler(sys.stdout, level=_resolve_log_level(settings.log_level)),
        _rotating_file_handler(
            log_file,
            max_bytes=settings.log_max_bytes,
            backup_count=settings.log_backup_count,
        ),
    ]
    app_logger = _install_handlers(ROOT_LOGGER_NAME, handlers, level=logging.DEBUG)
    for name, level in _LIBRARY_LOG_LEVELS.items():
        _install_handlers(name, handlers, level=level, owns_handlers=False)

    telemetry_handler = logging.FileHandler(telemetry_log_file, encoding="utf-8")
    telemetry_handler.setFormatter(_json_formatter())
    _install_handlers(f"{ROOT_LOGGER_NAME}.telemetry", [telemetry_handler], level=logging.INFO)

    app_logger.info(
        "logging configured console_level=%s path=%s rotate_bytes=%s backups=%s telemetry_path=%s",
        settings.log_level.upper(),
        log_file,
        settings.log_max_bytes,
        settings.log_backup_count,
        telemetry_log_file,
    )
    return log_file


def _install_handlers(
    name: str,
    handlers: list[logging.Handler],
    *,
    level: int,
    owns_handlers: bool = True,
) -> logging.Logger:
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        if owns_handlers:
            handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def _console_handler(stream: TextIO, *, level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=_stream_supports_color(stream)),
            ],
        )
    )
    return handler


def _rotating_file_handler(path: Path, *, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_json_formatter())
    return handler


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            _add_source_location,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _shared_pre_chain() -> list[Processor]:
    # sync_run_id / scheduler_tick_id / user_id arrive through contextvars.
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _add_source_location(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["source"] = f"{record.module}:{record.lineno}"
        event_dict["thread_name"] = record.threadName
    return event_dict


def _resolve_log_level(raw_level: str) -> int:
    resolved = logging.getLevelName(raw_level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False
