"""
observability/logger.py — tabpilot Structured Logger

Sets up structlog with:
  - JSON output to a rotating log file
  - Optional human-readable console output (dev mode) or JSON (pipe mode)
  - Consistent fields on every log line: timestamp, level, event, run_id
  - Chatty third-party loggers (httpx, httpcore, asyncio)
    held at WARNING so per-request lines never flood the console

Usage:
    from tabpilot.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", log_dir="./data/logs", console_output=True)
    log = get_logger(__name__)
    log.info("agent.step_start", step=3, max_steps=10)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

# httpx logs every request at INFO; the loop already logs each model call.
_QUIET_LOGGERS = [
    "httpx",
    "httpcore",
    "asyncio",
]


def _quiet_noisy_loggers() -> None:
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: Optional[bool] = None,  # None = auto-detect from tty
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,   # 50 MB
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and stdlib logging. Call once at application startup.

    Args:
        level:          Log level string — DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for rotating log files.
        json_format:    If True, console emits JSON. If False, coloured
                        human-readable output. None picks pretty for a TTY
                        and JSON otherwise.
        console_output: Whether to emit logs to stderr at all.
        max_bytes:      Max size of each log file before rotation.
        backup_count:   Number of rotated log files to keep.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        json_format = not sys.stderr.isatty()

    # ── Shared structlog processors ───────────────────────────────────────────
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # ── File handler (always JSON) ────────────────────────────────────────────
    handlers: list[logging.Handler] = []

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / "tabpilot.log",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    handlers.append(file_handler)

    # ── Console handler (JSON or pretty) ─────────────────────────────────────
    # stderr, so the CLI's final result on stdout stays pipeable.
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        handlers.append(console_handler)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )
    _quiet_noisy_loggers()

    # ── Configure structlog ───────────────────────────────────────────────────
    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )
    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )

    for handler in handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            handler.setFormatter(file_formatter)
        else:
            handler.setFormatter(console_formatter)


def get_logger(name: str = "tabpilot", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a bound logger with optional initial context values.

    Example:
        log = get_logger(__name__, component="executor")
        log.info("executor.dispatch", action="click_at")
        # → {"event": "executor.dispatch", "action": "click_at",
        #    "component": "executor", "logger": "tabpilot.actions.executor", ...}
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_run(run_id: str, goal: str) -> None:
    """
    Bind run context to every log call in this async context.

    structlog's contextvars integration attaches the values to each log line
    emitted by the run's task and its children, without passing them explicitly.
    """
    structlog.contextvars.bind_contextvars(run_id=run_id, goal=goal[:80])


def clear_run() -> None:
    """Clear run context vars at the end of a run."""
    structlog.contextvars.unbind_contextvars("run_id", "goal")
