"""
Logging for the domain engine.

Two outputs, both attached to the ``domain_engine`` logger by ``setup_logging``:

- console: one readable line per record, ANSI-colored on a TTY unless
  ``NO_COLOR`` is set (or JSONL when ``json_logs`` is on)
- file: ``<log_dir>/domain_engine.log``, rotating, one JSON object per line

Structured fields travel in ``record.context``; use ``log_with_context`` to
attach them. ``read_recent_logs`` reads the JSONL file back for tooling.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from domain_engine.runtime.config import EngineConfig

ROOT_LOGGER = "domain_engine"
LOG_FILE_NAME = "domain_engine.log"

_USE_COLOR = not os.environ.get("NO_COLOR") and sys.stdout.isatty()


def _ansi(code: str) -> str:
    return f"\033[{code}m" if _USE_COLOR else ""


_RESET = _ansi("0")
_DIM = _ansi("2")
_COMPONENT = _ansi("34")
_LEVEL_STYLES = {
    logging.DEBUG: _ansi("36"),
    logging.WARNING: _ansi("33"),
    logging.ERROR: _ansi("31"),
    logging.CRITICAL: _ansi("35"),
}


def _context_of(record: logging.LogRecord) -> dict[str, Any] | None:
    return getattr(record, "context", None) or None


# =============================================================================
# Formatters
# =============================================================================


class JSONLFormatter(logging.Formatter):
    """
    One JSON object per record.

    Example line:
    {"timestamp":"2026-01-15T10:30:45.123000Z","level":"ERROR","logger":"domain_engine.runtime.after_hooks","message":"After-hook failed: boom","context":{"hook":"Employee.create"}}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if (context := _context_of(record)) is not None:
            entry["context"] = context
        # warnings and errors say where they came from
        if record.levelno >= logging.WARNING:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _tb = record.exc_info
            entry["exception"] = {"type": exc_type.__name__, "message": str(exc_value)}
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS [component] LEVEL: message {context}``; the level is omitted for INFO."""

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        component = record.name.removeprefix(f"{ROOT_LOGGER}.")
        parts = [
            f"{_DIM}{clock}{_RESET}" if _USE_COLOR else f"[{clock}]",
            f"{_COMPONENT}[{component}]{_RESET}",
        ]
        if record.levelno != logging.INFO:
            parts.append(f"{_LEVEL_STYLES.get(record.levelno, '')}{record.levelname}{_RESET}:")
        parts.append(record.getMessage())

        if (context := _context_of(record)) is not None:
            parts.append(json.dumps(context, default=str))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Setup
# =============================================================================


def setup_logging(config: EngineConfig) -> logging.Logger:
    """
    Configure the ``domain_engine`` logger from an engine config.

    Replaces handlers installed by an earlier call, so it is safe to call
    again (for example from tests or a reloading server).

    Returns:
        The configured ``domain_engine`` logger
    """
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONLFormatter() if config.json_logs else ConsoleFormatter())
    handlers: list[logging.Handler] = [console]

    if config.log_dir is not None:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        file_handler.setFormatter(JSONLFormatter())
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)

    logger.debug("Logging initialized", extra={"context": {"level": config.log_level}})
    return logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """
    Log ``message`` with structured fields.

    ``context`` and extra keyword arguments are merged into ``record.context``
    (rendered after the message on the console, as ``"context"`` in JSONL).
    ``exc_info`` is passed through to the logger.

    Example:
        >>> log_with_context(logger, logging.INFO, "Edge added", {"relation": "projects"}, count=2)
    """
    exc_info = kwargs.pop("exc_info", None)
    fields = {**(context or {}), **kwargs}
    logger.log(level, message, extra={"context": fields} if fields else None, exc_info=exc_info)


def read_recent_logs(
    log_dir: Path, count: int = 50, level: str | None = None
) -> list[dict[str, Any]]:
    """
    Last ``count`` JSONL entries from ``log_dir``, oldest first.

    Args:
        log_dir: Directory configured as ``EngineConfig.log_dir``
        count: Maximum number of entries
        level: Only entries at this level (e.g. "ERROR")
    """
    log_file = Path(log_dir) / LOG_FILE_NAME
    if not log_file.exists():
        return []

    entries: list[dict[str, Any]] = []
    for line in log_file.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            # partial line from a concurrent writer
            continue
        if level is None or entry.get("level") == level.upper():
            entries.append(entry)
    return entries[-count:] if count > 0 else []
