"""
Gateway Logging Infrastructure.

Provides unified logging for the validation, storage and synchronization
engine, with:
- Structured JSONL file output (one JSON object per line)
- Console output for human monitoring
- Component tags (ENGINE, SYNC, STORE) on every record

Log Format Design:
- Primary file: .eavgate/logs/gateway.log (JSONL)
- Each line carries timestamp, level, component, message and an optional
  ``context`` object with structured metadata
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

# =============================================================================
# Terminal Colors (respects NO_COLOR)
# =============================================================================

_NO_COLOR = os.environ.get("NO_COLOR") or not sys.stdout.isatty()


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "" if _NO_COLOR else "\033[0m"
    DIM = "" if _NO_COLOR else "\033[2m"

    # Log levels
    DEBUG = "" if _NO_COLOR else "\033[36m"  # Cyan
    INFO = "" if _NO_COLOR else "\033[32m"  # Green
    WARNING = "" if _NO_COLOR else "\033[33m"  # Yellow
    ERROR = "" if _NO_COLOR else "\033[31m"  # Red
    CRITICAL = "" if _NO_COLOR else "\033[35m"  # Magenta

    # Components
    ENGINE = "" if _NO_COLOR else "\033[35m"  # Magenta
    SYNC = "" if _NO_COLOR else "\033[34m"  # Blue
    STORE = "" if _NO_COLOR else "\033[36m"  # Cyan


ROOT_LOGGER = "eavgate_back"
LOG_FILE_NAME = "gateway.log"


# =============================================================================
# Formatters
# =============================================================================


class JSONLFormatter(logging.Formatter):
    """
    Formats log records as JSON Lines.

    Example output:
    {"timestamp":"2024-01-15T10:30:45.123+00:00","level":"WARNING","component":"SYNC","message":"Sync of Person failed","context":{"status":502}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "component": getattr(record, "component", "ENGINE"),
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        # Source location for warnings and errors
        if record.levelno >= logging.WARNING:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DEBUG,
        logging.INFO: Colors.INFO,
        logging.WARNING: Colors.WARNING,
        logging.ERROR: Colors.ERROR,
        logging.CRITICAL: Colors.CRITICAL,
    }

    def format(self, record: logging.LogRecord) -> str:
        component = getattr(record, "component", "ENGINE")
        component_color = getattr(record, "component_color", Colors.ENGINE)
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        if _NO_COLOR:
            prefix = f"[{timestamp}] [{component}]"
        else:
            prefix = (
                f"{Colors.DIM}{timestamp}{Colors.RESET} "
                f"{component_color}[{component}]{Colors.RESET}"
            )

        if record.levelno != logging.INFO:
            level_name = record.levelname
            if not _NO_COLOR:
                level_name = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level_name}{Colors.RESET}"
            prefix = f"{prefix} {level_name}:"

        return f"{prefix} {record.getMessage()}"


# Module prefix -> component tag
_COMPONENTS: dict[str, tuple[str, str]] = {
    f"{ROOT_LOGGER}.runtime.synchronizer": ("SYNC", Colors.SYNC),
    f"{ROOT_LOGGER}.runtime.api_cache": ("SYNC", Colors.SYNC),
    f"{ROOT_LOGGER}.runtime.repository": ("STORE", Colors.STORE),
}


class ModuleComponentFilter(logging.Filter):
    """Derive the component tag from the emitting module."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "component"):
            component, color = _COMPONENTS.get(record.name, ("ENGINE", Colors.ENGINE))
            record.component = component
            record.component_color = color
        return True


# =============================================================================
# Logger Setup
# =============================================================================


_log_dir: Path | None = None


def setup_logging(
    log_dir: Path | str = ".eavgate/logs",
    level: int | str = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 3,
    jsonl: bool = True,
) -> Path:
    """
    Initialize the logging infrastructure.

    Creates:
    - <log_dir>/gateway.log: JSONL format (when ``jsonl`` is set)
    - Console output: Human-readable format

    Returns:
        Path to the log directory
    """
    global _log_dir

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    _log_dir = Path(log_dir)
    _log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter())
    console_handler.setLevel(level)
    console_handler.addFilter(ModuleComponentFilter())
    root_logger.addHandler(console_handler)

    log_file = _log_dir / LOG_FILE_NAME
    if jsonl:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONLFormatter())
        file_handler.setLevel(level)
        file_handler.addFilter(ModuleComponentFilter())
        root_logger.addHandler(file_handler)

    root_logger.info(
        "Gateway logging initialized",
        extra={"component": "ENGINE", "context": {"log_file": str(log_file), "jsonl": jsonl}},
    )

    return _log_dir


# =============================================================================
# Contextual Logging
# =============================================================================


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """
    Log a message with structured context data.

    Args:
        logger: Logger instance
        level: Logging level (logging.INFO, logging.ERROR, etc.)
        message: Human-readable message
        context: Structured context data (included in the JSONL entry)
        **kwargs: Additional context items
    """
    extra = {"context": {**(context or {}), **kwargs}} if (context or kwargs) else {}
    logger.log(level, message, extra=extra)


def get_log_file() -> Path | None:
    """Get the path to the main log file."""
    if _log_dir:
        return _log_dir / LOG_FILE_NAME
    return None


def get_recent_logs(count: int = 50, level: str | None = None) -> list[dict[str, Any]]:
    """
    Get recent log entries as parsed JSON (most recent last).

    Args:
        count: Number of recent entries to return
        level: Optional filter by level (ERROR, WARNING, etc.)
    """
    log_file = get_log_file()
    if not log_file or not log_file.exists():
        return []

    entries: list[dict[str, Any]] = []
    try:
        with open(log_file, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if level and entry.get("level") != level.upper():
                    continue
                entries.append(entry)
    except OSError:
        return []

    return entries[-count:]
