"""Logging setup for entity-sync.

Console output is human readable unless JSON is asked for; a log file always
gets JSON lines. Range-sync log lines carry the kind, range and destination
they belong to as record attributes (see :func:`range_logger`), so both
formatters can show which range a message is about.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional, Tuple, Union

CONTEXT_FIELDS = ("kind", "range", "destination")

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

LOG_FORMATS = ("human", "json", "simple")

# attributes every LogRecord has; anything else came in through `extra=`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}

_FILE_MAX_BYTES = 10 * 1024 * 1024
_FILE_BACKUPS = 5


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; sync context and extras become top-level fields."""

    def __init__(self, include_context: bool = True):
        super().__init__()
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        data: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_context:
            data.update(module=record.module, function=record.funcName, line=record.lineno)
        data.update(_extra_fields(record))
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[LEVEL] time - logger - message`` with the sync context appended."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False, include_context: bool = False):
        where = " - %(module)s.%(funcName)s:%(lineno)d" if include_context else ""
        super().__init__(
            fmt=f"[%(levelname)s] %(asctime)s - %(name)s{where} - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = " ".join(
            f"{name}={getattr(record, name)}" for name in CONTEXT_FIELDS if getattr(record, name, None) is not None
        )
        if context:
            text = f"{text} [{context}]"
        if self.use_colors and record.levelname in self.COLORS:
            return f"{self.COLORS[record.levelname]}{text}{self.RESET}"
        return text


def get_log_level_from_env() -> int:
    """Level named by ENTITYSYNC_LOG_LEVEL, then LOG_LEVEL; INFO when unset or unknown."""
    name = os.environ.get("ENTITYSYNC_LOG_LEVEL") or os.environ.get("LOG_LEVEL") or "INFO"
    return LOG_LEVELS.get(name.upper(), logging.INFO)


def get_log_format_from_env() -> str:
    """Log format from ENTITYSYNC_LOG_FORMAT: 'json', 'human' (default) or 'simple'."""
    return os.environ.get("ENTITYSYNC_LOG_FORMAT", "human").lower()


def setup_logging(
    level: Optional[int] = None,
    format_type: Optional[str] = None,
    log_file: Optional[Path] = None,
    use_colors: bool = False,
    include_context: bool = False,
) -> None:
    """
    Configure the root logger for a sync run.

    Args:
        level: Logging level (defaults to ENTITYSYNC_LOG_LEVEL or INFO)
        format_type: 'human', 'json' or 'simple' (defaults to ENTITYSYNC_LOG_FORMAT)
        log_file: Rotating JSON log file (defaults to ENTITYSYNC_LOG_FILE)
        use_colors: Color console output when attached to a terminal
        include_context: Add module/function/line to each record
    """
    level = get_log_level_from_env() if level is None else level
    format_type = format_type or get_log_format_from_env()
    if log_file is None and os.environ.get("ENTITYSYNC_LOG_FILE"):
        log_file = Path(os.environ["ENTITYSYNC_LOG_FILE"])

    if format_type == "json":
        console_formatter: logging.Formatter = JSONFormatter(include_context=include_context)
    elif format_type == "simple":
        console_formatter = logging.Formatter("%(levelname)s: %(message)s")
    else:
        console_formatter = HumanReadableFormatter(use_colors=use_colors, include_context=include_context)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(console_formatter)
    root.addHandler(console)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=_FILE_MAX_BYTES, backupCount=_FILE_BACKUPS
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter(include_context=True))
        root.addHandler(file_handler)


class SyncContextAdapter(logging.LoggerAdapter):
    """Adds the adapter's sync context to every record, keeping call-site extras."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def range_logger(
    logger: logging.Logger,
    destination: Any = None,
    key_range: Any = None,
    kind: Optional[str] = None,
) -> SyncContextAdapter:
    """Logger whose records name the kind, range and destination being synced."""
    if kind is None and key_range is not None:
        kind = getattr(key_range, "kind", None)
    context = {
        "kind": kind,
        "range": str(key_range) if key_range is not None else None,
        "destination": str(destination) if destination is not None else None,
    }
    return SyncContextAdapter(logger, {k: v for k, v in context.items() if v is not None})


def log_performance(
    logger: Union[logging.Logger, logging.LoggerAdapter], operation: str, duration_seconds: float, **metrics: Any
) -> None:
    """Log how long ``operation`` took; ``metrics`` become record attributes."""
    summary = ", ".join(f"{k}={v}" for k, v in metrics.items())
    message = f"Performance: {operation} completed in {duration_seconds:.2f}s"
    if summary:
        message = f"{message} ({summary})"
    logger.info(message, extra={"operation": operation, "duration_seconds": duration_seconds, **metrics})
