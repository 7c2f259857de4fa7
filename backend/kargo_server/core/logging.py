"""
Logging configuration for the Kargo API server.

Configures the stdlib root logger (coloured console, JSON, optional rotating
file) and routes structlog events through the same handlers.
"""
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from ..config import Settings, get_settings
from .request_context import request_id_var

_CONFIGURED = False

# LogRecord attributes that are never copied into the JSON payload.
_RESERVED_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ContextFilter(logging.Filter):
    """Inject request_id and service/env fields into every LogRecord."""

    def __init__(self, env: str) -> None:
        super().__init__()
        self._env = env

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        rid = getattr(record, "request_id", None) or request_id_var.get()
        if rid is not None:
            record.request_id = rid
        if not hasattr(record, "service"):
            record.service = "kargo-server"
        if not hasattr(record, "env"):
            record.env = self._env
        return True


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level name."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """JSON structured formatter.

    Emits time, level, name and message, merges any extra attributes (which is
    where structlog key/values end up) and redacts secret-looking keys.
    """

    REDACT_KEYS = {"password", "passwd", "secret", "token", "bearer_token", "authorization", "jwt"}

    def __init__(self, datefmt: Optional[str] = None) -> None:
        super().__init__(datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        rid = getattr(record, "request_id", None) or request_id_var.get()
        if rid:
            payload["request_id"] = rid

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            safe_key = str(key)
            payload[safe_key] = self._redact(value) if safe_key.lower() in self.REDACT_KEYS else value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)

    @staticmethod
    def _redact(value: Any) -> str:
        return "***REDACTED***" if value else ""


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(
    settings: Optional[Settings] = None,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    use_color: bool = True,
) -> logging.Logger:
    """Configure the root logger once and bridge structlog onto it.

    Args:
        settings: application settings; defaults to ``get_settings()``
        level: overrides ``settings.log_level``
        log_file: overrides ``settings.log_file``
        use_color: colour the console output when attached to a TTY

    Returns:
        logging.Logger: the application logger
    """
    global _CONFIGURED
    settings = settings or get_settings()
    logger = logging.getLogger("kargo_server")

    if _CONFIGURED:
        return logger

    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    for h in list(root.handlers):
        root.removeHandler(h)

    context_filter = ContextFilter(settings.app_env)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(context_filter)
    if settings.log_json:
        console_formatter: logging.Formatter = JSONFormatter(datefmt=LOG_DATE_FORMAT)
    elif use_color and sys.stdout.isatty():
        console_formatter = ColoredFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    root.addHandler(console_handler)

    file_path = log_file or settings.log_file
    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.addFilter(context_filter)
        file_handler.setFormatter(
            JSONFormatter(datefmt=LOG_DATE_FORMAT)
            if settings.log_json
            else logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        )
        root.addHandler(file_handler)

    # Let uvicorn/fastapi loggers propagate to the root handlers
    for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        named = logging.getLogger(log_name)
        named.handlers = []
        named.propagate = True

    # The kubernetes client logs request bodies at DEBUG, which include review tokens
    logging.getLogger("kubernetes").setLevel(max(root.level, logging.INFO))

    _configure_structlog()
    _CONFIGURED = True
    return logger
