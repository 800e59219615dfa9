"""
Structured logging configuration for the Swarm Gateway.

Features:
- JSON structured logging for production
- Colour console logging for development
- Request/model correlation through context variables
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# Context variables for log correlation
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_model_id: ContextVar[Optional[str]] = ContextVar("model_id", default=None)
_extra_context: ContextVar[Dict[str, Any]] = ContextVar("extra_context", default={})


def set_request_id(request_id: Optional[str]) -> None:
    """Set the current request ID for log correlation."""
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_model_id(model_id: Optional[str]) -> None:
    """Set the model the current request targets."""
    _model_id.set(model_id)


def set_context(**kwargs: Any) -> None:
    """Set additional context fields."""
    current = _extra_context.get().copy()
    current.update(kwargs)
    _extra_context.set(current)


def clear_context() -> None:
    """Clear request, model and extra context."""
    _request_id.set(None)
    _model_id.set(None)
    _extra_context.set({})


_STANDARD_FIELDS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


class StructuredFormatter(logging.Formatter):
    """
    JSON structured log formatter for production.

    Output format:
    {
        "timestamp": "2025-03-02T10:15:30.123456Z",
        "level": "INFO",
        "logger": "swarm_gateway.api.gateway",
        "message": "[Gateway] Service created",
        "request_id": "3f2a9c1b7d4e",
        "model": "transformers.js/phi-3.5",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = _request_id.get()
        model_id = _model_id.get()
        extra = _extra_context.get()

        if request_id:
            log_data["request_id"] = request_id
        if model_id:
            log_data["model"] = model_id
        if extra:
            log_data["context"] = extra

        record_extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }
        if record_extras:
            log_data["extra"] = record_extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class RichConsoleFormatter(logging.Formatter):
    """
    Console formatter for development with colours.
    """

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        context_parts = []
        request_id = _request_id.get()
        model_id = _model_id.get()

        if request_id:
            context_parts.append(f"req={request_id[:12]}")
        if model_id:
            context_parts.append(f"model={model_id}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        output = (
            f"{self.DIM}{timestamp}{self.RESET} "
            f"{color}{self.BOLD}{record.levelname:8}{self.RESET} "
            f"{self.DIM}{record.name}{self.RESET}"
            f"{context_str}: "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)

        return output


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_LOG_LEVEL", "INFO")
    )
    format: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_LOG_FORMAT", "rich")
    )  # "rich" or "json"

    log_file: Optional[Path] = field(
        default_factory=lambda: Path(os.getenv("SWARM_GATEWAY_LOG_FILE", ""))
        if os.getenv("SWARM_GATEWAY_LOG_FILE") else None
    )
    max_file_size_mb: int = 10
    backup_count: int = 5

    console_enabled: bool = True

    quiet_loggers: list = field(
        default_factory=lambda: [
            "docker",
            "urllib3",
            "aiohttp.access",
            "uvicorn.access",
        ]
    )


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Configure process logging.

    Args:
        config: Logging configuration. Uses defaults if None.
    """
    if config is None:
        config = LoggingConfig()

    level = getattr(logging, config.level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)

        if config.format == "json":
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(RichConsoleFormatter())

        root_logger.addHandler(console_handler)

    if config.log_file:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)

        from logging.handlers import RotatingFileHandler

        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    for logger_name in config.quiet_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("swarm_gateway").setLevel(level)


class LogContext:
    """
    Context manager for temporary log context.

    Example:
        with LogContext(service="transformers-js-phi-3-5"):
            logger.info("Creating")  # Includes service
        logger.info("Done")  # No longer includes service
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._previous: Dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._previous = _extra_context.get().copy()
        new_context = self._previous.copy()
        new_context.update(self._context)
        _extra_context.set(new_context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _extra_context.set(self._previous)


def log_duration(
    logger: logging.Logger,
    level: int = logging.INFO,
    message: str = "Operation completed",
) -> Callable:
    """
    Decorator to log the duration of an async call.

    Example:
        @log_duration(logger, message="[Cache] Prune")
        async def prune():
            ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration = (time.perf_counter() - start) * 1000
                logger.error(
                    f"{message} failed ({duration:.2f}ms): {e}",
                    extra={"duration_ms": duration, "function": func.__name__},
                )
                raise
            duration = (time.perf_counter() - start) * 1000
            logger.log(
                level,
                f"{message} ({duration:.2f}ms)",
                extra={"duration_ms": duration, "function": func.__name__},
            )
            return result

        return wrapper

    return decorator
