import logging
from logging import Formatter, LogRecord
import sys
import json
import traceback
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler

from .config import settings


# Context variables for request and trade tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
strategy_id_var: ContextVar[Optional[str]] = ContextVar("strategy_id", default=None)
trade_id_var: ContextVar[Optional[str]] = ContextVar("trade_id", default=None)

_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "extra_fields", "taskName",
}


class StructuredFormatter(Formatter):
    """Custom formatter that outputs structured JSON logs"""

    def format(self, record: LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in (
            ("request_id", request_id_var),
            ("strategy_id", strategy_id_var),
            ("trade_id", trade_id_var),
        ):
            value = var.get()
            if value:
                log_entry[key] = value

        # Add extra fields, dropping empty context slots
        if hasattr(record, "extra_fields"):
            log_entry.update({k: v for k, v in record.extra_fields.items() if v is not None})

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class TextFormatter(Formatter):
    """Human-readable formatter for development"""

    def format(self, record: LogRecord) -> str:
        context_parts = []
        request_id = request_id_var.get()
        if request_id:
            context_parts.append(f"req_id={request_id[:8]}")
        strategy_id = strategy_id_var.get()
        if strategy_id:
            context_parts.append(f"strategy={strategy_id[:8]}")
        trade_id = trade_id_var.get()
        if trade_id:
            context_parts.append(f"trade={trade_id[:8]}")

        context_str = f"[{' '.join(context_parts)}] " if context_parts else ""

        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level = f"{record.levelname:8}"
        location = f"{record.name}:{record.funcName}:{record.lineno}"

        message = f"{timestamp} | {level} | {location} | {context_str}{record.getMessage()}"

        if record.exc_info:
            message += f"\n{''.join(traceback.format_exception(*record.exc_info))}"

        return message


class AppLogger:
    """
    Centralized logging for the execution engine:
    - Structured logging (JSON format for production)
    - Context injection (request ID, strategy ID, trade ID)
    - Console and rotating file handlers
    - Business event, external call and performance helpers
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self._setup_logger()

    def _setup_logger(self):
        """Setup logger with handlers and formatters"""
        config = settings.logging_config
        self.logger.handlers = []
        self.logger.setLevel(getattr(logging, config.level))

        if config.format == "json":
            formatter: Formatter = StructuredFormatter()
        else:
            formatter = TextFormatter()

        if "console" in config.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        if "file" in config.handlers:
            log_dir = Path(config.file_path).parent
            log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                config.file_path,
                maxBytes=config.max_file_size,
                backupCount=config.backup_count
            )
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        # Propagate only under test so pytest's caplog can see records
        self.logger.propagate = settings.is_testing

    def _log(self, level: int, message: str, exc_info: Optional[Exception] = None, **kwargs):
        if settings.logging_config.include_context:
            kwargs.setdefault("request_id", request_id_var.get())
            kwargs.setdefault("strategy_id", strategy_id_var.get())
            kwargs.setdefault("trade_id", trade_id_var.get())
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_fields": kwargs})

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[Exception] = None, **kwargs):
        """Log an error; a given exception adds its type, message and traceback"""
        if error:
            kwargs["error_type"] = type(error).__name__
            kwargs["error_message"] = str(error)
        self._log(logging.ERROR, message, exc_info=error, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def log_external_api_call(self, service: str, endpoint: str, method: str = "GET", **kwargs):
        self.debug(
            f"External API Call: {service} {method} {endpoint}",
            service=service,
            endpoint=endpoint,
            method=method,
            **kwargs
        )

    def log_external_api_response(self, service: str, status_code: int, response_time: float, **kwargs):
        """Debug for 2xx/3xx, warning otherwise"""
        log = self.debug if 200 <= status_code < 400 else self.warning
        log(
            f"External API Response: {service} - {status_code}",
            service=service,
            status_code=status_code,
            response_time_ms=round(response_time * 1000, 2),
            **kwargs
        )

    def log_business_event(self, event_type: str, data: Dict[str, Any]):
        """Trade transitions and executor lifecycle events"""
        self.info(f"Business Event: {event_type}", event_type=event_type, event_data=data)

    def log_performance_metric(self, operation: str, duration: float, **kwargs):
        self.info(f"Performance: {operation}", operation=operation, duration_ms=round(duration * 1000, 2), **kwargs)


# Logger factory function
def get_logger(name: str) -> AppLogger:
    """Get a logger instance for the given name"""
    return AppLogger(name)


# Utility functions for context management
def set_request_id(request_id: str):
    """Set request ID for the current context"""
    request_id_var.set(request_id)


def set_strategy_id(strategy_id: Optional[str]):
    """Set strategy ID for the current context"""
    strategy_id_var.set(strategy_id)


def set_trade_id(trade_id: Optional[str]):
    """Set trade ID for the current context"""
    trade_id_var.set(trade_id)


def clear_context():
    """Clear all context variables"""
    request_id_var.set(None)
    strategy_id_var.set(None)
    trade_id_var.set(None)
