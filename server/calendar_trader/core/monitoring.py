import logging
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from typing import Dict, Any, Optional
from enum import Enum
import time
from functools import wraps

from .config import settings
from .logging import get_logger, request_id_var, strategy_id_var, trade_id_var


logger = get_logger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels"""
    HIGH = "high"
    CRITICAL = "critical"


def _tag_scope(scope) -> None:
    """Copy the current request/strategy/trade context onto a Sentry scope"""
    for tag, var in (
        ("request_id", request_id_var),
        ("strategy_id", strategy_id_var),
        ("trade_id", trade_id_var),
    ):
        value = var.get()
        if value:
            scope.set_tag(tag, value)


# Exceptions raised by shutdown or a cancelled tick are not reportable
_IGNORED_ERRORS = ("KeyboardInterrupt", "SystemExit", "CancelledError")
# Brokerage session cookies must never leave the process
_SECRET_HEADERS = ("authorization", "cookie", "x-api-key")
_SECRET_MARKERS = ("token", "secret", "password", "cookie")


class ErrorMonitoring:
    """Sentry wiring for the API process and the standalone executor"""

    @staticmethod
    def init_sentry(app_settings: Optional[Any] = None):
        config = app_settings or settings
        if not config.sentry_dsn or not config.logging.sentry_enabled:
            logger.info("Error monitoring disabled", environment=config.environment)
            return

        integrations = [
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            HttpxIntegration(),
            # Engine errors are logged, the log call becomes the Sentry event
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ]
        try:
            sentry_sdk.init(
                dsn=config.sentry_dsn,
                environment=config.sentry_environment or config.environment,
                release=config.api.version,
                integrations=integrations,
                traces_sample_rate=config.sentry_traces_sample_rate,
                profiles_sample_rate=config.sentry_profiles_sample_rate,
                attach_stacktrace=config.logging.sentry_attach_stacktrace,
                send_default_pii=config.logging.sentry_send_default_pii,
                before_send=ErrorMonitoring._scrub_event,
                max_breadcrumbs=50,
            )
        except Exception as e:
            logger.error("Error monitoring could not start", error=e)
            return
        logger.info("Error monitoring enabled", environment=config.environment)

    @staticmethod
    def _scrub_event(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        exc_info = hint.get("exc_info")
        if exc_info and exc_info[0].__name__ in _IGNORED_ERRORS:
            return None

        headers = event.get("request", {}).get("headers", {})
        for name in _SECRET_HEADERS:
            if name in headers:
                headers[name] = "[REDACTED]"

        extra = event.get("extra", {})
        for key in extra:
            if any(marker in key.lower() for marker in _SECRET_MARKERS):
                extra[key] = "[REDACTED]"

        return event

    @staticmethod
    def capture_exception(error: Exception, context: Optional[Dict[str, Any]] = None):
        """Report an exception with extra context and the current engine tags"""
        with sentry_sdk.new_scope() as scope:
            for key, value in (context or {}).items():
                scope.set_extra(key, value)
            _tag_scope(scope)
            sentry_sdk.capture_exception(error)

    @staticmethod
    def add_breadcrumb(
        message: str,
        category: str = "custom",
        level: str = "info",
        data: Optional[Dict[str, Any]] = None
    ):
        """Add breadcrumb for context"""
        sentry_sdk.add_breadcrumb(
            category=category,
            message=message,
            level=level,
            data=data or {}
        )


class AlertManager:
    """Raise operator alerts through Sentry"""

    @staticmethod
    def send_alert(
        title: str,
        message: str,
        severity: AlertSeverity,
        context: Optional[Dict[str, Any]] = None
    ):
        """Send alert through Sentry and the application log"""
        sentry_level = "fatal" if severity == AlertSeverity.CRITICAL else "error"

        with sentry_sdk.new_scope() as scope:
            scope.set_level(sentry_level)
            scope.set_tag("alert_severity", severity.value)
            scope.set_tag("alert_type", "engine_alert")
            _tag_scope(scope)

            for key, value in (context or {}).items():
                scope.set_extra(key, value)

            scope.fingerprint = [title, severity.value]
            sentry_sdk.capture_message(f"Alert: {title} - {message}", level=sentry_level)

        logger.warning(
            f"Alert sent: {title}",
            severity=severity.value,
            alert_message=message,
            context=context
        )


def monitor_performance(operation_name: str):
    """
    Run a coroutine function inside a Sentry transaction

    Example:
        @monitor_performance("executor.tick")
        async def tick(self):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            with sentry_sdk.start_transaction(op=operation_name, name=func.__name__) as transaction:
                transaction.set_tag("function", f"{func.__module__}.{func.__name__}")
                started = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                    transaction.set_tag("success", True)
                    return result
                except Exception as e:
                    transaction.set_tag("success", False)
                    transaction.set_tag("error", type(e).__name__)
                    raise
                finally:
                    transaction.set_data("duration_ms", round((time.perf_counter() - started) * 1000, 2))

        return wrapper
    return decorator
