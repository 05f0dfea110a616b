"""
OutreachHQ Logging Configuration
Structured logging with campaign/run context
"""
import asyncio
import json
import logging
import os
import sys
import time
import traceback
from datetime import datetime, timezone
from functools import wraps
from typing import Optional

# ============================================================
# LOG LEVELS
# ============================================================

LOG_LEVEL = os.environ.get("OUTREACHHQ_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("OUTREACHHQ_LOG_FORMAT", "json")  # json or text

# ============================================================
# STRUCTURED LOGGING
# ============================================================

class StructuredLogger:
    """Logger that attaches keyword context to every record"""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(StructuredFormatter() if LOG_FORMAT == "json" else TextFormatter())
            self.logger.addHandler(handler)

    def _log(self, level: int, message: str, **context):
        self.logger.log(level, message, extra={"context": context, "logger_name": self.name})

    def debug(self, message: str, **context):
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context):
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context):
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, error: Optional[BaseException] = None, **context):
        self._log(logging.ERROR, message, **_with_error(context, error))

    def critical(self, message: str, error: Optional[BaseException] = None, **context):
        self._log(logging.CRITICAL, message, **_with_error(context, error))


def _with_error(context: dict, error: Optional[BaseException]) -> dict:
    if error is not None:
        context["error_type"] = type(error).__name__
        context["error_message"] = str(error)
        context["traceback"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return context


class StructuredFormatter(logging.Formatter):
    """Formats logs as JSON"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": getattr(record, "logger_name", record.name),
            "message": record.getMessage(),
        }
        log_data.update(getattr(record, "context", {}) or {})
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Formats logs as readable text, campaign and run ids first"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    LEADING_KEYS = ("campaign_id", "run_id", "recipient_id")

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        context = dict(getattr(record, "context", {}) or {})

        parts = [f"{color}[{timestamp}] [{record.levelname}]{self.RESET}"]
        ids = [f"{k}={context.pop(k)}" for k in self.LEADING_KEYS if k in context]
        if ids:
            parts.append(" ".join(ids))
        parts.append(record.getMessage())

        trace = context.pop("traceback", None)
        if context:
            parts.append("\033[90m(" + " ".join(f"{k}={v}" for k, v in context.items()) + f"){self.RESET}")

        line = " ".join(parts)
        return f"{line}\n{trace}" if trace else line


# ============================================================
# FUNCTION TIMING DECORATOR
# ============================================================

def timed(logger: StructuredLogger):
    """Decorator to log function execution time"""
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{func.__name__} failed",
                    error=e,
                    function=func.__name__,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
                raise
            logger.debug(
                f"{func.__name__} completed",
                function=func.__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{func.__name__} failed",
                    error=e,
                    function=func.__name__,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
                raise
            logger.debug(
                f"{func.__name__} completed",
                function=func.__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# ============================================================
# LOGGER INSTANCES
# ============================================================

api_logger = StructuredLogger("outreachhq.api")
engine_logger = StructuredLogger("outreachhq.engine")
delivery_logger = StructuredLogger("outreachhq.delivery")
