# coursepay/logging_config.py
"""
Logging configuration with structured (JSON) output for log aggregation,
a readable console format for development, and dedicated loggers for
business and security events.
"""

import logging
import sys
import json
from pathlib import Path
from datetime import datetime, timezone
from typing import Any
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
import traceback

from .config import settings


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured logs for easy parsing
    by log aggregation services (ELK, Datadog, CloudWatch, etc.)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Extra fields passed via extra={} in log calls
        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        if getattr(record, "user_id", None):
            log_data["user_id"] = record.user_id

        if getattr(record, "request_id", None):
            log_data["request_id"] = record.request_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for console output during development
    """

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if settings.ENVIRONMENT == "development":
            color = self.COLORS.get(levelname, self.RESET)
            colored_levelname = f"{color}{levelname:8s}{self.RESET}"
        else:
            colored_levelname = f"{levelname:8s}"

        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        message = f"{timestamp} | {colored_levelname} | {record.name:25s} | {record.getMessage()}"

        if getattr(record, "user_id", None):
            message += f" [user={record.user_id}]"

        if getattr(record, "request_id", None):
            message += f" [req={record.request_id[:8]}]"

        if hasattr(record, "extra_data") and record.extra_data:
            message += f" {json.dumps(record.extra_data, default=str)}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


def setup_logging():
    """
    Configure logging for the entire application
    Should be called once during application startup
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))
    root_logger.handlers.clear()

    # ========================================================================
    # CONSOLE HANDLER (stdout)
    # ========================================================================
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.ENVIRONMENT == "development" else logging.INFO)

    if settings.LOG_FORMAT == "json":
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(console_handler)

    if settings.ENABLE_FILE_LOGGING:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)

        # General logs, rotating by size
        file_handler = RotatingFileHandler(
            log_dir / "app.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8"
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

        # Errors only, rotating daily
        error_handler = TimedRotatingFileHandler(
            log_dir / "errors.log",
            when="midnight",
            interval=1,
            backupCount=30,
            encoding="utf-8"
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(error_handler)

        # Business events: payments, enrollments, refunds
        business_handler = RotatingFileHandler(
            log_dir / "business.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=10,
            encoding="utf-8"
        )
        business_handler.setLevel(logging.INFO)
        business_handler.setFormatter(StructuredFormatter())
        business_logger.addHandler(business_handler)
        business_logger.propagate = False

        # Security events: signature failures, merchant mismatches.
        # Kept for a year and still propagated so alerts on the root logger fire.
        security_handler = TimedRotatingFileHandler(
            log_dir / "security.log",
            when="midnight",
            interval=1,
            backupCount=365,
            encoding="utf-8"
        )
        security_handler.setLevel(logging.INFO)
        security_handler.setFormatter(StructuredFormatter())
        security_logger.addHandler(security_handler)

    # ========================================================================
    # THIRD-PARTY LIBRARY LOGGING LEVELS
    # ========================================================================
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging configured",
        extra={
            "extra_data": {
                "environment": settings.ENVIRONMENT,
                "log_level": settings.LOG_LEVEL,
                "log_format": settings.LOG_FORMAT,
                "file_logging": settings.ENABLE_FILE_LOGGING
            }
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module

    Usage:
        from coursepay.logging_config import get_logger
        logger = get_logger(__name__)
        logger.info("Something happened")
    """
    return logging.getLogger(name)


business_logger = logging.getLogger("business")
security_logger = logging.getLogger("security")


def log_business_event(
    event_type: str,
    user_id: str = None,
    **kwargs: Any
):
    """
    Log important business events for analytics and auditing

    Examples:
        - Order created
        - Payment reconciled
        - Coupon consumed
        - Refund approved

    Usage:
        log_business_event(
            "order_paid",
            user_id="user_123",
            order_code="ORD-20250101-101010-1234",
            amount=460000
        )
    """
    business_logger.info(
        f"Business Event: {event_type}",
        extra={
            "user_id": user_id,
            "extra_data": {
                "event_type": event_type,
                **kwargs
            }
        }
    )


def log_security_event(
    event_type: str,
    **kwargs: Any
):
    """
    Log security-relevant events (forged or tampered gateway notifications).

    These go to the "security" logger at WARNING so they are never
    mistaken for ordinary application errors.
    """
    security_logger.warning(
        f"Security Event: {event_type}",
        extra={
            "extra_data": {
                "event_type": event_type,
                **kwargs
            }
        }
    )
