"""Structured JSON logging configuration."""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from market_experiments.core.config import Settings

APP_LOGGER = "market_experiments"

# Context variable for request ID tracking
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Substrings of keys whose values never reach the logs
SENSITIVE_FIELDS = {
    "password",
    "api_key",
    "secret",
    "token",
    "authorization",
    "x-api-key",
    "operator_api_key",
    "ip_address",
}

# Attributes every LogRecord carries; anything else came in via ``extra=``
_RECORD_ATTRS = set(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return request_id_var.get()


def redact_sensitive_data(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively replace sensitive values with "[REDACTED]".

    Args:
        data: Log extras, possibly nested

    Returns:
        A copy of ``data`` with sensitive values redacted
    """
    redacted: dict[str, Any] = {}
    for key, value in data.items():
        if any(sensitive in key.lower() for sensitive in SENSITIVE_FIELDS):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_sensitive_data(value)
        elif isinstance(value, list):
            redacted[key] = [
                redact_sensitive_data(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            redacted[key] = value
    return redacted


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with request ID and redacted extras."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as one JSON line.

        Args:
            record: Log record to format

        Returns:
            JSON string with level, logger, message and redacted extras
        """
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_data["request_id"] = request_id

        if record.levelno >= logging.WARNING:
            log_data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            log_data["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": self.formatException(record.exc_info),
            }

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        }
        if extra_fields:
            log_data["extra"] = redact_sensitive_data(extra_fields)

        return json.dumps(log_data, default=str)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs request start, completion and failure under a request ID.

    The ID comes from ``X-Request-ID`` when the caller sends one and is
    echoed back on the response.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Log the request under its request ID.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware or route handler

        Returns:
            The handler response, tagged with ``X-Request-ID``
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_var.set(request_id)
        logger = logging.getLogger(f"{APP_LOGGER}.request")
        start = time.perf_counter()
        base = {"method": request.method, "path": request.url.path}

        logger.info(
            "Request started",
            extra={
                **base,
                "query": str(request.query_params) if request.query_params else None,
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
            logger.info(
                "Request completed",
                extra={
                    **base,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            logger.exception(
                "Request failed",
                extra={
                    **base,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "error": str(e),
                },
            )
            raise
        finally:
            request_id_var.reset(token)


def setup_logging(settings: Settings) -> None:
    """Route all logging through a single JSON stdout handler.

    Args:
        settings: Application settings (log level and debug flag)
    """
    log_level = getattr(logging, settings.app_log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(JSONFormatter())
    stdout_handler.setLevel(log_level)
    root_logger.addHandler(stdout_handler)

    # Third-party noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.app_debug else logging.WARNING
    )
    logging.getLogger("rq.worker").setLevel(logging.INFO)

    logging.getLogger(APP_LOGGER).setLevel(log_level)


def setup_request_logging(app: FastAPI) -> None:
    """Add request logging middleware to FastAPI application.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(RequestLoggingMiddleware)
