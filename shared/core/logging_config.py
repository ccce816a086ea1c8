"""
Structured logging for the order service.

Records are emitted as single-line JSON so order, payment and scheduler
events stay searchable by their custom fields (order_code,
gateway_order_code, job, alert). Request and job identity travel in
context variables and are attached under ``trace``.
"""

import json
import logging
import logging.handlers
import os
import re
import sys
import time
import traceback
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
job_var: ContextVar[Optional[str]] = ContextVar('job', default=None)

_TRACE_VARS = {
    'request_id': request_id_var,
    'correlation_id': correlation_id_var,
    'user_id': user_id_var,
    'job': job_var,
}

_QUIET_LOGGERS = ('uvicorn', 'httpx', 'sqlalchemy.engine')


def current_trace() -> Dict[str, str]:
    """Context values set for the running request or job."""
    return {key: var.get() for key, var in _TRACE_VARS.items() if var.get()}


class StructuredFormatter(logging.Formatter):
    """Renders a record as a JSON document."""

    def format(self, record: logging.LogRecord) -> str:
        document: Dict[str, Any] = {
            "@timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'orderflow'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        trace = current_trace()
        if trace:
            document["trace"] = trace

        custom = getattr(record, 'extra_fields', None)
        if custom:
            document["custom"] = custom

        duration = getattr(record, 'duration_ms', None)
        if duration is not None:
            document["duration_ms"] = round(duration, 2)

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            document["error"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "stacktrace": "".join(traceback.format_exception(exc_type, exc, tb)),
            }

        return json.dumps(document, default=str)


class SecurityFilter(logging.Filter):
    """Masks values that follow credential-like keys in a message."""

    SENSITIVE_FIELDS = (
        'password', 'token', 'api_key', 'secret', 'signature',
        'checksum_key', 'authorization', 'cookie', 'session',
    )
    _PATTERN = re.compile(
        r"(?i)\b(%s)\b(\s*[=:]\s*)([^\s,;&]+)" % "|".join(SENSITIVE_FIELDS)
    )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self._PATTERN.sub(r"\1\2***REDACTED***", message)
        if masked != message:
            record.msg, record.args = masked, None
        return True


def _build_handlers(log_file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        ))
    return handlers


def setup_logging(service_name: str, level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Route the root logger through the JSON formatter (stdout, plus an optional rotating file)."""
    os.environ['SERVICE_NAME'] = service_name

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers = []

    formatter = StructuredFormatter()
    for handler in _build_handlers(log_file):
        handler.setFormatter(formatter)
        handler.addFilter(SecurityFilter())
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        "Logging configured",
        extra={'extra_fields': {'service': service_name, 'level': level, 'log_file': log_file}},
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Copies the trace context onto each record as plain attributes."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        for key, value in current_trace().items():
            extra.setdefault(key, value)
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), {})


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None
) -> None:
    values = {'request_id': request_id, 'correlation_id': correlation_id, 'user_id': user_id}
    for key, value in values.items():
        if value:
            _TRACE_VARS[key].set(value)


def set_job_context(job: Optional[str]) -> Token:
    """Tag subsequent records with a scheduler job name; returns the reset token."""
    return job_var.set(job)


def generate_request_id() -> str:
    return uuid.uuid4().hex


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request with status and timing; echoes X-Request-ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(request_id=request_id, correlation_id=request.headers.get('X-Correlation-ID'))

        logger = get_logger(__name__)
        fields = {'method': request.method, 'path': request.url.path}
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields['duration_ms'] = (time.perf_counter() - started) * 1000
            logger.error("%s %s failed", request.method, request.url.path,
                         exc_info=True, extra={'extra_fields': fields})
            raise

        fields['status_code'] = response.status_code
        fields['duration_ms'] = (time.perf_counter() - started) * 1000
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "%s %s -> %s", request.method, request.url.path, response.status_code,
                   extra={'extra_fields': fields})

        response.headers['X-Request-ID'] = request_id
        return response
