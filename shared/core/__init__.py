"""Cross-cutting pieces for the order service: health probes and JSON logging."""

from .health import HealthStatus, ServiceHealth
from .logging_config import (
    RequestLoggingMiddleware,
    get_logger,
    set_job_context,
    set_request_context,
    setup_logging,
)

__all__ = [
    "HealthStatus",
    "ServiceHealth",
    "RequestLoggingMiddleware",
    "get_logger",
    "set_job_context",
    "set_request_context",
    "setup_logging",
]
