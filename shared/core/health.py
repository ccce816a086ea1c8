"""
Liveness, readiness and startup probes plus a small process metrics view.

Readiness covers the database and any configuration checks the service
registers, such as payment gateway credentials or mail transport.
"""

import logging
import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import psutil
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

ConfigCheck = Callable[[], Optional[str]]

# available memory floors in MB
MEMORY_FAIL_MB = 100
MEMORY_WARN_MB = 500


class HealthStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


def _component(kind: str, state: HealthStatus, **details: Any) -> Dict[str, Any]:
    entry = {
        "status": state,
        "componentType": kind,
        "time": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    entry.update({key: value for key, value in details.items() if value not in (None, "")})
    return entry


def worst_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
    seen = {check.get("status", HealthStatus.PASS) for check in checks.values()}
    for candidate in (HealthStatus.FAIL, HealthStatus.WARN):
        if candidate in seen:
            return candidate
    return HealthStatus.PASS


class ServiceHealth:
    """
    Health endpoints for one service.

    ``engine_provider`` is called on every probe so tests can point the
    service at another database. Each entry of ``config_checks`` returns
    ``None`` when healthy or a short description of what is missing.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine_provider: Optional[Callable[[], Engine]] = None,
        config_checks: Optional[Dict[str, ConfigCheck]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine_provider = engine_provider
        self.config_checks = dict(config_checks or {})
        self.started_at = time.monotonic()
        self.probe_count = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])
        router.add_api_route("/health", self.summary, methods=["GET"])
        router.add_api_route("/health/live", self.live, methods=["GET"])
        router.add_api_route("/health/ready", self.ready, methods=["GET"])
        router.add_api_route("/health/startup", self.startup, methods=["GET"])
        router.add_api_route("/metrics", self.metrics, methods=["GET"])
        return router

    def summary(self) -> Dict[str, Any]:
        return {
            "status": HealthStatus.PASS,
            "service": self.service_name,
            "version": self.version,
            "releaseId": os.getenv("RELEASE_ID", "unknown"),
        }

    def live(self) -> Dict[str, str]:
        return {"status": "alive"}

    def ready(self) -> JSONResponse:
        checks = self.readiness_checks()
        overall = worst_status(checks)
        code = status.HTTP_503_SERVICE_UNAVAILABLE if overall == HealthStatus.FAIL else status.HTTP_200_OK
        return JSONResponse(status_code=code, content={
            "status": overall,
            "serviceId": self.service_name,
            "version": self.version,
            "checks": checks,
        })

    def startup(self) -> JSONResponse:
        checks = {"database:migrations": self._migrations()}
        if worst_status(checks) == HealthStatus.FAIL:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                                content={"status": "starting", "checks": checks})
        return JSONResponse(content={"status": "started", "checks": checks})

    def metrics(self) -> Dict[str, Any]:
        process = psutil.Process()
        with process.oneshot():
            rss = process.memory_info().rss
            threads = process.num_threads()
            cpu = process.cpu_percent()
        return {
            "service": self.service_name,
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
            "readiness_probes": self.probe_count,
            "process": {"memory_rss_bytes": rss, "threads": threads, "cpu_percent": cpu},
        }

    def readiness_checks(self) -> Dict[str, Dict[str, Any]]:
        self.probe_count += 1
        checks = {"database:connectivity": self._database()}
        for name, check in self.config_checks.items():
            problem = check()
            checks[f"config:{name}"] = _component(
                "configuration", HealthStatus.WARN if problem else HealthStatus.PASS, output=problem
            )
        checks["system:memory"] = self._memory()
        return checks

    def _database(self) -> Dict[str, Any]:
        if self.engine_provider is None:
            return _component("datastore", HealthStatus.WARN, output="no engine configured")
        started = time.perf_counter()
        try:
            with self.engine_provider().connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Database readiness check failed: %s", e)
            return _component("datastore", HealthStatus.FAIL, output=str(e))
        elapsed_ms = (time.perf_counter() - started) * 1000
        return _component("datastore", HealthStatus.PASS, observedValue=round(elapsed_ms, 2), observedUnit="ms")

    def _migrations(self) -> Dict[str, Any]:
        if self.engine_provider is None:
            return _component("datastore", HealthStatus.WARN, output="no engine configured")
        try:
            applied = inspect(self.engine_provider()).has_table("alembic_version")
        except Exception as e:
            return _component("datastore", HealthStatus.FAIL, output=str(e))
        if applied:
            return _component("datastore", HealthStatus.PASS)
        return _component("datastore", HealthStatus.WARN, output="alembic_version table missing")

    def _memory(self) -> Dict[str, Any]:
        available_mb = psutil.virtual_memory().available / (1024 ** 2)
        if available_mb < MEMORY_FAIL_MB:
            state = HealthStatus.FAIL
        elif available_mb < MEMORY_WARN_MB:
            state = HealthStatus.WARN
        else:
            state = HealthStatus.PASS
        return _component("system", state, observedValue=round(available_mb, 1), observedUnit="MB")
