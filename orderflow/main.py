"""
Storefront order service: order intake, payment reconciliation,
fulfillment and the scheduled follow-up jobs.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config as AlembicConfig
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from orderflow.api.admin import router as admin_router
from orderflow.api.deps import get_gateway, get_notification_sink
from orderflow.api.orders import router as orders_router
from orderflow.api.payments import router as payments_router
from orderflow.application.notifications import Notifier
from orderflow.application.scheduler import build_periodic_tasks
from orderflow.core_settings import Settings, get_settings
from orderflow.infrastructure.db import SessionLocal, get_engine, init_models
from orderflow.infrastructure.periodic import PeriodicScheduler

SERVICE_NAME = "orderflow-service"
SERVICE_DESCRIPTION = "Order lifecycle and payment reconciliation service"
MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "alembic"

logger = get_logger(__name__)


def upgrade_database() -> None:
    # No ini file: alembic would otherwise replace the JSON log handlers.
    cfg = AlembicConfig()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    command.upgrade(cfg, "head")
    logger.info("Schema upgraded to head")


def _start_scheduler(settings: Settings) -> Optional[PeriodicScheduler]:
    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled by configuration")
        return None
    notifier = Notifier(get_notification_sink(), settings)
    scheduler = PeriodicScheduler(build_periodic_tasks(SessionLocal, notifier, settings, get_gateway()))
    scheduler.start()
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Starting %s %s (%s)", SERVICE_NAME, settings.SERVICE_VERSION, settings.ENVIRONMENT)

    if settings.RUN_MIGRATIONS_ON_STARTUP:
        try:
            upgrade_database()
        except Exception as e:
            logger.error("Schema upgrade failed, continuing with create_all: %s", e)
    init_models()

    app.state.scheduler = _start_scheduler(settings)
    try:
        yield
    finally:
        if app.state.scheduler is not None:
            await app.state.scheduler.stop()
        logger.info("%s stopped", SERVICE_NAME)


def _config_checks() -> dict:
    def payment_gateway() -> Optional[str]:
        return None if get_gateway().configured else "Payment gateway credentials are incomplete"

    def mail() -> Optional[str]:
        return None if get_settings().MAIL_PASSWORD else "MAIL_PASSWORD is not set; notifications will fail"

    return {"payment_gateway": payment_gateway, "mail": mail}


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(SERVICE_NAME, level=settings.LOG_LEVEL)

    application = FastAPI(
        title=SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        origins.append("*")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestLoggingMiddleware)

    health = ServiceHealth(SERVICE_NAME, settings.SERVICE_VERSION,
                           engine_provider=get_engine, config_checks=_config_checks())
    application.include_router(health.create_health_router())
    for router in (orders_router, payments_router, admin_router):
        application.include_router(router)

    @application.get("/")
    async def root():
        return {"service": SERVICE_NAME, "version": settings.SERVICE_VERSION,
                "status": "running", "docs": "/api/docs"}

    @application.get("/info")
    async def info():
        return {
            "service": SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "environment": settings.ENVIRONMENT,
            "scheduler_enabled": settings.SCHEDULER_ENABLED,
            "routes": ["/orders", "/payments", "/admin", "/health/ready", "/health/live", "/metrics"],
        }

    return application


app = create_app()
