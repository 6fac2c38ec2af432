from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.schemas.monitoring import HealthResponse


def _validate_env() -> None:
    """
    Validate required environment variables at startup.

    Runs before any service or database connection is initialised.
    Raises RuntimeError listing every missing or invalid variable so the
    operator can fix all problems in one restart cycle.

    Rules:
    - A PostgreSQL URL must be configured; SQLite is not permitted.
    - MONITOR_SITE_CONFIG_PATH, when set, must point at an existing file.
    - MONITOR_SCHEDULE_INTERVAL, when set, must be a supported interval.
    """

    from db.config import load_env_files

    load_env_files()

    errors: list[str] = []

    # --- Database URL ---------------------------------------------------
    database_urls = [
        os.getenv(name, "").strip()
        for name in ("MONITOR_DATABASE_URL", "DATABASE_URL", "CLOUD_DATABASE_URL", "LOCAL_DATABASE_URL")
    ]
    configured = [url for url in database_urls if url]
    if not configured:
        errors.append(
            "No database URL configured. Set DATABASE_URL (or MONITOR_DATABASE_URL, "
            "CLOUD_DATABASE_URL, LOCAL_DATABASE_URL)."
        )
    elif configured[0].startswith("sqlite"):
        errors.append("SQLite database URLs are not permitted for the API process.")

    # --- Site config ----------------------------------------------------
    site_config_path = os.getenv("MONITOR_SITE_CONFIG_PATH", "").strip()
    if site_config_path and not os.path.isfile(site_config_path):
        errors.append(f"MONITOR_SITE_CONFIG_PATH='{site_config_path}' does not exist.")

    # --- Schedule -------------------------------------------------------
    interval = os.getenv("MONITOR_SCHEDULE_INTERVAL", "").strip().lower()
    if interval:
        from app.scheduler.jobs import SCHEDULE_CRON_BY_INTERVAL

        if interval not in SCHEDULE_CRON_BY_INTERVAL:
            errors.append(
                f"MONITOR_SCHEDULE_INTERVAL='{interval}' is not valid. "
                f"Allowed values: {sorted(SCHEDULE_CRON_BY_INTERVAL)}."
            )

    if errors:
        raise RuntimeError(
            "Startup validation failed: missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _verify_database() -> None:
    """
    Fail startup when PostgreSQL is unreachable or a monitor table is missing.

    Migrations are never applied here; run ``alembic upgrade head`` first.
    """
    from sqlalchemy import inspect as sa_inspect
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    import db.models  # noqa: F401 (registers ORM models on Base.metadata)
    from db.base import Base
    from db.session import get_engine

    engine = get_engine()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            present = set(sa_inspect(connection).get_table_names())
    except SQLAlchemyError as exc:
        raise RuntimeError("Database unavailable.") from exc

    missing = sorted(set(Base.metadata.tables) - present)
    if missing:
        logging.getLogger(__name__).critical(
            "Monitor tables missing from the database: %s. Run 'alembic upgrade head'.",
            ", ".join(missing),
        )
        raise RuntimeError(f"Database schema is missing tables: {', '.join(missing)}.")


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Verify the database, start workers and scheduler; stop both on exit."""
    log = logging.getLogger(__name__)
    _verify_database()
    log.info("Database connectivity and schema verified")

    from app.scheduler.jobs import build_scheduler
    from app.services.monitoring_service import get_monitor_service

    service = get_monitor_service()
    service.start()
    scheduler = build_scheduler(service)
    scheduler.start()
    application.state.scheduler = scheduler
    log.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
    try:
        yield
    finally:
        scheduler.shutdown(wait=True)
        log.info("Scheduler shut down")
        service.stop(timeout=service.settings.worker.extraction_timeout_seconds)
        log.info("Worker pool stopped")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()

    from app.config import get_monitor_settings
    from app.monitoring.logging_utils import configure_logging

    configure_logging(get_monitor_settings().log_level)

    application = FastAPI(
        title="Listing Monitor API",
        version="1.0.0",
        lifespan=_lifespan,
    )

    from app.api.routers import changes_router, scans_router

    application.include_router(scans_router)
    application.include_router(changes_router)

    @application.get("/health", response_model=HealthResponse)
    def healthcheck(request: Request) -> HealthResponse:
        from app.services.monitoring_service import get_monitor_service

        scheduler = getattr(request.app.state, "scheduler", None)
        return HealthResponse(
            status="ok",
            workers_running=get_monitor_service().worker_pool.is_running,
            scheduler_running=bool(scheduler is not None and scheduler.running),
        )

    return application


app = create_app()
