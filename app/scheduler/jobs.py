"""
app/scheduler/jobs.py

APScheduler-based scheduler for periodic monitoring scans and queue upkeep.

Schedule (all times UTC)
--------------------------
  scheduled_scan     : cron derived from MONITOR_SCHEDULE_INTERVAL:
                         hourly       0 * * * *
                         daily        0 9 * * *
                         twice-daily  0 9,21 * * *
                         weekly       0 9 * * 1
                         custom       */30 * * * *
  queue_maintenance  : every MONITOR_SUPERVISE_INTERVAL_SECONDS (min 30s):
                       stalled/overdue job recovery, cancel and deadline
                       enforcement, purge of settled jobs past retention.

Lifecycle
----------
Call ``build_scheduler(service)`` once to get a configured ``BackgroundScheduler``.
Start it on app boot; shut it down gracefully on app shutdown.
The scheduler is wired into FastAPI via the ``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.domain.monitoring import ScanStatus, ScanType
from app.services.monitoring_service import MonitorService

logger = logging.getLogger(__name__)

SCHEDULE_CRON_BY_INTERVAL: dict[str, str] = {
    "hourly": "0 * * * *",
    "daily": "0 9 * * *",
    "twice-daily": "0 9,21 * * *",
    "weekly": "0 9 * * 1",
    "custom": "*/30 * * * *",
}

_MIN_MAINTENANCE_SECONDS = 30


def cron_for_interval(interval: str) -> str:
    return SCHEDULE_CRON_BY_INTERVAL.get(interval.strip().lower(), SCHEDULE_CRON_BY_INTERVAL["hourly"])


# ---------------------------------------------------------------------------
# Job: scheduled scan
# ---------------------------------------------------------------------------


def run_scheduled_scan(service: MonitorService) -> int | None:
    """
    Start a page sweep unless another scan is still pending or running.
    """

    for status in sorted(ScanStatus.ACTIVE):
        active = service.list_scans(limit=1, status=status)
        if active:
            logger.warning(
                "Scheduler: scheduled_scan skipped, scan %s is still %s",
                active[0].scan_id,
                active[0].status,
            )
            return None

    try:
        scan_id = service.start_page_scan(
            service.settings.scheduler.pages,
            scan_type=ScanType.SCHEDULED,
            triggered_by="scheduler",
        )
    except Exception:
        logger.exception("Scheduler: scheduled_scan failed to start")
        return None
    logger.info("Scheduler: scheduled_scan started scan_id=%s", scan_id)
    return scan_id


# ---------------------------------------------------------------------------
# Job: queue maintenance
# ---------------------------------------------------------------------------


def run_queue_maintenance(service: MonitorService) -> None:
    try:
        summary = service.supervise()
        purged = service.purge_settled()
    except Exception:
        logger.exception("Scheduler: queue_maintenance failed")
        return
    if purged or any(summary.values()):
        logger.info("Scheduler: queue_maintenance summary=%s purged=%d", summary, purged)


# ---------------------------------------------------------------------------
# Scheduler factory
# ---------------------------------------------------------------------------


def build_scheduler(service: MonitorService) -> BackgroundScheduler:
    """
    Build and register all periodic jobs.

    Returns a configured but *not yet started* ``BackgroundScheduler``.
    ``scheduled_scan`` is only registered when MONITOR_SCHEDULE_ENABLED is true.
    """
    scheduler = BackgroundScheduler(timezone="UTC")
    settings = service.settings

    if settings.scheduler.enabled:
        expression = cron_for_interval(settings.scheduler.interval)
        scheduler.add_job(
            run_scheduled_scan,
            trigger=CronTrigger.from_crontab(expression, timezone="UTC"),
            args=[service],
            id="scheduled_scan",
            name=f"Scheduled listing scan ({settings.scheduler.interval})",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
        )

    scheduler.add_job(
        run_queue_maintenance,
        trigger="interval",
        seconds=max(_MIN_MAINTENANCE_SECONDS, int(settings.worker.supervise_interval_seconds)),
        args=[service],
        id="queue_maintenance",
        name="Scan queue maintenance",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    return scheduler
