"""
Service layer wiring the queue, diff engine, coordinator and worker pool.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.config import MonitorSettings, get_monitor_settings
from app.domain.monitoring import (
    ChangeType,
    JobPriority,
    ScanProgress,
    ScanStatus,
    ScanTarget,
    ScanType,
)
from app.monitoring.coordinator import ScanCoordinator
from app.monitoring.diff_engine import DiffEngine
from app.monitoring.extractors.registry import ExtractorRegistry, build_extractor_registry
from app.monitoring.job_queue import ScanJobQueue
from app.monitoring.locks import EntityLockRegistry
from app.monitoring.normalization import FieldNormalizer
from app.monitoring.rate_limiter import SlidingWindowRateLimiter
from app.monitoring.scoring import ChangeScoringPolicy
from app.monitoring.worker_pool import WorkerPool
from db.models.change_record import ChangeRecord
from db.models.entity_snapshot import EntitySnapshot
from db.repositories.change_log_repository import ChangeLogRepository
from db.repositories.scan_session_repository import ScanSessionRepository
from db.repositories.snapshot_repository import SnapshotRepository
from db.session import get_session_factory

logger = logging.getLogger(__name__)


class MonitorService:
    """
    Entry point used by the API, the scheduler and the CLI scripts.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: MonitorSettings,
        *,
        extractors: ExtractorRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

        clock_kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}

        self._extractors = extractors or build_extractor_registry(
            settings.extractor,
            timeout_seconds=settings.worker.extraction_timeout_seconds,
        )
        self._diff_engine = DiffEngine(
            session_factory,
            normalizer=FieldNormalizer(numeric_fields=settings.diff.numeric_fields),
            scoring=ChangeScoringPolicy(
                field_weights=settings.diff.field_weights,
                numeric_fields=settings.diff.numeric_fields,
                default_weight=settings.diff.default_field_weight,
                max_relative_delta=settings.diff.max_relative_delta,
            ),
            record_unchanged=settings.diff.record_unchanged,
            conflict_retries=settings.diff.conflict_retries,
            locks=EntityLockRegistry(),
        )
        queue_settings = settings.queue
        self._queue = ScanJobQueue(
            session_factory,
            settings=queue_settings,
            job_lifetime_seconds=queue_settings.max_attempts
            * (settings.worker.extraction_timeout_seconds + queue_settings.backoff_cap_seconds),
            rate_limiter=SlidingWindowRateLimiter(
                max_events=queue_settings.rate_limit_max_jobs,
                window_seconds=queue_settings.rate_limit_window_seconds,
            ),
            **clock_kwargs,
        )
        self._coordinator = ScanCoordinator(
            session_factory,
            queue=self._queue,
            diff_engine=self._diff_engine,
            settings=settings.scan,
            **clock_kwargs,
        )
        self._worker_pool = WorkerPool(
            queue=self._queue,
            coordinator=self._coordinator,
            diff_engine=self._diff_engine,
            extractors=self._extractors,
            settings=settings.worker,
        )

    @property
    def settings(self) -> MonitorSettings:
        return self._settings

    @property
    def queue(self) -> ScanJobQueue:
        return self._queue

    @property
    def coordinator(self) -> ScanCoordinator:
        return self._coordinator

    @property
    def diff_engine(self) -> DiffEngine:
        return self._diff_engine

    @property
    def worker_pool(self) -> WorkerPool:
        return self._worker_pool

    def start(self) -> None:
        self._worker_pool.start()

    def stop(self, timeout: float | None = None) -> None:
        self._worker_pool.stop(timeout=timeout)
        self._extractors.close_all()

    def start_scan(
        self,
        targets: Sequence[ScanTarget],
        *,
        scan_type: str = ScanType.MANUAL,
        triggered_by: str | None = None,
        failure_tolerance: float | None = None,
        deadline_seconds: float | None = None,
        configuration: dict[str, Any] | None = None,
    ) -> int:
        return self._coordinator.start_scan(
            targets,
            scan_type=scan_type,
            triggered_by=triggered_by,
            failure_tolerance=failure_tolerance,
            deadline_seconds=deadline_seconds,
            configuration=configuration,
        )

    def start_page_scan(
        self,
        pages: int | None = None,
        *,
        start_page: int = 1,
        priority: str | None = None,
        scan_type: str = ScanType.MANUAL,
        triggered_by: str | None = None,
        failure_tolerance: float | None = None,
        deadline_seconds: float | None = None,
    ) -> int:
        page_count = self._settings.scan.default_pages if pages is None else pages
        if page_count < 1:
            raise ValueError("pages must be at least 1.")
        if start_page < 1:
            raise ValueError("start_page must be at least 1.")
        job_priority = JobPriority.from_label(priority)
        targets = [
            ScanTarget.page(number, priority=job_priority)
            for number in range(start_page, start_page + page_count)
        ]
        return self.start_scan(
            targets,
            scan_type=scan_type,
            triggered_by=triggered_by,
            failure_tolerance=failure_tolerance,
            deadline_seconds=deadline_seconds,
            configuration={"pages": page_count, "start_page": start_page, "priority": job_priority},
        )

    def start_entity_refresh(
        self,
        entity_ids: Iterable[str],
        *,
        priority: str | None = None,
        triggered_by: str | None = None,
        failure_tolerance: float | None = None,
        deadline_seconds: float | None = None,
    ) -> int:
        job_priority = JobPriority.from_label(priority or "high")
        targets = [
            ScanTarget.entity(entity_id, priority=job_priority)
            for entity_id in entity_ids
            if str(entity_id).strip()
        ]
        return self.start_scan(
            targets,
            triggered_by=triggered_by,
            failure_tolerance=failure_tolerance,
            deadline_seconds=deadline_seconds,
            configuration={"entity_ids": [target.value for target in targets]},
        )

    def cancel_scan(self, scan_id: int) -> bool:
        return self._coordinator.cancel_scan(scan_id)

    def get_progress(self, scan_id: int) -> ScanProgress:
        return self._coordinator.get_progress(scan_id)

    def list_scans(self, *, limit: int = 50, status: str | None = None) -> list[ScanProgress]:
        if status is not None and status not in ScanStatus.ACTIVE | ScanStatus.TERMINAL:
            raise ValueError(f"Unknown scan status '{status}'.")
        return self._coordinator.list_scans(limit=limit, status=status)

    def get_changes(
        self,
        *,
        entity_id: str | None = None,
        scan_id: int | None = None,
        since: datetime | None = None,
        change_types: Iterable[str] | None = None,
        min_score: float | None = None,
        limit: int = 100,
    ) -> list[ChangeRecord]:
        types = [value.strip().lower() for value in change_types or () if value.strip()]
        unknown = sorted(set(types) - ChangeType.ALL)
        if unknown:
            raise ValueError(f"Unknown change types: {', '.join(unknown)}")
        with self._session_factory() as db:
            return ChangeLogRepository(db).query(
                entity_id=entity_id,
                scan_id=scan_id,
                since=since,
                change_types=types,
                min_score=min_score,
                limit=limit,
            )

    def get_entity(self, entity_id: str) -> EntitySnapshot | None:
        with self._session_factory() as db:
            return SnapshotRepository(db).get(entity_id)

    def get_stats(self) -> dict[str, Any]:
        queue_stats = self._queue.stats()
        with self._session_factory() as db:
            snapshots = SnapshotRepository(db)
            changes = ChangeLogRepository(db).count_by_type()
            active_scans = len(ScanSessionRepository(db).list_active_scans())
            entities_total = snapshots.count()
            entities_active = snapshots.count(active=True)
        return {
            "queue": queue_stats.as_dict(),
            "rate_limit": {
                "in_window": self._queue.rate_limiter.in_window(),
                "max_jobs": self._settings.queue.rate_limit_max_jobs,
                "window_seconds": self._settings.queue.rate_limit_window_seconds,
            },
            "entities": {"total": entities_total, "active": entities_active},
            "changes": {change_type: changes.get(change_type, 0) for change_type in sorted(ChangeType.ALL)},
            "active_scans": active_scans,
            "workers_running": self._worker_pool.is_running,
        }

    def supervise(self) -> dict[str, int]:
        return self._coordinator.supervise()

    def purge_settled(self, older_than_seconds: float | None = None) -> int:
        return self._queue.purge_settled(older_than_seconds)

    def run_until_idle(self, scan_id: int | None = None, max_jobs: int | None = None) -> int:
        return self._worker_pool.run_until_idle(scan_id=scan_id, max_jobs=max_jobs)


@lru_cache(maxsize=1)
def get_monitor_service() -> MonitorService:
    return MonitorService(get_session_factory(), get_monitor_settings())
