"""
Scan session lifecycle: creation, fan-out, outcome aggregation and finalization.

Finalization runs exactly once per scan. It is serialized by a process lock
and only applies to scans that are not yet terminal; every counter update is
a guarded SQL increment, so reports arriving after finalization are dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import ScanSettings
from app.domain.monitoring import (
    JobOutcome,
    JobState,
    ScanFailureReason,
    ScanProgress,
    ScanStatus,
    ScanTarget,
    ScanType,
    SettledJob,
    TargetKind,
)
from app.monitoring.diff_engine import DiffEngine
from app.monitoring.errors import MonitorError, ScanDeadlineExceeded, ScanNotFoundError
from app.monitoring.job_queue import ScanJobQueue
from app.monitoring.logging_utils import log_event
from db.models.scan_session import ScanSession
from db.repositories.scan_job_repository import ScanJobRepository
from db.repositories.scan_session_repository import ScanSessionRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dedupe_targets(targets: Sequence[ScanTarget]) -> list[ScanTarget]:
    seen: set[tuple[str, str]] = set()
    unique: list[ScanTarget] = []
    for target in targets:
        key = (target.kind, target.value)
        if key in seen:
            continue
        seen.add(key)
        unique.append(target)
    return unique


def failure_rate_for(jobs_failed: int, jobs_total: int, tolerance: float) -> float:
    """
    Failure rate rounded to the precision the tolerance is written in.

    A tolerance of 0.33 reads as "33%", so one failure out of three passes it.
    Rates are kept to at least two places, and a zero tolerance compares the
    exact rate so that any failure exceeds it.
    """

    if not jobs_total:
        return 0.0
    rate = jobs_failed / jobs_total
    if tolerance <= 0:
        return rate
    exponent = Decimal(str(tolerance)).normalize().as_tuple().exponent
    places = min(max(-exponent, 2), 6) if isinstance(exponent, int) else 6
    return round(rate, places)


def _to_progress(scan: ScanSession) -> ScanProgress:
    if scan.status == ScanStatus.COMPLETED:
        percent = 100.0
    elif scan.jobs_total:
        percent = round(min(scan.jobs_settled, scan.jobs_total) / scan.jobs_total * 100.0, 1)
    else:
        percent = 0.0
    return ScanProgress(
        scan_id=scan.id,
        status=scan.status,
        percent=percent,
        jobs_total=scan.jobs_total,
        jobs_done=scan.jobs_done,
        jobs_failed=scan.jobs_failed,
        new_count=scan.new_count,
        updated_count=scan.updated_count,
        unchanged_count=scan.unchanged_count,
        deleted_count=scan.deleted_count,
        items_seen=scan.items_seen,
        failure_reason=scan.failure_reason,
        started_at=scan.started_at,
        completed_at=scan.completed_at,
    )


class ScanCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        queue: ScanJobQueue,
        diff_engine: DiffEngine,
        settings: ScanSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._diff_engine = diff_engine
        self._settings = settings
        self._clock = clock
        self._finalize_lock = threading.Lock()

    @property
    def queue(self) -> ScanJobQueue:
        return self._queue

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
        """
        Create a pending scan session and enqueue one job per unique target.
        """

        unique_targets = _dedupe_targets(targets)
        if not unique_targets:
            raise ValueError("A scan needs at least one target.")

        tolerance = self._settings.failure_tolerance if failure_tolerance is None else failure_tolerance
        if not 0.0 <= tolerance <= 1.0:
            raise ValueError("failure_tolerance must be between 0 and 1.")
        deadline = self._settings.deadline_seconds if deadline_seconds is None else deadline_seconds
        if deadline <= 0:
            raise ValueError("deadline_seconds must be positive.")

        with self._session_factory() as session:
            try:
                scan = ScanSessionRepository(session).create_scan(
                    scan_type=scan_type,
                    jobs_total=len(unique_targets),
                    failure_tolerance=tolerance,
                    deadline_at=self._clock() + timedelta(seconds=deadline),
                    triggered_by=triggered_by,
                    configuration=configuration,
                )
                scan_id = scan.id
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        log_event(
            logger,
            logging.INFO,
            "scan_started",
            scan_id=scan_id,
            scan_type=scan_type,
            triggered_by=triggered_by,
            jobs_total=len(unique_targets),
            failure_tolerance=tolerance,
        )

        try:
            self._queue.enqueue_many(scan_id, unique_targets)
        except SQLAlchemyError as exc:
            self._fail_scan(scan_id, ScanFailureReason.ENQUEUE, f"Failed to enqueue jobs: {exc}")
            raise
        return scan_id

    def mark_dispatched(self, scan_id: int) -> None:
        """
        First dispatch of any job moves the scan from pending to running.
        """

        with self._session_factory() as session:
            try:
                changed = ScanSessionRepository(session).mark_running(scan_id=scan_id)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        if changed:
            log_event(logger, logging.INFO, "scan_running", scan_id=scan_id)

    def should_process(self, scan_id: int) -> bool:
        """
        False when the scan is gone, terminal, cancelled or past its deadline.
        """

        with self._session_factory() as session:
            scan = ScanSessionRepository(session).get_scan(scan_id)
            if scan is None or scan.is_terminal or scan.cancel_requested_at is not None:
                return False
            return scan.deadline_at is None or self._clock() <= scan.deadline_at

    def record_outcome(self, outcome: JobOutcome) -> None:
        """
        Fold one job's result into the scan counters, then check for completion.
        """

        deltas = {
            "jobs_done": 1 if outcome.succeeded else 0,
            "jobs_failed": 0 if outcome.succeeded else 1,
            "new_count": outcome.new_count,
            "updated_count": outcome.updated_count,
            "unchanged_count": outcome.unchanged_count,
            "deleted_count": outcome.deleted_count,
            "items_seen": outcome.item_count,
        }
        with self._session_factory() as session:
            try:
                applied = ScanSessionRepository(session).increment_counters(
                    scan_id=outcome.scan_id,
                    **deltas,
                )
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        if not applied:
            logger.debug(
                "Dropped outcome for job %s: scan %s is already terminal",
                outcome.job_id,
                outcome.scan_id,
            )
            return
        self._maybe_finalize(outcome.scan_id)

    def cancel_scan(self, scan_id: int) -> bool:
        """
        Request cancellation. Waiting jobs fail immediately; active jobs get a
        grace period before the scan is force-failed by ``supervise``.

        Returns False when the scan is already terminal.
        """

        with self._session_factory() as session:
            try:
                repository = ScanSessionRepository(session)
                if repository.get_scan(scan_id) is None:
                    raise ScanNotFoundError(scan_id)
                scan = repository.request_cancel(scan_id=scan_id)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        if scan is None:
            return False

        cancelled_jobs = self._queue.cancel_scan(scan_id)
        self._record_failures(scan_id, len(cancelled_jobs))
        log_event(
            logger,
            logging.INFO,
            "scan_cancel_requested",
            scan_id=scan_id,
            cancelled_jobs=len(cancelled_jobs),
        )
        self._maybe_finalize(scan_id)
        return True

    def supervise(self) -> dict[str, int]:
        """
        Periodic maintenance: recover stalled jobs, expire overdue ones and
        enforce cancellation grace periods and scan deadlines.
        """

        summary = {"stalled_exhausted": 0, "expired": 0, "cancelled": 0, "deadline_failed": 0}

        exhausted = self._queue.recover_stalled()
        self._record_settled(exhausted)
        summary["stalled_exhausted"] = len(exhausted)

        expired = self._queue.expire_overdue()
        self._record_settled(expired)
        summary["expired"] = len(expired)

        now = self._clock()
        with self._session_factory() as session:
            active = [
                (scan.id, scan.cancel_requested_at, scan.deadline_at)
                for scan in ScanSessionRepository(session).list_active_scans()
            ]

        for scan_id, cancel_requested_at, deadline_at in active:
            if cancel_requested_at is not None:
                # Retries that went back to waiting after the cancel request.
                self._record_failures(scan_id, len(self._queue.cancel_scan(scan_id)))
                grace = timedelta(seconds=self._settings.cancel_grace_seconds)
                if now >= cancel_requested_at + grace:
                    self._force_fail(scan_id, ScanFailureReason.CANCELLED, "Scan cancelled")
                    summary["cancelled"] += 1
                    continue
            elif deadline_at is not None and now > deadline_at:
                error = ScanDeadlineExceeded(scan_id, deadline_at)
                self._force_fail(scan_id, ScanFailureReason.DEADLINE, str(error))
                summary["deadline_failed"] += 1
                continue
            self._maybe_finalize(scan_id)

        return summary

    def get_progress(self, scan_id: int) -> ScanProgress:
        with self._session_factory() as session:
            scan = ScanSessionRepository(session).get_scan(scan_id)
            if scan is None:
                raise ScanNotFoundError(scan_id)
            return _to_progress(scan)

    def list_scans(self, *, limit: int = 50, status: str | None = None) -> list[ScanProgress]:
        with self._session_factory() as session:
            scans = ScanSessionRepository(session).list_scans(limit=limit, status=status)
            return [_to_progress(scan) for scan in scans]

    def wait_for_scan(
        self,
        scan_id: int,
        *,
        timeout: float = 60.0,
        poll_interval: float = 0.5,
    ) -> ScanProgress:
        """
        Poll until the scan is terminal or ``timeout`` elapses; returns the last view.
        """

        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            progress = self.get_progress(scan_id)
            if progress.is_terminal or time.monotonic() >= deadline:
                return progress
            time.sleep(max(0.01, poll_interval))

    def _record_settled(self, jobs: Sequence[SettledJob]) -> None:
        for job in jobs:
            self.record_outcome(
                JobOutcome(job_id=job.job_id, scan_id=job.scan_id, succeeded=False, error=job.reason)
            )

    def _record_failures(self, scan_id: int, count: int) -> None:
        if count <= 0:
            return
        with self._session_factory() as session:
            try:
                ScanSessionRepository(session).increment_counters(scan_id=scan_id, jobs_failed=count)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

    def _force_fail(self, scan_id: int, reason: str, message: str) -> None:
        waiting = self._queue.cancel_scan(scan_id)
        active = self._queue.fail_active(scan_id, reason)
        self._record_failures(scan_id, len(waiting) + len(active))
        with self._finalize_lock:
            self._fail_scan(scan_id, reason, message)

    def _maybe_finalize(self, scan_id: int) -> str | None:
        with self._finalize_lock:
            with self._session_factory() as session:
                scan = ScanSessionRepository(session).get_scan(scan_id)
                if scan is None or scan.is_terminal:
                    return None
                if scan.jobs_settled < scan.jobs_total:
                    return None
                jobs_total = scan.jobs_total
                jobs_failed = scan.jobs_failed
                tolerance = scan.failure_tolerance
                cancelled = scan.cancel_requested_at is not None
                job_repository = ScanJobRepository(session)
                if job_repository.count_unsettled(scan_id=scan_id):
                    return None
                kinds = job_repository.target_kinds(scan_id=scan_id)
                if jobs_failed:
                    # Only targets that were actually extracted may drive deletions.
                    scope = job_repository.target_values(
                        scan_id=scan_id,
                        kind=TargetKind.ENTITY,
                        state=JobState.COMPLETED,
                    )
                elif TargetKind.PAGE in kinds:
                    scope = None
                else:
                    scope = job_repository.target_values(scan_id=scan_id, kind=TargetKind.ENTITY)

            if cancelled:
                return self._fail_scan(scan_id, ScanFailureReason.CANCELLED, "Scan cancelled")

            failure_rate = failure_rate_for(jobs_failed, jobs_total, tolerance)
            if failure_rate > tolerance:
                return self._fail_scan(
                    scan_id,
                    ScanFailureReason.FAILURE_THRESHOLD,
                    f"{jobs_failed} of {jobs_total} jobs failed "
                    f"(rate {failure_rate:.3f} > tolerance {tolerance:.3f})",
                )

            if jobs_failed:
                log_event(
                    logger,
                    logging.WARNING,
                    "reconciliation_narrowed",
                    scan_id=scan_id,
                    jobs_failed=jobs_failed,
                    scoped_entities=len(scope or []),
                )
            try:
                deleted = self._diff_engine.reconcile(scan_id=scan_id, entity_ids=scope)
            except (MonitorError, SQLAlchemyError) as exc:
                logger.exception("Reconciliation failed for scan %s", scan_id)
                return self._fail_scan(
                    scan_id,
                    ScanFailureReason.RECONCILIATION,
                    f"Reconciliation failed: {exc}",
                )
            return self._complete_scan(scan_id, deleted)

    def _complete_scan(self, scan_id: int, deleted: int) -> str | None:
        with self._session_factory() as session:
            try:
                scan = ScanSessionRepository(session).mark_completed(
                    scan_id=scan_id,
                    deleted_count=deleted,
                )
                if scan is None:
                    session.rollback()
                    return None
                progress = _to_progress(scan)
                duration = scan.duration_seconds
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        log_event(
            logger,
            logging.INFO,
            "scan_completed",
            scan_id=scan_id,
            jobs_total=progress.jobs_total,
            jobs_done=progress.jobs_done,
            jobs_failed=progress.jobs_failed,
            new=progress.new_count,
            updated=progress.updated_count,
            unchanged=progress.unchanged_count,
            deleted=progress.deleted_count,
            duration_seconds=duration,
        )
        return ScanStatus.COMPLETED

    def _fail_scan(self, scan_id: int, reason: str, message: str) -> str | None:
        with self._session_factory() as session:
            try:
                scan = ScanSessionRepository(session).mark_failed(
                    scan_id=scan_id,
                    failure_reason=reason,
                    error_message=message,
                )
                if scan is None:
                    session.rollback()
                    return None
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        log_event(
            logger,
            logging.ERROR,
            "scan_failed",
            scan_id=scan_id,
            failure_reason=reason,
            error=message,
        )
        return ScanStatus.FAILED
