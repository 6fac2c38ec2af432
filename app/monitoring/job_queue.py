"""
Durable scan job queue backed by the ``scan_jobs`` table.

Delivery is at-least-once: a claimed job carries a lease that expires after the
visibility timeout, after which ``recover_stalled`` returns it to the queue.
Every claim counts as one attempt, so a job is attempted at most
``max_attempts`` times however it fails.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import QueueSettings
from app.domain.monitoring import (
    ClaimedJob,
    FailDecision,
    JobState,
    QueueStats,
    ScanTarget,
    SettledJob,
)
from app.monitoring.logging_utils import log_event
from app.monitoring.rate_limiter import SlidingWindowRateLimiter
from db.models.scan_job import ScanJob
from db.repositories.scan_job_repository import ScanJobRepository

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanJobQueue:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: QueueSettings,
        job_lifetime_seconds: float | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_events=settings.rate_limit_max_jobs,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self._clock = clock
        if job_lifetime_seconds is None:
            job_lifetime_seconds = settings.max_attempts * (
                settings.visibility_timeout_seconds + settings.backoff_cap_seconds
            )
        self._job_lifetime = timedelta(seconds=max(1.0, job_lifetime_seconds))
        # SQLite has no row locks; serialize claims within this process.
        self._claim_lock = threading.Lock()

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    def backoff_seconds(self, attempt: int) -> float:
        """
        Exponential backoff before the retry that follows ``attempt``.
        """

        exponent = max(0, attempt - 1)
        delay = self._settings.backoff_base_seconds * (2**exponent)
        return min(delay, self._settings.backoff_cap_seconds)

    def enqueue(self, scan_id: int, target: ScanTarget) -> int:
        return self.enqueue_many(scan_id, [target])[0]

    def enqueue_many(self, scan_id: int, targets: Sequence[ScanTarget]) -> list[int]:
        if not targets:
            return []
        now = self._clock()
        with self._session_factory() as session:
            try:
                jobs = ScanJobRepository(session).create_jobs(
                    scan_id=scan_id,
                    targets=targets,
                    max_attempts=self._settings.max_attempts,
                    available_at=now,
                    deadline_at=now + self._job_lifetime,
                )
                job_ids = [job.id for job in jobs]
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        log_event(
            logger,
            logging.INFO,
            "job_enqueued",
            scan_id=scan_id,
            job_count=len(job_ids),
            first_job_id=job_ids[0],
            last_job_id=job_ids[-1],
        )
        return job_ids

    def dequeue(
        self,
        worker_token: str,
        *,
        stop_event: threading.Event | None = None,
        wait_seconds: float | None = None,
    ) -> ClaimedJob | None:
        """
        Claim the next ready job, honouring priority and the global rate limit.

        Waits up to ``wait_seconds`` (default: a single pass) for a job to
        become ready or a rate-limit permit to free up. Returns None when
        nothing could be claimed or the stop event fired.
        """

        deadline = time.monotonic() + max(0.0, wait_seconds or 0.0)
        while True:
            if stop_event is not None and stop_event.is_set():
                return None

            now = self._clock()
            pause = self._settings.poll_interval_seconds
            if self._has_ready_job(now):
                permit_wait = self._rate_limiter.try_acquire()
                if permit_wait <= 0:
                    claimed = self._claim(worker_token, now)
                    if claimed is not None:
                        return claimed
                    # Lost the race for the ready row; nothing was dispatched.
                    self._rate_limiter.refund()
                    pause = 0.0
                else:
                    pause = permit_wait

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            pause = min(pause, remaining)
            if pause > 0:
                if stop_event is not None:
                    if stop_event.wait(pause):
                        return None
                else:
                    time.sleep(pause)

    def ack(
        self,
        job_id: int,
        *,
        lease_token: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """
        Mark an active job completed. Returns False for stale or unknown leases.
        """

        now = self._clock()
        with self._session_factory() as session:
            try:
                repository = ScanJobRepository(session)
                job = repository.get_job(job_id)
                if not self._holds_lease(job, lease_token):
                    return False
                repository.mark_completed(job=job, now=now, result_payload=result)
                scan_id = job.scan_id
                attempt = job.attempt_count
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        log_event(
            logger,
            logging.INFO,
            "job_completed",
            job_id=job_id,
            scan_id=scan_id,
            attempt=attempt,
        )
        return True

    def fail(
        self,
        job_id: int,
        reason: str,
        *,
        permanent: bool = False,
        lease_token: str | None = None,
    ) -> str | None:
        """
        Report a failed attempt.

        Returns ``FailDecision.RETRIED`` when the job was rescheduled with
        backoff, ``FailDecision.EXHAUSTED`` when it is now terminally failed,
        and None when the caller no longer holds the job's lease.
        """

        now = self._clock()
        with self._session_factory() as session:
            try:
                repository = ScanJobRepository(session)
                job = repository.get_job(job_id)
                if not self._holds_lease(job, lease_token):
                    return None
                decision, delay = self._settle_failure(repository, job, reason, now, permanent)
                scan_id = job.scan_id
                attempt = job.attempt_count
                max_attempts = job.max_attempts
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        if decision == FailDecision.RETRIED:
            log_event(
                logger,
                logging.WARNING,
                "job_retry_scheduled",
                job_id=job_id,
                scan_id=scan_id,
                attempt=attempt,
                max_attempts=max_attempts,
                backoff_seconds=delay,
                reason=reason,
            )
        else:
            log_event(
                logger,
                logging.ERROR,
                "job_exhausted",
                job_id=job_id,
                scan_id=scan_id,
                attempt=attempt,
                max_attempts=max_attempts,
                permanent=permanent,
                reason=reason,
            )
        return decision

    def stats(self, scan_id: int | None = None) -> QueueStats:
        now = self._clock()
        with self._session_factory() as session:
            repository = ScanJobRepository(session)
            counts = repository.count_by_state(scan_id=scan_id)
            delayed = repository.count_delayed(now=now, scan_id=scan_id)
        return QueueStats(
            waiting=counts.get(JobState.WAITING, 0) - delayed,
            active=counts.get(JobState.ACTIVE, 0),
            completed=counts.get(JobState.COMPLETED, 0),
            failed=counts.get(JobState.FAILED, 0),
            delayed=delayed,
        )

    def has_unsettled(self, scan_id: int) -> bool:
        with self._session_factory() as session:
            return ScanJobRepository(session).count_unsettled(scan_id=scan_id) > 0

    def cancel_scan(self, scan_id: int) -> list[int]:
        """
        Fail every waiting job of a scan. Active jobs are left to finish.
        """

        now = self._clock()
        with self._session_factory() as session:
            try:
                repository = ScanJobRepository(session)
                jobs = repository.list_jobs(scan_id=scan_id, state=JobState.WAITING)
                for job in jobs:
                    repository.mark_failed(job=job, now=now, error_message=CANCELLED_REASON)
                job_ids = [job.id for job in jobs]
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        return job_ids

    def fail_active(self, scan_id: int, reason: str) -> list[int]:
        """
        Force-fail jobs still leased for a scan. Their late acks become no-ops.
        """

        now = self._clock()
        with self._session_factory() as session:
            try:
                repository = ScanJobRepository(session)
                jobs = repository.list_jobs(scan_id=scan_id, state=JobState.ACTIVE)
                for job in jobs:
                    repository.mark_failed(job=job, now=now, error_message=reason)
                job_ids = [job.id for job in jobs]
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        return job_ids

    def recover_stalled(self) -> list[SettledJob]:
        """
        Return jobs whose lease expired to the queue.

        Jobs without attempts left are failed instead; those are returned so
        the caller can account for them.
        """

        now = self._clock()
        exhausted: list[SettledJob] = []
        recovered = 0
        with self._session_factory() as session:
            try:
                repository = ScanJobRepository(session)
                for job in repository.list_stalled(now=now):
                    reason = f"visibility timeout expired on attempt {job.attempt_count}"
                    decision, _ = self._settle_failure(repository, job, reason, now, False)
                    if decision == FailDecision.EXHAUSTED:
                        exhausted.append(
                            SettledJob(job_id=job.id, scan_id=job.scan_id, state=job.state, reason=reason)
                        )
                    else:
                        recovered += 1
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        if recovered or exhausted:
            log_event(
                logger,
                logging.WARNING,
                "job_stalled_recovered",
                requeued=recovered,
                exhausted=[job.job_id for job in exhausted],
            )
        return exhausted

    def expire_overdue(self) -> list[SettledJob]:
        """
        Fail waiting jobs that outlived their maximum lifetime.
        """

        now = self._clock()
        expired: list[SettledJob] = []
        with self._session_factory() as session:
            try:
                repository = ScanJobRepository(session)
                for job in repository.list_overdue(now=now):
                    reason = "job lifetime exceeded"
                    repository.mark_failed(job=job, now=now, error_message=reason)
                    expired.append(
                        SettledJob(job_id=job.id, scan_id=job.scan_id, state=JobState.FAILED, reason=reason)
                    )
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        for job in expired:
            log_event(
                logger,
                logging.ERROR,
                "job_exhausted",
                job_id=job.job_id,
                scan_id=job.scan_id,
                reason=job.reason,
            )
        return expired

    def purge_settled(self, older_than_seconds: float | None = None) -> int:
        retention = (
            self._settings.settled_retention_seconds
            if older_than_seconds is None
            else max(0.0, older_than_seconds)
        )
        before = self._clock() - timedelta(seconds=retention)
        with self._session_factory() as session:
            try:
                deleted = ScanJobRepository(session).delete_settled_before(before=before)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        if deleted:
            logger.info("Purged %s settled scan jobs older than %s", deleted, before.isoformat())
        return deleted

    def _has_ready_job(self, now: datetime) -> bool:
        with self._session_factory() as session:
            return ScanJobRepository(session).has_ready_job(now=now)

    def _claim(self, worker_token: str, now: datetime) -> ClaimedJob | None:
        lease_expires_at = now + timedelta(seconds=self._settings.visibility_timeout_seconds)
        lease_token = f"{worker_token}:{uuid.uuid4().hex[:12]}"
        with self._claim_lock, self._session_factory() as session:
            try:
                job = ScanJobRepository(session).claim_next(
                    worker_token=lease_token,
                    now=now,
                    lease_expires_at=lease_expires_at,
                )
                if job is None:
                    session.rollback()
                    return None
                claimed = ClaimedJob(
                    job_id=job.id,
                    scan_id=job.scan_id,
                    target=ScanTarget(
                        kind=job.target_kind,
                        value=job.target_value,
                        url=job.target_url,
                        priority=job.priority,
                    ),
                    attempt=job.attempt_count,
                    max_attempts=job.max_attempts,
                    lease_token=lease_token,
                )
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

        log_event(
            logger,
            logging.DEBUG,
            "job_claimed",
            job_id=claimed.job_id,
            scan_id=claimed.scan_id,
            target=f"{claimed.target.kind}:{claimed.target.value}",
            attempt=claimed.attempt,
            worker=worker_token,
        )
        return claimed

    def _settle_failure(
        self,
        repository: ScanJobRepository,
        job: ScanJob,
        reason: str,
        now: datetime,
        permanent: bool,
    ) -> tuple[str, float]:
        out_of_attempts = job.attempt_count >= job.max_attempts
        out_of_time = job.deadline_at is not None and now >= job.deadline_at
        if permanent or out_of_attempts or out_of_time:
            repository.mark_failed(job=job, now=now, error_message=reason)
            return FailDecision.EXHAUSTED, 0.0

        delay = self.backoff_seconds(job.attempt_count)
        repository.mark_retry(
            job=job,
            available_at=now + timedelta(seconds=delay),
            error_message=reason,
        )
        return FailDecision.RETRIED, delay

    @staticmethod
    def _holds_lease(job: ScanJob | None, lease_token: str | None) -> bool:
        if job is None or job.state != JobState.ACTIVE:
            return False
        return lease_token is None or job.lease_token == lease_token
