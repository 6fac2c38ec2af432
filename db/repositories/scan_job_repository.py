"""
Repository for durable scan job rows: creation, leasing and settlement.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.domain.monitoring import JobState, ScanTarget
from db.models.scan_job import ScanJob


class ScanJobRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_jobs(
        self,
        *,
        scan_id: int,
        targets: Sequence[ScanTarget],
        max_attempts: int,
        available_at: datetime,
        deadline_at: datetime,
    ) -> list[ScanJob]:
        jobs = [
            ScanJob(
                scan_id=scan_id,
                target_kind=target.kind,
                target_value=target.value,
                target_url=target.url,
                priority=target.priority,
                state=JobState.WAITING,
                attempt_count=0,
                max_attempts=max_attempts,
                available_at=available_at,
                deadline_at=deadline_at,
            )
            for target in targets
        ]
        self._session.add_all(jobs)
        self._session.flush()
        return jobs

    def get_job(self, job_id: int) -> ScanJob | None:
        return self._session.get(ScanJob, job_id)

    def list_jobs(self, *, scan_id: int, state: str | None = None) -> list[ScanJob]:
        stmt = select(ScanJob).where(ScanJob.scan_id == scan_id)
        if state:
            stmt = stmt.where(ScanJob.state == state)
        return list(self._session.scalars(stmt.order_by(ScanJob.id)).all())

    def has_ready_job(self, *, now: datetime) -> bool:
        stmt = (
            select(ScanJob.id)
            .where(ScanJob.state == JobState.WAITING, ScanJob.available_at <= now)
            .limit(1)
        )
        return self._session.scalar(stmt) is not None

    def claim_next(
        self,
        *,
        worker_token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> ScanJob | None:
        """
        Lease the highest-priority ready job to a worker.

        ``skip_locked`` lets concurrent dispatchers on PostgreSQL pass over
        rows another transaction is claiming; other dialects ignore it.
        """

        stmt = (
            select(ScanJob)
            .where(ScanJob.state == JobState.WAITING, ScanJob.available_at <= now)
            .order_by(ScanJob.priority, ScanJob.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job = self._session.scalars(stmt).first()
        if job is None:
            return None

        job.state = JobState.ACTIVE
        job.attempt_count = job.attempt_count + 1
        job.lease_token = worker_token
        job.lease_expires_at = lease_expires_at
        return job

    def mark_completed(
        self,
        *,
        job: ScanJob,
        now: datetime,
        result_payload: dict[str, Any] | None = None,
    ) -> None:
        job.state = JobState.COMPLETED
        job.completed_at = now
        job.lease_token = None
        job.lease_expires_at = None
        job.result_payload = result_payload

    def mark_retry(self, *, job: ScanJob, available_at: datetime, error_message: str) -> None:
        job.state = JobState.WAITING
        job.available_at = available_at
        job.lease_token = None
        job.lease_expires_at = None
        job.last_error = error_message[:2000]

    def mark_failed(self, *, job: ScanJob, now: datetime, error_message: str) -> None:
        job.state = JobState.FAILED
        job.completed_at = now
        job.lease_token = None
        job.lease_expires_at = None
        job.last_error = error_message[:2000]

    def list_stalled(self, *, now: datetime) -> list[ScanJob]:
        stmt = (
            select(ScanJob)
            .where(ScanJob.state == JobState.ACTIVE, ScanJob.lease_expires_at < now)
            .order_by(ScanJob.id)
            .with_for_update(skip_locked=True)
        )
        return list(self._session.scalars(stmt).all())

    def list_overdue(self, *, now: datetime) -> list[ScanJob]:
        stmt = (
            select(ScanJob)
            .where(ScanJob.state == JobState.WAITING, ScanJob.deadline_at < now)
            .order_by(ScanJob.id)
            .with_for_update(skip_locked=True)
        )
        return list(self._session.scalars(stmt).all())

    def count_by_state(self, *, scan_id: int | None = None) -> dict[str, int]:
        stmt = select(ScanJob.state, func.count(ScanJob.id)).group_by(ScanJob.state)
        if scan_id is not None:
            stmt = stmt.where(ScanJob.scan_id == scan_id)
        return {state: int(count) for state, count in self._session.execute(stmt).all()}

    def count_delayed(self, *, now: datetime, scan_id: int | None = None) -> int:
        stmt = select(func.count(ScanJob.id)).where(
            ScanJob.state == JobState.WAITING,
            ScanJob.available_at > now,
        )
        if scan_id is not None:
            stmt = stmt.where(ScanJob.scan_id == scan_id)
        return int(self._session.scalar(stmt) or 0)

    def count_unsettled(self, *, scan_id: int) -> int:
        stmt = select(func.count(ScanJob.id)).where(
            ScanJob.scan_id == scan_id,
            ScanJob.state.in_([JobState.WAITING, JobState.ACTIVE]),
        )
        return int(self._session.scalar(stmt) or 0)

    def target_kinds(self, *, scan_id: int) -> set[str]:
        stmt = select(ScanJob.target_kind).where(ScanJob.scan_id == scan_id).distinct()
        return set(self._session.scalars(stmt).all())

    def target_values(self, *, scan_id: int, kind: str, state: str | None = None) -> list[str]:
        stmt = select(ScanJob.target_value).where(
            ScanJob.scan_id == scan_id,
            ScanJob.target_kind == kind,
        )
        if state is not None:
            stmt = stmt.where(ScanJob.state == state)
        return list(self._session.scalars(stmt).all())

    def delete_settled_before(self, *, before: datetime) -> int:
        result = self._session.execute(
            delete(ScanJob).where(
                ScanJob.state.in_(sorted(JobState.SETTLED)),
                ScanJob.completed_at < before,
            )
        )
        return int(result.rowcount or 0)
