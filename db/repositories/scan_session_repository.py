"""
Repository for scan session lifecycle persistence and counter updates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from app.domain.monitoring import ScanStatus
from db.models.scan_session import ScanSession

_COUNTER_COLUMNS = frozenset(
    {
        "jobs_done",
        "jobs_failed",
        "new_count",
        "updated_count",
        "unchanged_count",
        "deleted_count",
        "items_seen",
    }
)
_MAX_STORED_ERRORS = 50


class ScanSessionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_scan(
        self,
        *,
        scan_type: str,
        jobs_total: int,
        failure_tolerance: float,
        deadline_at: datetime | None,
        triggered_by: str | None = None,
        configuration: dict[str, Any] | None = None,
    ) -> ScanSession:
        scan = ScanSession(
            scan_type=scan_type,
            status=ScanStatus.PENDING,
            triggered_by=triggered_by,
            jobs_total=jobs_total,
            failure_tolerance=failure_tolerance,
            deadline_at=deadline_at,
            configuration=configuration,
            errors=[],
        )
        self._session.add(scan)
        self._session.flush()
        self._session.refresh(scan)
        return scan

    def get_scan(self, scan_id: int) -> ScanSession | None:
        return self._session.get(ScanSession, scan_id)

    def list_scans(self, *, limit: int = 50, status: str | None = None) -> list[ScanSession]:
        stmt: Select[tuple[ScanSession]] = select(ScanSession)
        if status:
            stmt = stmt.where(ScanSession.status == status)
        stmt = stmt.order_by(ScanSession.id.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def list_active_scans(self) -> list[ScanSession]:
        stmt = (
            select(ScanSession)
            .where(ScanSession.status.in_(sorted(ScanStatus.ACTIVE)))
            .order_by(ScanSession.id)
        )
        return list(self._session.scalars(stmt).all())

    def mark_running(self, *, scan_id: int) -> bool:
        """
        Transition pending -> running. Returns False if the scan was not pending.
        """

        result = self._session.execute(
            update(ScanSession)
            .where(ScanSession.id == scan_id, ScanSession.status == ScanStatus.PENDING)
            .values(status=ScanStatus.RUNNING, started_at=datetime.now(timezone.utc))
        )
        return result.rowcount > 0

    def increment_counters(self, *, scan_id: int, **deltas: int) -> bool:
        """
        Atomically add deltas to counters of a non-terminal scan.

        Counters freeze once the scan is terminal, so late reports are dropped.
        """

        unknown = set(deltas) - _COUNTER_COLUMNS
        if unknown:
            raise ValueError(f"Unknown scan counters: {sorted(unknown)}")

        values = {
            name: getattr(ScanSession, name) + delta
            for name, delta in deltas.items()
            if delta
        }
        if not values:
            return True

        result = self._session.execute(
            update(ScanSession)
            .where(
                ScanSession.id == scan_id,
                ScanSession.status.not_in(sorted(ScanStatus.TERMINAL)),
            )
            .values(**values)
        )
        return result.rowcount > 0

    def request_cancel(self, *, scan_id: int) -> ScanSession | None:
        scan = self.get_scan(scan_id)
        if scan is None or scan.is_terminal:
            return None
        if scan.cancel_requested_at is None:
            scan.cancel_requested_at = datetime.now(timezone.utc)
        return scan

    def mark_completed(self, *, scan_id: int, deleted_count: int = 0) -> ScanSession | None:
        scan = self.get_scan(scan_id)
        if scan is None or scan.is_terminal:
            return None
        now = datetime.now(timezone.utc)
        scan.status = ScanStatus.COMPLETED
        scan.deleted_count = scan.deleted_count + deleted_count
        scan.completed_at = now
        scan.duration_seconds = self._duration(scan, now)
        return scan

    def mark_failed(
        self,
        *,
        scan_id: int,
        failure_reason: str,
        error_message: str | None = None,
    ) -> ScanSession | None:
        scan = self.get_scan(scan_id)
        if scan is None or scan.is_terminal:
            return None
        now = datetime.now(timezone.utc)
        scan.status = ScanStatus.FAILED
        scan.failure_reason = failure_reason
        scan.completed_at = now
        scan.duration_seconds = self._duration(scan, now)
        if error_message:
            self._append_error(scan, error_message, now)
        return scan

    @staticmethod
    def _append_error(scan: ScanSession, message: str, now: datetime) -> None:
        entry = {"message": message[:2000], "timestamp": now.isoformat()}
        scan.errors = [*(scan.errors or []), entry][-_MAX_STORED_ERRORS:]

    @staticmethod
    def _duration(scan: ScanSession, now: datetime) -> int:
        started = scan.started_at or scan.created_at or now
        return max(0, int((now - started).total_seconds()))
