"""
Append-only repository for change records.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.domain.monitoring import ChangeRecordInput, ChangeType
from db.models.change_record import ChangeRecord


class ChangeLogRepository:
    """
    Insert-only access to the change log. Records are never updated or deleted.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def append(self, records: Sequence[ChangeRecordInput]) -> list[ChangeRecord]:
        rows = [
            ChangeRecord(
                scan_id=record.scan_id,
                entity_id=record.entity_id,
                change_type=record.change_type,
                field_name=record.field_name,
                old_value=record.old_value,
                new_value=record.new_value,
                change_score=record.change_score,
                change_percentage=record.change_percentage,
                listing_snapshot=record.listing_snapshot,
                detected_at=record.detected_at,
            )
            for record in records
        ]
        if rows:
            self._session.add_all(rows)
            self._session.flush()
        return rows

    def has_entity_event(self, *, scan_id: int, entity_id: str) -> bool:
        stmt = (
            select(ChangeRecord.id)
            .where(
                ChangeRecord.scan_id == scan_id,
                ChangeRecord.entity_id == entity_id,
                ChangeRecord.change_type.in_(sorted(ChangeType.ENTITY_EVENTS)),
            )
            .limit(1)
        )
        return self._session.scalar(stmt) is not None

    def query(
        self,
        *,
        entity_id: str | None = None,
        scan_id: int | None = None,
        since: datetime | None = None,
        change_types: Iterable[str] | None = None,
        min_score: float | None = None,
        limit: int = 100,
    ) -> list[ChangeRecord]:
        """
        Time-ordered change history filtered by entity, scan and/or time.
        """

        stmt = select(ChangeRecord)
        if entity_id is not None:
            stmt = stmt.where(ChangeRecord.entity_id == entity_id)
        if scan_id is not None:
            stmt = stmt.where(ChangeRecord.scan_id == scan_id)
        if since is not None:
            stmt = stmt.where(ChangeRecord.detected_at >= since)
        types = sorted(set(change_types or ()))
        if types:
            stmt = stmt.where(ChangeRecord.change_type.in_(types))
        if min_score is not None:
            stmt = stmt.where(ChangeRecord.change_score >= min_score)

        stmt = stmt.order_by(ChangeRecord.detected_at, ChangeRecord.id).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def count_by_type(self, *, scan_id: int | None = None) -> dict[str, int]:
        stmt = select(ChangeRecord.change_type, func.count(ChangeRecord.id)).group_by(
            ChangeRecord.change_type
        )
        if scan_id is not None:
            stmt = stmt.where(ChangeRecord.scan_id == scan_id)
        return {change_type: int(count) for change_type, count in self._session.execute(stmt).all()}
