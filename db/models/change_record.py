"""
db/models/change_record.py

Append-only audit trail of detected entity changes.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Float, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, UTCDateTime, utcnow

_ENTITY_EVENT_PREDICATE = text("change_type IN ('new', 'deleted')")


class ChangeRecord(Base):
    __tablename__ = "change_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
        unique=True,
        default=uuid.uuid4,
    )
    scan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("scan_sessions.id"),
        nullable=False,
    )
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    change_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="new, updated, deleted, unchanged",
    )
    field_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    change_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    change_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    listing_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_change_records_entity_detected", "entity_id", "detected_at"),
        Index("ix_change_records_scan_id", "scan_id"),
        Index("ix_change_records_change_type", "change_type"),
        Index("ix_change_records_detected_at", "detected_at"),
        # At most one new/deleted event per entity per scan.
        Index(
            "uq_change_records_entity_event",
            "scan_id",
            "entity_id",
            unique=True,
            sqlite_where=_ENTITY_EVENT_PREDICATE,
            postgresql_where=_ENTITY_EVENT_PREDICATE,
        ),
    )
