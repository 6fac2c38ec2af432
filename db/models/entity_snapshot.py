"""
db/models/entity_snapshot.py

Last successfully diffed state of every tracked entity.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin


class EntitySnapshot(Base, TimestampMixin):
    __tablename__ = "entity_snapshots"

    entity_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    fields: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    content_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    first_seen_scan_id: Mapped[int] = mapped_column(Integer, nullable=False)
    last_seen_scan_id: Mapped[int] = mapped_column(Integer, nullable=False)
    last_changed_scan_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Optimistic concurrency guard; a stale write raises StaleDataError.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_entity_snapshots_active_last_seen", "active", "last_seen_scan_id"),
    )
