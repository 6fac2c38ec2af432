"""
db/models/scan_session.py

Scan session model: one monitoring run and its aggregate counters.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.domain.monitoring import ScanStatus, ScanType
from db.base import Base, JSONType, TimestampMixin, UTCDateTime


class ScanSession(Base, TimestampMixin):
    __tablename__ = "scan_sessions"

    # Autoincrement id doubles as the monotonic scan ordering key.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ScanType.MANUAL,
        comment="manual, scheduled",
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ScanStatus.PENDING)
    triggered_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    jobs_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_done: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    new_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unchanged_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deleted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_seen: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    failure_tolerance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    errors: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    configuration: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    deadline_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_scan_sessions_status", "status"),
        Index("ix_scan_sessions_created_at", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ScanStatus.TERMINAL

    @property
    def jobs_settled(self) -> int:
        return self.jobs_done + self.jobs_failed
