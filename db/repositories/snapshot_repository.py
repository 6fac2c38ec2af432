"""
Repository for entity snapshots: keyed read, keyed upsert and reconciliation scans.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from db.models.entity_snapshot import EntitySnapshot


class SnapshotRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, entity_id: str) -> EntitySnapshot | None:
        return self._session.get(EntitySnapshot, entity_id)

    def insert(
        self,
        *,
        entity_id: str,
        fields: dict[str, Any],
        fingerprint: str,
        scan_id: int,
    ) -> EntitySnapshot:
        snapshot = EntitySnapshot(
            entity_id=entity_id,
            fields=fields,
            content_fingerprint=fingerprint,
            active=True,
            first_seen_scan_id=scan_id,
            last_seen_scan_id=scan_id,
            last_changed_scan_id=scan_id,
        )
        self._session.add(snapshot)
        self._session.flush()
        return snapshot

    def replace_state(
        self,
        *,
        snapshot: EntitySnapshot,
        fields: dict[str, Any],
        fingerprint: str,
        scan_id: int,
    ) -> EntitySnapshot:
        # Assign a fresh dict so the JSON column is flagged dirty.
        snapshot.fields = dict(fields)
        snapshot.content_fingerprint = fingerprint
        snapshot.active = True
        _advance_last_seen(snapshot, scan_id)
        snapshot.last_changed_scan_id = scan_id
        self._session.flush()
        return snapshot

    def touch(self, *, snapshot: EntitySnapshot, scan_id: int) -> EntitySnapshot:
        _advance_last_seen(snapshot, scan_id)
        self._session.flush()
        return snapshot

    def deactivate(self, *, snapshot: EntitySnapshot, scan_id: int) -> EntitySnapshot:
        snapshot.active = False
        snapshot.last_changed_scan_id = scan_id
        self._session.flush()
        return snapshot

    def list_unseen_active_ids(
        self,
        *,
        scan_id: int,
        entity_ids: Sequence[str] | None = None,
    ) -> list[str]:
        """
        Active entities not observed by ``scan_id`` or any later scan.

        Scan ids are monotonic, so an entity seen by an overlapping newer scan
        is not a deletion candidate for the older one.
        """

        stmt: Select[tuple[str]] = select(EntitySnapshot.entity_id).where(
            EntitySnapshot.active.is_(True),
            or_(
                EntitySnapshot.last_seen_scan_id.is_(None),
                EntitySnapshot.last_seen_scan_id < scan_id,
            ),
        )
        if entity_ids is not None:
            if not entity_ids:
                return []
            stmt = stmt.where(EntitySnapshot.entity_id.in_(list(entity_ids)))
        return list(self._session.scalars(stmt.order_by(EntitySnapshot.entity_id)).all())

    def count(self, *, active: bool | None = None) -> int:
        stmt = select(func.count()).select_from(EntitySnapshot)
        if active is not None:
            stmt = stmt.where(EntitySnapshot.active.is_(active))
        return int(self._session.scalar(stmt) or 0)


def _advance_last_seen(snapshot: EntitySnapshot, scan_id: int) -> None:
    # Never move backwards when scans overlap.
    current = snapshot.last_seen_scan_id
    if current is None or scan_id > current:
        snapshot.last_seen_scan_id = scan_id
