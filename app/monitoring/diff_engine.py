"""
Snapshot diffing and append-only change recording.

Every read-diff-write cycle for one entity runs under that entity's lock and
inside a single transaction: the snapshot replacement and its change records
commit together or not at all. Cross-process races surface as optimistic
version conflicts (``StaleDataError``) or unique violations on first insert
(``IntegrityError``); both are retried from a fresh read.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.domain.monitoring import ChangeRecordInput, ChangeType, DiffResult
from app.monitoring.errors import ScanNotActiveError, ScanNotFoundError, SnapshotWriteConflictError
from app.monitoring.locks import EntityLockRegistry
from app.monitoring.logging_utils import log_event
from app.monitoring.normalization import (
    FieldNormalizer,
    canonical_json,
    compute_fingerprint,
    stringify_value,
)
from app.monitoring.scoring import ChangeScoringPolicy
from db.models.entity_snapshot import EntitySnapshot
from db.repositories.change_log_repository import ChangeLogRepository
from db.repositories.scan_session_repository import ScanSessionRepository
from db.repositories.snapshot_repository import SnapshotRepository

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class DiffEngine:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        normalizer: FieldNormalizer,
        scoring: ChangeScoringPolicy,
        record_unchanged: bool = False,
        conflict_retries: int = 3,
        locks: EntityLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._normalizer = normalizer
        self._scoring = scoring
        self._record_unchanged = record_unchanged
        self._conflict_retries = max(0, conflict_retries)
        self._locks = locks or EntityLockRegistry()

    @property
    def normalizer(self) -> FieldNormalizer:
        return self._normalizer

    def apply(
        self,
        *,
        scan_id: int,
        entity_id: str,
        extracted_fields: Mapping[str, Any],
    ) -> DiffResult:
        """
        Diff one extraction against the stored snapshot and persist the outcome.
        """

        normalized = self._normalizer.normalize(extracted_fields)
        fingerprint = compute_fingerprint(normalized)
        result = self._run_with_retry(
            entity_id,
            lambda session: self._apply_once(
                session,
                scan_id=scan_id,
                entity_id=entity_id,
                fields=normalized,
                fingerprint=fingerprint,
            ),
        )
        log_event(
            logger,
            logging.DEBUG,
            "diff_applied",
            scan_id=scan_id,
            entity_id=entity_id,
            outcome=result.outcome,
            records=len(result.records),
        )
        return result

    def mark_deleted(
        self,
        *,
        scan_id: int,
        entity_id: str,
        reason: str | None = None,
    ) -> DiffResult:
        """
        Record that an entity no longer exists at its source.

        No-op (``unchanged`` outcome, no records) when the entity is unknown,
        already inactive, or already carries an entity event in this scan.
        """

        result = self._run_with_retry(
            entity_id,
            lambda session: self._delete_once(session, scan_id=scan_id, entity_id=entity_id),
        )
        if result.outcome == ChangeType.DELETED:
            log_event(
                logger,
                logging.INFO,
                "diff_applied",
                scan_id=scan_id,
                entity_id=entity_id,
                outcome=result.outcome,
                reason=reason,
            )
        return result

    def reconcile(self, *, scan_id: int, entity_ids: Sequence[str] | None = None) -> int:
        """
        Delete every active entity in scope that this scan did not observe.

        ``entity_ids=None`` reconciles the whole snapshot store.
        Returns the number of deleted records written.
        """

        with self._session_factory() as session:
            self._require_active_scan(session, scan_id)
            candidates = SnapshotRepository(session).list_unseen_active_ids(
                scan_id=scan_id,
                entity_ids=entity_ids,
            )

        deleted = 0
        for entity_id in candidates:
            result = self._run_with_retry(
                entity_id,
                lambda session, eid=entity_id: self._delete_once(
                    session,
                    scan_id=scan_id,
                    entity_id=eid,
                    only_if_unseen=True,
                ),
            )
            if result.outcome == ChangeType.DELETED:
                deleted += 1

        log_event(
            logger,
            logging.INFO,
            "reconciliation_completed",
            scan_id=scan_id,
            candidates=len(candidates),
            deleted=deleted,
            scoped=entity_ids is not None,
        )
        return deleted

    def _run_with_retry(self, entity_id: str, operation: Callable[[Session], _T]) -> _T:
        attempts = self._conflict_retries + 1
        with self._locks.hold(entity_id):
            for attempt in range(1, attempts + 1):
                with self._session_factory() as session:
                    try:
                        result = operation(session)
                        session.commit()
                        return result
                    except (StaleDataError, IntegrityError) as exc:
                        session.rollback()
                        log_event(
                            logger,
                            logging.WARNING,
                            "snapshot_conflict_retry",
                            entity_id=entity_id,
                            attempt=attempt,
                            max_attempts=attempts,
                            error=str(exc).splitlines()[0] if str(exc) else type(exc).__name__,
                        )
                    except SQLAlchemyError:
                        session.rollback()
                        raise
        raise SnapshotWriteConflictError(entity_id, attempts)

    def _apply_once(
        self,
        session: Session,
        *,
        scan_id: int,
        entity_id: str,
        fields: dict[str, Any],
        fingerprint: str,
    ) -> DiffResult:
        self._require_active_scan(session, scan_id)
        snapshots = SnapshotRepository(session)
        changes = ChangeLogRepository(session)
        detected_at = datetime.now(timezone.utc)

        snapshot = snapshots.get(entity_id)
        if snapshot is None:
            snapshots.insert(
                entity_id=entity_id,
                fields=fields,
                fingerprint=fingerprint,
                scan_id=scan_id,
            )
            records = [self._entity_event(scan_id, entity_id, ChangeType.NEW, fields, detected_at)]
            changes.append(records)
            return DiffResult(entity_id, ChangeType.NEW, records, fingerprint)

        if not snapshot.active:
            return self._reactivate(
                snapshot,
                snapshots,
                changes,
                scan_id=scan_id,
                fields=fields,
                fingerprint=fingerprint,
                detected_at=detected_at,
            )

        if snapshot.content_fingerprint == fingerprint:
            snapshots.touch(snapshot=snapshot, scan_id=scan_id)
            return self._unchanged(changes, scan_id, entity_id, fingerprint, detected_at)

        records = self._field_changes(
            scan_id=scan_id,
            entity_id=entity_id,
            old_fields=snapshot.fields or {},
            new_fields=fields,
            detected_at=detected_at,
        )
        snapshots.replace_state(
            snapshot=snapshot,
            fields=fields,
            fingerprint=fingerprint,
            scan_id=scan_id,
        )
        if not records:
            return self._unchanged(changes, scan_id, entity_id, fingerprint, detected_at)
        changes.append(records)
        return DiffResult(entity_id, ChangeType.UPDATED, records, fingerprint)

    def _reactivate(
        self,
        snapshot: EntitySnapshot,
        snapshots: SnapshotRepository,
        changes: ChangeLogRepository,
        *,
        scan_id: int,
        fields: dict[str, Any],
        fingerprint: str,
        detected_at: datetime,
    ) -> DiffResult:
        entity_id = snapshot.entity_id
        previous = dict(snapshot.fields or {})
        snapshots.replace_state(
            snapshot=snapshot,
            fields=fields,
            fingerprint=fingerprint,
            scan_id=scan_id,
        )

        if not changes.has_entity_event(scan_id=scan_id, entity_id=entity_id):
            records = [self._entity_event(scan_id, entity_id, ChangeType.NEW, fields, detected_at)]
            changes.append(records)
            return DiffResult(entity_id, ChangeType.NEW, records, fingerprint)

        # Deleted earlier in this same scan: only one entity event is allowed,
        # so the return is expressed as field updates.
        records = self._field_changes(
            scan_id=scan_id,
            entity_id=entity_id,
            old_fields=previous,
            new_fields=fields,
            detected_at=detected_at,
        )
        if not records:
            return self._unchanged(changes, scan_id, entity_id, fingerprint, detected_at)
        changes.append(records)
        return DiffResult(entity_id, ChangeType.UPDATED, records, fingerprint)

    def _delete_once(
        self,
        session: Session,
        *,
        scan_id: int,
        entity_id: str,
        only_if_unseen: bool = False,
    ) -> DiffResult:
        self._require_active_scan(session, scan_id)
        snapshots = SnapshotRepository(session)
        changes = ChangeLogRepository(session)

        snapshot = snapshots.get(entity_id)
        if snapshot is None or not snapshot.active:
            return DiffResult(entity_id, ChangeType.UNCHANGED)
        if only_if_unseen and (snapshot.last_seen_scan_id or 0) >= scan_id:
            return DiffResult(entity_id, ChangeType.UNCHANGED, fingerprint=snapshot.content_fingerprint)
        if changes.has_entity_event(scan_id=scan_id, entity_id=entity_id):
            return DiffResult(entity_id, ChangeType.UNCHANGED, fingerprint=snapshot.content_fingerprint)

        last_fields = dict(snapshot.fields or {})
        snapshots.deactivate(snapshot=snapshot, scan_id=scan_id)
        records = [
            self._entity_event(
                scan_id,
                entity_id,
                ChangeType.DELETED,
                last_fields,
                datetime.now(timezone.utc),
            )
        ]
        changes.append(records)
        return DiffResult(entity_id, ChangeType.DELETED, records, snapshot.content_fingerprint)

    def _unchanged(
        self,
        changes: ChangeLogRepository,
        scan_id: int,
        entity_id: str,
        fingerprint: str,
        detected_at: datetime,
    ) -> DiffResult:
        records: list[ChangeRecordInput] = []
        if self._record_unchanged:
            records = [
                ChangeRecordInput(
                    scan_id=scan_id,
                    entity_id=entity_id,
                    change_type=ChangeType.UNCHANGED,
                    detected_at=detected_at,
                )
            ]
            changes.append(records)
        return DiffResult(entity_id, ChangeType.UNCHANGED, records, fingerprint)

    def _entity_event(
        self,
        scan_id: int,
        entity_id: str,
        change_type: str,
        fields: dict[str, Any],
        detected_at: datetime,
    ) -> ChangeRecordInput:
        return ChangeRecordInput(
            scan_id=scan_id,
            entity_id=entity_id,
            change_type=change_type,
            change_score=self._scoring.entity_event_score,
            listing_snapshot=dict(fields),
            detected_at=detected_at,
        )

    def _field_changes(
        self,
        *,
        scan_id: int,
        entity_id: str,
        old_fields: Mapping[str, Any],
        new_fields: Mapping[str, Any],
        detected_at: datetime,
    ) -> list[ChangeRecordInput]:
        records: list[ChangeRecordInput] = []
        for field_name in sorted(set(old_fields) | set(new_fields)):
            old_value = old_fields.get(field_name)
            new_value = new_fields.get(field_name)
            if canonical_json(old_value) == canonical_json(new_value):
                continue
            scored = self._scoring.score_field(field_name, old_value, new_value)
            records.append(
                ChangeRecordInput(
                    scan_id=scan_id,
                    entity_id=entity_id,
                    change_type=ChangeType.UPDATED,
                    field_name=field_name,
                    old_value=stringify_value(old_value),
                    new_value=stringify_value(new_value),
                    change_score=scored.score,
                    change_percentage=scored.percentage,
                    detected_at=detected_at,
                )
            )
        return records

    @staticmethod
    def _require_active_scan(session: Session, scan_id: int) -> None:
        scan = ScanSessionRepository(session).get_scan(scan_id)
        if scan is None:
            raise ScanNotFoundError(scan_id)
        if scan.is_terminal:
            raise ScanNotActiveError(scan_id, scan.status)
