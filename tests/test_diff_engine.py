"""
tests/test_diff_engine.py

DiffEngine behaviour against a real (SQLite) snapshot store and change log.

Coverage
--------
- first sighting creates a snapshot and a NEW record
- field updates produce one UPDATED record per changed field, scored
- re-applying the same data is idempotent
- deletion, reappearance and the one-entity-event-per-scan rule
- reconciliation (full and scoped)
- terminal or unknown scans are rejected
- optimistic write conflicts are retried and then surfaced
- concurrent applies for one entity are serialized into one history
- overlapping scans never delete what a newer scan observed
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import DEFAULT_FIELD_WEIGHTS, DEFAULT_NUMERIC_FIELDS
from app.domain.monitoring import ChangeType
from app.monitoring.diff_engine import DiffEngine
from app.monitoring.errors import ScanNotActiveError, ScanNotFoundError, SnapshotWriteConflictError
from app.monitoring.locks import EntityLockRegistry
from app.monitoring.normalization import FieldNormalizer
from app.monitoring.scoring import ChangeScoringPolicy
from db.repositories.change_log_repository import ChangeLogRepository
from db.repositories.scan_session_repository import ScanSessionRepository
from db.repositories.snapshot_repository import SnapshotRepository

LISTING = {"title": "Shopify store", "price": "$100,000", "category": "Ecommerce"}


def _engine(session_factory: sessionmaker[Session], **kwargs) -> DiffEngine:
    return DiffEngine(
        session_factory,
        normalizer=FieldNormalizer(numeric_fields=DEFAULT_NUMERIC_FIELDS),
        scoring=ChangeScoringPolicy(
            field_weights=DEFAULT_FIELD_WEIGHTS,
            numeric_fields=DEFAULT_NUMERIC_FIELDS,
        ),
        **kwargs,
    )


@pytest.fixture()
def diff_engine(session_factory: sessionmaker[Session]) -> DiffEngine:
    return _engine(session_factory)


def _changes(session_factory: sessionmaker[Session], **filters):
    with session_factory() as session:
        return ChangeLogRepository(session).query(**filters)


def _snapshot(session_factory: sessionmaker[Session], entity_id: str):
    with session_factory() as session:
        return SnapshotRepository(session).get(entity_id)


# ---------------------------------------------------------------------------
# New and updated entities
# ---------------------------------------------------------------------------


class TestApply:
    def test_first_sighting_is_new(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        scan_id = create_scan()
        result = diff_engine.apply(scan_id=scan_id, entity_id="A", extracted_fields=LISTING)

        assert result.outcome == ChangeType.NEW
        records = _changes(session_factory, entity_id="A")
        assert [record.change_type for record in records] == [ChangeType.NEW]
        assert records[0].listing_snapshot == {
            "title": "Shopify store",
            "price": 100000,
            "category": "Ecommerce",
        }
        assert records[0].change_score == pytest.approx(1.0)

        snapshot = _snapshot(session_factory, "A")
        assert snapshot.active is True
        assert snapshot.first_seen_scan_id == scan_id
        assert snapshot.content_fingerprint == result.fingerprint

    def test_price_change_records_one_scored_update(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)

        second = create_scan()
        result = diff_engine.apply(
            scan_id=second,
            entity_id="A",
            extracted_fields={**LISTING, "price": "$110,000"},
        )

        assert result.outcome == ChangeType.UPDATED
        records = _changes(session_factory, scan_id=second)
        assert len(records) == 1
        record = records[0]
        assert record.change_type == ChangeType.UPDATED
        assert record.field_name == "price"
        assert record.old_value == "100000"
        assert record.new_value == "110000"
        assert record.change_percentage == pytest.approx(10.0)
        assert record.change_score == pytest.approx(1.1)
        assert _snapshot(session_factory, "A").fields["price"] == 110000

    def test_removed_and_added_fields_are_updates(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)

        second = create_scan()
        diff_engine.apply(
            scan_id=second,
            entity_id="A",
            extracted_fields={"title": "Shopify store", "price": "$100,000", "revenue": "$5K"},
        )

        records = _changes(session_factory, scan_id=second)
        by_field = {record.field_name: record for record in records}
        assert set(by_field) == {"category", "revenue"}
        assert by_field["category"].old_value == "Ecommerce"
        assert by_field["category"].new_value is None
        assert by_field["revenue"].old_value is None
        assert by_field["revenue"].new_value == "5000"

    def test_reapplying_same_data_is_idempotent(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        scan_id = create_scan()
        diff_engine.apply(scan_id=scan_id, entity_id="A", extracted_fields=LISTING)
        again = diff_engine.apply(
            scan_id=scan_id,
            entity_id="A",
            extracted_fields={"Title": " Shopify  store ", "price": 100000, "category": "Ecommerce"},
        )

        assert again.outcome == ChangeType.UNCHANGED
        assert again.records == []
        assert len(_changes(session_factory, entity_id="A")) == 1

    def test_unchanged_records_are_optional(self, session_factory, create_scan) -> None:
        diff_engine = _engine(session_factory, record_unchanged=True)
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()
        result = diff_engine.apply(scan_id=second, entity_id="A", extracted_fields=LISTING)

        assert result.outcome == ChangeType.UNCHANGED
        records = _changes(session_factory, scan_id=second)
        assert [record.change_type for record in records] == [ChangeType.UNCHANGED]

    def test_unchanged_entity_is_marked_seen(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()
        diff_engine.apply(scan_id=second, entity_id="A", extracted_fields=LISTING)

        assert _snapshot(session_factory, "A").last_seen_scan_id == second


# ---------------------------------------------------------------------------
# Deletion and reappearance
# ---------------------------------------------------------------------------


class TestDeletion:
    def test_mark_deleted_records_last_known_state(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()

        result = diff_engine.mark_deleted(scan_id=second, entity_id="A", reason="404")

        assert result.outcome == ChangeType.DELETED
        records = _changes(session_factory, scan_id=second)
        assert [record.change_type for record in records] == [ChangeType.DELETED]
        assert records[0].listing_snapshot["price"] == 100000
        assert _snapshot(session_factory, "A").active is False

    def test_mark_deleted_unknown_entity_is_noop(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        scan_id = create_scan()
        assert diff_engine.mark_deleted(scan_id=scan_id, entity_id="ghost").outcome == ChangeType.UNCHANGED
        assert _changes(session_factory, scan_id=scan_id) == []

    def test_second_delete_in_same_scan_is_noop(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()
        diff_engine.mark_deleted(scan_id=second, entity_id="A")

        assert diff_engine.mark_deleted(scan_id=second, entity_id="A").outcome == ChangeType.UNCHANGED
        assert len(_changes(session_factory, scan_id=second)) == 1

    def test_new_entity_cannot_be_deleted_in_same_scan(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        scan_id = create_scan()
        diff_engine.apply(scan_id=scan_id, entity_id="A", extracted_fields=LISTING)

        assert diff_engine.mark_deleted(scan_id=scan_id, entity_id="A").outcome == ChangeType.UNCHANGED
        assert _snapshot(session_factory, "A").active is True

    def test_reappearance_in_later_scan_is_new(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()
        diff_engine.mark_deleted(scan_id=second, entity_id="A")
        third = create_scan()

        result = diff_engine.apply(scan_id=third, entity_id="A", extracted_fields=LISTING)

        assert result.outcome == ChangeType.NEW
        assert _snapshot(session_factory, "A").active is True
        history = [record.change_type for record in _changes(session_factory, entity_id="A")]
        assert history == [ChangeType.NEW, ChangeType.DELETED, ChangeType.NEW]

    def test_reappearance_in_deleting_scan_is_expressed_as_updates(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()
        diff_engine.mark_deleted(scan_id=second, entity_id="A")

        result = diff_engine.apply(
            scan_id=second,
            entity_id="A",
            extracted_fields={**LISTING, "price": "$90,000"},
        )

        assert result.outcome == ChangeType.UPDATED
        types = [record.change_type for record in _changes(session_factory, scan_id=second)]
        assert types.count(ChangeType.DELETED) == 1
        assert ChangeType.NEW not in types
        assert _snapshot(session_factory, "A").active is True


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestReconcile:
    def test_unseen_entities_are_deleted(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        first = create_scan()
        for entity_id in ("A", "B", "C"):
            diff_engine.apply(scan_id=first, entity_id=entity_id, extracted_fields={**LISTING, "title": entity_id})
        second = create_scan()
        diff_engine.apply(scan_id=second, entity_id="A", extracted_fields={**LISTING, "title": "A"})

        deleted = diff_engine.reconcile(scan_id=second)

        assert deleted == 2
        deleted_ids = sorted(
            record.entity_id
            for record in _changes(session_factory, scan_id=second, change_types=[ChangeType.DELETED])
        )
        assert deleted_ids == ["B", "C"]

    def test_scoped_reconcile_only_touches_scope(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        first = create_scan()
        for entity_id in ("A", "B"):
            diff_engine.apply(scan_id=first, entity_id=entity_id, extracted_fields={**LISTING, "title": entity_id})
        second = create_scan()

        assert diff_engine.reconcile(scan_id=second, entity_ids=["B"]) == 1
        assert _snapshot(session_factory, "A").active is True
        assert _snapshot(session_factory, "B").active is False

    def test_empty_scope_deletes_nothing(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()
        assert diff_engine.reconcile(scan_id=second, entity_ids=[]) == 0

    def test_reconcile_twice_is_idempotent(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        first = create_scan()
        diff_engine.apply(scan_id=first, entity_id="A", extracted_fields=LISTING)
        second = create_scan()
        assert diff_engine.reconcile(scan_id=second) == 1
        assert diff_engine.reconcile(scan_id=second) == 0


# ---------------------------------------------------------------------------
# Scan state and write conflicts
# ---------------------------------------------------------------------------


class TestGuards:
    def test_terminal_scan_rejects_changes(self, diff_engine: DiffEngine, session_factory, create_scan) -> None:
        scan_id = create_scan()
        with session_factory() as session:
            ScanSessionRepository(session).mark_completed(scan_id=scan_id)
            session.commit()

        with pytest.raises(ScanNotActiveError):
            diff_engine.apply(scan_id=scan_id, entity_id="A", extracted_fields=LISTING)
        assert _snapshot(session_factory, "A") is None

    def test_unknown_scan_is_rejected(self, diff_engine: DiffEngine) -> None:
        with pytest.raises(ScanNotFoundError):
            diff_engine.apply(scan_id=999, entity_id="A", extracted_fields=LISTING)

    def test_persistent_conflict_raises_after_retries(self, session_factory, create_scan) -> None:
        diff_engine = _engine(session_factory, conflict_retries=2)
        scan_id = create_scan()
        attempts: list[int] = []

        def always_stale(session, **kwargs):
            attempts.append(1)
            raise StaleDataError("snapshot version changed")

        diff_engine._apply_once = always_stale  # type: ignore[method-assign]

        with pytest.raises(SnapshotWriteConflictError) as exc_info:
            diff_engine.apply(scan_id=scan_id, entity_id="A", extracted_fields=LISTING)
        assert exc_info.value.attempts == 3
        assert len(attempts) == 3

    def test_transient_conflict_is_retried(self, session_factory, create_scan) -> None:
        diff_engine = _engine(session_factory, conflict_retries=2)
        scan_id = create_scan()
        original = diff_engine._apply_once
        calls: list[int] = []

        def flaky(session, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("snapshot version changed")
            return original(session, **kwargs)

        diff_engine._apply_once = flaky  # type: ignore[method-assign]

        result = diff_engine.apply(scan_id=scan_id, entity_id="A", extracted_fields=LISTING)
        assert result.outcome == ChangeType.NEW
        assert len(calls) == 2
        assert len(_changes(session_factory, entity_id="A")) == 1


# ---------------------------------------------------------------------------
# Concurrency and overlapping scans
# ---------------------------------------------------------------------------


def _run_parallel(count: int, target) -> list[BaseException]:
    barrier = threading.Barrier(count)
    errors: list[BaseException] = []

    def runner(index: int) -> None:
        barrier.wait()
        try:
            target(index)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=runner, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return errors


class TestConcurrency:
    def test_parallel_first_sightings_record_one_new(self, session_factory, create_scan) -> None:
        locks = EntityLockRegistry()
        diff_engine = _engine(session_factory, locks=locks)
        scan_id = create_scan()
        outcomes: list[str] = []

        errors = _run_parallel(
            6,
            lambda _: outcomes.append(
                diff_engine.apply(scan_id=scan_id, entity_id="A", extracted_fields=LISTING).outcome
            ),
        )

        assert errors == []
        assert outcomes.count(ChangeType.NEW) == 1
        assert outcomes.count(ChangeType.UNCHANGED) == 5
        assert [record.change_type for record in _changes(session_factory, entity_id="A")] == [ChangeType.NEW]
        assert len(locks) == 0

    def test_parallel_updates_leave_consistent_history(self, session_factory, create_scan) -> None:
        diff_engine = _engine(session_factory)
        scan_id = create_scan()

        errors = _run_parallel(
            5,
            lambda index: diff_engine.apply(
                scan_id=scan_id,
                entity_id="A",
                extracted_fields={**LISTING, "price": 100000 + index * 1000},
            ),
        )

        assert errors == []
        records = _changes(session_factory, entity_id="A")
        assert [record.change_type for record in records].count(ChangeType.NEW) == 1
        price_updates = [record for record in records if record.field_name == "price"]
        assert len(price_updates) == 4
        # Each update starts from the value the previous writer committed.
        for previous, current in zip(price_updates, price_updates[1:]):
            assert current.old_value == previous.new_value
        snapshot = _snapshot(session_factory, "A")
        assert str(snapshot.fields["price"]) == price_updates[-1].new_value

    def test_lock_entries_are_released(self) -> None:
        locks = EntityLockRegistry()
        with locks.hold("A"):
            with locks.hold("B"):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    def test_lock_is_released_when_operation_raises(self) -> None:
        locks = EntityLockRegistry()
        with pytest.raises(RuntimeError):
            with locks.hold("A"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        with locks.hold("A"):
            assert len(locks) == 1

    def test_waiters_share_one_lock_entry(self) -> None:
        locks = EntityLockRegistry()
        entered = threading.Event()
        inside: list[int] = []

        def waiter() -> None:
            entered.set()
            with locks.hold("A"):
                inside.append(len(locks))

        with locks.hold("A"):
            thread = threading.Thread(target=waiter)
            thread.start()
            entered.wait(timeout=5)
            thread.join(timeout=0.2)
            assert inside == []
        thread.join(timeout=5)

        assert inside == [1]
        assert len(locks) == 0


class TestOverlappingScans:
    def test_older_scan_does_not_delete_entity_seen_by_newer_scan(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        seed = create_scan()
        diff_engine.apply(scan_id=seed, entity_id="A", extracted_fields=LISTING)
        older = create_scan()
        newer = create_scan()
        diff_engine.apply(scan_id=newer, entity_id="A", extracted_fields=LISTING)

        assert diff_engine.reconcile(scan_id=older) == 0
        assert _snapshot(session_factory, "A").active is True
        assert _changes(session_factory, change_types=[ChangeType.DELETED]) == []

    def test_last_seen_never_moves_backwards(
        self,
        diff_engine: DiffEngine,
        session_factory,
        create_scan,
    ) -> None:
        seed = create_scan()
        diff_engine.apply(scan_id=seed, entity_id="A", extracted_fields=LISTING)
        older = create_scan()
        newer = create_scan()
        diff_engine.apply(scan_id=newer, entity_id="A", extracted_fields=LISTING)
        diff_engine.apply(scan_id=older, entity_id="A", extracted_fields={**LISTING, "price": "$90,000"})

        snapshot = _snapshot(session_factory, "A")
        assert snapshot.last_seen_scan_id == newer
        assert snapshot.fields["price"] == 90000
        assert diff_engine.reconcile(scan_id=newer) == 0
