"""
Shared fixtures for listing monitor tests.

Every test gets its own SQLite file database; no PostgreSQL or network access
is required.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

import db.models  # noqa: F401 (registers ORM models on Base.metadata)
from app.config import (
    DiffSettings,
    MonitorSettings,
    QueueSettings,
    ScanSettings,
    WorkerSettings,
)
from app.domain.monitoring import ScanTarget
from app.monitoring.extractors.base import ExtractedEntity, ExtractionResult, Extractor
from app.monitoring.extractors.registry import ExtractorRegistry
from app.services.monitoring_service import MonitorService
from db.base import Base
from db.repositories.scan_session_repository import ScanSessionRepository
from db.session import build_session_factory


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


Script = Sequence[Any]


class ScriptedExtractor(Extractor):
    """
    Replays canned responses per target key ("page:1", "entity:abc").

    Each script entry is either an exception to raise or a list of
    ``(entity_id, fields)`` pairs. The last entry repeats once the script
    runs out. Unknown targets raise whatever ``missing`` is set to.
    """

    def __init__(
        self,
        *,
        strategy: str = "primary",
        scripts: Mapping[str, Script] | None = None,
        confidence: float = 1.0,
        missing: Exception | None = None,
    ) -> None:
        super().__init__(strategy=strategy)
        self.scripts = {key: list(value) for key, value in (scripts or {}).items()}
        self.confidence = confidence
        self.missing = missing
        self.calls: list[str] = []

    def extract(self, target: ScanTarget) -> ExtractionResult:
        key = f"{target.kind}:{target.value}"
        self.calls.append(key)
        script = self.scripts.get(key)
        if not script:
            if self.missing is not None:
                raise self.missing
            return ExtractionResult(entities=(), confidence=0.0, strategy=self.strategy)

        response = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(response, Exception):
            raise response
        entities = tuple(ExtractedEntity(entity_id=eid, fields=dict(fields)) for eid, fields in response)
        return ExtractionResult(entities=entities, confidence=self.confidence, strategy=self.strategy)

    def call_count(self, key: str) -> int:
        return self.calls.count(key)


def make_registry(**extractors: Extractor) -> ExtractorRegistry:
    registry = ExtractorRegistry()
    for strategy, extractor in extractors.items():
        registry.register(strategy, extractor)
    return registry


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine(tmp_path) -> Iterator[Engine]:
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'monitor.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def create_scan(session_factory: sessionmaker[Session]):
    """Insert a pending scan session directly and return its id."""

    def _create(jobs_total: int = 1, failure_tolerance: float = 0.5) -> int:
        with session_factory() as session:
            scan = ScanSessionRepository(session).create_scan(
                scan_type="manual",
                jobs_total=jobs_total,
                failure_tolerance=failure_tolerance,
                deadline_at=None,
            )
            scan_id = scan.id
            session.commit()
        return scan_id

    return _create


# ---------------------------------------------------------------------------
# Settings and clocks
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def queue_settings() -> QueueSettings:
    return QueueSettings(
        max_attempts=3,
        backoff_base_seconds=0.01,
        backoff_cap_seconds=0.05,
        visibility_timeout_seconds=30.0,
        rate_limit_max_jobs=0,
        rate_limit_window_seconds=1.0,
        poll_interval_seconds=0.01,
        settled_retention_seconds=3600.0,
    )


@pytest.fixture()
def monitor_settings(queue_settings: QueueSettings) -> MonitorSettings:
    return MonitorSettings(
        queue=queue_settings,
        worker=WorkerSettings(
            concurrency=2,
            extraction_timeout_seconds=5.0,
            confidence_threshold=0.5,
            supervise_interval_seconds=60.0,
        ),
        diff=DiffSettings(),
        scan=ScanSettings(
            failure_tolerance=0.5,
            deadline_seconds=600.0,
            cancel_grace_seconds=5.0,
            default_pages=2,
        ),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@pytest.fixture()
def build_service(session_factory: sessionmaker[Session], monitor_settings: MonitorSettings):
    """Factory for MonitorService instances wired to the test database."""

    created: list[MonitorService] = []

    def _build(
        *,
        primary: Extractor | None = None,
        fallback: Extractor | None = None,
        clock: FakeClock | None = None,
        settings: MonitorSettings | None = None,
    ) -> MonitorService:
        extractors: dict[str, Extractor] = {}
        if primary is not None:
            extractors["primary"] = primary
        if fallback is not None:
            extractors["fallback"] = fallback
        service = MonitorService(
            session_factory,
            settings or monitor_settings,
            extractors=make_registry(**extractors),
            clock=clock,
        )
        created.append(service)
        return service

    yield _build

    for service in created:
        service.stop(timeout=2.0)
