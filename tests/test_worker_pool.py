"""
tests/test_worker_pool.py

WorkerPool job processing: strategy fallback, confidence gating, timeouts,
lease loss, and the threaded start/stop lifecycle.
"""

from __future__ import annotations

import dataclasses
import time

import pytest

from app.domain.monitoring import JobState, ScanStatus
from app.monitoring.errors import ExtractionPermanentError
from app.monitoring.extractors.base import ExtractionResult, Extractor
from db.repositories.scan_job_repository import ScanJobRepository
from conftest import ScriptedExtractor

ALPHA = {"title": "Alpha", "price": "$100,000", "url": "https://example.com/a"}
BRAVO = {"title": "Bravo", "price": "$40,000", "url": "https://example.com/b"}


class SlowExtractor(Extractor):
    def __init__(self, delay: float) -> None:
        super().__init__(strategy="primary")
        self.delay = delay

    def extract(self, target):
        time.sleep(self.delay)
        return ExtractionResult(entities=(), confidence=0.0, strategy=self.strategy)


class ExplodingExtractor(Extractor):
    def __init__(self) -> None:
        super().__init__(strategy="primary")

    def extract(self, target):
        raise RuntimeError("parser crashed")


def _last_error(session_factory, job_id: int) -> str | None:
    with session_factory() as session:
        return ScanJobRepository(session).get_job(job_id).last_error


def _job_state(session_factory, job_id: int) -> str:
    with session_factory() as session:
        return ScanJobRepository(session).get_job(job_id).state


# ---------------------------------------------------------------------------
# Strategy chain
# ---------------------------------------------------------------------------


class TestStrategyChain:
    def test_low_confidence_falls_back(self, build_service) -> None:
        primary = ScriptedExtractor(scripts={"page:1": [[("A", ALPHA)]]}, confidence=0.2)
        fallback = ScriptedExtractor(strategy="fallback", scripts={"page:1": [[("A", ALPHA)]]}, confidence=0.9)
        service = build_service(primary=primary, fallback=fallback)
        service.start_page_scan(1)
        job = service.queue.dequeue("w1")

        outcome = service.worker_pool.process_job(job, "w1")

        assert outcome.succeeded
        assert outcome.strategy == "fallback"
        assert outcome.new_count == 1
        assert outcome.field_completeness == pytest.approx(0.5)
        assert primary.calls == ["page:1"]
        assert fallback.calls == ["page:1"]

    def test_unexpected_error_falls_back(self, build_service) -> None:
        fallback = ScriptedExtractor(strategy="fallback", scripts={"page:1": [[("A", ALPHA)]]})
        service = build_service(primary=ExplodingExtractor(), fallback=fallback)
        service.start_page_scan(1)
        job = service.queue.dequeue("w1")

        outcome = service.worker_pool.process_job(job, "w1")

        assert outcome.strategy == "fallback"

    def test_permanent_error_stops_chain(self, build_service, session_factory) -> None:
        primary = ScriptedExtractor(scripts={"page:9": [ExtractionPermanentError("page gone (410)")]})
        fallback = ScriptedExtractor(strategy="fallback", scripts={"page:9": [[("A", ALPHA)]]})
        service = build_service(primary=primary, fallback=fallback)
        scan_id = service.start_page_scan(1, start_page=9)
        job = service.queue.dequeue("w1")

        outcome = service.worker_pool.process_job(job, "w1")

        assert outcome.succeeded is False
        assert "exhausted after 1 attempt" in outcome.error
        assert fallback.calls == []
        assert _job_state(session_factory, job.job_id) == JobState.FAILED
        assert service.get_progress(scan_id).status == ScanStatus.FAILED

    def test_all_strategies_rejected_schedules_retry(self, build_service, session_factory) -> None:
        primary = ScriptedExtractor(scripts={"page:1": [[("A", ALPHA)]]}, confidence=0.1)
        fallback = ScriptedExtractor(strategy="fallback", scripts={"page:1": [[("A", ALPHA)]]}, confidence=0.3)
        service = build_service(primary=primary, fallback=fallback)
        scan_id = service.start_page_scan(1)
        job = service.queue.dequeue("w1")

        assert service.worker_pool.process_job(job, "w1") is None

        assert _job_state(session_factory, job.job_id) == JobState.WAITING
        assert "confidence" in _last_error(session_factory, job.job_id)
        assert service.get_changes(scan_id=scan_id) == []

    def test_empty_result_is_transient(self, build_service, session_factory) -> None:
        service = build_service(primary=ScriptedExtractor())
        service.start_page_scan(1)
        job = service.queue.dequeue("w1")

        assert service.worker_pool.process_job(job, "w1") is None
        assert "no entities" in _last_error(session_factory, job.job_id)

    def test_missing_extractors_fail_permanently(self, build_service) -> None:
        service = build_service()
        service.start_page_scan(1)
        job = service.queue.dequeue("w1")

        outcome = service.worker_pool.process_job(job, "w1")
        assert outcome.succeeded is False


# ---------------------------------------------------------------------------
# Timeouts and lease loss
# ---------------------------------------------------------------------------


class TestJobSafety:
    def test_slow_extraction_times_out(self, build_service, monitor_settings, session_factory) -> None:
        settings = dataclasses.replace(
            monitor_settings,
            worker=dataclasses.replace(monitor_settings.worker, extraction_timeout_seconds=0.1),
        )
        service = build_service(primary=SlowExtractor(delay=1.0), settings=settings)
        service.start_page_scan(1)
        job = service.queue.dequeue("w1")

        assert service.worker_pool.process_job(job, "w1") is None
        assert "timed out" in _last_error(session_factory, job.job_id)

    def test_lost_lease_does_not_count_outcome(self, build_service) -> None:
        primary = ScriptedExtractor(scripts={"page:1": [[("A", ALPHA)]], "page:2": [[("B", BRAVO)]]})
        service = build_service(primary=primary)
        scan_id = service.start_page_scan(2)
        job = service.queue.dequeue("w1")
        service.queue.fail_active(scan_id, "lease revoked")

        assert service.worker_pool.process_job(job, "w1") is None
        progress = service.get_progress(scan_id)
        assert progress.jobs_done == 0
        assert progress.new_count == 0


# ---------------------------------------------------------------------------
# Threaded lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_start_and_stop(self, build_service) -> None:
        service = build_service(primary=ScriptedExtractor())
        service.start()
        assert service.worker_pool.is_running

        service.stop(timeout=2.0)
        assert not service.worker_pool.is_running

    def test_background_workers_complete_scan(self, build_service) -> None:
        primary = ScriptedExtractor(scripts={"page:1": [[("A", ALPHA)]], "page:2": [[("B", BRAVO)]]})
        service = build_service(primary=primary)
        service.start()

        scan_id = service.start_page_scan(2)
        progress = service.coordinator.wait_for_scan(scan_id, timeout=15.0, poll_interval=0.05)

        assert progress.status == ScanStatus.COMPLETED
        assert progress.new_count == 2
        assert service.get_stats()["entities"] == {"total": 2, "active": 2}
