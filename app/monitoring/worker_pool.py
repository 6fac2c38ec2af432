"""
Fixed-size worker pool that drains the scan job queue.

Each worker claims one job at a time, walks the extractor strategy chain,
feeds every extracted entity through the diff engine and reports the job's
outcome to the scan coordinator. A supervisor thread runs the coordinator's
periodic maintenance.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from app.config import WorkerSettings
from app.domain.monitoring import ChangeType, ClaimedJob, FailDecision, JobOutcome, TargetKind
from app.monitoring.coordinator import ScanCoordinator
from app.monitoring.diff_engine import DiffEngine
from app.monitoring.errors import (
    ExtractionError,
    ExtractionPermanentError,
    ExtractionTransientError,
    MonitorError,
    QueueExhaustedError,
    ScanNotActiveError,
    ScanNotFoundError,
)
from app.monitoring.extractors.base import ExtractionResult, Extractor
from app.monitoring.extractors.registry import ExtractorRegistry
from app.monitoring.job_queue import ScanJobQueue
from app.monitoring.logging_utils import log_event

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(
        self,
        *,
        queue: ScanJobQueue,
        coordinator: ScanCoordinator,
        diff_engine: DiffEngine,
        extractors: ExtractorRegistry,
        settings: WorkerSettings,
        name: str = "monitor-worker",
    ) -> None:
        self._queue = queue
        self._coordinator = coordinator
        self._diff_engine = diff_engine
        self._extractors = extractors
        self._settings = settings
        self._name = name

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._executor: ThreadPoolExecutor | None = None
        self._lifecycle_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        with self._lifecycle_lock:
            if self.is_running:
                return
            self._stop_event = threading.Event()
            self._ensure_executor()
            self._threads = []
            for index in range(self._settings.concurrency):
                token = f"{self._name}-{index}-{uuid.uuid4().hex[:8]}"
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(token,),
                    name=f"{self._name}-{index}",
                    daemon=True,
                )
                self._threads.append(thread)
            self._threads.append(
                threading.Thread(
                    target=self._supervisor_loop,
                    name=f"{self._name}-supervisor",
                    daemon=True,
                )
            )
            for thread in self._threads:
                thread.start()

        log_event(
            logger,
            logging.INFO,
            "worker_started",
            pool=self._name,
            concurrency=self._settings.concurrency,
            strategies=list(self._settings.strategy_order),
        )

    def stop(self, timeout: float | None = None) -> None:
        """
        Signal all threads to stop and wait for in-flight jobs to finish.

        Jobs interrupted by a hard shutdown are recovered once their lease expires.
        """

        with self._lifecycle_lock:
            self._stop_event.set()
            for thread in self._threads:
                thread.join(timeout=timeout)
            still_running = [thread.name for thread in self._threads if thread.is_alive()]
            self._threads = []
            self.close()

        log_event(
            logger,
            logging.INFO,
            "worker_stopped",
            pool=self._name,
            unfinished_threads=still_running,
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def run_until_idle(self, scan_id: int | None = None, max_jobs: int | None = None) -> int:
        """
        Process jobs on the calling thread until no waiting or delayed work remains.

        Returns the number of jobs processed.
        """

        token = f"{self._name}-sync-{uuid.uuid4().hex[:8]}"
        processed = 0
        while max_jobs is None or processed < max_jobs:
            job = self._queue.dequeue(
                token,
                wait_seconds=self._queue.settings.poll_interval_seconds,
            )
            if job is None:
                stats = self._queue.stats(scan_id)
                if stats.waiting + stats.delayed == 0:
                    break
                continue
            self.process_job(job, token)
            processed += 1
        return processed

    def process_job(self, job: ClaimedJob, worker_token: str) -> JobOutcome | None:
        """
        Run one claimed job end to end.

        Returns the outcome reported to the coordinator, or None when the job
        was rescheduled or the lease was lost.
        """

        self._coordinator.mark_dispatched(job.scan_id)
        if not self._coordinator.should_process(job.scan_id):
            return self._fail(job, "scan is no longer accepting work", permanent=True)

        try:
            result = self._extract(job)
        except ExtractionPermanentError as exc:
            if job.target.kind == TargetKind.ENTITY:
                return self._handle_entity_gone(job, str(exc))
            return self._fail(job, str(exc), permanent=True)
        except ExtractionError as exc:
            return self._fail(job, str(exc))

        counts = {
            ChangeType.NEW: 0,
            ChangeType.UPDATED: 0,
            ChangeType.UNCHANGED: 0,
            ChangeType.DELETED: 0,
        }
        try:
            for entity in result.entities:
                diff = self._diff_engine.apply(
                    scan_id=job.scan_id,
                    entity_id=entity.entity_id,
                    extracted_fields=entity.fields,
                )
                counts[diff.outcome] = counts.get(diff.outcome, 0) + 1
        except (ScanNotActiveError, ScanNotFoundError) as exc:
            return self._fail(job, str(exc), permanent=True)
        except MonitorError as exc:
            return self._fail(job, str(exc))

        completeness = result.field_completeness(self._settings.expected_fields)
        outcome = JobOutcome(
            job_id=job.job_id,
            scan_id=job.scan_id,
            succeeded=True,
            item_count=len(result.entities),
            field_completeness=completeness,
            new_count=counts[ChangeType.NEW],
            updated_count=counts[ChangeType.UPDATED],
            unchanged_count=counts[ChangeType.UNCHANGED],
            deleted_count=counts[ChangeType.DELETED],
            strategy=result.strategy,
        )
        return self._complete(job, outcome)

    def _handle_entity_gone(self, job: ClaimedJob, reason: str) -> JobOutcome | None:
        try:
            diff = self._diff_engine.mark_deleted(
                scan_id=job.scan_id,
                entity_id=job.target.value,
                reason=reason,
            )
        except (ScanNotActiveError, ScanNotFoundError) as exc:
            return self._fail(job, str(exc), permanent=True)
        except MonitorError as exc:
            return self._fail(job, str(exc))

        outcome = JobOutcome(
            job_id=job.job_id,
            scan_id=job.scan_id,
            succeeded=True,
            deleted_count=1 if diff.outcome == ChangeType.DELETED else 0,
            error=reason,
        )
        return self._complete(job, outcome)

    def _complete(self, job: ClaimedJob, outcome: JobOutcome) -> JobOutcome | None:
        acked = self._queue.ack(
            job.job_id,
            lease_token=job.lease_token,
            result={
                "items": outcome.item_count,
                "field_completeness": outcome.field_completeness,
                "strategy": outcome.strategy,
                "new": outcome.new_count,
                "updated": outcome.updated_count,
                "unchanged": outcome.unchanged_count,
                "deleted": outcome.deleted_count,
            },
        )
        if not acked:
            logger.warning("Lease lost before ack job_id=%s scan_id=%s", job.job_id, job.scan_id)
            return None
        self._coordinator.record_outcome(outcome)
        return outcome

    def _fail(self, job: ClaimedJob, reason: str, *, permanent: bool = False) -> JobOutcome | None:
        decision = self._queue.fail(
            job.job_id,
            reason,
            permanent=permanent,
            lease_token=job.lease_token,
        )
        if decision != FailDecision.EXHAUSTED:
            return None
        error = QueueExhaustedError(job.job_id, job.attempt, reason)
        outcome = JobOutcome(job_id=job.job_id, scan_id=job.scan_id, succeeded=False, error=str(error))
        self._coordinator.record_outcome(outcome)
        return outcome

    def _extract(self, job: ClaimedJob) -> ExtractionResult:
        """
        Walk the strategy chain until one result clears the confidence threshold.

        A permanent error stops the chain: the target itself is gone.
        """

        extractors = self._extractors.ordered(self._settings.strategy_order)
        if not extractors:
            raise ExtractionPermanentError("No extractors are configured for the strategy order.")

        last_error: ExtractionError | None = None
        previous: Extractor | None = None
        for extractor in extractors:
            if previous is not None:
                log_event(
                    logger,
                    logging.WARNING,
                    "extraction_fallback",
                    job_id=job.job_id,
                    scan_id=job.scan_id,
                    from_strategy=previous.strategy,
                    to_strategy=extractor.strategy,
                    reason=str(last_error),
                )
            previous = extractor

            try:
                result = self._run_with_timeout(extractor, job)
            except ExtractionPermanentError:
                raise
            except ExtractionTransientError as exc:
                last_error = exc
                continue
            except Exception as exc:
                logger.exception(
                    "Extractor %s raised unexpectedly for job_id=%s",
                    extractor.strategy,
                    job.job_id,
                )
                last_error = ExtractionTransientError(f"{extractor.strategy} extractor error: {exc}")
                continue

            if result.is_empty:
                last_error = ExtractionTransientError(f"{extractor.strategy} returned no entities")
                continue
            if result.confidence < self._settings.confidence_threshold:
                last_error = ExtractionTransientError(
                    f"{extractor.strategy} result rejected: confidence {result.confidence:.2f} "
                    f"< {self._settings.confidence_threshold:.2f}"
                )
                continue
            return result

        raise last_error or ExtractionTransientError("No extractor produced a result.")

    def _run_with_timeout(self, extractor: Extractor, job: ClaimedJob) -> ExtractionResult:
        executor = self._ensure_executor()
        future = executor.submit(extractor.extract, job.target)
        timeout = self._settings.extraction_timeout_seconds
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise ExtractionTransientError(
                f"{extractor.strategy} extraction timed out after {timeout:.1f}s"
            ) from exc

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, self._settings.concurrency) * 2,
                thread_name_prefix=f"{self._name}-extract",
            )
        return self._executor

    def _worker_loop(self, worker_token: str) -> None:
        poll = self._queue.settings.poll_interval_seconds
        while not self._stop_event.is_set():
            try:
                job = self._queue.dequeue(
                    worker_token,
                    stop_event=self._stop_event,
                    wait_seconds=poll,
                )
                if job is not None:
                    self.process_job(job, worker_token)
            except Exception:
                logger.exception("Worker %s loop iteration failed", worker_token)
                self._stop_event.wait(poll)

    def _supervisor_loop(self) -> None:
        while not self._stop_event.wait(self._settings.supervise_interval_seconds):
            try:
                self._coordinator.supervise()
            except Exception:
                logger.exception("Supervisor pass failed for pool %s", self._name)
