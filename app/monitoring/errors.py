"""
Exception taxonomy for scan orchestration and change detection.
"""

from __future__ import annotations

from datetime import datetime


class MonitorError(Exception):
    """Base class for all listing monitor errors."""


class ExtractionError(MonitorError):
    """Raised by extractors when a target could not be extracted."""


class ExtractionTransientError(ExtractionError):
    """Temporary failure (timeouts, throttling, 5xx). The job may be retried."""


class ExtractionPermanentError(ExtractionError):
    """The target no longer exists or can never be extracted."""


class QueueExhaustedError(MonitorError):
    def __init__(self, job_id: int, attempts: int, reason: str | None = None) -> None:
        self.job_id = job_id
        self.attempts = attempts
        self.reason = reason
        message = f"Job {job_id} exhausted after {attempts} attempt(s)"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class SnapshotWriteConflictError(MonitorError):
    def __init__(self, entity_id: str, attempts: int) -> None:
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Snapshot write for entity '{entity_id}' conflicted {attempts} time(s); giving up."
        )


class ScanNotFoundError(MonitorError):
    def __init__(self, scan_id: int) -> None:
        self.scan_id = scan_id
        super().__init__(f"Scan {scan_id} not found")


class ScanNotActiveError(MonitorError):
    def __init__(self, scan_id: int, status: str) -> None:
        self.scan_id = scan_id
        self.status = status
        super().__init__(f"Scan {scan_id} is {status}; no further changes are accepted")


class ScanDeadlineExceeded(MonitorError):
    def __init__(self, scan_id: int, deadline_at: datetime | None) -> None:
        self.scan_id = scan_id
        self.deadline_at = deadline_at
        when = deadline_at.isoformat() if deadline_at else "unknown"
        super().__init__(f"Scan {scan_id} exceeded its deadline ({when})")
