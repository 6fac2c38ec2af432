"""
app/domain/monitoring.py

Domain constants and value objects for scan orchestration and change detection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeType:
    NEW = "new"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"

    ALL = frozenset({NEW, UPDATED, DELETED, UNCHANGED})
    ENTITY_EVENTS = frozenset({NEW, DELETED})


class ScanStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = frozenset({PENDING, RUNNING})
    TERMINAL = frozenset({COMPLETED, FAILED})


class ScanType:
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class ScanFailureReason:
    FAILURE_THRESHOLD = "failure_threshold_exceeded"
    DEADLINE = "deadline_exceeded"
    CANCELLED = "cancelled"
    RECONCILIATION = "reconciliation_failed"
    ENQUEUE = "enqueue_failed"


class JobState:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    SETTLED = frozenset({COMPLETED, FAILED})


class TargetKind:
    PAGE = "page"
    ENTITY = "entity"

    ALL = frozenset({PAGE, ENTITY})


class JobPriority:
    HIGH = 1
    NORMAL = 5
    LOW = 10

    _BY_LABEL = {"high": HIGH, "normal": NORMAL, "low": LOW}

    @classmethod
    def from_label(cls, label: str | None) -> int:
        if not label:
            return cls.NORMAL
        return cls._BY_LABEL.get(label.strip().lower(), cls.NORMAL)


class FailDecision:
    RETRIED = "retried"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class ScanTarget:
    """
    One unit of extraction work: a result page or a single entity refresh.
    """

    kind: str
    value: str
    url: str | None = None
    priority: int = JobPriority.NORMAL

    def __post_init__(self) -> None:
        if self.kind not in TargetKind.ALL:
            raise ValueError(f"Unknown target kind '{self.kind}'.")
        if not str(self.value).strip():
            raise ValueError("Scan target value must not be empty.")

    @classmethod
    def page(cls, number: int, *, url: str | None = None, priority: int = JobPriority.NORMAL) -> "ScanTarget":
        if number < 1:
            raise ValueError("Page numbers start at 1.")
        return cls(kind=TargetKind.PAGE, value=str(number), url=url, priority=priority)

    @classmethod
    def entity(
        cls,
        entity_id: str,
        *,
        url: str | None = None,
        priority: int = JobPriority.NORMAL,
    ) -> "ScanTarget":
        return cls(kind=TargetKind.ENTITY, value=str(entity_id).strip(), url=url, priority=priority)


@dataclass(frozen=True)
class ChangeRecordInput:
    """
    One change event produced by the diff engine, before persistence.
    """

    scan_id: int
    entity_id: str
    change_type: str
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    change_score: float = 0.0
    change_percentage: float | None = None
    listing_snapshot: dict[str, Any] | None = None
    detected_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class DiffResult:
    """
    Classified outcome of diffing one extraction against its snapshot.

    ``outcome`` is always populated; ``records`` may be empty when
    unchanged diffs are not persisted.
    """

    entity_id: str
    outcome: str
    records: list[ChangeRecordInput] = field(default_factory=list)
    fingerprint: str | None = None


@dataclass(frozen=True)
class ClaimedJob:
    """
    Detached view of a job leased to one worker.
    """

    job_id: int
    scan_id: int
    target: ScanTarget
    attempt: int
    max_attempts: int
    lease_token: str


@dataclass(frozen=True)
class SettledJob:
    """
    Job that reached a terminal state outside a worker's hands.
    """

    job_id: int
    scan_id: int
    state: str
    reason: str | None = None


@dataclass(frozen=True)
class JobOutcome:
    """
    Per-job completion event reported by workers to the scan coordinator.
    """

    job_id: int
    scan_id: int
    succeeded: bool
    item_count: int = 0
    field_completeness: float = 0.0
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    deleted_count: int = 0
    error: str | None = None
    strategy: str | None = None


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


@dataclass(frozen=True)
class ScanProgress:
    """
    Read-only progress view of one scan session.
    """

    scan_id: int
    status: str
    percent: float
    jobs_total: int
    jobs_done: int
    jobs_failed: int
    new_count: int
    updated_count: int
    unchanged_count: int
    deleted_count: int
    items_seen: int = 0
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ScanStatus.TERMINAL
