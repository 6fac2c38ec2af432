"""
app/domain package marker.
"""

from app.domain.monitoring import (
    ChangeRecordInput,
    ChangeType,
    ClaimedJob,
    DiffResult,
    JobOutcome,
    JobPriority,
    JobState,
    QueueStats,
    ScanProgress,
    ScanStatus,
    ScanTarget,
    ScanType,
    TargetKind,
)

__all__ = [
    "ChangeRecordInput",
    "ChangeType",
    "ClaimedJob",
    "DiffResult",
    "JobOutcome",
    "JobPriority",
    "JobState",
    "QueueStats",
    "ScanProgress",
    "ScanStatus",
    "ScanTarget",
    "ScanType",
    "TargetKind",
]
