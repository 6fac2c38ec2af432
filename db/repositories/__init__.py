"""
Repository layer exports.
"""

from db.repositories.change_log_repository import ChangeLogRepository
from db.repositories.scan_job_repository import ScanJobRepository
from db.repositories.scan_session_repository import ScanSessionRepository
from db.repositories.snapshot_repository import SnapshotRepository

__all__ = [
    "ChangeLogRepository",
    "ScanJobRepository",
    "ScanSessionRepository",
    "SnapshotRepository",
]
