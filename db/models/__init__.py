"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.change_record import ChangeRecord
from db.models.entity_snapshot import EntitySnapshot
from db.models.scan_job import ScanJob
from db.models.scan_session import ScanSession

__all__ = [
    "ChangeRecord",
    "EntitySnapshot",
    "ScanJob",
    "ScanSession",
]
