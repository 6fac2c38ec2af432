"""
app/schemas package marker.
"""

from app.schemas.monitoring import (
    ChangeListResponse,
    ChangeRecordResponse,
    EntityResponse,
    HealthResponse,
    MonitorStatsResponse,
    ScanAcceptedResponse,
    ScanCancelResponse,
    ScanCreateRequest,
    ScanListResponse,
    ScanProgressResponse,
    ScanTargetRequest,
)

__all__ = [
    "ChangeListResponse",
    "ChangeRecordResponse",
    "EntityResponse",
    "HealthResponse",
    "MonitorStatsResponse",
    "ScanAcceptedResponse",
    "ScanCancelResponse",
    "ScanCreateRequest",
    "ScanListResponse",
    "ScanProgressResponse",
    "ScanTargetRequest",
]
