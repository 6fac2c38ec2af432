"""
Schemas for scan control, progress and change history endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ScanTargetRequest(BaseModel):
    kind: Literal["page", "entity"]
    value: str = Field(min_length=1, max_length=255)
    url: str | None = None
    priority: Literal["high", "normal", "low"] = "normal"


class ScanCreateRequest(BaseModel):
    """
    Either ``pages`` (a search page sweep) or explicit ``targets``.
    """

    pages: int | None = Field(default=None, ge=1, le=500)
    start_page: int = Field(default=1, ge=1)
    targets: list[ScanTargetRequest] | None = None
    priority: Literal["high", "normal", "low"] = "normal"
    triggered_by: str | None = Field(default=None, max_length=255)
    failure_tolerance: float | None = Field(default=None, ge=0.0, le=1.0)
    deadline_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_targets(self) -> "ScanCreateRequest":
        if self.pages is not None and self.targets:
            raise ValueError("Provide either 'pages' or 'targets', not both.")
        if self.targets is not None and not self.targets:
            raise ValueError("'targets' must not be empty.")
        return self


class ScanAcceptedResponse(BaseModel):
    scan_id: int
    status: str
    jobs_total: int


class ScanProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class ScanListResponse(BaseModel):
    scans: list[ScanProgressResponse] = Field(default_factory=list)


class ScanCancelResponse(BaseModel):
    scan_id: int
    cancel_requested: bool
    status: str


class ChangeRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    change_id: UUID
    scan_id: int
    entity_id: str
    change_type: str
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    change_score: float
    change_percentage: float | None = None
    listing_snapshot: dict[str, Any] | None = None
    detected_at: datetime


class ChangeListResponse(BaseModel):
    changes: list[ChangeRecordResponse] = Field(default_factory=list)
    count: int = 0


class EntityResponse(BaseModel):
    entity_id: str
    active: bool
    fields: dict[str, Any]
    content_fingerprint: str
    first_seen_scan_id: int
    last_seen_scan_id: int
    last_changed_scan_id: int | None = None
    updated_at: datetime | None = None
    history: list[ChangeRecordResponse] = Field(default_factory=list)


class MonitorStatsResponse(BaseModel):
    queue: dict[str, int]
    rate_limit: dict[str, float]
    entities: dict[str, int]
    changes: dict[str, int]
    active_scans: int
    workers_running: bool


class HealthResponse(BaseModel):
    status: str
    workers_running: bool
    scheduler_running: bool
