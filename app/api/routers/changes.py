"""
Change history, entity and monitor statistics endpoints.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies import get_change_types
from app.schemas.monitoring import (
    ChangeListResponse,
    ChangeRecordResponse,
    EntityResponse,
    MonitorStatsResponse,
)
from app.services.monitoring_service import MonitorService, get_monitor_service

router = APIRouter(tags=["changes"])


@router.get("/changes", response_model=ChangeListResponse)
def list_changes(
    entity_id: str | None = Query(default=None, description="Optional entity filter"),
    scan_id: int | None = Query(default=None, ge=1, description="Optional scan filter"),
    since: datetime | None = Query(default=None, description="Only changes detected at or after this time"),
    min_score: float | None = Query(default=None, ge=0.0, description="Minimum change score"),
    limit: int = Query(default=100, ge=1, le=1000),
    change_types: list[str] | None = Depends(get_change_types),
    service: MonitorService = Depends(get_monitor_service),
) -> ChangeListResponse:
    try:
        records = service.get_changes(
            entity_id=entity_id,
            scan_id=scan_id,
            since=since,
            change_types=change_types,
            min_score=min_score,
            limit=limit,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    changes = [ChangeRecordResponse.model_validate(record) for record in records]
    return ChangeListResponse(changes=changes, count=len(changes))


@router.get("/entities/{entity_id}", response_model=EntityResponse)
def get_entity(
    entity_id: str,
    history_limit: int = Query(default=50, ge=0, le=500),
    service: MonitorService = Depends(get_monitor_service),
) -> EntityResponse:
    snapshot = service.get_entity(entity_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Entity '{entity_id}' not found",
        )

    history: list[ChangeRecordResponse] = []
    if history_limit:
        history = [
            ChangeRecordResponse.model_validate(record)
            for record in service.get_changes(entity_id=entity_id, limit=history_limit)
        ]
    return EntityResponse(
        entity_id=snapshot.entity_id,
        active=snapshot.active,
        fields=dict(snapshot.fields or {}),
        content_fingerprint=snapshot.content_fingerprint,
        first_seen_scan_id=snapshot.first_seen_scan_id,
        last_seen_scan_id=snapshot.last_seen_scan_id,
        last_changed_scan_id=snapshot.last_changed_scan_id,
        updated_at=snapshot.updated_at,
        history=history,
    )


@router.get("/stats", response_model=MonitorStatsResponse)
def get_stats(service: MonitorService = Depends(get_monitor_service)) -> MonitorStatsResponse:
    return MonitorStatsResponse(**service.get_stats())
