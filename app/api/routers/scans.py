"""
Scan control and progress endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from app.domain.monitoring import JobPriority, ScanProgress, ScanTarget
from app.monitoring.errors import ScanNotFoundError
from app.schemas.monitoring import (
    ScanAcceptedResponse,
    ScanCancelResponse,
    ScanCreateRequest,
    ScanListResponse,
    ScanProgressResponse,
)
from app.services.monitoring_service import MonitorService, get_monitor_service

router = APIRouter(tags=["scans"])


def _progress_response(progress: ScanProgress) -> ScanProgressResponse:
    return ScanProgressResponse.model_validate(progress)


@router.post(
    "/scans",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ScanAcceptedResponse,
)
def create_scan(
    payload: ScanCreateRequest,
    service: MonitorService = Depends(get_monitor_service),
) -> ScanAcceptedResponse:
    try:
        if payload.targets:
            targets = [
                ScanTarget(
                    kind=item.kind,
                    value=item.value.strip(),
                    url=item.url,
                    priority=JobPriority.from_label(item.priority),
                )
                for item in payload.targets
            ]
            scan_id = service.start_scan(
                targets,
                triggered_by=payload.triggered_by,
                failure_tolerance=payload.failure_tolerance,
                deadline_seconds=payload.deadline_seconds,
            )
        else:
            scan_id = service.start_page_scan(
                payload.pages,
                start_page=payload.start_page,
                priority=payload.priority,
                triggered_by=payload.triggered_by,
                failure_tolerance=payload.failure_tolerance,
                deadline_seconds=payload.deadline_seconds,
            )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    progress = service.get_progress(scan_id)
    return ScanAcceptedResponse(
        scan_id=scan_id,
        status=progress.status,
        jobs_total=progress.jobs_total,
    )


@router.post("/scans/{scan_id}/cancel", response_model=ScanCancelResponse)
def cancel_scan(
    scan_id: int = Path(ge=1),
    service: MonitorService = Depends(get_monitor_service),
) -> ScanCancelResponse:
    try:
        requested = service.cancel_scan(scan_id)
        progress = service.get_progress(scan_id)
    except ScanNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ScanCancelResponse(scan_id=scan_id, cancel_requested=requested, status=progress.status)


@router.get("/scans", response_model=ScanListResponse)
def list_scans(
    status_filter: str | None = Query(default=None, alias="status", description="Optional status filter"),
    limit: int = Query(default=50, ge=1, le=500),
    service: MonitorService = Depends(get_monitor_service),
) -> ScanListResponse:
    try:
        scans = service.list_scans(limit=limit, status=status_filter)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ScanListResponse(scans=[_progress_response(progress) for progress in scans])


@router.get("/scans/{scan_id}/progress", response_model=ScanProgressResponse)
def get_scan_progress(
    scan_id: int = Path(ge=1),
    service: MonitorService = Depends(get_monitor_service),
) -> ScanProgressResponse:
    try:
        return _progress_response(service.get_progress(scan_id))
    except ScanNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
