from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from app.schemas import NotificationEntryResponse, NotificationHistoryResponse, ScanSummaryResponse
from app.services.monitor_config_service import MonitorConfigError
from app.services.monitor_runtime import LedgerUnavailableError, MonitorRuntime, build_monitor_runtime

router = APIRouter()


def get_monitor_runtime(request: Request) -> MonitorRuntime:
    scheduler = getattr(request.app.state, "monitor_scheduler", None)
    if scheduler is not None and scheduler.runtime is not None:
        return scheduler.runtime

    runtime = getattr(request.app.state, "monitor_runtime", None)
    if runtime is None:
        runtime = build_monitor_runtime()
        request.app.state.monitor_runtime = runtime
    return runtime


def _run_scan(request: Request, location_ids: list[str] | None) -> ScanSummaryResponse:
    scheduler = getattr(request.app.state, "monitor_scheduler", None)
    try:
        runtime = get_monitor_runtime(request)
        job_scheduler = scheduler.job_scheduler if scheduler is not None else None
        payload = runtime.run_cycle(job_scheduler=job_scheduler, location_ids=location_ids)
    except MonitorConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=500, detail=f"Scan error: {exc}") from exc
    return ScanSummaryResponse.model_validate(payload)


@router.get("/notifications/history", response_model=NotificationHistoryResponse)
def notifications_history(
    request: Request,
    limit: int = Query(default=200, ge=1, le=5000),
) -> NotificationHistoryResponse:
    try:
        entries = get_monitor_runtime(request).store.load()
    except MonitorConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    items = [
        NotificationEntryResponse(
            id=entry.id,
            location_id=entry.location_id,
            parameter=entry.parameter,
            severity=entry.severity,
            value=entry.value,
            observed_at=entry.observed_at,
            message=entry.message,
            created_at=entry.created_at,
            sent=entry.sent,
            sent_at=entry.sent_at,
            attempts=entry.attempts,
        )
        for entry in entries[-limit:]
    ]
    return NotificationHistoryResponse(total=len(entries), limit=limit, items=items)


@router.post("/notifications/run/{location_id}", response_model=ScanSummaryResponse)
def notifications_run_location(location_id: str, request: Request) -> ScanSummaryResponse:
    return _run_scan(request, [location_id])


@router.post("/notifications/run-all", response_model=ScanSummaryResponse)
def notifications_run_all(request: Request) -> ScanSummaryResponse:
    return _run_scan(request, None)
