from fastapi import APIRouter, HTTPException, Request

from app.routers.notifications import get_monitor_runtime
from app.schemas import HealthResponse
from app.services.monitor_config_service import MonitorConfigError

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    try:
        payload = get_monitor_runtime(request).health_snapshot()
    except MonitorConfigError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    scheduler = getattr(request.app.state, "monitor_scheduler", None)
    payload["scheduler_running"] = bool(scheduler is not None and scheduler.is_running)
    return HealthResponse.model_validate(payload)
