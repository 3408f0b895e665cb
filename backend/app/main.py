import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.routers import health, notifications
from app.services.monitor_scheduler import MonitorScheduler

settings = get_settings()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("app.api")


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    scheduler = MonitorScheduler.from_env()
    app.state.monitor_scheduler = scheduler
    try:
        scheduler.start()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Monitor scheduler failed to start: %s", exc)
    try:
        yield
    finally:
        scheduler.shutdown()
        app.state.monitor_scheduler = None


app = FastAPI(
    title="Sensor Threshold Monitor API",
    description="Threshold scanning, notification ledger and group delivery status",
    version="1.0.0",
    lifespan=app_lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:  # noqa: BLE001
        logger.exception(
            "Unhandled error: method=%s path=%s request_id=%s",
            request.method,
            request.url.path,
            request_id,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = (time.perf_counter() - started) * 1000.0
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "Request completed: method=%s path=%s status=%s duration_ms=%.2f request_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        request_id,
    )
    return response

app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(notifications.router, prefix="/api/v1", tags=["notifications"])
