from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    warnings: int = Field(0, ge=0)
    dangers: int = Field(0, ge=0)
    pending_total: int = Field(0, ge=0)
    ledger_total: int = Field(0, ge=0)
    scheduler_running: bool = False


class NotificationEntryResponse(BaseModel):
    id: str
    location_id: str
    parameter: str
    severity: Literal["warning", "danger"]
    value: float
    observed_at: str | None = None
    message: str
    created_at: datetime
    sent: bool
    sent_at: datetime | None = None
    attempts: int = Field(0, ge=0)


class NotificationHistoryResponse(BaseModel):
    total: int
    limit: int
    items: list[NotificationEntryResponse]


class ScanSummaryResponse(BaseModel):
    scanned_at: str
    locations_total: int
    locations_scanned: int
    locations_skipped: int
    locations_failed: int
    events_count: int
    created_count: int
    resend_count: int
    pending_count: int
    scheduled_groups: int
    persisted: bool
