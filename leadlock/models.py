from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from leadlock.settings import MAX_HOLD_MINUTES, MIN_HOLD_MINUTES


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render an instant the way the Locks tab stores it: UTC, millisecond precision, ``Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 instant; ``None`` for empty or unparseable text."""
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def minutes_from(now: datetime, minutes: float) -> datetime:
    return now + timedelta(minutes=minutes)


class LeadLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    sheet_name: str
    row: int = Field(ge=1)


class PendingEntry(BaseModel):
    phone: str
    delta: int = Field(ge=1)
    event_id: str = ""


class LockRecord(BaseModel):
    phone: str
    lead_sheet: str
    lead_row: int = 0
    call_count: int = 0
    locked_until: str = ""
    last_event_id: str = ""
    updated_at: str = ""
    # 1-based row inside the Locks tab; None for records not yet written.
    table_row: Optional[int] = None

    def locked_until_at(self) -> Optional[datetime]:
        return parse_iso(self.locked_until)

    def is_locked(self, now: datetime) -> bool:
        until = self.locked_until_at()
        return until is not None and until > now


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ServiceMetricsModel(CamelModel):
    started_at: str
    webhook_events: int
    ended_counted: int
    queued: int
    flushes: int
    last_flush_at: Optional[str] = None
    unlock_sweeps: int
    last_unlock_sweep_at: Optional[str] = None
    locked_total: int
    unlocked_total: int
    last_error: Optional[str] = None


class StatusResponse(CamelModel):
    hold_minutes: Union[int, float]
    default_hold_minutes: Union[int, float]
    hold_minutes_by_sheet: dict[str, Union[int, float]]
    leads_sheets: list[str]
    pending_phones: int
    index_loaded_at: Optional[str] = None
    indexed_phones: int = 0
    metrics: ServiceMetricsModel


class LeadsSheetsResponse(CamelModel):
    leads_sheets: list[str]
    default_hold_minutes: Union[int, float]
    hold_minutes_by_sheet: dict[str, Union[int, float]]


class SettingsUpdateRequest(CamelModel):
    hold_minutes: float = Field(ge=MIN_HOLD_MINUTES, le=MAX_HOLD_MINUTES)
    lead_sheet: Optional[str] = None


class SettingsUpdateResponse(CamelModel):
    ok: bool = True
    hold_minutes: Union[int, float]
    lead_sheet: Optional[str] = None
    persisted: bool = True


class RefreshIndexRequest(CamelModel):
    sheet: Optional[str] = None


class RefreshIndexResponse(CamelModel):
    ok: bool = True
    sheet: Optional[str] = None
    indexed_phones: int
