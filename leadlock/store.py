from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Optional

from leadlock.models import PendingEntry
from leadlock.observability import MetricsRegistry
from leadlock.services.dedupe import EventDedupeCache
from leadlock.settings import MAX_HOLD_MINUTES, MIN_HOLD_MINUTES

if TYPE_CHECKING:
    from leadlock.services.leads_index import LeadsIndex


class HoldMinutesError(ValueError):
    pass


def validate_hold_minutes(value: object) -> float:
    """Finite minutes in range; whole values come back as ``int``."""
    try:
        minutes = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise HoldMinutesError(
            f"holdMinutes must be between {MIN_HOLD_MINUTES} and {MAX_HOLD_MINUTES}"
        ) from exc
    if minutes != minutes or not MIN_HOLD_MINUTES <= minutes <= MAX_HOLD_MINUTES:
        raise HoldMinutesError(
            f"holdMinutes must be between {MIN_HOLD_MINUTES} and {MAX_HOLD_MINUTES}"
        )
    return int(minutes) if minutes.is_integer() else minutes


class PendingBuffer:
    """Coalesces counted events per phone until the next flush drains them."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._deltas: dict[str, float] = {}
        self._last_event_ids: dict[str, str] = {}

    def queue(self, phone: str, by: int = 1, event_id: Optional[str] = None) -> None:
        with self._lock:
            self._deltas[phone] = self._deltas.get(phone, 0) + by
            if event_id is not None:
                self._last_event_ids[phone] = event_id

    def drain(self) -> list[PendingEntry]:
        with self._lock:
            deltas, self._deltas = self._deltas, {}
            event_ids, self._last_event_ids = self._last_event_ids, {}
        return [
            PendingEntry(phone=phone, delta=delta, event_id=event_ids.get(phone, ""))
            for phone, delta in deltas.items()
            if delta > 0
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._deltas)

    def pending_for(self, phone: str) -> int:
        with self._lock:
            return self._deltas.get(phone, 0)


class HoldMinutesOverlay:
    """In-memory cooldown minutes: a process default plus per-tab overrides."""

    def __init__(self, default_minutes: float) -> None:
        self._lock = Lock()
        self._default = default_minutes
        self._by_sheet: dict[str, float] = {}

    @property
    def default_minutes(self) -> float:
        with self._lock:
            return self._default

    def set_default(self, minutes: float) -> None:
        with self._lock:
            self._default = minutes

    def set_sheet(self, sheet_name: str, minutes: float) -> None:
        with self._lock:
            self._by_sheet[sheet_name] = minutes

    def replace_sheets(self, by_sheet: dict[str, float]) -> None:
        with self._lock:
            self._by_sheet = dict(by_sheet)

    def by_sheet(self) -> dict[str, float]:
        with self._lock:
            return dict(self._by_sheet)

    def for_sheet(self, sheet_name: Optional[str]) -> float:
        with self._lock:
            value = self._by_sheet.get(sheet_name) if sheet_name else None
            return value if value and value > 0 else self._default


@dataclass
class ServiceState:
    """Process-wide mutable state, created once at startup and shared by every component."""

    leads_index: "LeadsIndex"
    holds: HoldMinutesOverlay
    pending: PendingBuffer = field(default_factory=PendingBuffer)
    dedupe: EventDedupeCache = field(default_factory=EventDedupeCache)
    metrics: MetricsRegistry = field(default_factory=MetricsRegistry)
