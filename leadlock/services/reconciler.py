from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Callable, Iterator, Optional, Sequence, TypeVar

from leadlock.models import LockRecord, PendingEntry, minutes_from, to_iso, utc_now
from leadlock.services.locks import LockTable
from leadlock.services.sheets import (
    RowVisibility,
    SpreadsheetClient,
    UnknownTabError,
    ValueRange,
)
from leadlock.store import ServiceState

logger = logging.getLogger("leadlock")

WRITE_CHUNK_SIZE = 200

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


@dataclass
class FlushResult:
    entries: int = 0
    skipped: int = 0
    updated: int = 0
    appended: int = 0
    locked: int = 0


@dataclass
class SweepResult:
    expired: int = 0
    unlocked: int = 0


class Reconciler:
    """
    Moves counted calls into the Locks tab and keeps lead-row visibility in step.

    ``flush`` adds pending deltas to each lead's CallCount and hides the row once
    the count reaches ``lock_after_calls`` while no lock is active. ``sweep``
    clears expired LockedUntil values and unhides the rows. Both run under one
    lock so they never interleave on the same record.
    """

    def __init__(
        self,
        state: ServiceState,
        client: SpreadsheetClient,
        lock_table: LockTable,
        *,
        lock_after_calls: int = 2,
        clock: Callable[[], datetime] = utc_now,
        chunk_size: int = WRITE_CHUNK_SIZE,
    ) -> None:
        self.state = state
        self._client = client
        self.lock_table = lock_table
        self.lock_after_calls = lock_after_calls
        self._clock = clock
        self._chunk_size = chunk_size
        self._lock = Lock()

    @property
    def tabs(self):
        return self.state.leads_index.tabs

    def flush_pending(self) -> Optional[FlushResult]:
        """Drain the pending buffer and flush it. Drained entries are not requeued on failure."""
        entries = self.state.pending.drain()
        if not entries:
            return None
        result = self.flush(entries)
        self.state.metrics.record_flush(locked=result.locked, at=self._clock())
        return result

    def flush(self, entries: list[PendingEntry]) -> FlushResult:
        result = FlushResult(entries=len(entries))
        if not entries:
            return result
        with self._lock:
            index = self.state.leads_index
            index.ensure_loaded()
            snapshot = self.lock_table.read()
            schema = self.lock_table.prepare_for_write(snapshot)

            existing: dict[tuple[str, str], LockRecord] = {}
            for record in snapshot.records:
                key = LockTable.key(schema, record.phone, record.lead_sheet)
                if key in existing:
                    logger.warning(
                        "locks_duplicate_row phone=%s sheet=%s row=%s",
                        record.phone,
                        record.lead_sheet,
                        record.table_row,
                    )
                    continue
                existing[key] = record

            now = self._clock()
            updated_at = to_iso(now)
            updates: list[ValueRange] = []
            appends: list[list[str]] = []
            hides: list[RowVisibility] = []

            for entry in entries:
                location = index.lookup(entry.phone)
                if location is None:
                    result.skipped += 1
                    logger.info("flush_skip_unindexed phone=%s delta=%s", entry.phone, entry.delta)
                    continue

                found = existing.get(LockTable.key(schema, entry.phone, location.sheet_name))
                next_count = (found.call_count if found else 0) + entry.delta
                locked_until = found.locked_until if found else ""
                currently_locked = found.is_locked(now) if found else False

                if not currently_locked and next_count >= self.lock_after_calls:
                    hold = self.state.holds.for_sheet(location.sheet_name)
                    locked_until = to_iso(minutes_from(now, hold))
                    hides.append(
                        RowVisibility(
                            sheet_id=self.tabs.tab_id(location.sheet_name),
                            row=location.row,
                            hidden=True,
                        )
                    )

                record = LockRecord(
                    phone=entry.phone,
                    lead_sheet=location.sheet_name,
                    lead_row=location.row,
                    call_count=next_count,
                    locked_until=locked_until,
                    last_event_id=entry.event_id or (found.last_event_id if found else ""),
                    updated_at=updated_at,
                    table_row=found.table_row if found else None,
                )
                values = LockTable.values_for(schema, record)
                if found and found.table_row:
                    updates.append(
                        ValueRange(self.lock_table.row_range(schema, found.table_row), [values])
                    )
                else:
                    appends.append(values)

            for batch in chunked(updates, self._chunk_size):
                self._client.batch_update_values(batch)
            for batch in chunked(appends, self._chunk_size):
                self._client.append_values(self.lock_table.append_range(schema), batch)
            if hides:
                self._client.set_rows_hidden(hides)

        result.updated = len(updates)
        result.appended = len(appends)
        result.locked = len(hides)
        logger.info(
            "flush_complete entries=%s skipped=%s updated=%s appended=%s locked=%s",
            result.entries,
            result.skipped,
            result.updated,
            result.appended,
            result.locked,
        )
        return result

    def sweep(self) -> SweepResult:
        result = SweepResult()
        with self._lock:
            index = self.state.leads_index
            index.ensure_loaded()
            snapshot = self.lock_table.read()
            schema = snapshot.schema
            if schema is None or not snapshot.records:
                self.state.metrics.record_sweep(unlocked=0, at=self._clock())
                return result

            now = self._clock()
            updated_at = to_iso(now)
            unhides: list[RowVisibility] = []
            clears: list[ValueRange] = []

            for record in snapshot.records:
                if not record.lead_sheet or record.lead_row <= 0 or not record.locked_until:
                    continue
                until = record.locked_until_at()
                if until is None or until > now:
                    continue
                result.expired += 1

                location = index.lookup(record.phone)
                if location is not None and location.sheet_name == record.lead_sheet:
                    row = location.row
                else:
                    row = record.lead_row
                try:
                    sheet_id = self.tabs.tab_id(record.lead_sheet)
                except UnknownTabError:
                    logger.warning(
                        "sweep_unknown_sheet phone=%s sheet=%s", record.phone, record.lead_sheet
                    )
                else:
                    unhides.append(RowVisibility(sheet_id=sheet_id, row=row, hidden=False))

                clears.append(
                    ValueRange(
                        self.lock_table.expiry_range(schema, record.table_row or 0),
                        [["", record.last_event_id, updated_at]],
                    )
                )

            if unhides:
                self._client.set_rows_hidden(unhides)
            for batch in chunked(clears, self._chunk_size):
                self._client.batch_update_values(batch)

        result.unlocked = len(unhides)
        self.state.metrics.record_sweep(unlocked=result.unlocked, at=self._clock())
        if result.expired:
            logger.info("sweep_complete expired=%s unlocked=%s", result.expired, result.unlocked)
        return result
