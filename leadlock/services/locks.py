from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional, Sequence

from leadlock.models import LockRecord
from leadlock.services.phones import normalize_phone
from leadlock.services.sheets import SpreadsheetClient, Values, a1, column_letter

logger = logging.getLogger("leadlock")

V2_HEADER = (
    "Phone",
    "LeadSheet",
    "LeadRow",
    "CallCount",
    "LockedUntil",
    "LastEventId",
    "UpdatedAt",
)
V1_HEADER = ("Phone", "LeadRow", "CallCount", "LockedUntil", "LastEventId", "UpdatedAt")


class LockSchemaError(Exception):
    pass


@dataclass(frozen=True)
class LockSchema:
    version: int
    header: tuple[str, ...]

    @property
    def width(self) -> int:
        return len(self.header)

    @property
    def last_column(self) -> str:
        return column_letter(self.width)

    def position(self, name: str) -> int:
        return self.header.index(name)

    def column(self, name: str) -> str:
        return column_letter(self.position(name) + 1)

    @property
    def has_lead_sheet(self) -> bool:
        return "LeadSheet" in self.header


SCHEMA_V2 = LockSchema(version=2, header=V2_HEADER)
SCHEMA_V1 = LockSchema(version=1, header=V1_HEADER)


def detect_schema(header_row: Sequence[object]) -> Optional[LockSchema]:
    """Identify the Locks layout from its header row; ``None`` for an empty tab."""
    cells = [str(value or "").strip().lower() for value in header_row]
    if not any(cells):
        return None
    first = cells[0] if cells else ""
    second = cells[1] if len(cells) > 1 else ""
    if first == "phone" and second == "leadsheet":
        return SCHEMA_V2
    if first == "phone" and second == "leadrow":
        return SCHEMA_V1
    raise LockSchemaError(
        "Unrecognised Locks header; expected: " + " | ".join(V2_HEADER)
    )


def _int_or_zero(value: object) -> int:
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return 0


@dataclass
class LockSnapshot:
    schema: Optional[LockSchema]
    records: list[LockRecord] = field(default_factory=list)


class LockTable:
    """Reads and addresses rows of the Locks tab. Writes are issued by the reconciler."""

    def __init__(
        self,
        client: SpreadsheetClient,
        sheet_name: str,
        lead_sheet_names: Sequence[str],
        *,
        default_country_code: str = "1",
    ) -> None:
        self._client = client
        self.sheet_name = sheet_name
        self.lead_sheet_names = tuple(lead_sheet_names)
        self.default_country_code = default_country_code
        self._warn_lock = Lock()
        self._warned_v1 = False

    @property
    def multi_sheet(self) -> bool:
        return len(self.lead_sheet_names) > 1

    def read(self) -> LockSnapshot:
        rows = self._client.get_values(a1(self.sheet_name, "A:G"))
        schema = detect_schema(rows[0] if rows else [])
        if schema is None:
            return LockSnapshot(schema=None)
        return LockSnapshot(schema=schema, records=self._parse(schema, rows[1:]))

    def _parse(self, schema: LockSchema, rows: Values) -> list[LockRecord]:
        records: list[LockRecord] = []
        for table_row, row in enumerate(rows, start=2):

            def cell(name: str) -> str:
                position = schema.position(name)
                return str(row[position]).strip() if position < len(row) else ""

            phone = normalize_phone(cell("Phone"), self.default_country_code)
            if not phone:
                continue
            if schema.has_lead_sheet:
                lead_sheet = cell("LeadSheet")
            else:
                lead_sheet = self.lead_sheet_names[0] if self.lead_sheet_names else ""
            records.append(
                LockRecord(
                    phone=phone,
                    lead_sheet=lead_sheet,
                    lead_row=_int_or_zero(cell("LeadRow")),
                    call_count=_int_or_zero(cell("CallCount")),
                    locked_until=cell("LockedUntil"),
                    last_event_id=cell("LastEventId"),
                    updated_at=cell("UpdatedAt"),
                    table_row=table_row,
                )
            )
        return records

    def prepare_for_write(self, snapshot: LockSnapshot) -> LockSchema:
        """Return the schema to write with, creating the v2 header on an empty tab."""
        if snapshot.schema is None:
            self._client.update_values(
                a1(self.sheet_name, f"A1:{SCHEMA_V2.last_column}1"), [list(V2_HEADER)]
            )
            snapshot.schema = SCHEMA_V2
            logger.info("locks_header_created sheet=%s", self.sheet_name)
            return SCHEMA_V2
        if snapshot.schema.version == 1:
            if self.multi_sheet:
                raise LockSchemaError(
                    "Locks sheet must use v2 headers for multi-sheet: " + " | ".join(V2_HEADER)
                )
            with self._warn_lock:
                if not self._warned_v1:
                    self._warned_v1 = True
                    logger.warning(
                        "locks_schema_v1 sheet=%s action=insert a LeadSheet column after Phone",
                        self.sheet_name,
                    )
        return snapshot.schema

    @staticmethod
    def key(schema: LockSchema, phone: str, lead_sheet: str) -> tuple[str, str]:
        return (phone, lead_sheet if schema.has_lead_sheet else "")

    @staticmethod
    def values_for(schema: LockSchema, record: LockRecord) -> list[str]:
        by_name = {
            "Phone": record.phone,
            "LeadSheet": record.lead_sheet,
            "LeadRow": str(record.lead_row),
            "CallCount": str(record.call_count),
            "LockedUntil": record.locked_until,
            "LastEventId": record.last_event_id,
            "UpdatedAt": record.updated_at,
        }
        return [by_name[name] for name in schema.header]

    def row_range(self, schema: LockSchema, table_row: int) -> str:
        return a1(self.sheet_name, f"A{table_row}:{schema.last_column}{table_row}")

    def append_range(self, schema: LockSchema) -> str:
        return a1(self.sheet_name, f"A:{schema.last_column}")

    def expiry_range(self, schema: LockSchema, table_row: int) -> str:
        """LockedUntil through UpdatedAt of one record."""
        start = schema.column("LockedUntil")
        end = schema.column("UpdatedAt")
        return a1(self.sheet_name, f"{start}{table_row}:{end}{table_row}")
