from __future__ import annotations

import pytest

from leadlock.services.locks import (
    SCHEMA_V1,
    SCHEMA_V2,
    V1_HEADER,
    V2_HEADER,
    LockSchemaError,
    LockTable,
    detect_schema,
)
from leadlock.services.sheets import a1


def test_detect_schema() -> None:
    assert detect_schema([]) is None
    assert detect_schema(["", ""]) is None
    assert detect_schema(list(V2_HEADER)) == SCHEMA_V2
    assert detect_schema(["phone", "LEADSHEET"]) == SCHEMA_V2
    assert detect_schema(list(V1_HEADER)) == SCHEMA_V1
    with pytest.raises(LockSchemaError):
        detect_schema(["Name", "Phone"])


def test_read_parses_records_with_table_rows(workbook) -> None:
    workbook.update_values(
        a1("Locks", "A1"),
        [
            list(V2_HEADER),
            ["+14155551212", "Sales", "5", "2", "2025-03-01T16:00:00.000Z", "evt-1", "t"],
            ["garbage", "Sales", "6", "1"],
            ["(212) 555-0100", "Warm", "3", "1"],
        ],
    )
    table = LockTable(workbook, "Locks", ["Sales", "Warm"])
    snapshot = table.read()

    assert snapshot.schema == SCHEMA_V2
    assert [(r.phone, r.lead_sheet, r.lead_row, r.table_row) for r in snapshot.records] == [
        ("+14155551212", "Sales", 5, 2),
        ("+12125550100", "Warm", 3, 4),
    ]
    assert snapshot.records[0].call_count == 2
    assert snapshot.records[1].locked_until == ""


def test_v1_records_belong_to_first_lead_tab(workbook) -> None:
    workbook.update_values(
        a1("Locks", "A1"), [list(V1_HEADER), ["4155551212", "5", "3", "", "evt", "t"]]
    )
    table = LockTable(workbook, "Locks", ["Sales"])
    record = table.read().records[0]
    assert (record.lead_sheet, record.lead_row, record.call_count) == ("Sales", 5, 3)


def test_prepare_for_write_creates_header_on_empty_tab(workbook) -> None:
    table = LockTable(workbook, "Locks", ["Sales"])
    snapshot = table.read()
    assert snapshot.schema is None

    assert table.prepare_for_write(snapshot) == SCHEMA_V2
    assert workbook.get_values(a1("Locks", "A:G")) == [list(V2_HEADER)]


def test_v1_rejected_for_multiple_lead_tabs(workbook) -> None:
    workbook.update_values(a1("Locks", "A1"), [list(V1_HEADER)])
    single = LockTable(workbook, "Locks", ["Sales"])
    assert single.prepare_for_write(single.read()) == SCHEMA_V1

    multi = LockTable(workbook, "Locks", ["Sales", "Warm"])
    with pytest.raises(LockSchemaError):
        multi.prepare_for_write(multi.read())


def test_ranges_follow_schema(workbook) -> None:
    table = LockTable(workbook, "Locks", ["Sales"])
    assert table.expiry_range(SCHEMA_V2, 5) == "'Locks'!E5:G5"
    assert table.expiry_range(SCHEMA_V1, 5) == "'Locks'!D5:F5"
    assert table.row_range(SCHEMA_V2, 3) == "'Locks'!A3:G3"
    assert table.append_range(SCHEMA_V1) == "'Locks'!A:F"
    assert LockTable.key(SCHEMA_V1, "+1", "Sales") == ("+1", "")
    assert LockTable.key(SCHEMA_V2, "+1", "Sales") == ("+1", "Sales")
