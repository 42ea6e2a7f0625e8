from __future__ import annotations

from datetime import timedelta
from typing import Callable

import pytest
from conftest import START, call_ended, seed_tab

from leadlock.models import to_iso
from leadlock.services.locks import V1_HEADER, V2_HEADER, LockSchemaError
from leadlock.services.reconciler import Reconciler
from leadlock.services.scheduler import flush_tick
from leadlock.services.sheets import RowVisibility, a1

DEE = "+14155551212"


def _lock_rows(workbook) -> list[list[str]]:
    return workbook.get_values(a1("Locks", "A:G"))


def _count_calls(app, *events: dict) -> None:
    for event in events:
        assert app.state.intake.process(event).counted


def _spy(monkeypatch, workbook, name: str) -> list:
    calls: list = []
    original = getattr(workbook, name)

    def spy(arg, *rest):
        calls.append(arg)
        return original(arg, *rest)

    monkeypatch.setattr(workbook, name, spy)
    return calls


def test_simple_lock(app, app_workbook) -> None:
    _count_calls(app, call_ended(session="s-1"), call_ended(session="s-2"))

    result = app.state.reconciler.flush_pending()

    assert result.locked == 1
    assert len(app.state.service.pending) == 0
    assert _lock_rows(app_workbook) == [
        list(V2_HEADER),
        [
            DEE,
            "Sales",
            "5",
            "2",
            to_iso(START + timedelta(minutes=60)),
            "s-2|p-1|Disconnected|2025-03-01T15:00:00Z",
            to_iso(START),
        ],
    ]
    assert app_workbook.hidden_rows("Sales") == {5}
    snapshot = app.state.service.metrics.service_snapshot()
    assert snapshot.flushes == 1
    assert snapshot.locked_total == 1
    assert snapshot.last_flush_at == to_iso(START)


def test_identical_fingerprints_count_once(app, app_workbook) -> None:
    intake = app.state.intake
    assert intake.process(call_ended()).counted
    assert intake.process(call_ended()).reason == "duplicate"

    result = app.state.reconciler.flush_pending()

    assert result.locked == 0
    assert _lock_rows(app_workbook)[1][:5] == [DEE, "Sales", "5", "1", ""]
    assert app_workbook.hidden_rows("Sales") == set()


def test_threshold_reached_across_flushes(make_app) -> None:
    app = make_app(LOCK_AFTER_CALLS="3")
    workbook = app.state.client
    seed_tab(workbook, "Sales", [["Dee", "4155551212"]])
    reconciler = app.state.reconciler

    _count_calls(app, call_ended(session="s-1"), call_ended(session="s-2"))
    assert reconciler.flush_pending().locked == 0
    assert workbook.hidden_rows("Sales") == set()

    _count_calls(app, call_ended(session="s-3"))
    assert reconciler.flush_pending().locked == 1
    assert workbook.hidden_rows("Sales") == {2}
    assert _lock_rows(workbook)[1][3] == "3"


def test_calls_while_locked_keep_the_original_expiry(app, app_workbook, clock) -> None:
    _count_calls(app, call_ended(session="s-1"), call_ended(session="s-2"))
    app.state.reconciler.flush_pending()
    locked_until = _lock_rows(app_workbook)[1][4]

    clock.advance(minutes=10)
    _count_calls(app, call_ended(session="s-3"))
    result = app.state.reconciler.flush_pending()

    row = _lock_rows(app_workbook)[1]
    assert result.locked == 0
    assert result.updated == 1
    assert row[3] == "3"
    assert row[4] == locked_until
    assert row[6] == to_iso(clock())


def test_per_sheet_hold_minutes_apply(app, app_workbook) -> None:
    app.state.service.holds.set_sheet("Sales", 15)
    _count_calls(app, call_ended(session="s-1"), call_ended(session="s-2"))
    app.state.reconciler.flush_pending()
    assert _lock_rows(app_workbook)[1][4] == to_iso(START + timedelta(minutes=15))


def test_fractional_hold_minutes_apply(app, app_workbook) -> None:
    app.state.service.holds.set_sheet("Sales", 1.5)
    _count_calls(app, call_ended(session="s-1"), call_ended(session="s-2"))
    app.state.reconciler.flush_pending()
    assert _lock_rows(app_workbook)[1][4] == to_iso(START + timedelta(seconds=90))


def test_unindexed_phone_is_dropped(app, app_workbook) -> None:
    _count_calls(app, call_ended("3105550123", session="s-1"))
    result = app.state.reconciler.flush_pending()

    assert result.skipped == 1
    assert _lock_rows(app_workbook) == [list(V2_HEADER)]
    assert len(app.state.service.pending) == 0


def test_flush_with_nothing_pending_does_nothing(app) -> None:
    assert app.state.reconciler.flush_pending() is None
    assert app.state.service.metrics.service_snapshot().flushes == 0


def test_duplicate_lock_rows_update_the_first(app, app_workbook) -> None:
    app_workbook.update_values(
        a1("Locks", "A1"),
        [
            list(V2_HEADER),
            [DEE, "Sales", "5", "1", "", "old-1", "t"],
            [DEE, "Sales", "5", "7", "", "old-2", "t"],
        ],
    )
    _count_calls(app, call_ended())
    app.state.reconciler.flush_pending()

    rows = _lock_rows(app_workbook)
    assert rows[1][3] == "2"
    assert rows[2][3] == "7"
    assert app_workbook.hidden_rows("Sales") == {5}


def test_expired_lock_is_cleared_and_unhidden(app, app_workbook) -> None:
    sales_id = app_workbook.get_sheet_ids()["Sales"]
    app_workbook.update_values(
        a1("Locks", "A1"),
        [
            list(V2_HEADER),
            [DEE, "Sales", "5", "2", to_iso(START - timedelta(seconds=1)), "evt-1", "t"],
        ],
    )
    app_workbook.set_rows_hidden([RowVisibility(sheet_id=sales_id, row=5, hidden=True)])

    result = app.state.reconciler.sweep()

    assert (result.expired, result.unlocked) == (1, 1)
    assert _lock_rows(app_workbook)[1] == [DEE, "Sales", "5", "2", "", "evt-1", to_iso(START)]
    assert app_workbook.hidden_rows("Sales") == set()
    assert app.state.service.metrics.service_snapshot().unlocked_total == 1


def test_second_sweep_performs_no_writes(app, app_workbook, monkeypatch) -> None:
    app_workbook.update_values(
        a1("Locks", "A1"),
        [
            list(V2_HEADER),
            [DEE, "Sales", "5", "2", to_iso(START - timedelta(minutes=1)), "evt-1", "t"],
            ["+12125550100", "Sales", "2", "2", to_iso(START + timedelta(minutes=5)), "e", "t"],
        ],
    )
    app.state.reconciler.sweep()

    updates = _spy(monkeypatch, app_workbook, "batch_update_values")
    visibility = _spy(monkeypatch, app_workbook, "set_rows_hidden")
    result = app.state.reconciler.sweep()

    assert result.expired == 0
    assert updates == []
    assert visibility == []


def test_sweep_unhides_the_row_the_lead_moved_to(app, app_workbook, clock, monkeypatch) -> None:
    sales_id = app_workbook.get_sheet_ids()["Sales"]
    _count_calls(app, call_ended(session="s-1"), call_ended(session="s-2"))
    app.state.reconciler.flush_pending()
    assert app_workbook.hidden_rows("Sales") == {5}

    app_workbook.insert_rows("Sales", 3, 2)
    app.state.service.leads_index.refresh()
    assert app.state.service.leads_index.lookup(DEE).row == 7

    visibility = _spy(monkeypatch, app_workbook, "set_rows_hidden")
    clock.advance(minutes=61)
    app.state.reconciler.sweep()

    assert visibility == [[RowVisibility(sheet_id=sales_id, row=7, hidden=False)]]
    assert app_workbook.hidden_rows("Sales") == set()


def test_lock_for_unknown_tab_is_still_cleared(app, app_workbook) -> None:
    app_workbook.update_values(
        a1("Locks", "A1"),
        [
            list(V2_HEADER),
            [DEE, "Archive", "4", "2", to_iso(START - timedelta(minutes=1)), "evt-1", "t"],
        ],
    )
    result = app.state.reconciler.sweep()

    assert (result.expired, result.unlocked) == (1, 0)
    assert _lock_rows(app_workbook)[1][4] == ""


def test_duplicate_phone_across_tabs_locks_first_tab_only(make_app) -> None:
    app = make_app(leads_sheets="A,B")
    workbook = app.state.client
    seed_tab(workbook, "A", [["Filler", ""], ["Dee", "4155551212"]])
    seed_tab(workbook, "B", [[f"Filler {n}", ""] for n in range(7)] + [["Dee", "4155551212"]])

    _count_calls(app, call_ended(session="s-1"), call_ended(session="s-2"))
    app.state.reconciler.flush_pending()

    rows = _lock_rows(workbook)
    assert len(rows) == 2
    assert rows[1][:3] == [DEE, "A", "3"]
    assert workbook.hidden_rows("A") == {3}
    assert workbook.hidden_rows("B") == set()


def test_v1_schema_single_tab_keeps_its_layout(app, app_workbook) -> None:
    app_workbook.update_values(
        a1("Locks", "A1"), [list(V1_HEADER), [DEE, "5", "1", "", "evt-0", "t"]]
    )
    _count_calls(app, call_ended())
    app.state.reconciler.flush_pending()

    assert app_workbook.get_values(a1("Locks", "A:G"))[1] == [
        DEE,
        "5",
        "2",
        to_iso(START + timedelta(minutes=60)),
        "s-1|p-1|Disconnected|2025-03-01T15:00:00Z",
        to_iso(START),
    ]
    assert app_workbook.hidden_rows("Sales") == {5}


def test_v1_schema_with_multiple_tabs_loses_the_batch(make_app) -> None:
    app = make_app(leads_sheets="Sales,Warm")
    workbook = app.state.client
    seed_tab(workbook, "Sales", [["Dee", "4155551212"]])
    seed_tab(workbook, "Warm", [])
    workbook.update_values(a1("Locks", "A1"), [list(V1_HEADER)])
    _count_calls(app, call_ended())

    with pytest.raises(LockSchemaError):
        app.state.reconciler.flush_pending()

    _count_calls(app, call_ended(session="s-2"))
    assert flush_tick(app.state.service, app.state.reconciler) is False
    assert app.state.service.metrics.last_error.startswith("flush: ")
    assert len(app.state.service.pending) == 0
    assert workbook.hidden_rows("Sales") == set()


def test_writes_are_chunked(app, app_workbook, clock, monkeypatch) -> None:
    phones = [f"415555010{digit}" for digit in range(1, 6)]
    seed_tab(app_workbook, "Sales", [[f"Lead {phone}", phone] for phone in phones])
    app.state.service.leads_index.refresh()
    reconciler = Reconciler(
        app.state.service,
        app_workbook,
        app.state.reconciler.lock_table,
        lock_after_calls=2,
        clock=clock,
        chunk_size=2,
    )
    calls: list[tuple[str, int]] = []

    def record(name: str, size: Callable) -> None:
        original = getattr(app_workbook, name)

        def spy(*args):
            calls.append((name, size(*args)))
            return original(*args)

        monkeypatch.setattr(app_workbook, name, spy)

    record("batch_update_values", lambda data: len(data))
    record("append_values", lambda range_, values: len(values))
    record("set_rows_hidden", lambda rows: len(rows))

    def count_round(round_: int) -> None:
        for phone in phones:
            event = call_ended(phone, session=f"s-{round_}-{phone}")
            assert app.state.intake.process(event).counted

    count_round(1)
    assert reconciler.flush_pending().appended == 5
    assert calls == [("append_values", 2), ("append_values", 2), ("append_values", 1)]

    calls.clear()
    count_round(2)
    result = reconciler.flush_pending()
    assert (result.updated, result.locked) == (5, 5)
    assert calls == [
        ("batch_update_values", 2),
        ("batch_update_values", 2),
        ("batch_update_values", 1),
        ("set_rows_hidden", 5),
    ]
    rows = _lock_rows(app_workbook)[1:]
    assert sorted(row[0] for row in rows) == [f"+1{phone}" for phone in phones]
    assert {row[3] for row in rows} == {"2"}
    assert app_workbook.hidden_rows("Sales") == {2, 3, 4, 5, 6}

    calls.clear()
    clock.advance(minutes=61)
    assert reconciler.sweep().unlocked == 5
    assert calls == [
        ("set_rows_hidden", 5),
        ("batch_update_values", 2),
        ("batch_update_values", 2),
        ("batch_update_values", 1),
    ]
    assert {row[4] for row in _lock_rows(app_workbook)[1:]} == {""}
    assert app_workbook.hidden_rows("Sales") == set()
