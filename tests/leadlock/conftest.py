from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from leadlock.main import create_app
from leadlock.persistence import SqliteWorkbook, open_workbook
from leadlock.services.leads_index import LeadsIndex
from leadlock.services.sheets import a1
from leadlock.store import HoldMinutesOverlay, ServiceState

PHONE_LABEL = "Phone Number (US)"
ADMIN_KEY = "test-admin-key"
START = datetime(2025, 3, 1, 15, 0, tzinfo=timezone.utc)

# Sales row 5 holds the lead most tests call.
SALES_ROWS = [
    ["Ann", "(212) 555-0100"],
    ["Ben", "not a phone"],
    ["Cat", "650.555.0199"],
    ["Dee", "(415) 555-1212"],
]


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def seed_tab(
    workbook: SqliteWorkbook,
    title: str,
    rows: Sequence[Sequence[str]],
    header: Optional[Sequence[str]] = ("Name", PHONE_LABEL),
) -> None:
    grid = [list(header)] if header is not None else []
    grid.extend(list(row) for row in rows)
    workbook.update_values(a1(title, "A1"), grid)


def call_ended(
    phone: Optional[str] = "4155551212",
    *,
    session: str = "s-1",
    party: str = "p-1",
    status: str = "Disconnected",
    direction: str = "Outbound",
    timestamp: str = "2025-03-01T15:00:00Z",
) -> dict:
    party_body: dict = {
        "id": party,
        "direction": direction,
        "status": {"code": status},
    }
    if phone is not None:
        party_body["to"] = {"phoneNumber": phone}
    return {
        "uuid": f"uuid-{session}",
        "timestamp": timestamp,
        "body": {"telephonySessionId": session, "party": party_body},
    }


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture()
def workbook() -> SqliteWorkbook:
    return open_workbook("sqlite://", ["Sales", "Warm", "Locks", "Settings"])


@pytest.fixture()
def service_state(workbook: SqliteWorkbook) -> ServiceState:
    index = LeadsIndex(workbook, ["Sales", "Warm"], phone_label=PHONE_LABEL)
    return ServiceState(leads_index=index, holds=HoldMinutesOverlay(60))


@pytest.fixture()
def make_app(monkeypatch: pytest.MonkeyPatch, tmp_path, clock: FakeClock) -> Callable[..., FastAPI]:
    database_url = f"sqlite:///{(tmp_path / 'workbook.sqlite3').as_posix()}"

    def factory(leads_sheets: str = "Sales", **env: str) -> FastAPI:
        values = {
            "SHEET_ID": "test-spreadsheet",
            "LEADS_SHEET_NAMES": leads_sheets,
            "SHEETS_BACKEND": "sqlite",
            "SHEETS_DATABASE_URL": database_url,
            "SCHEDULER_ENABLED": "false",
            "ADMIN_KEY": ADMIN_KEY,
            "ADMIN_JWT_SECRET": "",
            "WEBHOOK_SHARED_SECRET": "",
            "LOCK_AFTER_CALLS": "2",
            "DEFAULT_HOLD_MINUTES": "60",
            "COUNT_OUTBOUND": "true",
            "COUNT_INBOUND": "false",
            "LABEL_PHONE": PHONE_LABEL,
            "DEFAULT_COUNTRY_CODE": "1",
        }
        values.update(env)
        for name in ("LEADS_SHEET_NAME", "GOOGLE_SERVICE_ACCOUNT_JSON"):
            monkeypatch.delenv(name, raising=False)
        for name, value in values.items():
            monkeypatch.setenv(name, value)
        return create_app(clock=clock)

    return factory


@pytest.fixture()
def app(make_app: Callable[..., FastAPI]) -> FastAPI:
    application = make_app()
    seed_tab(application.state.client, "Sales", SALES_ROWS)
    return application


@pytest.fixture()
def app_workbook(app: FastAPI) -> SqliteWorkbook:
    return app.state.client


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"x-admin-key": ADMIN_KEY}
