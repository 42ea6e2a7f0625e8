from __future__ import annotations

import pytest

from leadlock.settings import ConfigurationError, load_settings, parse_leads_sheet_names

ENV_NAMES = [
    "SHEET_ID",
    "LEADS_SHEET_NAMES",
    "LEADS_SHEET_NAME",
    "GOOGLE_SERVICE_ACCOUNT_JSON",
    "SHEETS_BACKEND",
    "DEFAULT_HOLD_MINUTES",
    "DEFAULT_COUNTRY_CODE",
    "LABEL_PHONE",
    "LOCK_AFTER_CALLS",
    "COUNT_OUTBOUND",
    "COUNT_INBOUND",
]


@pytest.fixture()
def base_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SHEET_ID", "sheet-123")
    monkeypatch.setenv("LEADS_SHEET_NAME", "Sales")
    monkeypatch.setenv("GOOGLE_SERVICE_ACCOUNT_JSON", '{"type": "service_account"}')
    return monkeypatch


def test_defaults(base_env) -> None:
    settings = load_settings()
    assert settings.leads_sheet_names == ("Sales",)
    assert settings.locks_sheet_name == "Locks"
    assert settings.settings_sheet_name == "Settings"
    assert settings.default_hold_minutes == 60
    assert settings.lock_after_calls == 2
    assert settings.count_outbound is True
    assert settings.count_inbound is False
    assert settings.label_phone == "Phone Number (US)"
    assert settings.default_country_code == "1"
    assert settings.sheets_backend == "google"
    assert settings.multi_sheet is False


def test_sheet_list_takes_precedence(base_env) -> None:
    base_env.setenv("LEADS_SHEET_NAMES", " Sales , Warm ,, ")
    settings = load_settings()
    assert settings.leads_sheet_names == ("Sales", "Warm")
    assert settings.multi_sheet is True


def test_parse_leads_sheet_names() -> None:
    assert parse_leads_sheet_names("", " Sales ") == ("Sales",)
    assert parse_leads_sheet_names(" , ", "") == ()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("0", 1), ("1", 1), ("1440", 1440), ("5000", 1440), ("abc", 60)],
)
def test_default_hold_minutes_clamped(base_env, raw, expected) -> None:
    base_env.setenv("DEFAULT_HOLD_MINUTES", raw)
    assert load_settings().default_hold_minutes == expected


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("SHEET_ID", ""),
        ("LEADS_SHEET_NAME", ""),
        ("GOOGLE_SERVICE_ACCOUNT_JSON", ""),
        ("SHEETS_BACKEND", "excel"),
        ("DEFAULT_COUNTRY_CODE", "US"),
        ("LABEL_PHONE", "  "),
    ],
)
def test_invalid_configuration_rejected(base_env, name, value) -> None:
    base_env.setenv(name, value)
    with pytest.raises(ConfigurationError):
        load_settings()


def test_sqlite_backend_needs_no_credentials(base_env) -> None:
    base_env.setenv("SHEETS_BACKEND", "sqlite")
    base_env.delenv("GOOGLE_SERVICE_ACCOUNT_JSON")
    base_env.setenv("DEFAULT_COUNTRY_CODE", "+44")
    settings = load_settings()
    assert settings.sheets_backend == "sqlite"
    assert settings.default_country_code == "44"
