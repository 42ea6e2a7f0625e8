from __future__ import annotations

import os
from dataclasses import dataclass

MIN_HOLD_MINUTES = 1
MAX_HOLD_MINUTES = 1440


class ConfigurationError(Exception):
    pass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _str_env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def parse_leads_sheet_names(multi: str, single: str) -> tuple[str, ...]:
    names = tuple(item.strip() for item in multi.split(",") if item.strip())
    if names:
        return names
    single = single.strip()
    return (single,) if single else ()


@dataclass(frozen=True)
class Settings:
    sheet_id: str
    leads_sheet_names: tuple[str, ...]
    locks_sheet_name: str
    settings_sheet_name: str
    google_service_account_json: str
    default_hold_minutes: int
    flush_interval_ms: int
    unlock_sweep_interval_ms: int
    cache_refresh_interval_ms: int
    admin_key: str
    admin_jwt_secret: str
    jwt_algorithm: str
    webhook_shared_secret: str
    label_phone: str
    lock_after_calls: int
    count_outbound: bool
    count_inbound: bool
    default_country_code: str
    dedupe_ttl_seconds: int
    scheduler_enabled: bool
    sheets_backend: str
    sheets_database_url: str

    @property
    def multi_sheet(self) -> bool:
        return len(self.leads_sheet_names) > 1


def load_settings() -> Settings:
    sheet_id = _str_env("SHEET_ID")
    if not sheet_id:
        raise ConfigurationError("Missing SHEET_ID")
    leads_sheet_names = parse_leads_sheet_names(
        _str_env("LEADS_SHEET_NAMES"), _str_env("LEADS_SHEET_NAME")
    )
    if not leads_sheet_names:
        raise ConfigurationError("Missing LEADS_SHEET_NAME (or LEADS_SHEET_NAMES)")

    label_phone = _str_env("LABEL_PHONE", "Phone Number (US)")
    if not label_phone:
        raise ConfigurationError("LABEL_PHONE must not be empty")

    sheets_backend = _str_env("SHEETS_BACKEND", "google").lower()
    if sheets_backend not in {"google", "sqlite"}:
        raise ConfigurationError(f"Unsupported SHEETS_BACKEND: {sheets_backend}")
    service_account_json = _str_env("GOOGLE_SERVICE_ACCOUNT_JSON")
    if sheets_backend == "google" and not service_account_json:
        raise ConfigurationError("Missing GOOGLE_SERVICE_ACCOUNT_JSON")

    country_code = _str_env("DEFAULT_COUNTRY_CODE", "1").lstrip("+")
    if not country_code.isdigit():
        raise ConfigurationError(f"DEFAULT_COUNTRY_CODE must be digits: {country_code!r}")

    return Settings(
        sheet_id=sheet_id,
        leads_sheet_names=leads_sheet_names,
        locks_sheet_name=_str_env("LOCKS_SHEET_NAME", "Locks") or "Locks",
        settings_sheet_name=_str_env("SETTINGS_SHEET_NAME", "Settings") or "Settings",
        google_service_account_json=service_account_json,
        default_hold_minutes=min(
            MAX_HOLD_MINUTES, max(MIN_HOLD_MINUTES, _int_env("DEFAULT_HOLD_MINUTES", 60))
        ),
        flush_interval_ms=max(100, _int_env("FLUSH_INTERVAL_MS", 3000)),
        unlock_sweep_interval_ms=max(100, _int_env("UNLOCK_SWEEP_INTERVAL_MS", 15000)),
        cache_refresh_interval_ms=max(100, _int_env("CACHE_REFRESH_INTERVAL_MS", 30000)),
        admin_key=_str_env("ADMIN_KEY"),
        admin_jwt_secret=_str_env("ADMIN_JWT_SECRET"),
        jwt_algorithm=_str_env("JWT_ALGORITHM", "HS256") or "HS256",
        webhook_shared_secret=_str_env("WEBHOOK_SHARED_SECRET"),
        label_phone=label_phone,
        lock_after_calls=max(1, _int_env("LOCK_AFTER_CALLS", 2)),
        count_outbound=_bool_env("COUNT_OUTBOUND", True),
        count_inbound=_bool_env("COUNT_INBOUND", False),
        default_country_code=country_code,
        dedupe_ttl_seconds=max(1, _int_env("DEDUPE_TTL_SECONDS", 600)),
        scheduler_enabled=_bool_env("SCHEDULER_ENABLED", True),
        sheets_backend=sheets_backend,
        sheets_database_url=_str_env("SHEETS_DATABASE_URL", "sqlite:///data/leadlock.sqlite3"),
    )


def server_bind() -> tuple[str, int]:
    return _str_env("HOST", "0.0.0.0") or "0.0.0.0", _int_env("PORT", 3000)
