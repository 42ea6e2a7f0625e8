from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Optional, Sequence

from leadlock.models import LeadLocation
from leadlock.services.phones import normalize_phone
from leadlock.services.sheets import SpreadsheetClient, TabDirectory, Values, a1

logger = logging.getLogger("leadlock")

LEADS_COLUMNS = "A:Z"


class LeadsIndexError(Exception):
    pass


class LeadsIndex:
    """
    Phone -> (tab, row) snapshot of the configured lead tabs.

    Each tab is scanned into its own phone -> row map; the public view merges
    them in configured tab order so the first occurrence of a phone wins, even
    after a single tab is refreshed on its own. Readers always see either the
    previous or the new merged map, never a partial one.
    """

    def __init__(
        self,
        client: SpreadsheetClient,
        sheet_names: Sequence[str],
        *,
        phone_label: str,
        default_country_code: str = "1",
        tabs: Optional[TabDirectory] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.sheet_names = tuple(sheet_names)
        self.phone_label = phone_label
        self.default_country_code = default_country_code
        self.tabs = tabs or TabDirectory(client)
        self._clock = clock
        self._lock = Lock()
        self._by_tab: dict[str, dict[str, int]] = {}
        self._locations: dict[str, LeadLocation] = {}
        self._loaded_at = 0.0

    @property
    def loaded_at(self) -> float:
        return self._loaded_at

    @property
    def is_loaded(self) -> bool:
        return self._loaded_at > 0

    def __len__(self) -> int:
        return len(self._locations)

    def lookup(self, phone: str) -> Optional[LeadLocation]:
        return self._locations.get(phone)

    def snapshot(self) -> dict[str, LeadLocation]:
        return dict(self._locations)

    def ensure_loaded(self) -> None:
        if not self.is_loaded:
            self.refresh()

    def refresh(self, sheet_name: Optional[str] = None) -> int:
        """Rescan one tab (or every configured tab) and return the indexed phone count."""
        if sheet_name is not None and sheet_name not in self.sheet_names:
            raise LeadsIndexError(f"Unknown leads sheet: {sheet_name}")
        if not self.is_loaded:
            # A partial first load would mark the index loaded with other tabs missing.
            sheet_name = None
        targets = [sheet_name] if sheet_name else list(self.sheet_names)

        self.tabs.invalidate(targets)
        results = self._client.batch_get([a1(name, LEADS_COLUMNS) for name in targets])
        scanned = {
            name: self._scan(name, values) for name, values in zip(targets, results)
        }

        with self._lock:
            by_tab = dict(self._by_tab) if sheet_name else {}
            by_tab.update(scanned)
            merged = self._merge(by_tab)
            self._by_tab = by_tab
            self._locations = merged
            self._loaded_at = self._clock()
        logger.info(
            "leads_index_refreshed sheets=%s phones=%s", ",".join(targets), len(merged)
        )
        return len(merged)

    def _scan(self, sheet_name: str, values: Values) -> dict[str, int]:
        header = values[0] if values else []
        phone_col: Optional[int] = None
        for position, label in enumerate(header):
            if str(label).strip() == self.phone_label:
                phone_col = position
                break
        if phone_col is None:
            raise LeadsIndexError(
                f'Leads header not found in "{sheet_name}": "{self.phone_label}"'
            )

        rows: dict[str, int] = {}
        for offset, row in enumerate(values[1:], start=2):
            raw = row[phone_col] if phone_col < len(row) else None
            phone = normalize_phone(raw, self.default_country_code)
            if phone and phone not in rows:
                rows[phone] = offset
        return rows

    def _merge(self, by_tab: dict[str, dict[str, int]]) -> dict[str, LeadLocation]:
        merged: dict[str, LeadLocation] = {}
        for name in self.sheet_names:
            for phone, row in by_tab.get(name, {}).items():
                if phone not in merged:
                    merged[phone] = LeadLocation(sheet_name=name, row=row)
        return merged
