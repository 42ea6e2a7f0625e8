from __future__ import annotations

import logging
from typing import Optional

from leadlock.services.sheets import SpreadsheetClient, Values, a1
from leadlock.store import HoldMinutesError, HoldMinutesOverlay, validate_hold_minutes

logger = logging.getLogger("leadlock")

SETTINGS_RANGE = "A1:B2000"
HEADER = ["LeadSheet", "HoldMinutes"]


def _cell(rows: Values, row: int, col: int) -> str:
    if row < len(rows) and col < len(rows[row]):
        return str(rows[row][col]).strip()
    return ""


def has_table_header(rows: Values) -> bool:
    return (
        _cell(rows, 0, 0).lower() == HEADER[0].lower()
        and _cell(rows, 0, 1).lower() == HEADER[1].lower()
    )


def _minutes_or_none(raw: str) -> Optional[float]:
    if not raw:
        return None
    try:
        return validate_hold_minutes(raw)
    except HoldMinutesError:
        return None


class HoldSettingsStore:
    """
    Cooldown minutes persisted in the Settings tab.

    Two layouts are understood. The table layout has ``LeadSheet | HoldMinutes``
    in row 1 and one tab per row below it. The legacy layout keeps a single
    global value in ``A2``; it is only consulted while the table header is absent.
    """

    def __init__(
        self,
        client: SpreadsheetClient,
        sheet_name: str,
        holds: HoldMinutesOverlay,
    ) -> None:
        self._client = client
        self.sheet_name = sheet_name
        self.holds = holds

    def _read(self) -> Values:
        return self._client.get_values(a1(self.sheet_name, SETTINGS_RANGE))

    def load(self) -> None:
        rows = self._read()
        if has_table_header(rows):
            by_sheet: dict[str, float] = {}
            for index in range(1, len(rows)):
                name = _cell(rows, index, 0)
                raw = _cell(rows, index, 1)
                minutes = _minutes_or_none(raw)
                if name and minutes is not None:
                    by_sheet[name] = minutes
                elif name:
                    logger.warning(
                        "hold_settings_row_ignored sheet=%s row=%s value=%r", name, index + 1, raw
                    )
            self.holds.replace_sheets(by_sheet)
            logger.info("hold_settings_loaded layout=table sheets=%s", len(by_sheet))
            return

        self.holds.replace_sheets({})
        legacy = _minutes_or_none(_cell(rows, 1, 0))
        if legacy is not None:
            self.holds.set_default(legacy)
        logger.info(
            "hold_settings_loaded layout=legacy default_minutes=%s", self.holds.default_minutes
        )

    def save(self, minutes: object, sheet_name: Optional[str] = None) -> bool:
        """Apply ``minutes`` to the overlay, then persist it; False when nothing was written."""
        value = validate_hold_minutes(minutes)
        if sheet_name:
            self.holds.set_sheet(sheet_name, value)
            return self._save_for_sheet(value, sheet_name)
        self.holds.set_default(value)
        return self._save_default(value)

    def _save_for_sheet(self, minutes: float, sheet_name: str) -> bool:
        rows = self._read()
        wrote = False
        if not has_table_header(rows):
            self._client.update_values(a1(self.sheet_name, "A1:B1"), [list(HEADER)])
            wrote = True

        for index in range(1, len(rows)):
            if _cell(rows, index, 0) != sheet_name:
                continue
            if _cell(rows, index, 1) == str(minutes):
                return wrote
            self._client.update_values(a1(self.sheet_name, f"B{index + 1}"), [[str(minutes)]])
            return True

        self._client.append_values(a1(self.sheet_name, "A:B"), [[sheet_name, str(minutes)]])
        return True

    def _save_default(self, minutes: float) -> bool:
        rows = self._read()
        if has_table_header(rows):
            logger.warning(
                "hold_settings_default_not_persisted minutes=%s reason=table_layout", minutes
            )
            return False
        if _cell(rows, 1, 0) == str(minutes):
            return False
        self._client.update_values(a1(self.sheet_name, "A2"), [[str(minutes)]])
        return True
