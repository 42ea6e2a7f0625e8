from __future__ import annotations

import json
import re
from dataclasses import dataclass
from threading import Lock
from typing import Any, Iterable, Optional, Protocol

from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from leadlock.services.retry import status_code_of, with_retry

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

Values = list[list[str]]


class SpreadsheetError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnknownTabError(SpreadsheetError):
    pass


@dataclass(frozen=True)
class ValueRange:
    range: str
    values: Values


@dataclass(frozen=True)
class RowVisibility:
    sheet_id: int
    row: int  # 1-based
    hidden: bool


class SpreadsheetClient(Protocol):
    """The slice of a spreadsheet API the lock service depends on.

    All writes use raw value input; reads return cell text with trailing empty
    rows and cells trimmed.
    """

    def get_sheet_ids(self) -> dict[str, int]: ...

    def batch_get(self, ranges: list[str]) -> list[Values]: ...

    def get_values(self, range_: str) -> Values: ...

    def update_values(self, range_: str, values: Values) -> None: ...

    def batch_update_values(self, data: list[ValueRange]) -> None: ...

    def append_values(self, range_: str, rows: Values) -> None: ...

    def set_rows_hidden(self, changes: list[RowVisibility]) -> None: ...


# ---------------------------------------------------------------------------
# A1 notation


@dataclass(frozen=True)
class A1Range:
    sheet: str
    start_col: Optional[int] = None
    start_row: Optional[int] = None
    end_col: Optional[int] = None
    end_row: Optional[int] = None


_CELLS = re.compile(r"^([A-Za-z]+)?(\d+)?(?::([A-Za-z]+)?(\d+)?)?$")


def quote_sheet_name(name: str) -> str:
    return "'" + name.replace("'", "''") + "'"


def a1(sheet: str, cells: str) -> str:
    return f"{quote_sheet_name(sheet)}!{cells}"


def column_letter(index: int) -> str:
    """1 -> A, 26 -> Z, 27 -> AA."""
    if index < 1:
        raise ValueError("column index is 1-based")
    letters = ""
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def column_index(letters: str) -> int:
    index = 0
    for char in letters.upper():
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index


def _split_sheet(text: str) -> tuple[str, str]:
    if text.startswith("'"):
        name_chars: list[str] = []
        position = 1
        while position < len(text):
            char = text[position]
            if char == "'":
                if text[position + 1 : position + 2] == "'":
                    name_chars.append("'")
                    position += 2
                    continue
                break
            name_chars.append(char)
            position += 1
        rest = text[position + 1 :]
        if rest.startswith("!"):
            return "".join(name_chars), rest[1:]
        return "".join(name_chars), ""
    if "!" in text:
        sheet, cells = text.rsplit("!", 1)
        return sheet, cells
    return text, ""


def parse_a1(text: str) -> A1Range:
    sheet, cells = _split_sheet(text.strip())
    if not cells:
        return A1Range(sheet=sheet)
    match = _CELLS.match(cells)
    if not match:
        raise ValueError(f"unsupported A1 range: {text}")
    start_col, start_row, end_col, end_row = match.groups()
    is_span = ":" in cells
    start = A1Range(
        sheet=sheet,
        start_col=column_index(start_col) if start_col else None,
        start_row=int(start_row) if start_row else None,
    )
    if not is_span:
        return A1Range(
            sheet=sheet,
            start_col=start.start_col,
            start_row=start.start_row,
            end_col=start.start_col,
            end_row=start.start_row,
        )
    return A1Range(
        sheet=sheet,
        start_col=start.start_col,
        start_row=start.start_row,
        end_col=column_index(end_col) if end_col else None,
        end_row=int(end_row) if end_row else None,
    )


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def normalize_values(rows: Optional[Iterable[Iterable[Any]]]) -> Values:
    return [[cell_text(cell) for cell in row] for row in (rows or [])]


# ---------------------------------------------------------------------------
# Tab id lookup


class TabDirectory:
    """Caches tab name -> tab id, refetching spreadsheet metadata on a miss."""

    def __init__(self, client: SpreadsheetClient) -> None:
        self._client = client
        self._lock = Lock()
        self._ids: dict[str, int] = {}

    def tab_id(self, title: str) -> int:
        with self._lock:
            cached = self._ids.get(title)
        if cached is not None:
            return cached
        ids = self._client.get_sheet_ids()
        if title not in ids:
            raise UnknownTabError(f"Sheet not found: {title}", status_code=404)
        with self._lock:
            self._ids.update(ids)
        return ids[title]

    def invalidate(self, titles: Iterable[str]) -> None:
        with self._lock:
            for title in titles:
                self._ids.pop(title, None)


# ---------------------------------------------------------------------------
# Google Sheets v4


class GoogleSheetsClient:
    """Sheets API v4 client authenticated with a service account."""

    def __init__(
        self,
        spreadsheet_id: str,
        service_account_json: str,
        *,
        retry_tries: int = 5,
        retry_base_delay_seconds: float = 0.25,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self._service_account_json = service_account_json
        self._retry_tries = retry_tries
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._service: Any = None
        self._lock = Lock()
        # httplib2 connections are not thread-safe; one request at a time.
        self._request_lock = Lock()

    def _spreadsheets(self) -> Any:
        with self._lock:
            if self._service is None:
                try:
                    info = json.loads(self._service_account_json)
                    credentials = Credentials.from_service_account_info(info, scopes=SCOPES)
                except ValueError as exc:
                    raise SpreadsheetError(f"invalid service account credentials: {exc}") from exc
                self._service = build(
                    "sheets", "v4", credentials=credentials, cache_discovery=False
                )
            return self._service.spreadsheets()

    def _execute(self, request: Any) -> dict:
        def attempt() -> Any:
            with self._request_lock:
                return request.execute()

        try:
            return with_retry(
                attempt,
                tries=self._retry_tries,
                base_delay_seconds=self._retry_base_delay_seconds,
            ) or {}
        except HttpError as exc:
            raise SpreadsheetError(
                f"sheets api error: {exc}", status_code=status_code_of(exc)
            ) from exc
        except (GoogleAuthError, OSError) as exc:
            raise SpreadsheetError(f"sheets transport error: {exc}") from exc

    def get_sheet_ids(self) -> dict[str, int]:
        meta = self._execute(
            self._spreadsheets().get(
                spreadsheetId=self.spreadsheet_id,
                fields="sheets.properties(sheetId,title)",
            )
        )
        ids: dict[str, int] = {}
        for sheet in meta.get("sheets", []):
            properties = sheet.get("properties", {})
            if "title" in properties:
                ids[properties["title"]] = int(properties.get("sheetId", 0))
        return ids

    def batch_get(self, ranges: list[str]) -> list[Values]:
        if not ranges:
            return []
        response = self._execute(
            self._spreadsheets()
            .values()
            .batchGet(spreadsheetId=self.spreadsheet_id, ranges=ranges)
        )
        value_ranges = response.get("valueRanges", [])
        output = [normalize_values(item.get("values")) for item in value_ranges]
        output.extend([] for _ in range(len(ranges) - len(output)))
        return output

    def get_values(self, range_: str) -> Values:
        response = self._execute(
            self._spreadsheets().values().get(spreadsheetId=self.spreadsheet_id, range=range_)
        )
        return normalize_values(response.get("values"))

    def update_values(self, range_: str, values: Values) -> None:
        self._execute(
            self._spreadsheets()
            .values()
            .update(
                spreadsheetId=self.spreadsheet_id,
                range=range_,
                valueInputOption="RAW",
                body={"values": values},
            )
        )

    def batch_update_values(self, data: list[ValueRange]) -> None:
        if not data:
            return
        self._execute(
            self._spreadsheets()
            .values()
            .batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={
                    "valueInputOption": "RAW",
                    "data": [{"range": item.range, "values": item.values} for item in data],
                },
            )
        )

    def append_values(self, range_: str, rows: Values) -> None:
        if not rows:
            return
        self._execute(
            self._spreadsheets()
            .values()
            .append(
                spreadsheetId=self.spreadsheet_id,
                range=range_,
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": rows},
            )
        )

    def set_rows_hidden(self, changes: list[RowVisibility]) -> None:
        if not changes:
            return
        requests = [
            {
                "updateDimensionProperties": {
                    "range": {
                        "sheetId": change.sheet_id,
                        "dimension": "ROWS",
                        "startIndex": change.row - 1,
                        "endIndex": change.row,
                    },
                    "properties": {"hiddenByUser": change.hidden},
                    "fields": "hiddenByUser",
                }
            }
            for change in changes
        ]
        self._execute(
            self._spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id, body={"requests": requests}
            )
        )
