from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from leadlock.services.sheets import (
    A1Range,
    RowVisibility,
    SpreadsheetError,
    ValueRange,
    Values,
    cell_text,
    parse_a1,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value in {"", ":memory:", "sqlite://", "sqlite:///:memory:"}:
        return "sqlite://"
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqliteWorkbook:
    """
    A spreadsheet kept in a SQL database, for running the service without Google.

    Implements the same client contract as ``GoogleSheetsClient``: tabs with ids,
    A1-addressed cell reads and writes, insert-rows appends, and row visibility.
    Any SQLAlchemy URL works; the name reflects the default backend.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        engine_options: dict = {"future": True}
        if self.database_url == "sqlite://":
            engine_options.update(
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine_options["pool_pre_ping"] = True
        self.engine: Engine = create_engine(self.database_url, **engine_options)
        self.metadata = MetaData()
        self.tabs = Table(
            "tabs",
            self.metadata,
            Column("sheet_id", Integer, primary_key=True, autoincrement=False),
            Column("title", String(255), nullable=False, unique=True),
        )
        self.cells = Table(
            "cells",
            self.metadata,
            Column("sheet_id", Integer, primary_key=True),
            Column("row_index", Integer, primary_key=True),
            Column("col_index", Integer, primary_key=True),
            Column("value", Text, nullable=False),
        )
        self.row_properties = Table(
            "row_properties",
            self.metadata,
            Column("sheet_id", Integer, primary_key=True),
            Column("row_index", Integer, primary_key=True),
            Column("hidden", Integer, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    # -- tabs -----------------------------------------------------------------

    def add_tab(self, title: str) -> int:
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.tabs.c.sheet_id).where(self.tabs.c.title == title)
                ).first()
                if existing:
                    return int(existing.sheet_id)
                highest = conn.execute(select(func.max(self.tabs.c.sheet_id))).scalar()
                sheet_id = (highest or 0) + 1
                conn.execute(self.tabs.insert().values(sheet_id=sheet_id, title=title))
                return sheet_id

    def get_sheet_ids(self) -> dict[str, int]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.tabs.c.title, self.tabs.c.sheet_id)).all()
        return {row.title: int(row.sheet_id) for row in rows}

    def _sheet_id(self, conn: Connection, title: str) -> int:
        row = conn.execute(select(self.tabs.c.sheet_id).where(self.tabs.c.title == title)).first()
        if not row:
            raise SpreadsheetError(f"Unable to parse range: {title}", status_code=400)
        return int(row.sheet_id)

    @staticmethod
    def _parse(range_: str) -> A1Range:
        try:
            return parse_a1(range_)
        except ValueError as exc:
            raise SpreadsheetError(str(exc), status_code=400) from exc

    # -- reads ----------------------------------------------------------------

    def _read(self, conn: Connection, target: A1Range) -> Values:
        sheet_id = self._sheet_id(conn, target.sheet)
        start_row = target.start_row or 1
        start_col = target.start_col or 1
        conditions = [self.cells.c.sheet_id == sheet_id, self.cells.c.row_index >= start_row]
        conditions.append(self.cells.c.col_index >= start_col)
        if target.end_row is not None:
            conditions.append(self.cells.c.row_index <= target.end_row)
        if target.end_col is not None:
            conditions.append(self.cells.c.col_index <= target.end_col)
        rows = conn.execute(
            select(self.cells.c.row_index, self.cells.c.col_index, self.cells.c.value).where(
                and_(*conditions)
            )
        ).all()

        by_row: dict[int, dict[int, str]] = {}
        for row in rows:
            if row.value != "":
                by_row.setdefault(int(row.row_index), {})[int(row.col_index)] = row.value
        if not by_row:
            return []
        output: Values = []
        for row_number in range(start_row, max(by_row) + 1):
            cells = by_row.get(row_number, {})
            if not cells:
                output.append([])
                continue
            width = max(cells) - start_col + 1
            output.append([cells.get(start_col + offset, "") for offset in range(width)])
        return output

    def get_values(self, range_: str) -> Values:
        target = self._parse(range_)
        with self._lock:
            with self.engine.connect() as conn:
                return self._read(conn, target)

    def batch_get(self, ranges: list[str]) -> list[Values]:
        targets = [self._parse(range_) for range_ in ranges]
        with self._lock:
            with self.engine.connect() as conn:
                return [self._read(conn, target) for target in targets]

    # -- writes ---------------------------------------------------------------

    def _write_cell(self, conn: Connection, sheet_id: int, row: int, col: int, value: str) -> None:
        key = and_(
            self.cells.c.sheet_id == sheet_id,
            self.cells.c.row_index == row,
            self.cells.c.col_index == col,
        )
        if value == "":
            conn.execute(self.cells.delete().where(key))
            return
        existing = conn.execute(select(self.cells.c.value).where(key)).first()
        if existing:
            conn.execute(self.cells.update().where(key).values(value=value))
        else:
            conn.execute(
                self.cells.insert().values(
                    sheet_id=sheet_id, row_index=row, col_index=col, value=value
                )
            )

    def _write(self, conn: Connection, target: A1Range, values: Values) -> None:
        sheet_id = self._sheet_id(conn, target.sheet)
        start_row = target.start_row or 1
        start_col = target.start_col or 1
        for row_offset, row_values in enumerate(values):
            for col_offset, value in enumerate(row_values):
                self._write_cell(
                    conn, sheet_id, start_row + row_offset, start_col + col_offset, cell_text(value)
                )

    def update_values(self, range_: str, values: Values) -> None:
        target = self._parse(range_)
        with self._lock:
            with self.engine.begin() as conn:
                self._write(conn, target, values)

    def batch_update_values(self, data: list[ValueRange]) -> None:
        targets = [(self._parse(item.range), item.values) for item in data]
        with self._lock:
            with self.engine.begin() as conn:
                for target, values in targets:
                    self._write(conn, target, values)

    def _shift_rows_down(self, conn: Connection, sheet_id: int, after_row: int, count: int) -> None:
        # Two passes through negative row numbers keep the primary key unique mid-update.
        for table in (self.cells, self.row_properties):
            moving = and_(table.c.sheet_id == sheet_id, table.c.row_index > after_row)
            conn.execute(
                table.update().where(moving).values(row_index=-(table.c.row_index + count))
            )
            conn.execute(
                table.update()
                .where(and_(table.c.sheet_id == sheet_id, table.c.row_index < 0))
                .values(row_index=-table.c.row_index)
            )

    def append_values(self, range_: str, rows: Values) -> None:
        if not rows:
            return
        target = self._parse(range_)
        with self._lock:
            with self.engine.begin() as conn:
                sheet_id = self._sheet_id(conn, target.sheet)
                conditions = [self.cells.c.sheet_id == sheet_id]
                if target.start_col is not None:
                    conditions.append(self.cells.c.col_index >= target.start_col)
                if target.end_col is not None:
                    conditions.append(self.cells.c.col_index <= target.end_col)
                last_row = conn.execute(
                    select(func.max(self.cells.c.row_index)).where(and_(*conditions))
                ).scalar()
                last_row = max(last_row or 0, (target.start_row or 1) - 1)
                self._shift_rows_down(conn, sheet_id, last_row, len(rows))
                self._write(
                    conn,
                    A1Range(sheet=target.sheet, start_col=target.start_col, start_row=last_row + 1),
                    rows,
                )

    def insert_rows(self, title: str, before_row: int, count: int = 1) -> None:
        """Insert blank rows so that ``before_row`` and everything below move down."""
        with self._lock:
            with self.engine.begin() as conn:
                sheet_id = self._sheet_id(conn, title)
                self._shift_rows_down(conn, sheet_id, before_row - 1, count)

    # -- row visibility -------------------------------------------------------

    def set_rows_hidden(self, changes: list[RowVisibility]) -> None:
        if not changes:
            return
        with self._lock:
            with self.engine.begin() as conn:
                known = {
                    int(row.sheet_id)
                    for row in conn.execute(select(self.tabs.c.sheet_id)).all()
                }
                for change in changes:
                    if change.sheet_id not in known:
                        raise SpreadsheetError(
                            f"No grid with id: {change.sheet_id}", status_code=400
                        )
                    key = and_(
                        self.row_properties.c.sheet_id == change.sheet_id,
                        self.row_properties.c.row_index == change.row,
                    )
                    existing = conn.execute(select(self.row_properties.c.hidden).where(key)).first()
                    hidden = 1 if change.hidden else 0
                    if existing:
                        conn.execute(self.row_properties.update().where(key).values(hidden=hidden))
                    else:
                        conn.execute(
                            self.row_properties.insert().values(
                                sheet_id=change.sheet_id, row_index=change.row, hidden=hidden
                            )
                        )

    def hidden_rows(self, title: str) -> set[int]:
        with self._lock:
            with self.engine.connect() as conn:
                sheet_id = self._sheet_id(conn, title)
                rows = conn.execute(
                    select(self.row_properties.c.row_index).where(
                        and_(
                            self.row_properties.c.sheet_id == sheet_id,
                            self.row_properties.c.hidden == 1,
                        )
                    )
                ).all()
        return {int(row.row_index) for row in rows}


def open_workbook(database_url: str, titles: Optional[list[str]] = None) -> SqliteWorkbook:
    workbook = SqliteWorkbook(database_url)
    for title in titles or []:
        workbook.add_tab(title)
    return workbook
