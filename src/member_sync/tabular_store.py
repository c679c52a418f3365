"""member_sync.tabular_store

Validated read/write of 2D row sets to named tables.

TabularStore holds the row-shape rules and the member mapping; the sheet
primitives (create-if-absent, full read, clear, append one row, bulk-set a
block at a 1-based row/column offset) come from a SheetBackend:

  - InMemorySheetBackend  : dict of row lists (tests, dry runs)
  - CsvSheetBackend       : one <name>.csv per table in a local directory
  - PostgresSheetBackend  : tabular_table / tabular_row (JSONB cells),
                            schema in migrations/0001_tabular_store.sql

Writes are destructive: clear, append the header row, then bulk-set the
remaining rows starting at row 2, column 1. The three steps run inside the
backend's transaction(handle), so a failure part way leaves the previous
contents in place. There is no locking; runs must not overlap.
"""

from __future__ import annotations

import csv
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ContextManager, Iterator, Protocol, Sequence

import psycopg
from psycopg.types.json import Jsonb

from member_sync.shared import MEMBER_HEADER, Member, ShapeError

log = logging.getLogger(__name__)

DEFAULT_TABLE = "members"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z0-9_.\- ]+$")


@dataclass(frozen=True)
class TableHandle:
    name: str
    key: Any = None


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class SheetBackend(Protocol):
    def find_table(self, name: str) -> TableHandle | None:
        ...

    def create_table(self, name: str) -> TableHandle:
        ...

    def get_values(self, handle: TableHandle) -> list[list[Any]]:
        """Return every row of the table, header included."""
        ...

    def clear(self, handle: TableHandle) -> None:
        ...

    def append_row(self, handle: TableHandle, row: Sequence[Any]) -> None:
        ...

    def set_values(
        self,
        handle: TableHandle,
        start_row: int,
        start_col: int,
        block: Sequence[Sequence[Any]],
    ) -> None:
        """Overwrite a block of cells; start_row/start_col are 1-based."""
        ...

    def transaction(self, handle: TableHandle) -> ContextManager[None]:
        """Group calls on handle; on error the table is left as it was."""
        ...


def _overlay(
    values: list[list[Any]],
    start_row: int,
    start_col: int,
    block: Sequence[Sequence[Any]],
) -> None:
    """Write block into values in place, padding with empty rows/cells."""
    if start_row < 1 or start_col < 1:
        raise ValueError("start_row and start_col are 1-based")
    for offset, block_row in enumerate(block):
        idx = start_row - 1 + offset
        while len(values) <= idx:
            values.append([])
        row = values[idx]
        end = start_col - 1 + len(block_row)
        if len(row) < end:
            row.extend([""] * (end - len(row)))
        row[start_col - 1:end] = list(block_row)


class InMemorySheetBackend:
    """Dict-backed tables. Used by unit tests and dry runs."""

    def __init__(self, tables: dict[str, list[list[Any]]] | None = None) -> None:
        self.tables: dict[str, list[list[Any]]] = tables if tables is not None else {}

    def find_table(self, name: str) -> TableHandle | None:
        return TableHandle(name, name) if name in self.tables else None

    def create_table(self, name: str) -> TableHandle:
        self.tables.setdefault(name, [])
        return TableHandle(name, name)

    def get_values(self, handle: TableHandle) -> list[list[Any]]:
        return [list(r) for r in self.tables[handle.key]]

    def clear(self, handle: TableHandle) -> None:
        self.tables[handle.key] = []

    def append_row(self, handle: TableHandle, row: Sequence[Any]) -> None:
        self.tables[handle.key].append(list(row))

    def set_values(
        self,
        handle: TableHandle,
        start_row: int,
        start_col: int,
        block: Sequence[Sequence[Any]],
    ) -> None:
        _overlay(self.tables[handle.key], start_row, start_col, block)

    @contextmanager
    def transaction(self, handle: TableHandle) -> Iterator[None]:
        snapshot = self.get_values(handle)
        try:
            yield
        except BaseException:
            self.tables[handle.key] = snapshot
            raise


class CsvSheetBackend:
    """One CSV file per table under base_dir.

    Full rewrites go through a temporary file in the same directory and
    os.replace, so a reader never sees a half-written table.
    """

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)

    def _path(self, name: str) -> Path:
        if not _TABLE_NAME_RE.match(name):
            raise ValueError(f"table name not usable as a file name: {name!r}")
        return self._base_dir / f"{name}.csv"

    def _read(self, path: Path) -> list[list[Any]]:
        with open(path, newline="", encoding="utf-8") as fh:
            return [row for row in csv.reader(fh)]

    def _write(self, path: Path, values: list[list[Any]]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent,
        )
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as fh:
                csv.writer(fh).writerows(values)
            os.replace(tmp_name, path)
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def find_table(self, name: str) -> TableHandle | None:
        path = self._path(name)
        return TableHandle(name, path) if path.exists() else None

    def create_table(self, name: str) -> TableHandle:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        return TableHandle(name, path)

    def get_values(self, handle: TableHandle) -> list[list[Any]]:
        return self._read(handle.key)

    def clear(self, handle: TableHandle) -> None:
        self._write(handle.key, [])

    def append_row(self, handle: TableHandle, row: Sequence[Any]) -> None:
        with open(handle.key, "a", newline="", encoding="utf-8") as fh:
            csv.writer(fh).writerow(list(row))

    def set_values(
        self,
        handle: TableHandle,
        start_row: int,
        start_col: int,
        block: Sequence[Sequence[Any]],
    ) -> None:
        values = self._read(handle.key)
        _overlay(values, start_row, start_col, block)
        self._write(handle.key, values)

    @contextmanager
    def transaction(self, handle: TableHandle) -> Iterator[None]:
        snapshot = self._read(handle.key)
        try:
            yield
        except BaseException:
            log.warning("Restoring %s after failed write", handle.key)
            self._write(handle.key, snapshot)
            raise


class PostgresSheetBackend:
    """Named tables stored as JSONB rows in PostgreSQL.

    Every public method runs inside conn.transaction(): it commits on
    success and rolls back on error. Inside an outer transaction() block the
    calls become savepoints and nothing is committed until the block exits.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @classmethod
    def connect(cls, dsn: str) -> PostgresSheetBackend:
        return cls(psycopg.connect(dsn, autocommit=False))

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, handle: TableHandle) -> Iterator[None]:
        with self._conn.transaction():
            yield

    def find_table(self, name: str) -> TableHandle | None:
        with self._conn.transaction():
            row = self._conn.execute(
                "SELECT id FROM tabular_table WHERE name = %s",
                (name,),
            ).fetchone()
        return TableHandle(name, row[0]) if row else None

    def create_table(self, name: str) -> TableHandle:
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO tabular_table (name)
                VALUES (%s)
                ON CONFLICT (name) DO NOTHING
                """,
                (name,),
            )
            row = self._conn.execute(
                "SELECT id FROM tabular_table WHERE name = %s",
                (name,),
            ).fetchone()
        return TableHandle(name, row[0])

    def get_values(self, handle: TableHandle) -> list[list[Any]]:
        with self._conn.transaction():
            rows = self._conn.execute(
                """
                SELECT row_index, cells FROM tabular_row
                WHERE table_id = %s
                ORDER BY row_index ASC
                """,
                (handle.key,),
            ).fetchall()
        values: list[list[Any]] = []
        for row_index, cells in rows:
            while len(values) < row_index - 1:
                values.append([])
            values.append(list(cells))
        return values

    def clear(self, handle: TableHandle) -> None:
        with self._conn.transaction():
            self._conn.execute("DELETE FROM tabular_row WHERE table_id = %s", (handle.key,))

    def append_row(self, handle: TableHandle, row: Sequence[Any]) -> None:
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO tabular_row (table_id, row_index, cells)
                SELECT %s, COALESCE(MAX(row_index), 0) + 1, %s
                FROM tabular_row WHERE table_id = %s
                """,
                (handle.key, Jsonb(list(row)), handle.key),
            )

    def set_values(
        self,
        handle: TableHandle,
        start_row: int,
        start_col: int,
        block: Sequence[Sequence[Any]],
    ) -> None:
        if not block:
            return
        end_row = start_row + len(block) - 1
        with self._conn.transaction():
            existing = {
                r[0]: list(r[1])
                for r in self._conn.execute(
                    """
                    SELECT row_index, cells FROM tabular_row
                    WHERE table_id = %s AND row_index BETWEEN %s AND %s
                    """,
                    (handle.key, start_row, end_row),
                ).fetchall()
            }
            window = [existing.get(i, []) for i in range(start_row, end_row + 1)]
            _overlay(window, 1, start_col, block)
            with self._conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO tabular_row (table_id, row_index, cells)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (table_id, row_index) DO UPDATE SET
                      cells = EXCLUDED.cells
                    """,
                    [
                        (handle.key, start_row + i, Jsonb(cells))
                        for i, cells in enumerate(window)
                    ],
                )


def _is_postgres_dsn(location: str) -> bool:
    return (
        location.startswith(("postgresql://", "postgres://"))
        or "dbname=" in location
    )


def open_backend(location: str) -> SheetBackend:
    """Pick a backend from a store location string.

    postgresql:// or postgres:// URIs and libpq key=value DSNs open
    PostgreSQL; "memory:" gives an empty in-memory backend; anything else
    is a local directory of CSV files.
    """
    if _is_postgres_dsn(location):
        return PostgresSheetBackend.connect(location)
    if location == "memory:":
        return InMemorySheetBackend()
    return CsvSheetBackend(Path(location))


# ---------------------------------------------------------------------------
# TabularStore
# ---------------------------------------------------------------------------

class TabularStore:
    """Shape-validated table access plus the Member row mapping."""

    def __init__(self, backend: SheetBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> SheetBackend:
        return self._backend

    def get_or_create_table(self, name: str) -> TableHandle:
        if not name:
            raise ValueError("table name must be non-empty")
        handle = self._backend.find_table(name)
        if handle is None:
            log.info("Creating table %s", name)
            handle = self._backend.create_table(name)
        return handle

    @staticmethod
    def validate(rows: Any) -> None:
        """Raise ShapeError unless rows is a rectangular list of rows."""
        if not isinstance(rows, (list, tuple)):
            raise ShapeError(f"rows must be a list of rows, got {type(rows).__name__}")
        if not rows:
            return
        for i, row in enumerate(rows):
            if not isinstance(row, (list, tuple)):
                raise ShapeError(f"row {i} is not a row: {type(row).__name__}")
        width = len(rows[0])
        for i, row in enumerate(rows):
            if len(row) != width:
                raise ShapeError(
                    f"row {i} has {len(row)} cells; expected {width} (rows must be rectangular)"
                )

    def write(self, rows: Sequence[Sequence[Any]], table_name: str) -> None:
        """Replace the table contents with rows (rows[0] is the header).

        All-or-nothing: if any step fails the stored rows are unchanged.
        """
        self.validate(rows)
        handle = self.get_or_create_table(table_name)
        with self._backend.transaction(handle):
            self._backend.clear(handle)
            if not rows:
                return
            self._backend.append_row(handle, rows[0])
            if len(rows) > 1:
                self._backend.set_values(handle, 2, 1, rows[1:])

    def read_all(self, table_name: str) -> list[list[Any]]:
        """Return all rows except the header; [] for an empty or header-only table."""
        handle = self.get_or_create_table(table_name)
        values = self._backend.get_values(handle)
        if len(values) <= 1:
            return []
        return values[1:]

    def write_members(
        self,
        members: Sequence[Member],
        table_name: str = DEFAULT_TABLE,
    ) -> int:
        """Write header + one row per complete member. Returns rows written."""
        rows: list[list[str]] = [list(MEMBER_HEADER)]
        for member in members:
            if not isinstance(member, Member) or not member.is_complete():
                log.warning("Skipping incomplete member row: %r", member)
                continue
            rows.append(member.to_row())
        self.write(rows, table_name)
        return len(rows) - 1

    def read_members(self, table_name: str = DEFAULT_TABLE) -> list[Member]:
        return [Member.from_row(row) for row in self.read_all(table_name)]
