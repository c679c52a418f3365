"""Unit tests for TabularStore and the in-memory / CSV backends.

No database required.
"""

from __future__ import annotations

import csv

import pytest

from member_sync.shared import Identity, Member, ShapeError
from member_sync.tabular_store import (
    CsvSheetBackend,
    InMemorySheetBackend,
    PostgresSheetBackend,
    TabularStore,
    open_backend,
)


def _member(mid: str, short_id: str, name: str) -> Member:
    return Member(mid, Identity(short_id, name))


@pytest.fixture()
def backend():
    return InMemorySheetBackend()


@pytest.fixture()
def store(backend):
    return TabularStore(backend)


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------

class TestValidate:
    def test_ragged_rows_raise(self):
        with pytest.raises(ShapeError, match="rectangular"):
            TabularStore.validate([["a", "b"], ["c"]])

    def test_empty_is_valid(self):
        TabularStore.validate([])

    def test_single_cell_is_valid(self):
        TabularStore.validate([["a"]])

    def test_tuples_accepted(self):
        TabularStore.validate((("a", "b"), ("c", "d")))

    def test_non_row_element_raises(self):
        with pytest.raises(ShapeError, match="not a row"):
            TabularStore.validate([["a"], "b"])

    def test_string_rows_are_not_rows(self):
        with pytest.raises(ShapeError):
            TabularStore.validate(["ab", "cd"])

    def test_non_sequence_raises(self):
        with pytest.raises(ShapeError):
            TabularStore.validate(None)


# ---------------------------------------------------------------------------
# get_or_create_table
# ---------------------------------------------------------------------------

class TestGetOrCreateTable:
    def test_creates_when_absent(self, store, backend):
        handle = store.get_or_create_table("members")
        assert handle.name == "members"
        assert backend.tables == {"members": []}

    def test_idempotent(self, store, backend):
        backend.tables["members"] = [["h"], ["x"]]
        store.get_or_create_table("members")
        store.get_or_create_table("members")
        assert backend.tables["members"] == [["h"], ["x"]]

    def test_empty_name_rejected(self, store):
        with pytest.raises(ValueError):
            store.get_or_create_table("")


# ---------------------------------------------------------------------------
# write / read_all
# ---------------------------------------------------------------------------

class TestWriteReadAll:
    def test_write_replaces_contents(self, store, backend):
        backend.tables["t"] = [["old"], ["1"], ["2"], ["3"]]
        store.write([["h1", "h2"], ["a", "b"]], "t")
        assert backend.tables["t"] == [["h1", "h2"], ["a", "b"]]

    def test_write_empty_clears(self, store, backend):
        backend.tables["t"] = [["h"], ["x"]]
        store.write([], "t")
        assert backend.tables["t"] == []

    def test_write_invalid_leaves_table_untouched(self, store, backend):
        backend.tables["t"] = [["h"], ["x"]]
        with pytest.raises(ShapeError):
            store.write([["a", "b"], ["c"]], "t")
        assert backend.tables["t"] == [["h"], ["x"]]

    def test_read_all_skips_header(self, store, backend):
        backend.tables["t"] = [["h1", "h2"], ["a", "b"], ["c", "d"]]
        assert store.read_all("t") == [["a", "b"], ["c", "d"]]

    def test_read_all_header_only(self, store, backend):
        backend.tables["t"] = [["h1", "h2"]]
        assert store.read_all("t") == []

    def test_read_all_missing_table_is_created_empty(self, store, backend):
        assert store.read_all("fresh") == []
        assert "fresh" in backend.tables

    def test_header_only_write(self, store, backend):
        store.write([["h1", "h2"]], "t")
        assert backend.tables["t"] == [["h1", "h2"]]

    def test_failed_bulk_set_keeps_previous_rows(self, store, backend, monkeypatch):
        backend.tables["t"] = [["h"], ["1"], ["2"]]

        def fail(*args, **kwargs):
            raise ConnectionError("store went away")

        monkeypatch.setattr(backend, "set_values", fail)
        with pytest.raises(ConnectionError):
            store.write([["h"], ["9"]], "t")
        assert backend.tables["t"] == [["h"], ["1"], ["2"]]

    def test_failed_header_append_keeps_previous_rows(self, store, backend, monkeypatch):
        backend.tables["t"] = [["h"], ["1"]]

        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(backend, "append_row", fail)
        with pytest.raises(OSError):
            store.write([["h"], ["9"]], "t")
        assert backend.tables["t"] == [["h"], ["1"]]


# ---------------------------------------------------------------------------
# write_members / read_members
# ---------------------------------------------------------------------------

class TestMembers:
    def test_header_and_rows(self, store, backend):
        written = store.write_members([_member("U1", "a", "Alice")])
        assert written == 1
        assert backend.tables["members"] == [
            ["memberId", "shortId", "displayName"],
            ["U1", "a", "Alice"],
        ]

    def test_round_trip(self, store):
        members = [
            _member("U2", "b", "Bob"),
            _member("U1", "a", "Alice"),
            _member("U3", "c", "Carol"),
        ]
        store.write_members(members)
        back = store.read_members()
        assert {m.member_id: m for m in back} == {m.member_id: m for m in members}

    def test_incomplete_members_skipped(self, store, backend):
        members = [
            _member("U1", "a", "Alice"),
            _member("", "b", "Bob"),
            _member("U3", "", "Carol"),
            _member("U4", "d", ""),
            Member("U5", None),
        ]
        written = store.write_members(members)
        assert written == 1
        assert backend.tables["members"][1:] == [["U1", "a", "Alice"]]

    def test_empty_members_writes_header_only(self, store, backend):
        assert store.write_members([]) == 0
        assert backend.tables["members"] == [["memberId", "shortId", "displayName"]]

    def test_custom_table_name(self, store, backend):
        store.write_members([_member("U1", "a", "Alice")], table_name="roster")
        assert store.read_members("roster") == [_member("U1", "a", "Alice")]
        assert "members" not in backend.tables

    def test_read_short_row_pads_blank(self, store, backend):
        backend.tables["members"] = [["memberId", "shortId", "displayName"], ["U1", "a"]]
        assert store.read_members() == [Member("U1", Identity("a", ""))]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class TestInMemoryBackend:
    def test_set_values_pads_rows_and_columns(self, backend):
        handle = backend.create_table("t")
        backend.append_row(handle, ["h1", "h2", "h3"])
        backend.set_values(handle, 3, 2, [["x", "y"]])
        assert backend.get_values(handle) == [["h1", "h2", "h3"], [], ["", "x", "y"]]

    def test_set_values_rejects_zero_offset(self, backend):
        handle = backend.create_table("t")
        with pytest.raises(ValueError):
            backend.set_values(handle, 0, 1, [["x"]])


class TestCsvBackend:
    def test_write_produces_csv_file(self, tmp_path):
        store = TabularStore(CsvSheetBackend(tmp_path))
        store.write_members([_member("U1", "a", "Alice"), _member("U2", "b", "Bob")])
        with open(tmp_path / "members.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.reader(fh))
        assert rows == [
            ["memberId", "shortId", "displayName"],
            ["U1", "a", "Alice"],
            ["U2", "b", "Bob"],
        ]

    def test_round_trip_across_instances(self, tmp_path):
        TabularStore(CsvSheetBackend(tmp_path)).write_members([_member("U1", "a", "Alice")])
        assert TabularStore(CsvSheetBackend(tmp_path)).read_members() == [
            _member("U1", "a", "Alice")
        ]

    def test_rewrite_does_not_append(self, tmp_path):
        store = TabularStore(CsvSheetBackend(tmp_path))
        store.write([["h"], ["1"], ["2"]], "t")
        store.write([["h"], ["3"]], "t")
        assert store.read_all("t") == [["3"]]

    def test_failed_write_restores_file(self, tmp_path, monkeypatch):
        backend = CsvSheetBackend(tmp_path)
        store = TabularStore(backend)
        store.write([["h"], ["1"], ["2"]], "t")

        def fail(*args, **kwargs):
            raise ConnectionError("store went away")

        monkeypatch.setattr(backend, "set_values", fail)
        with pytest.raises(ConnectionError):
            store.write([["h"], ["9"]], "t")
        assert store.read_all("t") == [["1"], ["2"]]

    def test_rewrite_leaves_no_temp_files(self, tmp_path):
        store = TabularStore(CsvSheetBackend(tmp_path))
        store.write([["h"], ["1"]], "t")
        store.write([["h"], ["2"]], "t")
        assert sorted(p.name for p in tmp_path.iterdir()) == ["t.csv"]

    def test_find_table_absent(self, tmp_path):
        assert CsvSheetBackend(tmp_path).find_table("nope") is None

    def test_rejects_path_like_names(self, tmp_path):
        with pytest.raises(ValueError):
            CsvSheetBackend(tmp_path).create_table("../escape")


class TestOpenBackend:
    def test_memory(self):
        assert isinstance(open_backend("memory:"), InMemorySheetBackend)

    def test_directory(self, tmp_path):
        assert isinstance(open_backend(str(tmp_path)), CsvSheetBackend)

    @pytest.mark.parametrize("dsn", [
        "postgresql://u@localhost/db",
        "postgres://u@localhost/db",
        "host=localhost dbname=db",
    ])
    def test_postgres_dsn(self, dsn, monkeypatch):
        sentinel = object()
        monkeypatch.setattr(PostgresSheetBackend, "connect", classmethod(lambda cls, d: sentinel))
        assert open_backend(dsn) is sentinel
