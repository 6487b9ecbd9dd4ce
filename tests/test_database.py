"""
Tests for parquet report tables.
"""

import shutil
import tempfile

import duckdb
import pytest

from groupwatch.engine.database import (
    ACTIVITY_LOG,
    DISCREPANCIES,
    GROUP_LIST,
    UPDATE_LOG,
    ReportWriter,
)


@pytest.fixture
def temp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def writer(temp_dir):
    w = ReportWriter(temp_dir, "example.com")
    yield w
    w.close()


class TestReportWriter:
    """Test snapshot and log table writes."""

    def test_tables_live_under_scope(self, writer, temp_dir):
        assert str(writer.table_dir(GROUP_LIST)).startswith(temp_dir)
        assert writer.table_dir(GROUP_LIST).parent.name == "example.com"

    def test_replace_and_read(self, writer):
        rows = [
            {"email": "a@example.com", "name": "A"},
            {"email": "b@example.com", "name": "B"},
        ]
        writer.replace_table(GROUP_LIST, rows)
        assert writer.read_table(GROUP_LIST, "ORDER BY email") == rows

    def test_replace_overwrites(self, writer):
        writer.replace_table(GROUP_LIST, [{"email": "a@example.com"}])
        writer.replace_table(GROUP_LIST, [{"email": "b@example.com"}])
        assert writer.read_table(GROUP_LIST) == [{"email": "b@example.com"}]
        assert len(list(writer.table_dir(GROUP_LIST).iterdir())) == 1

    def test_replace_with_empty_clears(self, writer):
        writer.replace_table(DISCREPANCIES, [{"email": "a@example.com", "key": "whoCanJoin"}])
        writer.replace_table(DISCREPANCIES, [])
        assert writer.read_table(DISCREPANCIES) == []

    def test_append_accumulates(self, writer):
        writer.append_table(ACTIVITY_LOG, [{"action": "one"}])
        writer.append_table(ACTIVITY_LOG, [{"action": "two"}])
        writer.append_table(ACTIVITY_LOG, [])
        actions = [r["action"] for r in writer.read_table(ACTIVITY_LOG, "ORDER BY action DESC")]
        assert actions == ["two", "one"]

    def test_append_survives_new_writer(self, writer, temp_dir):
        writer.append_table(UPDATE_LOG, [{"email": "a@example.com", "success": True}])
        other = ReportWriter(temp_dir, "example.com")
        other.append_table(UPDATE_LOG, [{"email": "b@example.com", "success": False}])
        assert len(other.read_table(UPDATE_LOG)) == 2

    def test_missing_table_reads_empty(self, writer):
        assert writer.read_table(GROUP_LIST) == []

    def test_replace_rejects_log_table(self, writer):
        with pytest.raises(ValueError):
            writer.replace_table(ACTIVITY_LOG, [{"action": "x"}])

    def test_append_rejects_snapshot_table(self, writer):
        with pytest.raises(ValueError):
            writer.append_table(GROUP_LIST, [{"email": "a@example.com"}])

    def test_files_are_plain_parquet(self, writer):
        writer.replace_table(GROUP_LIST, [{"email": "a@example.com"}])
        path = writer.table_dir(GROUP_LIST) / "current.parquet"
        count = duckdb.sql(f"SELECT count(*) FROM read_parquet('{path}')").fetchone()[0]
        assert count == 1

    def test_write_stats(self, writer):
        writer.replace_table(GROUP_LIST, [{"email": "a@example.com"}, {"email": "b@example.com"}])
        writer.append_table(ACTIVITY_LOG, [{"action": "x"}])
        assert writer.get_write_stats() == {"rows_written": 3}
