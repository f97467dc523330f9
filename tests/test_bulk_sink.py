"""
Tests for the Bulk Sink

COPY is exercised against a mocked psycopg2 connection; the CSV text fed to
copy_expert is captured and checked.
"""

import threading
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from pg_integration.bulk_sink import BulkSink, QuotedText, _CSVRowStream, normalize_value
from pg_integration.exceptions import OperationCancelledError
from pg_integration.models import Column
from pg_integration.row_cursor import RecordRowCursor


@pytest.fixture
def db_cursor():
    db_cursor = MagicMock()
    db_cursor.copied = []
    db_cursor.copy_expert.side_effect = lambda statement, stream: db_cursor.copied.append(stream.read())
    return db_cursor


@pytest.fixture
def conn(db_cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = db_cursor
    return conn


def records(count):
    return [{"Id": i, "Name": f"name {i}"} for i in range(1, count + 1)]


class TestNormalizeValue:
    """Test value normalization for COPY."""

    def test_null_marker(self):
        assert normalize_value(None) == "\\N"

    def test_scalars(self):
        assert normalize_value(True) == "t"
        assert normalize_value(False) == "f"
        assert normalize_value(Decimal("1.50")) == "1.50"
        assert normalize_value(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04:05"
        assert normalize_value(b"\x01\xff") == "\\x01ff"

    def test_non_finite_float_is_null(self):
        assert normalize_value(float("nan")) == "\\N"
        assert normalize_value(float("inf")) == "\\N"

    def test_empty_string_is_not_null(self):
        assert normalize_value("") == ""

    def test_null_marker_text_is_quoted(self):
        assert isinstance(normalize_value("\\N"), QuotedText)
        assert normalize_value("\\N") == "\\N"


class TestCSVRowStream:
    """Test the lazy COPY stream."""

    def test_read_all(self):
        stream = _CSVRowStream([(1, None, "a\tb")], normalize_value)
        assert stream.read() == '1\t\\N\t"a\tb"\n'

    def test_read_in_chunks(self):
        stream = _CSVRowStream([(1, "x"), (2, "y")], normalize_value)
        chunks = []
        while True:
            chunk = stream.read(3)
            if not chunk:
                break
            chunks.append(chunk)
        assert "".join(chunks) == "1\tx\n2\ty\n"

    def test_null_marker_text_is_not_null(self):
        stream = _CSVRowStream([(1, "\\N", None, "a\tb")], normalize_value)
        assert stream.read() == '1\t"\\N"\t\\N\t"a\tb"\n'


class TestBulkSink:
    """Test batched COPY writes."""

    def test_writes_in_batches(self, conn, db_cursor):
        sink = BulkSink(conn, "Users", batch_size=2)

        written = sink.write(RecordRowCursor(records(5)))

        assert written == 5
        assert sink.batches_written == 3
        assert db_cursor.copy_expert.call_count == 3
        assert db_cursor.copied[0] == "1\tname 1\n2\tname 2\n"
        assert db_cursor.copied[2] == "5\tname 5\n"

    def test_empty_cursor_writes_nothing(self, conn, db_cursor):
        sink = BulkSink(conn, "Users")
        assert sink.write(RecordRowCursor([], columns=[Column(name="Id", source_type_name="bigint")])) == 0
        db_cursor.copy_expert.assert_not_called()

    def test_column_mapping_projects_and_renames(self, conn, db_cursor):
        sink = BulkSink(conn, "Users", column_mapping=[("Name", "full_name")])

        sink.write(RecordRowCursor(records(2)))

        assert db_cursor.copied == ["name 1\nname 2\n"]

    def test_unknown_mapping_source(self, conn):
        sink = BulkSink(conn, "Users", column_mapping=[("Missing", "x")])
        with pytest.raises(ValueError, match="unknown source column 'Missing'"):
            sink.write(RecordRowCursor(records(1)))

    def test_invalid_target_column(self, conn):
        sink = BulkSink(conn, "Users", column_mapping=[("Name", "full name")])
        with pytest.raises(ValueError):
            sink.write(RecordRowCursor(records(1)))

    def test_statement_timeout(self, conn, db_cursor):
        BulkSink(conn, "Users", timeout=30).write(RecordRowCursor(records(1)))
        db_cursor.execute.assert_called_once_with("SET statement_timeout = %s", ("30s",))

    def test_cancel_before_flush(self, conn, db_cursor):
        cancel = threading.Event()
        cancel.set()
        sink = BulkSink(conn, "Users", cancel_event=cancel)
        with pytest.raises(OperationCancelledError):
            sink.write(RecordRowCursor(records(1)))
        db_cursor.copy_expert.assert_not_called()

    def test_invalid_arguments(self, conn):
        with pytest.raises(ValueError):
            BulkSink(conn, "bad table")
        with pytest.raises(ValueError):
            BulkSink(conn, "Users", batch_size=0)
