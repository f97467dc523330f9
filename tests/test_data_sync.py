"""
Tests for the Data Sync Module

The destination is a RecordingConnection (see conftest.py); row counts for
DELETE and INSERT are scripted, and the generated statements are checked.
"""

from unittest.mock import patch

import psycopg2
import pytest

from pg_integration.connections import POSTGRESQL
from pg_integration.data_sync import DataSyncService
from pg_integration.models import SyncOptions
from tests.conftest import RecordingConnection, make_source_connection

DESCRIPTION = [("Id", 23, None, 4, None, None, False), ("Name", 25, None, None, None, None, None)]
STAGING = "tmp_sync_test"


class FakePgError(Exception):
    pgcode = "40P01"


@pytest.fixture
def service():
    return DataSyncService()


@pytest.fixture(autouse=True)
def staging_name():
    with patch("pg_integration.data_sync.generate_staging_name", return_value=STAGING):
        yield


def run(service, destination, rows, key_columns=("Id",), options=None, detect_conn=None, **kwargs):
    source = make_source_connection(DESCRIPTION, [rows] if rows else [])
    destinations = [detect_conn, destination] if detect_conn is not None else [destination]
    with patch("pg_integration.data_sync.connect_source", return_value=(source, POSTGRESQL)), \
            patch("pg_integration.data_sync.connect_destination", side_effect=destinations) as mock_dest:
        result = service.sync_data(
            "postgresql://src/db", "SELECT Id, Name FROM Source", "postgresql://dst/db", "Users",
            list(key_columns) if key_columns is not None else None, options, **kwargs
        )
    return result, mock_dest


def merge_statements(destination):
    return [s for s in destination.statements if s.startswith(("DELETE", "INSERT", "DROP"))]


class TestSync:
    """Test the delete-insert merge."""

    def test_id_name_scenario(self, service, destination):
        """Source {1,A},{2,B} over destination {2,old},{3,C}: one row replaced, two inserted."""
        destination.rowcounts = {"DELETE": 1, "INSERT": 2}

        result, _ = run(service, destination, [(1, "A"), (2, "B")])

        assert result.success
        assert (result.rows_read, result.rows_deleted, result.rows_inserted) == (2, 1, 2)
        assert destination.executed("CREATE TEMPORARY TABLE")[0].startswith(f'CREATE TEMPORARY TABLE "{STAGING}"')
        assert destination.copied == ["1\tA\n2\tB\n"]
        assert merge_statements(destination) == [
            f'DELETE FROM "Users" AS t USING "{STAGING}" AS s WHERE t."Id" = s."Id"',
            f'INSERT INTO "Users" ("Id", "Name") SELECT "Id", "Name" FROM "{STAGING}"',
            f'DROP TABLE IF EXISTS "{STAGING}"',
        ]
        assert result.warnings == [
            f"Created temp table: {STAGING}",
            "Streamed 2 rows into temp table",
            "Deleted 1 rows from target table",
            "Inserted 2 rows into target table",
            f"Dropped temp table: {STAGING}",
        ]
        assert destination.commits == 1

    def test_zero_rows_short_circuit(self, service, destination):
        """An empty source never deletes from the destination."""
        result, _ = run(service, destination, [])

        assert result.success
        assert (result.rows_read, result.rows_deleted, result.rows_inserted) == (0, 0, 0)
        assert merge_statements(destination) == [f'DROP TABLE IF EXISTS "{STAGING}"']
        assert "No rows read from source query" in result.warnings
        assert destination.commits == 1

    def test_composite_keys(self, service, destination):
        source_description = DESCRIPTION + [("Region", 25, None, None, None, None, None)]
        source = make_source_connection(source_description, [[(1, "A", "EU")]])
        with patch("pg_integration.data_sync.connect_source", return_value=(source, POSTGRESQL)), \
                patch("pg_integration.data_sync.connect_destination", return_value=destination):
            result = service.sync_data("postgresql://src/db", "SELECT 1", "postgresql://dst/db", "Users",
                                       ["Id", "Region"])

        assert result.success
        assert destination.executed("DELETE")[0].endswith('WHERE t."Id" = s."Id" AND t."Region" = s."Region"')

    def test_key_match_ignores_case(self, service, destination):
        result, _ = run(service, destination, [(1, "A")], key_columns=["id"])

        assert result.success
        assert 't."Id" = s."Id"' in destination.executed("DELETE")[0]

    def test_delete_all(self, service, destination):
        result, mock_dest = run(service, destination, [(1, "A")], key_columns=None,
                                options=SyncOptions(delete_all_before_insert=True))

        assert result.success
        assert destination.executed("DELETE") == ['DELETE FROM "Users"']
        # No key detection connection
        assert mock_dest.call_count == 1

    def test_column_mapping(self, service, destination):
        options = SyncOptions(column_mappings={"Name": "full_name"})

        result, _ = run(service, destination, [(1, "A")], options=options)

        assert result.success
        assert '"full_name" TEXT' in destination.executed("CREATE TEMPORARY TABLE")[0]
        assert destination.executed("INSERT")[0] == (
            f'INSERT INTO "Users" ("Id", "full_name") SELECT "Id", "full_name" FROM "{STAGING}"'
        )

    def test_progress_checkpoints(self, service, destination):
        calls = []
        run(service, destination, [(1, "A")], progress=lambda percent, message: calls.append(percent))
        assert calls == [40, 70, 90]


class TestKeyColumns:
    """Test key column checks and auto-detection."""

    def test_missing_key_column(self, service, destination):
        result, _ = run(service, destination, [(1, "A")], key_columns=["Missing"])

        assert not result.success
        assert result.error_message == "Key column 'Missing' not found in source query result"
        assert destination.statements == []

    def test_auto_detect_from_primary_key(self, service, destination):
        detect_conn = RecordingConnection()
        detect_conn.fetchall_rows = [("pk_users", True, True, 1, "Id", 1, False)]

        result, _ = run(service, destination, [(1, "A")], key_columns=None, detect_conn=detect_conn)

        assert result.success
        assert result.warnings[0] == "KeyColumns auto-detected from schema: [Id]"
        assert detect_conn.closed
        assert 't."Id" = s."Id"' in destination.executed("DELETE")[0]

    def test_auto_detect_finds_nothing(self, service, destination):
        detect_conn = RecordingConnection()

        result, _ = run(service, destination, [(1, "A")], key_columns=None, detect_conn=detect_conn)

        assert not result.success
        assert result.error_message.startswith("Could not auto-detect key columns for table 'Users'")
        assert destination.statements == []

    def test_invalid_mapping_rejected_before_connecting(self, service, destination):
        result, mock_dest = run(service, destination, [(1, "A")],
                                options=SyncOptions(column_mappings={"Name": "bad name"}))

        assert not result.success
        assert result.error_message.startswith("Validation failed:")
        mock_dest.assert_not_called()


class TestIndexReplication:
    """Test copying destination indexes onto the staging table."""

    INDEX_ROWS = [
        ("pk_users", True, True, 10, "Id", 1, False),
        ("ix_other", False, False, 11, "Other", 1, False),
    ]

    def test_replicates_indexes_covered_by_staging(self, service, destination):
        destination.fetchall_rows = self.INDEX_ROWS

        result, _ = run(service, destination, [(1, "A")])

        assert result.success
        assert destination.executed("CREATE UNIQUE INDEX") == [
            f'CREATE UNIQUE INDEX "{STAGING}_ix1" ON "{STAGING}" ("Id" ASC)'
        ]
        assert "Replicated index pk_users onto temp table" in result.warnings
        assert destination.executed("SAVEPOINT")

    def test_index_failure_is_a_warning(self, service, destination):
        destination.fetchall_rows = self.INDEX_ROWS
        destination.failures["CREATE UNIQUE INDEX"] = psycopg2.OperationalError("index failed")

        result, _ = run(service, destination, [(1, "A")])

        assert result.success
        assert "Could not replicate index pk_users: index failed" in result.warnings
        assert destination.executed("ROLLBACK TO SAVEPOINT") == ["ROLLBACK TO SAVEPOINT replicate_index"]

    def test_replication_disabled(self, service, destination):
        destination.fetchall_rows = self.INDEX_ROWS

        result, _ = run(service, destination, [(1, "A")], options=SyncOptions(replicate_indexes=False))

        assert result.success
        assert destination.executed("CREATE UNIQUE INDEX") == []
        assert destination.executed("SAVEPOINT") == []


class TestSyncFailures:
    """Test rollback on failure."""

    def test_delete_failure_rolls_back(self, service, destination):
        destination.failures["DELETE"] = FakePgError("deadlock detected")

        result, _ = run(service, destination, [(1, "A")])

        assert not result.success
        assert result.error_message == "deadlock detected"
        assert result.error_code == "40P01"
        assert destination.rollbacks == 1
        assert destination.commits == 0
        assert destination.executed("INSERT") == []
        assert destination.closed
