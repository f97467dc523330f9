"""
Data Sync Module

Delete-insert synchronization of a PostgreSQL table from a source query.

Rows are first streamed into a temporary staging table. Destination rows
whose key matches a staging row are then deleted (or every row, in
delete-all mode) and the staging rows are inserted. Staging, delete, insert
and cleanup share one transaction, so the destination never shows a
half-applied sync.
"""

import logging
import threading
import time
import uuid
from typing import List, Optional, Set

import psycopg2

from pg_integration import schema_service
from pg_integration.bulk_sink import BulkSink
from pg_integration.connections import (
    close_quietly,
    connect_destination,
    connect_source,
    provider_error_code,
    rollback_quietly,
)
from pg_integration.ddl_generator import DDLGenerator
from pg_integration.identifiers import is_valid_table_name, quote_column_name, quote_table_name, validate_identifiers
from pg_integration.models import ProgressCallback, SyncOptions, report_progress
from pg_integration.results import SyncResult
from pg_integration.row_cursor import RelationalRowCursor

logger = logging.getLogger(__name__)

STAGING_PREFIX = 'tmp_sync_'


def _elapsed_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)


def generate_staging_name() -> str:
    """Staging names are unique per run so concurrent syncs never collide."""
    return f"{STAGING_PREFIX}{uuid.uuid4().hex}"


class DataSyncService:
    """Synchronize a destination table with the result of a source query."""

    def __init__(self, ddl_generator: Optional[DDLGenerator] = None):
        self.ddl = ddl_generator or DDLGenerator()

    def sync_data(
        self,
        source_connection_string: str,
        source_query: str,
        target_connection_string: str,
        target_table: str,
        key_columns: Optional[List[str]] = None,
        options: Optional[SyncOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        """
        Make ``target_table`` reflect the source rows by delete-insert.

        Args:
            source_connection_string: SQL Server or PostgreSQL source
            source_query: Query producing the rows to sync
            target_connection_string: PostgreSQL destination
            target_table: ``table`` or ``schema.table``
            key_columns: Source column names used to match destination rows;
                None or empty auto-detects them from the destination's
                primary key or first unique index (skipped in delete-all mode)
            options: Sync options
            cancel_event: Stops the run at the next row or batch boundary when set
            progress: Receives coarse checkpoints as (percent, message)

        Returns:
            SyncResult with one warning per step taken
        """
        options = options or SyncOptions()
        start_time = time.time()
        warnings: List[str] = []
        key_columns = list(key_columns or [])

        if not source_query or not source_query.strip():
            return SyncResult.failure("Source query is required", target_table=target_table)

        if not key_columns and not options.delete_all_before_insert:
            if not is_valid_table_name(target_table):
                return SyncResult.failure(f"Validation failed: Invalid table name: '{target_table}'", target_table=target_table)
            report_progress(progress, 15, "Detecting key columns...")
            try:
                key_columns = self._detect_key_columns(target_connection_string, target_table, options.timeout)
            except Exception as e:
                logger.error(f"Key column detection for {target_table} failed: {e}", exc_info=True)
                return SyncResult.failure(str(e), provider_error_code(e), target_table=target_table)
            if not key_columns:
                return SyncResult.failure(
                    f"Could not auto-detect key columns for table '{target_table}'. "
                    f"Please provide key columns or ensure the target table has a primary key or unique index.",
                    target_table=target_table,
                )
            warnings.append(f"KeyColumns auto-detected from schema: [{', '.join(key_columns)}]")

        mappings = options.mapping_dict
        validation = validate_identifiers(
            table_name=target_table,
            column_names=key_columns + list(mappings.keys()) + list(mappings.values()),
        )
        if not validation.is_valid:
            return SyncResult.failure(f"Validation failed: {'; '.join(validation.errors)}", target_table=target_table)

        logger.info(f"Starting sync: query -> {target_table} (keys: {', '.join(key_columns) or 'delete all'})")
        staging_table = generate_staging_name()
        source_conn = target_conn = cursor = None
        try:
            source_conn, dialect = connect_source(source_connection_string, options.timeout)
            cursor = RelationalRowCursor.open(source_conn, dialect, source_query, options.batch_size, cancel_event)
            if not cursor.columns:
                return SyncResult.failure("No columns found in source query result", target_table=target_table,
                                          elapsed_ms=_elapsed_ms(start_time), warnings=warnings)

            source_names = [column.name for column in cursor.columns]
            source_keys = []
            for key in key_columns:
                match = next((name for name in source_names if name.lower() == key.lower()), None)
                if match is None:
                    return SyncResult.failure(f"Key column '{key}' not found in source query result",
                                              target_table=target_table, elapsed_ms=_elapsed_ms(start_time),
                                              warnings=warnings)
                source_keys.append(match)

            target_names = [mappings.get(name, name) for name in source_names]
            errors = validate_identifiers(column_names=target_names).errors
            if errors:
                return SyncResult.failure(f"Validation failed: {'; '.join(errors)}", target_table=target_table,
                                          elapsed_ms=_elapsed_ms(start_time), warnings=warnings)
            target_keys = [mappings.get(key, key) for key in source_keys]

            target_conn = connect_destination(target_connection_string, options.timeout, options.use_transaction)

            # Staging table
            with target_conn.cursor() as db_cursor:
                db_cursor.execute(self.ddl.generate_staging_table(staging_table, cursor.columns, target_names))
            warnings.append(f"Created temp table: {staging_table}")
            logger.info(f"Created staging table {staging_table}")

            if options.replicate_indexes:
                self._replicate_indexes(target_conn, target_table, staging_table, set(target_names),
                                        options.use_transaction, warnings)

            # Load
            report_progress(progress, 40, "Loading staging table...")
            sink = BulkSink(target_conn, staging_table, list(zip(source_names, target_names)),
                            options.batch_size, options.timeout, cancel_event)
            rows_read = sink.write(cursor)
            warnings.append(f"Streamed {rows_read} rows into temp table")

            if rows_read == 0:
                warnings.append("No rows read from source query")
                with target_conn.cursor() as db_cursor:
                    db_cursor.execute(self.ddl.generate_drop_table(staging_table))
                if options.use_transaction:
                    target_conn.commit()
                logger.info(f"Sync of {target_table}: source returned no rows, nothing to do")
                return SyncResult(target_table=target_table, elapsed_ms=_elapsed_ms(start_time), warnings=warnings)

            # Merge
            report_progress(progress, 70, f"Merging into {target_table}...")
            with target_conn.cursor() as db_cursor:
                db_cursor.execute(self.generate_delete(target_table, staging_table, target_keys,
                                                       options.delete_all_before_insert))
                rows_deleted = db_cursor.rowcount
                warnings.append(f"Deleted {rows_deleted} rows from target table")

                db_cursor.execute(self.generate_insert(target_table, staging_table, target_names))
                rows_inserted = db_cursor.rowcount
                warnings.append(f"Inserted {rows_inserted} rows into target table")

                db_cursor.execute(self.ddl.generate_drop_table(staging_table))
                warnings.append(f"Dropped temp table: {staging_table}")

            if options.use_transaction:
                report_progress(progress, 90, "Committing transaction...")
                target_conn.commit()

            elapsed_ms = _elapsed_ms(start_time)
            logger.info(
                f"Sync of {target_table} complete: {rows_read:,} read, {rows_deleted:,} deleted, "
                f"{rows_inserted:,} inserted in {elapsed_ms:,} ms"
            )
            return SyncResult(
                target_table=target_table,
                rows_read=rows_read,
                rows_deleted=rows_deleted,
                rows_inserted=rows_inserted,
                elapsed_ms=elapsed_ms,
                warnings=warnings,
            )
        except Exception as e:
            logger.error(f"Sync of {target_table} failed: {e}", exc_info=True)
            rollback_quietly(target_conn)
            return SyncResult.failure(
                str(e),
                provider_error_code(e),
                target_table=target_table,
                elapsed_ms=_elapsed_ms(start_time),
                warnings=warnings,
            )
        finally:
            if cursor is not None:
                cursor.close()
            close_quietly(source_conn)
            close_quietly(target_conn)

    @staticmethod
    def _detect_key_columns(target_connection_string: str, target_table: str, timeout: int) -> List[str]:
        conn = connect_destination(target_connection_string, timeout, use_transaction=False)
        try:
            return schema_service.get_key_columns(conn, target_table)
        finally:
            close_quietly(conn)

    def _replicate_indexes(
        self,
        conn,
        target_table: str,
        staging_table: str,
        staging_columns: Set[str],
        use_savepoints: bool,
        warnings: List[str],
    ) -> None:
        """
        Copy destination indexes onto the staging table.

        Only indexes whose every column exists in the staging table are
        copied. Each one runs under its own savepoint so a failure leaves the
        surrounding transaction usable; failures become warnings.
        """
        try:
            indexes = self._run_tolerated(conn, use_savepoints, lambda: schema_service.get_indexes(conn, target_table))
        except (psycopg2.Error, ValueError) as e:
            warnings.append(f"Could not read indexes of {target_table}: {e}")
            logger.warning(f"Could not read indexes of {target_table}: {e}")
            return

        eligible = [ix for ix in indexes if ix.columns and all(col in staging_columns for col in ix.columns)]
        for number, index in enumerate(eligible, start=1):
            index_name = f"{staging_table}_ix{number}"

            def create_index(index=index, index_name=index_name):
                with conn.cursor() as db_cursor:
                    db_cursor.execute(self.ddl.generate_index(index, staging_table, index_name))

            try:
                self._run_tolerated(conn, use_savepoints, create_index)
                warnings.append(f"Replicated index {index.name} onto temp table")
                logger.info(f"Replicated index {index.name} onto {staging_table}")
            except (psycopg2.Error, ValueError) as e:
                warnings.append(f"Could not replicate index {index.name}: {e}")
                logger.warning(f"Could not replicate index {index.name} onto {staging_table}: {e}")

    @staticmethod
    def _run_tolerated(conn, use_savepoint: bool, action):
        """Run ``action`` so that its failure does not abort the open transaction."""
        if not use_savepoint:
            return action()
        with conn.cursor() as db_cursor:
            db_cursor.execute("SAVEPOINT replicate_index")
        try:
            result = action()
        except (psycopg2.Error, ValueError):
            with conn.cursor() as db_cursor:
                db_cursor.execute("ROLLBACK TO SAVEPOINT replicate_index")
            raise
        with conn.cursor() as db_cursor:
            db_cursor.execute("RELEASE SAVEPOINT replicate_index")
        return result

    @staticmethod
    def generate_delete(target_table: str, staging_table: str, key_columns: List[str], delete_all: bool) -> str:
        """DELETE matching (or all) destination rows."""
        if delete_all:
            return f"DELETE FROM {quote_table_name(target_table)}"
        if not key_columns:
            raise ValueError("Key columns are required unless deleting all rows")
        conditions = ' AND '.join(
            f"t.{quote_column_name(key)} = s.{quote_column_name(key)}" for key in key_columns
        )
        return (
            f"DELETE FROM {quote_table_name(target_table)} AS t "
            f"USING {quote_table_name(staging_table)} AS s WHERE {conditions}"
        )

    @staticmethod
    def generate_insert(target_table: str, staging_table: str, columns: List[str]) -> str:
        """INSERT the projected staging columns into the destination."""
        column_list = ', '.join(quote_column_name(col) for col in columns)
        return (
            f"INSERT INTO {quote_table_name(target_table)} ({column_list}) "
            f"SELECT {column_list} FROM {quote_table_name(staging_table)}"
        )
