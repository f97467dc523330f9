"""
Data Transfer Module

Moves the result of a source query (SQL Server or PostgreSQL) into a
PostgreSQL table, or bulk inserts caller-supplied records. Both paths run one
streaming pass through the bulk sink inside a single destination
transaction, so rows read always equals rows written.
"""

import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pg_integration.bulk_sink import BulkSink
from pg_integration.connections import (
    close_quietly,
    connect_destination,
    connect_source,
    provider_error_code,
    rollback_quietly,
)
from pg_integration.ddl_generator import DDLGenerator
from pg_integration.identifiers import validate_identifiers
from pg_integration.models import Column, ProgressCallback, TransferOptions, report_progress
from pg_integration.results import TransferResult
from pg_integration.row_cursor import RecordRowCursor, RelationalRowCursor, RowCursor

logger = logging.getLogger(__name__)


def _elapsed_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)


class DataTransferService:
    """Transfer query results and in-memory records into PostgreSQL."""

    def __init__(self, ddl_generator: Optional[DDLGenerator] = None):
        self.ddl = ddl_generator or DDLGenerator()

    def transfer_data(
        self,
        source_connection_string: str,
        source_query: str,
        target_connection_string: str,
        target_table: str,
        options: Optional[TransferOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> TransferResult:
        """
        Transfer the rows of a source query into a destination table.

        Args:
            source_connection_string: SQL Server or PostgreSQL source
            source_query: Query whose result set is copied
            target_connection_string: PostgreSQL destination
            target_table: ``table`` or ``schema.table``
            options: Batch size, timeout, transaction, truncate, create and mapping options
            cancel_event: Stops the run at the next row or batch boundary when set
            progress: Receives coarse checkpoints as (percent, message)

        Returns:
            TransferResult; failures are reported in the result, never raised
        """
        options = options or TransferOptions()
        start_time = time.time()
        warnings: List[str] = []

        errors = self._validate(target_table, options)
        if not source_query or not source_query.strip():
            errors.append("Source query is required")
        if errors:
            return TransferResult.failure('; '.join(errors), target_table=target_table)

        logger.info(f"Starting transfer: query -> {target_table}")
        source_conn = target_conn = cursor = None
        try:
            source_conn, dialect = connect_source(source_connection_string, options.timeout)
            cursor = RelationalRowCursor.open(source_conn, dialect, source_query, options.batch_size, cancel_event)
            if not cursor.columns:
                raise ValueError("No columns found in source query result")
            logger.info(f"Source query returned {cursor.field_count()} columns")

            target_conn = connect_destination(target_connection_string, options.timeout, options.use_transaction)
            rows_written = self._load(target_conn, target_table, cursor, options, warnings, cancel_event, progress)

            if options.use_transaction:
                report_progress(progress, 90, "Committing transaction...")
                target_conn.commit()

            elapsed_ms = _elapsed_ms(start_time)
            logger.info(f"Transfer to {target_table} complete: {rows_written:,} rows in {elapsed_ms:,} ms")
            return TransferResult(
                target_table=target_table,
                rows_read=cursor.rows_read,
                rows_written=rows_written,
                elapsed_ms=elapsed_ms,
                warnings=warnings,
            )
        except Exception as e:
            logger.error(f"Transfer to {target_table} failed: {e}", exc_info=True)
            rollback_quietly(target_conn)
            return TransferResult.failure(
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

    def bulk_insert(
        self,
        connection_string: str,
        table_name: str,
        records: Iterable[Mapping[str, Any]],
        options: Optional[TransferOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> TransferResult:
        """
        Bulk insert in-memory records into a destination table.

        The column set comes from the first record. An empty record set
        succeeds with zero rows without touching the database.
        """
        options = options or TransferOptions()
        start_time = time.time()
        warnings: List[str] = []

        errors = self._validate(table_name, options)
        if errors:
            return TransferResult.failure('; '.join(errors), target_table=table_name)

        target_conn = None
        try:
            cursor = RecordRowCursor(records, cancel_event=cancel_event)
            if not cursor.columns:
                logger.info(f"No records to insert into {table_name}")
                return TransferResult(target_table=table_name, elapsed_ms=_elapsed_ms(start_time))

            errors = validate_identifiers(column_names=[column.name for column in cursor.columns]).errors
            if errors:
                return TransferResult.failure('; '.join(errors), target_table=table_name)

            logger.info(f"Starting bulk insert into {table_name} ({cursor.field_count()} columns)")
            target_conn = connect_destination(connection_string, options.timeout, options.use_transaction)
            rows_written = self._load(target_conn, table_name, cursor, options, warnings, cancel_event, progress)

            if options.use_transaction:
                report_progress(progress, 90, "Committing transaction...")
                target_conn.commit()

            elapsed_ms = _elapsed_ms(start_time)
            logger.info(f"Bulk insert into {table_name} complete: {rows_written:,} rows in {elapsed_ms:,} ms")
            return TransferResult(
                target_table=table_name,
                rows_read=cursor.rows_read,
                rows_written=rows_written,
                elapsed_ms=elapsed_ms,
                warnings=warnings,
            )
        except Exception as e:
            logger.error(f"Bulk insert into {table_name} failed: {e}", exc_info=True)
            rollback_quietly(target_conn)
            return TransferResult.failure(
                str(e),
                provider_error_code(e),
                target_table=table_name,
                elapsed_ms=_elapsed_ms(start_time),
                warnings=warnings,
            )
        finally:
            close_quietly(target_conn)

    @staticmethod
    def _validate(table_name: str, options: TransferOptions) -> List[str]:
        mappings = options.mapping_dict
        return validate_identifiers(
            table_name=table_name,
            column_names=list(mappings.keys()) + list(mappings.values()) if mappings else None,
        ).errors

    @staticmethod
    def _resolve_columns(
        columns: List[Column],
        options: TransferOptions,
    ) -> Tuple[Optional[List[Tuple[str, str]]], List[Column], List[str]]:
        """
        Apply the optional column mapping.

        Returns:
            Tuple of (sink mapping or None for identity, source columns to
            write, destination names parallel to them)
        """
        if not options.column_mappings:
            return None, columns, [column.name for column in columns]

        by_name: Dict[str, Column] = {column.name: column for column in columns}
        selected, targets = [], []
        for source_name, target_name in options.column_mappings:
            if source_name not in by_name:
                raise ValueError(f"Column mapping references unknown source column '{source_name}'")
            selected.append(by_name[source_name])
            targets.append(target_name)
        return list(options.column_mappings), selected, targets

    def _load(
        self,
        target_conn,
        target_table: str,
        cursor: RowCursor,
        options: TransferOptions,
        warnings: List[str],
        cancel_event: Optional[threading.Event],
        progress: Optional[ProgressCallback],
    ) -> int:
        mapping, columns, target_names = self._resolve_columns(cursor.columns, options)

        with target_conn.cursor() as db_cursor:
            if options.create_table_if_not_exists:
                db_cursor.execute(self.ddl.generate_create_table(target_table, columns, column_names=target_names))
                logger.info(f"Created or verified table {target_table}")

            if options.truncate_target_table:
                db_cursor.execute(self.ddl.generate_truncate_table(target_table))
                warnings.append(f"Table {target_table} was truncated before insert")
                logger.info(f"Truncated target table {target_table}")

        report_progress(progress, 30, f"Streaming rows to {target_table}...")
        sink = BulkSink(target_conn, target_table, mapping, options.batch_size, options.timeout, cancel_event)
        return sink.write(cursor)
