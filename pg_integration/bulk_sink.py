"""
Bulk Sink

Streams rows from a row cursor into a PostgreSQL table with COPY. Rows are
collected into batches of ``batch_size`` and each batch is fed to
``copy_expert`` through a lazy CSV text stream, so at most one batch is held
in memory. Errors propagate; the owning pipeline decides whether to roll
back.
"""

import csv
import logging
import math
import threading
import time
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from io import StringIO, TextIOBase
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from psycopg2 import sql

from pg_integration.exceptions import check_cancelled
from pg_integration.identifiers import is_valid_column_name, is_valid_table_name
from pg_integration.row_cursor import RowCursor

logger = logging.getLogger(__name__)

COPY_NULL = '\\N'


class QuotedText(str):
    """Text written as a quoted CSV field, so COPY never reads it as NULL."""


def normalize_value(value: Any) -> Any:
    """
    Normalize Python values for COPY consumption.

    NULL is written as the literal ``\\N`` marker (matching the COPY NULL
    option) so empty strings stay distinct from NULL. Text that is exactly
    ``\\N`` comes back as QuotedText so it still loads as text.
    """
    if value is None:
        return COPY_NULL
    if isinstance(value, str):
        return QuotedText(value) if value == COPY_NULL else value

    if isinstance(value, datetime):
        return value.isoformat(sep=' ')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dt_time):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return 't' if value else 'f'
    if isinstance(value, (bytes, bytearray, memoryview)):
        # bytea hex format
        return '\\x' + bytes(value).hex()
    if isinstance(value, float) and not math.isfinite(value):
        return COPY_NULL

    return value


class _CSVRowStream(TextIOBase):
    """Lazy text stream that feeds COPY FROM without large buffers."""

    def __init__(self, rows: Iterable[Tuple[Any, ...]], normalizer):
        self._iterator = iter(rows)
        self._normalizer = normalizer
        self._buffer = ''
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> str:
        while (size < 0 or len(self._buffer) < size) and not self._exhausted:
            try:
                row = next(self._iterator)
            except StopIteration:
                self._exhausted = True
                break
            self._buffer += self._format_row(row)

        if size < 0:
            data = self._buffer
            self._buffer = ''
            return data

        data = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return data

    def _format_row(self, row: Tuple[Any, ...]) -> str:
        fields = [self._normalizer(value) for value in row]
        buffer = StringIO()
        writer = csv.writer(
            buffer,
            delimiter='\t',
            quoting=csv.QUOTE_MINIMAL,
            lineterminator='\n',
        )
        if not any(isinstance(field, QuotedText) for field in fields):
            writer.writerow(fields)
            return buffer.getvalue()

        # QUOTE_MINIMAL would leave these bare; the marker has nothing to escape
        parts = []
        for field in fields:
            if isinstance(field, QuotedText):
                parts.append(f'"{field}"')
                continue
            buffer.seek(0)
            buffer.truncate()
            writer.writerow([field])
            parts.append(buffer.getvalue()[:-1])
        return '\t'.join(parts) + '\n'


class BulkSink:
    """Batched COPY writer for one destination table."""

    def __init__(
        self,
        conn,
        destination_table: str,
        column_mapping: Optional[Sequence[Tuple[str, str]]] = None,
        batch_size: int = 1000,
        timeout: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            conn: Open psycopg2 connection; transaction handling belongs to the caller
            destination_table: ``table`` or ``schema.table``
            column_mapping: ``(source_name, destination_name)`` pairs; only
                mapped source columns are written. None maps every cursor
                column to the same name.
            batch_size: Rows per COPY
            timeout: Statement timeout in seconds applied before the first COPY
            cancel_event: Checked before every flush
        """
        if not is_valid_table_name(destination_table):
            raise ValueError(f"Invalid table name: {destination_table}")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.conn = conn
        self.destination_table = destination_table
        self.column_mapping = list(column_mapping) if column_mapping else None
        self.batch_size = batch_size
        self.timeout = timeout
        self.cancel_event = cancel_event
        self.batches_written = 0

    def _resolve_mapping(self, cursor: RowCursor) -> Tuple[List[int], List[str]]:
        names = [cursor.name(i) for i in range(cursor.field_count())]
        if self.column_mapping is None:
            pairs = [(name, name) for name in names]
        else:
            pairs = self.column_mapping

        ordinals, targets = [], []
        for source_name, target_name in pairs:
            if source_name not in names:
                raise ValueError(f"Column mapping references unknown source column '{source_name}'")
            if not is_valid_column_name(target_name):
                raise ValueError(f"Invalid column name: {target_name}")
            ordinals.append(names.index(source_name))
            targets.append(target_name)

        if not targets:
            raise ValueError("No columns to write")
        return ordinals, targets

    def _copy_statement(self, targets: List[str]) -> sql.Composed:
        quoted_columns = sql.SQL(', ').join([sql.Identifier(col) for col in targets])
        return sql.SQL('COPY {} ({}) FROM STDIN WITH (FORMAT CSV, DELIMITER E\'\\t\', QUOTE \'"\', NULL \'\\N\')').format(
            sql.Identifier(*self.destination_table.split('.')),
            quoted_columns,
        )

    def _flush(self, rows: List[Tuple[Any, ...]], copy_sql: sql.Composed) -> int:
        check_cancelled(self.cancel_event)
        stream = _CSVRowStream(rows, normalize_value)
        with self.conn.cursor() as cursor:
            cursor.copy_expert(copy_sql, stream)
        self.batches_written += 1
        return len(rows)

    def write(self, cursor: RowCursor) -> int:
        """
        Drain ``cursor`` into the destination table.

        Returns:
            Number of rows written
        """
        ordinals, targets = self._resolve_mapping(cursor)
        copy_sql = self._copy_statement(targets)

        if self.timeout:
            with self.conn.cursor() as db_cursor:
                db_cursor.execute("SET statement_timeout = %s", (f"{int(self.timeout)}s",))

        start_time = time.time()
        rows_written = 0
        batch: List[Tuple[Any, ...]] = []

        while cursor.advance():
            row = cursor.current_row()
            batch.append(tuple(row[i] for i in ordinals))
            if len(batch) >= self.batch_size:
                rows_written += self._flush(batch, copy_sql)
                batch = []
                elapsed = time.time() - start_time
                rows_per_second = rows_written / elapsed if elapsed > 0 else 0
                logger.info(
                    f"Batch {self.batches_written}: {rows_written:,} rows written to "
                    f"{self.destination_table} at {rows_per_second:,.0f} rows/sec"
                )

        if batch:
            rows_written += self._flush(batch, copy_sql)

        logger.info(
            f"Wrote {rows_written:,} rows to {self.destination_table} in "
            f"{self.batches_written} batches ({time.time() - start_time:.2f}s)"
        )
        return rows_written
