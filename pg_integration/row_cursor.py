"""
Row Cursors

A row cursor is a forward-only, single-pass, single-consumer row source with
a fixed column set. The bulk sink only ever talks to this interface, so
relational queries, in-memory records and MongoDB cursors all load through
the same code.

Contract: ``advance()`` moves to the next row and returns False at the end;
``field_count()``, ``name(i)`` and ``value(i)`` read the current row;
``failed_count()`` reports rows skipped by conversion failures.
"""

import itertools
import json
import logging
import threading
import uuid
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from pg_integration.connections import POSTGRESQL
from pg_integration.documents import coerce_to_column, document_to_fields, serialize_document
from pg_integration.exceptions import DocumentConversionError, check_cancelled
from pg_integration.models import Column, MongoOptions
from pg_integration.schema_inference import columns_from_description, columns_from_record

logger = logging.getLogger(__name__)

_END = object()


class RowCursor:
    """Common row bookkeeping; subclasses supply ``_next_row``."""

    def __init__(self, columns: List[Column], cancel_event: Optional[threading.Event] = None):
        self._columns = list(columns)
        self._cancel_event = cancel_event
        self._current: Optional[Tuple[Any, ...]] = None
        self.rows_read = 0

    @property
    def columns(self) -> List[Column]:
        return self._columns

    def field_count(self) -> int:
        return len(self._columns)

    def name(self, ordinal: int) -> str:
        return self._columns[ordinal].name

    def value(self, ordinal: int) -> Any:
        if self._current is None:
            raise RuntimeError("No current row; call advance() first")
        return self._current[ordinal]

    def current_row(self) -> Tuple[Any, ...]:
        if self._current is None:
            raise RuntimeError("No current row; call advance() first")
        return self._current

    def failed_count(self) -> int:
        return 0

    def advance(self) -> bool:
        """Move to the next row. Raises OperationCancelledError when cancelled."""
        check_cancelled(self._cancel_event)
        row = self._next_row()
        if row is None:
            self._current = None
            return False
        self._current = row
        self.rows_read += 1
        return True

    def _next_row(self) -> Optional[Tuple[Any, ...]]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RelationalRowCursor(RowCursor):
    """
    Rows of a source query, pulled ``fetch_size`` at a time.

    PostgreSQL queries run on a named (server-side) cursor so the result set
    stays on the server; pyodbc cursors stream natively. At most the current
    row plus one fetched batch is held in memory.
    """

    def __init__(self, db_cursor, dialect: str, fetch_size: int = 1000,
                 cancel_event: Optional[threading.Event] = None):
        self._cursor = db_cursor
        self._fetch_size = fetch_size
        # Named cursors only describe their columns after the first fetch
        if dialect == POSTGRESQL or db_cursor.description is not None:
            self._batch = list(db_cursor.fetchmany(fetch_size))
        else:
            self._batch = []
        self._position = 0
        self._exhausted = not self._batch
        super().__init__(columns_from_description(db_cursor.description, dialect), cancel_event)

    @classmethod
    def open(cls, conn, dialect: str, query: str, fetch_size: int = 1000,
             cancel_event: Optional[threading.Event] = None) -> 'RelationalRowCursor':
        """Execute ``query`` on ``conn`` and wrap the streaming result."""
        check_cancelled(cancel_event)
        if dialect == POSTGRESQL:
            db_cursor = conn.cursor(name=f"pg_integration_{uuid.uuid4().hex[:16]}")
            db_cursor.itersize = fetch_size
        else:
            db_cursor = conn.cursor()
        db_cursor.execute(query)
        return cls(db_cursor, dialect, fetch_size, cancel_event)

    def _next_row(self) -> Optional[Tuple[Any, ...]]:
        if self._position >= len(self._batch):
            if self._exhausted:
                return None
            self._batch = list(self._cursor.fetchmany(self._fetch_size))
            self._position = 0
            if not self._batch:
                self._exhausted = True
                return None
        row = self._batch[self._position]
        self._position += 1
        return tuple(row)

    def close(self) -> None:
        try:
            self._cursor.close()
        except Exception as e:
            logger.warning(f"Error closing source cursor: {e}")


def _record_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


class RecordRowCursor(RowCursor):
    """
    Rows over an in-memory sequence of field maps.

    The column set is taken from the first record, which is peeked and then
    replayed, unless ``columns`` is given. Missing keys read as None and keys
    outside the column set are ignored.
    """

    def __init__(self, records: Iterable[Mapping[str, Any]], columns: Optional[List[Column]] = None,
                 cancel_event: Optional[threading.Event] = None):
        self._records = iter(records)
        if columns is None:
            first = next(self._records, _END)
            if first is _END:
                columns = []
            else:
                self._check_record(first)
                columns = columns_from_record(first)
                self._records = itertools.chain([first], self._records)
        super().__init__(columns, cancel_event)
        self._names = [column.name for column in self._columns]

    @staticmethod
    def _check_record(record: Any) -> None:
        if not isinstance(record, Mapping):
            raise TypeError(f"Records must be mappings, got {type(record).__name__}")

    def _next_row(self) -> Optional[Tuple[Any, ...]]:
        record = next(self._records, _END)
        if record is _END:
            return None
        self._check_record(record)
        return tuple(_record_value(record.get(name)) for name in self._names)


class DocumentRowCursor(RowCursor):
    """
    Rows over a MongoDB cursor (or any iterable of documents).

    Each document is flattened, filtered and coerced into the inferred
    columns. A document that fails conversion is counted and skipped; it
    never ends the run.
    """

    def __init__(self, documents: Iterable[Any], columns: List[Column], options: MongoOptions,
                 cancel_event: Optional[threading.Event] = None):
        super().__init__(columns, cancel_event)
        self._documents = iter(documents)
        self._options = options
        self._failed = 0

    def failed_count(self) -> int:
        return self._failed

    def _next_row(self) -> Optional[Tuple[Any, ...]]:
        for document in self._documents:
            try:
                fields = document_to_fields(document, self._options)
                return tuple(coerce_to_column(fields.get(column.name), column) for column in self._columns)
            except (DocumentConversionError, ValueError, TypeError, OverflowError) as e:
                self._failed += 1
                logger.debug(f"Skipping document that failed conversion: {e}")
            check_cancelled(self._cancel_event)
        return None

    def close(self) -> None:
        close = getattr(self._documents, 'close', None)
        if close is not None:
            close()


class JsonDocumentRowCursor(RowCursor):
    """
    One-column rows holding each whole document as Extended JSON.

    Feeds the JSON passthrough table; documents that cannot be serialized are
    counted and skipped like in ``DocumentRowCursor``.
    """

    def __init__(self, documents: Iterable[Any], column_name: str = 'json_data',
                 cancel_event: Optional[threading.Event] = None):
        super().__init__([Column(name=column_name, source_type_name='text', nullable=False)], cancel_event)
        self._documents = iter(documents)
        self._failed = 0

    def failed_count(self) -> int:
        return self._failed

    def _next_row(self) -> Optional[Tuple[Any, ...]]:
        for document in self._documents:
            try:
                return (serialize_document(document),)
            except DocumentConversionError as e:
                self._failed += 1
                logger.debug(f"Skipping document that failed serialization: {e}")
            check_cancelled(self._cancel_event)
        return None
