"""
Shared fakes for pipeline tests.

RecordingConnection stands in for a psycopg2 destination connection: it
records every statement, captures the text streamed through COPY and lets a
test script row counts, catalog rows and failures by statement prefix.
"""

from unittest.mock import MagicMock

import pytest


class RecordingCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, statement, params=None):
        text = statement if isinstance(statement, str) else repr(statement)
        self.conn.statements.append(text)
        for prefix, error in self.conn.failures.items():
            if text.lstrip().startswith(prefix):
                raise error
        self.rowcount = next(
            (count for prefix, count in self.conn.rowcounts.items() if text.lstrip().startswith(prefix)),
            -1,
        )

    def fetchall(self):
        return list(self.conn.fetchall_rows)

    def copy_expert(self, statement, stream):
        self.conn.statements.append('COPY')
        self.conn.copied.append(stream.read())

    def close(self):
        pass


class RecordingConnection:
    def __init__(self):
        self.statements = []
        self.copied = []
        self.rowcounts = {}
        self.failures = {}
        self.fetchall_rows = []
        self.autocommit = False
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, name=None):
        return RecordingCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True

    def executed(self, prefix):
        return [statement for statement in self.statements if statement.lstrip().startswith(prefix)]


def make_source_connection(description, batches):
    """A pyodbc/psycopg2-like source connection returning ``batches`` from fetchmany."""
    db_cursor = MagicMock()
    db_cursor.description = description
    db_cursor.fetchmany.side_effect = list(batches) + [[]]
    conn = MagicMock()
    conn.cursor.return_value = db_cursor
    return conn


@pytest.fixture
def destination():
    return RecordingConnection()
