"""
Destination Schema Service

Reads key columns and index definitions of a PostgreSQL table from
``pg_catalog``. The sync pipeline uses these to auto-detect key columns and
to decide which indexes can be replicated onto its staging table.
"""

import logging
from typing import Dict, List

from pg_integration.identifiers import quote_table_name
from pg_integration.models import IndexDescriptor

logger = logging.getLogger(__name__)

# Plain-column, non-partial indexes with their key columns in key order.
# indoption bit 0 marks a DESC key column.
INDEX_QUERY = """
SELECT
    ic.relname AS index_name,
    i.indisprimary AS is_primary_key,
    i.indisunique AS is_unique,
    i.indexrelid::bigint AS index_id,
    a.attname AS column_name,
    k.ord AS key_ordinal,
    (i.indoption[(k.ord - 1)::int] & 1) = 1 AS is_descending
FROM pg_index i
JOIN pg_class ic ON ic.oid = i.indexrelid
CROSS JOIN LATERAL unnest(i.indkey) WITH ORDINALITY AS k(attnum, ord)
JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = k.attnum
WHERE i.indrelid = to_regclass(%s)
    AND i.indexprs IS NULL
    AND i.indpred IS NULL
    AND k.ord <= i.indnkeyatts
ORDER BY i.indexrelid, k.ord
"""


def get_indexes(conn, table_name: str) -> List[IndexDescriptor]:
    """
    Read the indexes of a table.

    Args:
        conn: Open psycopg2 connection
        table_name: ``table`` or ``schema.table``

    Returns:
        Indexes ordered primary key first, then unique indexes, then by
        index oid; empty if the table does not exist
    """
    indexes: Dict[int, IndexDescriptor] = {}
    with conn.cursor() as cursor:
        cursor.execute(INDEX_QUERY, (quote_table_name(table_name),))
        rows = cursor.fetchall()

    for index_name, is_primary_key, is_unique, index_id, column_name, _ordinal, is_descending in rows:
        index = indexes.get(index_id)
        if index is None:
            index = IndexDescriptor(
                name=index_name,
                is_primary_key=bool(is_primary_key),
                is_unique=bool(is_unique),
                index_id=index_id,
            )
            indexes[index_id] = index
        index.columns.append(column_name)
        index.sort_directions.append('DESC' if is_descending else 'ASC')

    return sorted(
        indexes.values(),
        key=lambda ix: (not ix.is_primary_key, not ix.is_unique, ix.index_id),
    )


def get_key_columns(conn, table_name: str) -> List[str]:
    """
    Work out the key columns of a table.

    Priority: primary key columns, then the columns of the first unique
    index by index oid.

    Returns:
        Key column names in key order; empty when the table has neither
    """
    for index in get_indexes(conn, table_name):
        if index.is_primary_key or index.is_unique:
            logger.info(
                f"Key columns for {table_name} from "
                f"{'primary key' if index.is_primary_key else 'unique index'} "
                f"{index.name}: {', '.join(index.columns)}"
            )
            return list(index.columns)
    logger.info(f"No primary key or unique index found on {table_name}")
    return []
