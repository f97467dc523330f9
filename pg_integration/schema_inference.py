"""
Schema Inference

Derives the destination column set for a pipeline run:

- relational sources: straight from the driver's ``cursor.description``
- in-memory records: from the keys and value types of the first record
- documents: by sampling the head of the cursor and unioning field types
"""

import logging
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pg_integration.connections import POSTGRESQL
from pg_integration.documents import bson_type_name, document_to_fields
from pg_integration.exceptions import DocumentConversionError
from pg_integration.identifiers import is_valid_column_name
from pg_integration.models import Column, MongoOptions

logger = logging.getLogger(__name__)

# pg_type OIDs of the built-in types psycopg2 reports in cursor.description
PG_TYPE_NAMES = {
    16: 'bool',
    17: 'bytea',
    18: 'bpchar',
    19: 'varchar',
    20: 'int8',
    21: 'int2',
    23: 'int4',
    25: 'text',
    26: 'int8',
    114: 'json',
    142: 'xml',
    700: 'float4',
    701: 'float8',
    790: 'money',
    1042: 'bpchar',
    1043: 'varchar',
    1082: 'date',
    1083: 'time',
    1114: 'timestamp',
    1184: 'timestamptz',
    1186: 'interval',
    1266: 'timetz',
    1700: 'numeric',
    2950: 'uuid',
    3802: 'jsonb',
}

# Precision that psycopg2 reports for unconstrained numerics
MAX_NUMERIC_PRECISION = 1000

# Numeric document types, narrowest first
NUMERIC_WIDENING = ['int32', 'int64', 'double', 'decimal128']


def _positive(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


def _postgres_column(desc) -> Column:
    name, type_code, _display_size, internal_size, precision, scale, null_ok = tuple(desc)[:7]
    type_name = PG_TYPE_NAMES.get(type_code, 'text')

    size = _positive(internal_size) if type_name in ('varchar', 'bpchar') else None
    if type_name == 'numeric' and _positive(precision) and precision <= MAX_NUMERIC_PRECISION:
        precision, scale = precision, scale or 0
    else:
        precision, scale = None, None

    return Column(
        name=name,
        source_type_name=type_name,
        size=size,
        precision=precision,
        scale=scale,
        nullable=null_ok is not False,
    )


def _mssql_type_name(type_code: Any, precision: Optional[int], scale: Optional[int]) -> str:
    """Recover the SQL Server type name from a pyodbc description entry."""
    if type_code is bool:
        return 'bit'
    if type_code is int:
        return {3: 'tinyint', 5: 'smallint', 10: 'int', 19: 'bigint'}.get(precision, 'bigint')
    if type_code is float:
        return 'real' if precision and precision <= 24 else 'float'
    if type_code is Decimal:
        return 'decimal'
    if type_code is datetime:
        if precision == 23 and scale == 3:
            return 'datetime'
        if precision == 16 and not scale:
            return 'smalldatetime'
        return 'datetime2'
    if type_code is date:
        return 'date'
    if type_code is time:
        return 'time'
    if type_code in (bytes, bytearray):
        return 'varbinary'
    if type_code is uuid.UUID:
        return 'uniqueidentifier'
    if type_code is str:
        return 'nvarchar'
    return 'sql_variant'


def _mssql_column(desc) -> Column:
    name, type_code, _display_size, internal_size, precision, scale, null_ok = tuple(desc)[:7]
    type_name = _mssql_type_name(type_code, precision, scale)
    return Column(
        name=name,
        source_type_name=type_name,
        size=_positive(internal_size) if type_name == 'nvarchar' else None,
        precision=_positive(precision) if type_name == 'decimal' else None,
        scale=scale if type_name in ('decimal', 'datetime2', 'time') else None,
        nullable=null_ok is not False,
    )


def columns_from_description(description, dialect: str) -> List[Column]:
    """
    Build the column set from a DB-API ``cursor.description``.

    Args:
        description: Sequence of 7-item column descriptions, or None when
            the statement produced no result set
        dialect: POSTGRESQL (psycopg2, type OIDs) or MSSQL (pyodbc, Python types)

    Returns:
        Columns in result order
    """
    if not description:
        return []
    if dialect == POSTGRESQL:
        return [_postgres_column(desc) for desc in description]
    return [_mssql_column(desc) for desc in description]


def _python_type_name(value: Any) -> str:
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, int):
        return 'bigint'
    if isinstance(value, float):
        return 'float8'
    if isinstance(value, Decimal):
        return 'numeric'
    if isinstance(value, datetime):
        return 'timestamptz' if value.tzinfo is not None else 'timestamp'
    if isinstance(value, date):
        return 'date'
    if isinstance(value, time):
        return 'time'
    if isinstance(value, (bytes, bytearray, memoryview)):
        return 'bytea'
    if isinstance(value, uuid.UUID):
        return 'uuid'
    if isinstance(value, (dict, list)):
        return 'jsonb'
    return 'text'


def columns_from_record(record: Mapping[str, Any]) -> List[Column]:
    """Build the column set from the keys and value types of one record."""
    return [
        Column(
            name=str(key),
            source_type_name=_python_type_name(value),
            nullable=True,
        )
        for key, value in record.items()
    ]


def merge_type_names(current: Optional[str], observed: Optional[str]) -> Optional[str]:
    """
    Combine two document type names seen for the same field.

    Numeric types widen (int32 -> int64 -> double -> decimal128); any other
    disagreement falls back to string. Nulls never change the result.
    """
    if current is None:
        return observed
    if observed is None or observed == current:
        return current
    if current in NUMERIC_WIDENING and observed in NUMERIC_WIDENING:
        return max(current, observed, key=NUMERIC_WIDENING.index)
    return 'string'


def infer_document_columns(
    documents: Iterable[Any],
    options: MongoOptions,
    warnings: List[str],
) -> List[Column]:
    """
    Infer columns from sampled documents.

    Every document goes through the same flatten/array/filter rules as the
    document row cursor. Documents that cannot be converted are ignored here;
    the row cursor counts them when they are streamed.

    Args:
        documents: The sampled head of the document cursor
        options: Flattening, filtering and mapping options
        warnings: Receives one entry per dropped field

    Returns:
        Columns in order of first appearance; ``Column.name`` is the source
        field name, the destination name comes from the field mappings
    """
    observed: Dict[str, Optional[str]] = {}
    for document in documents:
        try:
            fields = document_to_fields(document, options)
        except DocumentConversionError as e:
            logger.debug(f"Ignoring document during schema sampling: {e}")
            continue
        for name, value in fields.items():
            observed[name] = merge_type_names(observed.get(name), bson_type_name(value))

    mappings = options.mapping_dict
    columns = []
    seen_targets = set()
    for name, type_name in observed.items():
        target = mappings.get(name, name)
        if not is_valid_column_name(target):
            warnings.append(f"Skipping invalid column name: '{target}'")
            logger.warning(f"Skipping invalid column name: '{target}'")
            continue
        if target in seen_targets:
            warnings.append(f"Skipping duplicate column name: '{target}'")
            logger.warning(f"Skipping duplicate column name: '{target}'")
            continue
        seen_targets.add(target)
        columns.append(Column(name=name, source_type_name=type_name or 'string', nullable=True))

    logger.info(f"Inferred {len(columns)} columns from {len(observed)} sampled fields")
    return columns
