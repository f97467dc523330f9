"""
Source to PostgreSQL Type Mapping Module

This module maps column types coming from SQL Server, PostgreSQL, in-memory
records and MongoDB documents onto PostgreSQL DDL types. Unknown types fall
back to TEXT; a type is never rejected.
"""

from typing import Optional
import logging

from pg_integration.models import Column

logger = logging.getLogger(__name__)

# Largest length PostgreSQL accepts for VARCHAR(n)/CHAR(n)
MAX_SIZED_TEXT_LENGTH = 10485760

# PostgreSQL timestamps keep at most microseconds
MAX_FRACTIONAL_DIGITS = 6

DEFAULT_DECIMAL_PRECISION = 18
DEFAULT_DECIMAL_SCALE = 4


TYPE_MAPPING = {
    # SQL Server exact numerics
    "bit": "BOOLEAN",
    "tinyint": "SMALLINT",
    "smallint": "SMALLINT",
    "int": "INTEGER",
    "bigint": "BIGINT",
    "decimal": "NUMERIC({precision},{scale})",
    "numeric": "NUMERIC({precision},{scale})",
    "money": "NUMERIC(19,4)",
    "smallmoney": "NUMERIC(10,4)",

    # Approximate numerics
    "float": "DOUBLE PRECISION",
    "real": "REAL",

    # Character strings; unicode and narrow both land on character-length types
    "char": "CHAR({length})",
    "varchar": "VARCHAR({length})",
    "text": "TEXT",
    "nchar": "CHAR({length})",
    "nvarchar": "VARCHAR({length})",
    "ntext": "TEXT",
    "sysname": "VARCHAR(128)",

    # Binary strings
    "binary": "BYTEA",
    "varbinary": "BYTEA",
    "image": "BYTEA",
    "rowversion": "BYTEA",

    # Date and time
    "date": "DATE",
    "time": "TIME({fraction})",
    "datetime": "TIMESTAMP(3)",
    "datetime2": "TIMESTAMP({fraction})",
    "smalldatetime": "TIMESTAMP(0)",
    "datetimeoffset": "TIMESTAMPTZ({fraction})",

    # Other SQL Server types
    "uniqueidentifier": "UUID",
    "xml": "XML",
    "sql_variant": "TEXT",

    # PostgreSQL source types
    "int2": "SMALLINT",
    "int4": "INTEGER",
    "int8": "BIGINT",
    "integer": "INTEGER",
    "bool": "BOOLEAN",
    "boolean": "BOOLEAN",
    "float4": "REAL",
    "float8": "DOUBLE PRECISION",
    "double precision": "DOUBLE PRECISION",
    "bpchar": "CHAR({length})",
    "character": "CHAR({length})",
    "character varying": "VARCHAR({length})",
    "bytea": "BYTEA",
    "timestamp": "TIMESTAMP({fraction})",
    "timestamptz": "TIMESTAMPTZ({fraction})",
    "timetz": "TIMETZ({fraction})",
    "interval": "INTERVAL",
    "uuid": "UUID",
    "json": "JSON",
    "jsonb": "JSONB",

    # MongoDB document types
    "string": "TEXT",
    "int32": "INTEGER",
    "int64": "BIGINT",
    "double": "DOUBLE PRECISION",
    "decimal128": "NUMERIC",
    "utcdatetime": "TIMESTAMPTZ(3)",
    "bsontimestamp": "TIMESTAMPTZ(0)",
    "objectid": "VARCHAR(24)",
    "bindata": "BYTEA",
}

STRING_TYPES = {
    "char", "varchar", "text", "nchar", "nvarchar", "ntext", "sysname",
    "bpchar", "character", "character varying", "string", "objectid", "xml",
    "sql_variant", "json", "jsonb",
}
INTEGER_TYPES = {"tinyint", "smallint", "int", "bigint", "int2", "int4", "int8", "integer", "int32", "int64"}
FLOAT_TYPES = {"float", "real", "float4", "float8", "double precision", "double"}
DECIMAL_TYPES = {"decimal", "numeric", "money", "smallmoney", "decimal128"}
BOOLEAN_TYPES = {"bit", "bool", "boolean"}
BINARY_TYPES = {"binary", "varbinary", "image", "rowversion", "bytea", "bindata"}
DATE_TYPES = {"date"}
TIME_TYPES = {"time", "timetz"}
TIMESTAMP_TYPES = {"datetime", "datetime2", "smalldatetime", "timestamp"}
TIMESTAMPTZ_TYPES = {"datetimeoffset", "timestamptz", "utcdatetime", "bsontimestamp"}
UUID_TYPES = {"uniqueidentifier", "uuid"}


def _normalize(source_type_name: Optional[str]) -> str:
    sql_type = (source_type_name or '').lower().strip()
    if sql_type.endswith('(max)'):
        sql_type = sql_type[:-5].strip()
    return sql_type


def type_category(source_type_name: Optional[str]) -> str:
    """
    Classify a source type name.

    Returns:
        One of 'string', 'integer', 'float', 'decimal', 'boolean', 'binary',
        'date', 'time', 'timestamp', 'timestamptz', 'uuid' or 'other'
    """
    sql_type = _normalize(source_type_name)
    for category, names in (
        ('string', STRING_TYPES),
        ('integer', INTEGER_TYPES),
        ('float', FLOAT_TYPES),
        ('decimal', DECIMAL_TYPES),
        ('boolean', BOOLEAN_TYPES),
        ('binary', BINARY_TYPES),
        ('date', DATE_TYPES),
        ('time', TIME_TYPES),
        ('timestamp', TIMESTAMP_TYPES),
        ('timestamptz', TIMESTAMPTZ_TYPES),
        ('uuid', UUID_TYPES),
    ):
        if sql_type in names:
            return category
    return 'other'


def map_type(
    source_type_name: str,
    size: Optional[int] = None,
    precision: Optional[int] = None,
    scale: Optional[int] = None,
) -> str:
    """
    Map a source data type to its PostgreSQL equivalent.

    Args:
        source_type_name: Source type name (SQL Server, PostgreSQL or document type)
        size: Declared length for character types, in characters
        precision: Precision for numeric types
        scale: Scale for numeric types, fractional digits for time types

    Returns:
        The PostgreSQL data type
    """
    is_max = (source_type_name or '').lower().strip().endswith('(max)')
    sql_type = _normalize(source_type_name)

    if sql_type not in TYPE_MAPPING:
        logger.warning(f"Unknown source type '{source_type_name}', using TEXT as fallback")
        return "TEXT"

    pg_type = TYPE_MAPPING[sql_type]

    if "{length}" in pg_type:
        if not is_max and size is not None and 0 < size <= MAX_SIZED_TEXT_LENGTH:
            pg_type = pg_type.replace("{length}", str(size))
        else:
            return "TEXT"

    if "{precision}" in pg_type:
        if precision:
            pg_type = pg_type.replace("{precision}", str(precision))
            pg_type = pg_type.replace("{scale}", str(scale or 0))
        else:
            pg_type = pg_type.replace("{precision}", str(DEFAULT_DECIMAL_PRECISION))
            pg_type = pg_type.replace("{scale}", str(DEFAULT_DECIMAL_SCALE))

    if "{fraction}" in pg_type:
        fraction = MAX_FRACTIONAL_DIGITS if scale is None else min(scale, MAX_FRACTIONAL_DIGITS)
        pg_type = pg_type.replace("{fraction}", str(fraction))

    return pg_type


def map_column(column: Column) -> str:
    """Map a Column to the PostgreSQL type used for destination DDL."""
    return map_type(column.source_type_name, column.size, column.precision, column.scale)


def map_staging_type(column: Column) -> str:
    """
    Map a Column to a maximal-width PostgreSQL type for staging tables.

    Staging tables live for one sync run, so lengths and precisions are
    dropped to rule out truncation while the rows sit there.
    """
    category = type_category(column.source_type_name)
    if category in ('string', 'other'):
        return "TEXT"
    if category == 'integer':
        return "BIGINT"
    if category == 'float':
        return "DOUBLE PRECISION"
    if category == 'decimal':
        return "NUMERIC"
    if category == 'timestamp':
        return "TIMESTAMP"
    if category == 'timestamptz':
        return "TIMESTAMPTZ"
    if category == 'time':
        return "TIME"
    return map_column(column)
