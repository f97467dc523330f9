"""
PostgreSQL DDL Generation Module

This module generates the PostgreSQL DDL used by the pipelines: destination
tables built from inferred columns, sync staging tables, replicated staging
indexes and the fixed layout of JSON passthrough tables.
"""

from typing import Callable, List, Optional

from pg_integration.identifiers import quote_column_name, quote_identifier, quote_table_name
from pg_integration.models import Column, IndexDescriptor
from pg_integration.type_mapping import map_column, map_staging_type

# PostgreSQL truncates longer identifiers silently
MAX_PG_IDENTIFIER_LENGTH = 63

JSON_ID_COLUMN = "id"
JSON_DATA_COLUMN = "json_data"
JSON_CREATED_AT_COLUMN = "created_at"


class DDLGenerator:
    """Generate PostgreSQL DDL statements from column metadata."""

    def generate_create_table(
        self,
        table_name: str,
        columns: List[Column],
        if_not_exists: bool = True,
        include_nullability: bool = True,
        column_names: Optional[List[str]] = None,
    ) -> str:
        """
        Generate CREATE TABLE statement for PostgreSQL.

        Args:
            table_name: Destination table, ``table`` or ``schema.table``
            columns: Source columns to create
            if_not_exists: Emit ``IF NOT EXISTS``
            include_nullability: Emit ``NOT NULL`` for non-nullable source columns
            column_names: Destination names, parallel to ``columns``; defaults
                to the source names

        Returns:
            CREATE TABLE DDL statement
        """
        return self._create_table(
            quote_table_name(table_name),
            columns,
            map_column,
            if_not_exists=if_not_exists,
            include_nullability=include_nullability,
            column_names=column_names,
        )

    def generate_staging_table(
        self,
        staging_name: str,
        columns: List[Column],
        column_names: Optional[List[str]] = None,
    ) -> str:
        """
        Generate a session-local staging table with maximal-width types.

        Staging columns are always nullable; constraints belong to the
        destination, not to the rows in flight.
        """
        return self._create_table(
            quote_table_name(staging_name),
            columns,
            map_staging_type,
            if_not_exists=False,
            include_nullability=False,
            column_names=column_names,
            temporary=True,
        )

    def _create_table(
        self,
        qualified_name: str,
        columns: List[Column],
        type_mapper: Callable[[Column], str],
        if_not_exists: bool,
        include_nullability: bool,
        column_names: Optional[List[str]] = None,
        temporary: bool = False,
    ) -> str:
        if not columns:
            raise ValueError("Cannot create a table without columns")
        names = column_names or [column.name for column in columns]
        if len(names) != len(columns):
            raise ValueError("column_names must be parallel to columns")

        column_definitions = []
        for name, column in zip(names, columns):
            col_def = f"{quote_column_name(name)} {type_mapper(column)}"
            if include_nullability and not column.nullable:
                col_def += " NOT NULL"
            column_definitions.append(col_def)

        create = "CREATE TEMPORARY TABLE" if temporary else "CREATE TABLE"
        if if_not_exists:
            create += " IF NOT EXISTS"
        return f"{create} {qualified_name} (\n    " + ',\n    '.join(column_definitions) + "\n)"

    def generate_json_table(self, table_name: str) -> str:
        """Generate the fixed three-column table used for raw JSON documents."""
        return (
            f"CREATE TABLE IF NOT EXISTS {quote_table_name(table_name)} (\n"
            f"    {quote_identifier(JSON_ID_COLUMN)} BIGSERIAL PRIMARY KEY,\n"
            f"    {quote_identifier(JSON_DATA_COLUMN)} TEXT NOT NULL,\n"
            f"    {quote_identifier(JSON_CREATED_AT_COLUMN)} TIMESTAMPTZ NOT NULL DEFAULT now()\n"
            f")"
        )

    def generate_drop_table(self, table_name: str, if_exists: bool = True) -> str:
        """Generate DROP TABLE statement."""
        exists_clause = " IF EXISTS" if if_exists else ""
        return f"DROP TABLE{exists_clause} {quote_table_name(table_name)}"

    def generate_truncate_table(self, table_name: str) -> str:
        """Generate TRUNCATE TABLE statement."""
        return f"TRUNCATE TABLE {quote_table_name(table_name)}"

    def generate_index(self, index: IndexDescriptor, table_name: str, index_name: str) -> str:
        """
        Generate CREATE INDEX for a copy of ``index`` on another table.

        Primary keys are replicated as unique indexes; constraints are not
        copied.

        Args:
            index: Index read from the destination catalog
            table_name: Table receiving the copy
            index_name: Name for the copy, at most 63 characters

        Returns:
            CREATE INDEX DDL statement
        """
        if len(index_name) > MAX_PG_IDENTIFIER_LENGTH:
            raise ValueError(f"Index name too long for PostgreSQL: {index_name}")

        directions = index.sort_directions or ['ASC'] * len(index.columns)
        column_list = ', '.join(
            f"{quote_column_name(col)} {'DESC' if direction.upper() == 'DESC' else 'ASC'}"
            for col, direction in zip(index.columns, directions)
        )
        unique_clause = "UNIQUE " if index.is_unique or index.is_primary_key else ""
        return (
            f"CREATE {unique_clause}INDEX {quote_identifier(index_name)} "
            f"ON {quote_table_name(table_name)} ({column_list})"
        )
