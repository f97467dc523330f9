"""
Identifier Validation and Quoting

Every table and column name that ends up inside generated SQL passes through
this module first. Names are checked against a strict allow-list and then
quoted as PostgreSQL identifiers.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

MAX_IDENTIFIER_LENGTH = 128

TABLE_NAME_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)?$')
COLUMN_NAME_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


@dataclass
class ValidationResult:
    """Accumulated identifier validation errors."""

    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def is_valid_table_name(table_name: Optional[str]) -> bool:
    """
    Check a table name of the form ``table`` or ``schema.table``.

    Args:
        table_name: Name to check

    Returns:
        True if the name matches the allow-list
    """
    if not table_name or not table_name.strip():
        return False
    if len(table_name) > MAX_IDENTIFIER_LENGTH:
        return False
    return TABLE_NAME_PATTERN.match(table_name) is not None


def is_valid_column_name(column_name: Optional[str]) -> bool:
    """Check a single, unqualified column name."""
    if not column_name or not column_name.strip():
        return False
    if len(column_name) > MAX_IDENTIFIER_LENGTH:
        return False
    return COLUMN_NAME_PATTERN.match(column_name) is not None


def quote_identifier(identifier: str) -> str:
    """
    Quote a single identifier for PostgreSQL.

    Embedded double quotes are doubled so the result is always one identifier.
    """
    return '"' + identifier.replace('"', '""') + '"'


def quote_table_name(table_name: str) -> str:
    """
    Quote a validated ``schema.table`` or ``table`` name.

    Raises:
        ValueError: If the name does not pass the allow-list
    """
    if not is_valid_table_name(table_name):
        raise ValueError(f"Invalid table name: {table_name}")
    return '.'.join(quote_identifier(part) for part in table_name.split('.'))


def quote_column_name(column_name: str) -> str:
    """Quote a validated column name; raises ValueError when it is not allowed."""
    if not is_valid_column_name(column_name):
        raise ValueError(f"Invalid column name: {column_name}")
    return quote_identifier(column_name)


def validate_identifiers(
    table_name: Optional[str] = None,
    column_names: Optional[Iterable[str]] = None,
) -> ValidationResult:
    """
    Validate a table name and a set of column names together.

    Args:
        table_name: Destination table, checked when given
        column_names: Column names, each checked when given

    Returns:
        ValidationResult listing every problem found
    """
    result = ValidationResult()

    if table_name is not None and not is_valid_table_name(table_name):
        result.errors.append(
            f"Invalid table name: '{table_name}'. Only letters, numbers, underscores, "
            f"and dots (for schema.table) are allowed."
        )

    if column_names is not None:
        for column in column_names:
            if not is_valid_column_name(column):
                result.errors.append(
                    f"Invalid column name: '{column}'. Only letters, numbers, and underscores are allowed."
                )

    return result
