"""
Tests for Identifier Validation and Quoting

These tests pin down the allow-list applied to every table and column name
before it reaches generated SQL.
"""

import pytest
from pg_integration.identifiers import (
    MAX_IDENTIFIER_LENGTH,
    is_valid_column_name,
    is_valid_table_name,
    quote_column_name,
    quote_identifier,
    quote_table_name,
    validate_identifiers,
)


class TestTableNames:
    """Test table name validation."""

    @pytest.mark.parametrize("name", ["Users", "dbo.Users", "_staging", "sales.order_2024", "t1"])
    def test_valid_names(self, name):
        """Plain and schema-qualified names are accepted."""
        assert is_valid_table_name(name)

    @pytest.mark.parametrize("name", [
        "", "   ", None, "1users", "users;drop table x", "a.b.c", "my table", "users--", 'users"',
    ])
    def test_invalid_names(self, name):
        """Anything outside the allow-list is rejected."""
        assert not is_valid_table_name(name)

    def test_length_limit(self):
        """Names longer than the limit are rejected."""
        assert is_valid_table_name("a" * MAX_IDENTIFIER_LENGTH)
        assert not is_valid_table_name("a" * (MAX_IDENTIFIER_LENGTH + 1))


class TestColumnNames:
    """Test column name validation."""

    def test_valid(self):
        assert is_valid_column_name("Id")
        assert is_valid_column_name("address_city")

    def test_qualified_name_rejected(self):
        """Column names are never schema qualified."""
        assert not is_valid_column_name("t.id")

    def test_spaces_rejected(self):
        assert not is_valid_column_name("Order Date")


class TestQuoting:
    """Test identifier quoting."""

    def test_quote_identifier_doubles_quotes(self):
        """Embedded quotes are doubled so the result stays one identifier."""
        assert quote_identifier('we"ird') == '"we""ird"'

    def test_quote_table_name_with_schema(self):
        assert quote_table_name("sales.Orders") == '"sales"."Orders"'

    def test_quote_table_name_rejects_invalid(self):
        with pytest.raises(ValueError):
            quote_table_name("Orders; DROP TABLE x")

    def test_quote_column_name_preserves_case(self):
        """Case is kept; PostgreSQL quoted identifiers are case sensitive."""
        assert quote_column_name("Name") == '"Name"'


class TestValidateIdentifiers:
    """Test combined validation."""

    def test_all_valid(self):
        result = validate_identifiers("Users", ["Id", "Name"])
        assert result.is_valid
        assert result.errors == []

    def test_accumulates_every_error(self):
        """Every invalid name is reported, not just the first."""
        result = validate_identifiers("bad table", ["ok", "bad col", "1x"])
        assert not result.is_valid
        assert len(result.errors) == 3
        assert "bad table" in result.errors[0]

    def test_nothing_to_check(self):
        assert validate_identifiers().is_valid
