"""
Tests for Document Conversion
"""

import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from bson.decimal128 import Decimal128
from bson.int64 import Int64
from bson.objectid import ObjectId
from bson.timestamp import Timestamp

from pg_integration.documents import (
    apply_field_filters,
    bson_type_name,
    coerce_to_column,
    convert_value,
    document_to_fields,
    flatten_document,
    serialize_document,
)
from pg_integration.exceptions import DocumentConversionError
from pg_integration.models import ArrayHandling, Column, MongoOptions


class TestBsonTypeName:
    """Test leaf type naming used by inference."""

    @pytest.mark.parametrize("value,expected", [
        (None, None),
        (True, "bool"),
        (5, "int32"),
        (2 ** 40, "int64"),
        (Int64(5), "int64"),
        (1.5, "double"),
        (Decimal128("1.10"), "decimal128"),
        (datetime(2024, 1, 1), "utcdatetime"),
        (Timestamp(0, 1), "bsontimestamp"),
        (ObjectId(), "objectid"),
        (b"\x00", "bindata"),
        ("x", "string"),
    ])
    def test_names(self, value, expected):
        assert bson_type_name(value) == expected


class TestConvertValue:
    """Test leaf value conversion."""

    def test_object_id_becomes_hex(self):
        oid = ObjectId("65a1b2c3d4e5f60718293a4b")
        assert convert_value(oid) == "65a1b2c3d4e5f60718293a4b"

    def test_naive_datetime_becomes_utc(self):
        converted = convert_value(datetime(2024, 1, 1, 12, 0))
        assert converted.tzinfo == timezone.utc
        assert converted.hour == 12

    def test_decimal128(self):
        assert convert_value(Decimal128("12.50")) == Decimal("12.50")

    def test_uuid_stringified(self):
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        assert convert_value(value) == "12345678-1234-5678-1234-567812345678"

    def test_nested_becomes_json(self):
        assert json.loads(convert_value({"a": 1})) == {"a": 1}
        assert json.loads(convert_value([1, 2])) == [1, 2]


class TestFlatten:
    """Test flattening and array policies."""

    def test_nested_documents_flattened(self):
        doc = {"name": "A", "address": {"city": "Oslo", "geo": {"lat": 1.0}}}
        assert flatten_document(doc, MongoOptions()) == {
            "name": "A", "address_city": "Oslo", "address_geo_lat": 1.0,
        }

    def test_custom_separator(self):
        doc = {"address": {"city": "Oslo"}}
        assert flatten_document(doc, MongoOptions(flatten_separator=".")) == {"address.city": "Oslo"}

    def test_flattening_off_keeps_documents(self):
        doc = {"address": {"city": "Oslo"}}
        assert flatten_document(doc, MongoOptions(flatten_nested_documents=False)) == {"address": {"city": "Oslo"}}

    def test_array_serialize(self):
        assert flatten_document({"tags": ["a", "b"]}, MongoOptions()) == {"tags": ["a", "b"]}

    def test_array_skip_drops_field(self):
        options = MongoOptions(array_handling=ArrayHandling.SKIP)
        assert flatten_document({"id": 1, "tags": ["a"]}, options) == {"id": 1}

    def test_array_first_element(self):
        options = MongoOptions(array_handling="FirstElement")
        assert flatten_document({"tags": ["a", "b"], "none": []}, options) == {"tags": "a", "none": None}

    def test_not_a_document(self):
        with pytest.raises(DocumentConversionError):
            flatten_document(["not", "a", "doc"], MongoOptions())


class TestFieldFilters:
    """Test include/exclude handling."""

    def test_id_dropped_by_default(self):
        fields = {("_id",): "x", ("name",): "A"}
        assert apply_field_filters(fields, MongoOptions()) == {"name": "A"}

    def test_id_kept_when_included(self):
        fields = {("_id",): "x", ("name",): "A"}
        assert apply_field_filters(fields, MongoOptions(include_fields=["_id", "name"])) == {"_id": "x", "name": "A"}

    def test_fields_flattened_out_of_id_are_dropped(self):
        fields = {("_id", "region"): "eu", ("_id", "year"): 2024, ("total",): 5}
        assert apply_field_filters(fields, MongoOptions()) == {"total": 5}

    def test_field_that_starts_like_id_is_kept(self):
        """``_id_card`` is its own top-level field, not part of ``_id``."""
        doc = {"_id": 1, "_id_card": "X123", "name": "a"}
        assert document_to_fields(doc, MongoOptions()) == {"_id_card": "X123", "name": "a"}

    def test_include_matches_flattened_children(self):
        fields = {("address", "city"): "Oslo", ("address", "zip"): "0150", ("name",): "A"}
        options = MongoOptions(include_fields=["address"])
        assert apply_field_filters(fields, options) == {"address_city": "Oslo", "address_zip": "0150"}

    def test_include_matches_whole_names_only(self):
        doc = {"name": "a", "name_suffix": "Jr"}
        assert document_to_fields(doc, MongoOptions(include_fields=("name",))) == {"name": "a"}

    def test_include_flattened_name(self):
        doc = {"address": {"city": "Oslo", "zip": "0150"}}
        options = MongoOptions(include_fields=["address_city"])
        assert document_to_fields(doc, options) == {"address_city": "Oslo"}

    def test_exclude(self):
        fields = {("name",): "A", ("secret",): "s", ("secret", "key"): "k", ("secret_note",): "n"}
        assert apply_field_filters(fields, MongoOptions(exclude_fields=["secret"])) == {
            "name": "A",
            "secret_note": "n",
        }

    def test_document_to_fields(self):
        doc = {"_id": ObjectId(), "profile": {"age": 30}}
        assert document_to_fields(doc, MongoOptions()) == {"profile_age": 30}


class TestCoerce:
    """Test conversion into inferred column types."""

    def test_integer(self):
        assert coerce_to_column(5, Column(name="n", source_type_name="int32")) == 5

    def test_int32_overflow_rejected(self):
        with pytest.raises(DocumentConversionError):
            coerce_to_column(2 ** 31, Column(name="n", source_type_name="int32"))

    def test_text_in_integer_column_rejected(self):
        with pytest.raises(DocumentConversionError):
            coerce_to_column("abc", Column(name="n", source_type_name="int64"))

    def test_int_widens_into_double_and_decimal(self):
        assert coerce_to_column(3, Column(name="d", source_type_name="double")) == 3.0
        assert coerce_to_column(3, Column(name="d", source_type_name="decimal128")) == Decimal("3")

    def test_anything_goes_into_string(self):
        column = Column(name="s", source_type_name="string")
        assert coerce_to_column(12, column) == "12"
        assert coerce_to_column(ObjectId("65a1b2c3d4e5f60718293a4b"), column) == "65a1b2c3d4e5f60718293a4b"

    def test_null(self):
        assert coerce_to_column(None, Column(name="n", source_type_name="int32")) is None

    def test_bool_not_accepted_as_integer(self):
        with pytest.raises(DocumentConversionError):
            coerce_to_column(True, Column(name="n", source_type_name="int32"))


class TestSerializeDocument:
    """Test whole-document JSON serialization."""

    def test_relaxed_extended_json(self):
        oid = ObjectId("65a1b2c3d4e5f60718293a4b")
        data = json.loads(serialize_document({"_id": oid, "n": 1}))
        assert data == {"_id": {"$oid": "65a1b2c3d4e5f60718293a4b"}, "n": 1}

    def test_not_a_document(self):
        with pytest.raises(DocumentConversionError):
            serialize_document("text")
