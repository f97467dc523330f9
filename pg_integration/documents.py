"""
Document Conversion

Turns MongoDB documents into flat field maps and field values into values
the bulk sink can COPY. The same rules run during schema sampling and while
streaming, so a sampled document and a streamed document always produce the
same fields.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Collection, Dict, Mapping, Optional, Tuple

from bson import json_util
from bson.decimal128 import Decimal128
from bson.int64 import Int64
from bson.json_util import RELAXED_JSON_OPTIONS
from bson.objectid import ObjectId
from bson.timestamp import Timestamp

from pg_integration.exceptions import DocumentConversionError
from pg_integration.models import ArrayHandling, Column, MongoOptions
from pg_integration.type_mapping import type_category

ID_FIELD = '_id'

INT32_MIN, INT32_MAX = -2 ** 31, 2 ** 31 - 1
INT64_MIN, INT64_MAX = -2 ** 63, 2 ** 63 - 1

_SKIP = object()

FieldPath = Tuple[str, ...]


def bson_type_name(value: Any) -> Optional[str]:
    """
    Name the document type of a leaf value, as used by the type mapping.

    Returns None for nulls so they do not vote during inference.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, Int64):
        return 'int64'
    if isinstance(value, int):
        return 'int32' if INT32_MIN <= value <= INT32_MAX else 'int64'
    if isinstance(value, float):
        return 'double'
    if isinstance(value, (Decimal128, Decimal)):
        return 'decimal128'
    if isinstance(value, datetime):
        return 'utcdatetime'
    if isinstance(value, Timestamp):
        return 'bsontimestamp'
    if isinstance(value, ObjectId):
        return 'objectid'
    if isinstance(value, (bytes, bytearray)):
        return 'bindata'
    if isinstance(value, uuid.UUID):
        return 'uuid'
    return 'string'


def to_json(value: Any) -> str:
    """Serialize a document or array as relaxed Extended JSON."""
    try:
        return json_util.dumps(value, json_options=RELAXED_JSON_OPTIONS)
    except (TypeError, ValueError) as e:
        raise DocumentConversionError(f"Cannot serialize value to JSON: {e}") from e


def convert_value(value: Any) -> Any:
    """
    Convert a BSON leaf value into a plain Python value.

    ObjectId becomes its hex string, datetimes are normalized to UTC,
    Decimal128 becomes Decimal, BSON timestamps become UTC datetimes and
    nested documents or arrays become JSON text. Anything unrecognized is
    stringified.
    """
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, Decimal):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, Timestamp):
        return value.as_datetime()
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (Mapping, list, tuple)):
        return to_json(value)
    return str(value)


def _handle_array(values: list, array_handling: ArrayHandling) -> Any:
    if array_handling == ArrayHandling.SKIP:
        return _SKIP
    if array_handling == ArrayHandling.FIRST_ELEMENT:
        return values[0] if values else None
    return values


def _flatten_into(result: Dict[FieldPath, Any], document: Mapping,
                  array_handling: ArrayHandling, path: FieldPath = ()) -> None:
    for key, value in document.items():
        field_path = path + (str(key),)
        if isinstance(value, Mapping):
            _flatten_into(result, value, array_handling, field_path)
        elif isinstance(value, list):
            handled = _handle_array(value, array_handling)
            if handled is not _SKIP:
                result[field_path] = handled
        else:
            result[field_path] = value


def flatten_paths(document: Any, options: MongoOptions) -> Dict[FieldPath, Any]:
    """
    Turn a document into an ordered map of field path to leaf value.

    With flattening on, every leaf is keyed by the path of keys leading to
    it (``("address", "city")``). With it off, nested documents stay whole
    under their top-level key and are stored as JSON text. Arrays follow the
    array policy: kept for JSON serialization, dropped, or reduced to their
    first element.

    Raises:
        DocumentConversionError: If the document is not a mapping
    """
    if not isinstance(document, Mapping):
        raise DocumentConversionError(f"Expected a document, got {type(document).__name__}")

    result: Dict[FieldPath, Any] = {}
    if options.flatten_nested_documents:
        _flatten_into(result, document, options.array_handling)
        return result

    for key, value in document.items():
        if isinstance(value, list):
            value = _handle_array(value, options.array_handling)
            if value is _SKIP:
                continue
        result[(str(key),)] = value
    return result


def flatten_document(document: Any, options: MongoOptions) -> Dict[str, Any]:
    """Flatten a document into field names joined with the separator (``address_city``)."""
    separator = options.flatten_separator
    return {separator.join(path): value for path, value in flatten_paths(document, options).items()}


def _matches(path: FieldPath, names: Collection[str], separator: str) -> bool:
    # A field matches its own name or the name of any document it was flattened out of
    return any(separator.join(path[:depth]) in names for depth in range(1, len(path) + 1))


def apply_field_filters(fields: Dict[FieldPath, Any], options: MongoOptions) -> Dict[str, Any]:
    """
    Apply include/exclude lists and the ``_id`` rule to flattened fields.

    Names match whole fields only: ``name`` never selects a sibling field
    called ``name_suffix``, while ``address`` selects everything flattened
    out of the ``address`` sub-document. ``_id`` (and anything flattened out
    of it) is dropped unless it is named in the include list.
    """
    include = set(options.include_fields or ())
    exclude = set(options.exclude_fields or ())
    separator = options.flatten_separator

    filtered = {}
    for path, value in fields.items():
        if path[0] == ID_FIELD and not _matches(path, include, separator):
            continue
        if include and not _matches(path, include, separator):
            continue
        if exclude and _matches(path, exclude, separator):
            continue
        filtered[separator.join(path)] = value
    return filtered


def document_to_fields(document: Any, options: MongoOptions) -> Dict[str, Any]:
    """Flatten a document and apply the field filters."""
    return apply_field_filters(flatten_paths(document, options), options)


def coerce_to_column(value: Any, column: Column) -> Any:
    """
    Convert a leaf value for storage in ``column``.

    Raises:
        DocumentConversionError: When the value cannot be stored in the
            column's inferred type, e.g. text in an integer column
    """
    converted = convert_value(value)
    if converted is None:
        return None

    category = type_category(column.source_type_name)

    if category == 'string' or category == 'other' or category == 'uuid':
        if isinstance(converted, str):
            return converted
        if isinstance(converted, datetime):
            return converted.isoformat()
        if isinstance(converted, bytes):
            return converted.hex()
        return str(converted)

    if category == 'integer' and isinstance(converted, int) and not isinstance(converted, bool):
        low, high = (INT32_MIN, INT32_MAX) if column.source_type_name == 'int32' else (INT64_MIN, INT64_MAX)
        if low <= converted <= high:
            return converted
    elif category == 'float' and isinstance(converted, (int, float)) and not isinstance(converted, bool):
        return float(converted)
    elif category == 'decimal' and isinstance(converted, (int, float, Decimal)) and not isinstance(converted, bool):
        return converted if isinstance(converted, Decimal) else Decimal(str(converted))
    elif category == 'boolean' and isinstance(converted, bool):
        return converted
    elif category in ('timestamp', 'timestamptz') and isinstance(converted, datetime):
        return converted
    elif category == 'binary' and isinstance(converted, bytes):
        return converted

    raise DocumentConversionError(
        f"Field '{column.name}' holds {type(value).__name__}, "
        f"which cannot be stored as {column.source_type_name}"
    )


def serialize_document(document: Any) -> str:
    """Serialize a whole document for the JSON passthrough table."""
    if not isinstance(document, Mapping):
        raise DocumentConversionError(f"Expected a document, got {type(document).__name__}")
    return to_json(document)
