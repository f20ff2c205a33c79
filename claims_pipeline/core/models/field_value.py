"""
Tagged field values for claim record payloads.

Mapped, unmapped and dynamic fields are ordered mappings from a string key
to a scalar value. JSON has no date type, so dates and datetimes are tagged
on the way out and restored on the way in:

    date(2024, 1, 31)              -> {"$date": "2024-01-31"}
    datetime(2024, 1, 31, 8, 30)   -> {"$datetime": "2024-01-31T08:30:00"}

Everything JSON already represents (str, int, float, bool, None) passes
through untouched. Nested mappings are allowed for enrichment field groups.
"""

import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Union

FieldValue = Union[str, int, float, bool, date, datetime, None]

DATE_TAG = "$date"
DATETIME_TAG = "$datetime"


def coerce_field_value(value: Any) -> Any:
    """
    Normalize a raw cell value into a supported field value.

    Decimals become int or float, NaN becomes None, nested mappings are
    coerced recursively, and anything else unsupported is stringified.
    """
    if value is None or isinstance(value, (bool, str, int, datetime, date)):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) else value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, Mapping):
        return {str(k): coerce_field_value(v) for k, v in value.items()}
    return str(value)


def encode_field_value(value: Any) -> Any:
    """Encode one field value into its JSON-safe tagged form."""
    # datetime is a subclass of date, check it first
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {DATE_TAG: value.isoformat()}
    if isinstance(value, Mapping):
        return encode_fields(value)
    return value


def decode_field_value(value: Any) -> Any:
    """Decode one tagged JSON value back to its Python type."""
    if isinstance(value, dict):
        if len(value) == 1 and DATE_TAG in value:
            return date.fromisoformat(value[DATE_TAG])
        if len(value) == 1 and DATETIME_TAG in value:
            return datetime.fromisoformat(value[DATETIME_TAG])
        return decode_fields(value)
    return value


def encode_fields(fields: Mapping[str, Any] | None) -> dict[str, Any]:
    """Encode a field mapping, preserving key order."""
    if not fields:
        return {}
    return {key: encode_field_value(value) for key, value in fields.items()}


def decode_fields(fields: Mapping[str, Any] | None) -> dict[str, Any]:
    """Decode a field mapping, preserving key order."""
    if not fields:
        return {}
    return {key: decode_field_value(value) for key, value in fields.items()}
