"""Record normalization into flat, serialization-safe rows."""

import json
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Union
from uuid import UUID

from bulk_exports.errors import EncodingError

Scalar = Union[str, int, float, Decimal, bool]
Row = Dict[str, Scalar]

INTERNAL_PREFIX = "_"


def transform_record(record: Mapping[str, Any]) -> Row:
    """
    Normalize one raw record into an ordered flat row.

    Fields whose name starts with the internal prefix are dropped, dates and
    times become ISO-8601 strings, nulls become empty strings and nested
    objects or lists become canonical JSON text. Key order is preserved.

    Raises:
        EncodingError: If a key or value cannot be represented
    """
    row: Row = {}
    for key, value in record.items():
        if not isinstance(key, str):
            raise EncodingError(f"Column name must be a string, got {key!r}")
        if key.startswith(INTERNAL_PREFIX):
            continue
        row[key] = _transform_value(key, value)
    return row


def _transform_value(key: str, value: Any) -> Scalar:
    if value is None:
        return ""
    if isinstance(value, (str, bool, int, float, Decimal)):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return _transform_value(key, value.value)
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(
                value,
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
                allow_nan=False,
                default=_json_default,
            )
        except (TypeError, ValueError) as e:
            raise EncodingError(f"Column {key}: cannot serialize nested value: {e}") from e
    raise EncodingError(
        f"Column {key}: unsupported value type {type(value).__name__}"
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
