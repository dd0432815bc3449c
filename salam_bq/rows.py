"""Conversions between warehouse values and pipeline rows.

Pipeline rows are plain dicts holding JSON-compatible values in the shape the
warehouse's JSON API uses: integers and floats stay numeric, timestamps are
rendered as ``YYYY-MM-DD HH:MM:SS.ffffff UTC``, bytes are base64 text.
"""

from __future__ import annotations

import base64
import datetime as dt
import decimal
from typing import Any, Dict, List, Mapping, Optional

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f UTC"


def _field_type(field: Mapping[str, Any]) -> str:
    return str(field.get("type", "STRING")).upper()


def _field_mode(field: Mapping[str, Any]) -> str:
    return str(field.get("mode") or "NULLABLE").upper()


def _format_timestamp(value: Any) -> Any:
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return value.strftime(TIMESTAMP_FORMAT)
    if isinstance(value, (int, float)):
        # Epoch microseconds, as some exporters write them.
        return (dt.datetime(1970, 1, 1) + dt.timedelta(microseconds=int(value))).strftime(TIMESTAMP_FORMAT)
    return value


def _convert_value(field: Mapping[str, Any], value: Any) -> Any:
    kind = _field_type(field)
    if kind in {"RECORD", "STRUCT"}:
        return convert_record(value, field.get("fields") or [])
    if kind in {"INTEGER", "INT64"}:
        return int(value)
    if kind in {"FLOAT", "FLOAT64"}:
        return float(value)
    if kind in {"BOOLEAN", "BOOL"}:
        return bool(value)
    if kind in {"NUMERIC", "BIGNUMERIC"}:
        return str(value)
    if kind == "BYTES":
        if isinstance(value, (bytes, bytearray)):
            return base64.b64encode(bytes(value)).decode("ascii")
        return value
    if kind == "TIMESTAMP":
        return _format_timestamp(value)
    if kind == "DATETIME":
        if isinstance(value, dt.datetime):
            return value.replace(tzinfo=None).isoformat()
        return str(value)
    if kind in {"DATE", "TIME"}:
        return value.isoformat() if hasattr(value, "isoformat") else str(value)
    return value if isinstance(value, str) else str(value)


def convert_field(field: Mapping[str, Any], value: Any) -> Any:
    name = field.get("name")
    mode = _field_mode(field)
    if mode == "REPEATED":
        if value is None:
            return []
        return [_convert_value(field, item) for item in value]
    if value is None:
        if mode == "REQUIRED":
            raise ValueError(f"REQUIRED field {name} is null")
        return None
    return _convert_value(field, value)


def convert_record(record: Optional[Mapping[str, Any]], schema: List[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Decode one snapshot record into a pipeline row following the table schema."""
    if record is None:
        return None
    return {field["name"]: convert_field(field, record.get(field["name"])) for field in schema}


def encode_json_value(value: Any) -> Any:
    """``json.dumps`` default hook for staging rows."""
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None:
            return _format_timestamp(value)
        return value.isoformat()
    if isinstance(value, (dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if hasattr(value, "asDict"):
        return value.asDict(recursive=True)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def as_table_row(row: Any) -> Dict[str, Any]:
    """Accept dicts and Spark ``Row`` objects alike."""
    if isinstance(row, Mapping):
        return dict(row)
    if hasattr(row, "asDict"):
        return row.asDict(recursive=True)
    raise TypeError(f"Unsupported row type: {type(row).__name__}")
