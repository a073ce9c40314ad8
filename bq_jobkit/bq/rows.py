from __future__ import annotations

import base64
import copy
import datetime
import decimal
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from google.cloud import bigquery

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


@dataclass(frozen=True)
class IntegerTypeCastOptions:
    integer_type_cast_function: Callable[[str], Any]
    fields: Optional[Sequence[str]] = None


class BigQueryInt:
    """INT64 value kept as its exact wire text until converted."""

    def __init__(
        self,
        value: Union[str, int],
        field_name: Optional[str] = None,
        type_cast_options: Optional[IntegerTypeCastOptions] = None,
    ) -> None:
        self.type = "BigQueryInt"
        self.value = str(value)
        self.field_name = field_name
        self._type_cast_options = type_cast_options

    def value_of(self) -> Any:
        options = self._type_cast_options
        if options is not None:
            if options.fields is None or self.field_name in options.fields:
                return options.integer_type_cast_function(self.value)
        return int(self.value)

    def __int__(self) -> int:
        return int(self.value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, BigQueryInt):
            return self.value == other.value
        if isinstance(other, int):
            return int(self.value) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(int(self.value))

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"BigQueryInt({self.value!r})"


def _split_fraction(value: str) -> str:
    if "." not in value:
        return value
    head, fraction = value.split(".", 1)
    return f"{head}.{fraction[:6].ljust(6, '0')}"


def _decode_timestamp(value: str) -> datetime.datetime:
    if "." in value or "E" in value or "e" in value:
        return _EPOCH + datetime.timedelta(seconds=float(value))
    return _EPOCH + datetime.timedelta(microseconds=int(value))


def _decode_datetime(value: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(_split_fraction(value.replace(" ", "T")))


def _decode_time(value: str) -> datetime.time:
    return datetime.time.fromisoformat(_split_fraction(value))


def _decode_scalar(
    field: bigquery.SchemaField,
    value: Any,
    wrap_integers: Union[bool, IntegerTypeCastOptions],
    parse_json: bool,
) -> Any:
    field_type = field.field_type.upper()
    if field_type in ("INTEGER", "INT64"):
        if wrap_integers:
            options = wrap_integers if isinstance(wrap_integers, IntegerTypeCastOptions) else None
            return BigQueryInt(value, field_name=field.name, type_cast_options=options)
        return int(value)
    if field_type in ("FLOAT", "FLOAT64"):
        return float(value)
    if field_type in ("NUMERIC", "BIGNUMERIC"):
        return decimal.Decimal(value)
    if field_type in ("BOOLEAN", "BOOL"):
        return value.lower() == "true" if isinstance(value, str) else bool(value)
    if field_type == "BYTES":
        return base64.b64decode(value)
    if field_type == "TIMESTAMP":
        return _decode_timestamp(value)
    if field_type == "DATE":
        return datetime.date.fromisoformat(value)
    if field_type == "DATETIME":
        return _decode_datetime(value)
    if field_type == "TIME":
        return _decode_time(value)
    if field_type == "JSON" and parse_json:
        return json.loads(value)
    return value


def _decode_cell(
    field: bigquery.SchemaField,
    value: Any,
    wrap_integers: Union[bool, IntegerTypeCastOptions],
    parse_json: bool,
) -> Any:
    if value is None:
        return None
    if field.mode == "REPEATED":
        return [_decode_value(field, item.get("v"), wrap_integers, parse_json) for item in value]
    return _decode_value(field, value, wrap_integers, parse_json)


def _decode_value(
    field: bigquery.SchemaField,
    value: Any,
    wrap_integers: Union[bool, IntegerTypeCastOptions],
    parse_json: bool,
) -> Any:
    if value is None:
        return None
    if field.field_type.upper() in ("RECORD", "STRUCT"):
        return _decode_record(field.fields, value, wrap_integers, parse_json)
    return _decode_scalar(field, value, wrap_integers, parse_json)


def _decode_record(
    fields: Sequence[bigquery.SchemaField],
    value: Dict[str, Any],
    wrap_integers: Union[bool, IntegerTypeCastOptions],
    parse_json: bool,
) -> Dict[str, Any]:
    cells = value.get("f") or []
    return {
        field.name: _decode_cell(field, cell.get("v"), wrap_integers, parse_json)
        for field, cell in zip(fields, cells)
    }


def schema_fields(schema: Union[Dict[str, Any], Sequence[Any], None]) -> List[bigquery.SchemaField]:
    if not schema:
        return []
    raw_fields = schema.get("fields", []) if isinstance(schema, dict) else schema
    return [
        field if isinstance(field, bigquery.SchemaField) else bigquery.SchemaField.from_api_repr(copy.deepcopy(field))
        for field in raw_fields
    ]


def merge_schema_with_rows(
    schema: Union[Dict[str, Any], Sequence[Any]],
    rows: List[Dict[str, Any]],
    wrap_integers: Union[bool, IntegerTypeCastOptions] = False,
    parse_json: bool = False,
) -> List[bigquery.Row]:
    fields = schema_fields(schema)
    field_to_index = {field.name: index for index, field in enumerate(fields)}
    merged: List[bigquery.Row] = []
    for row in rows:
        cells = row.get("f") or []
        values = tuple(
            _decode_cell(field, cell.get("v"), wrap_integers, parse_json)
            for field, cell in zip(fields, cells)
        )
        merged.append(bigquery.Row(values, field_to_index))
    return merged
