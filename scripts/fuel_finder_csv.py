#!/usr/bin/env python3
"""Validate the Fuel Finder CSV and convert it into nested JSON records.

Header cells are dotted key paths such as ``forecourts.fuel_price.diesel``.
Each data row becomes one object in which those paths are expanded into
nested objects, in header column order.
"""

from __future__ import annotations

import csv
import io
import json
import math
import sys
from typing import Any, Dict, List, Optional, Sequence, Type, Union

from fuel_finder_common import decode_csv_payload, format_exception_message

NULLABLE_NUMERIC_FIELDS = frozenset(
    {
        "forecourts.location.latitude",
        "forecourts.location.longitude",
    }
)
NULLABLE_NUMERIC_PREFIXES = ("forecourts.fuel_price.",)
BOOLEAN_LITERALS = {"true": True, "false": False}
# Larger magnitudes are written in exponent form rather than as integers.
MAX_INTEGRAL_JSON_NUMBER = 1e21

FieldValue = Union[None, int, float, bool, str]


def _raise_field_size_limit() -> None:
    limit = sys.maxsize
    while True:
        try:
            csv.field_size_limit(limit)
            return
        except OverflowError:
            limit //= 10


_raise_field_size_limit()


class CsvValidationError(ValueError):
    """The payload is not lexically valid CSV."""


class ConversionError(ValueError):
    """A CSV row could not be turned into a JSON record."""


def find_bare_quote(text: str) -> Optional[int]:
    """Return the line number of the first quote inside an unquoted field, if any."""
    line = 1
    in_quotes = False
    field_start = True
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char == "\n":
            line += 1
        if in_quotes:
            if char == '"':
                if index + 1 < length and text[index + 1] == '"':
                    index += 1
                else:
                    in_quotes = False
        elif char == '"':
            if not field_start:
                return line
            in_quotes = True
            field_start = False
        elif char in ",\n":
            field_start = True
        else:
            field_start = False
        index += 1
    return None


def _csv_reader(payload: bytes, error_type: Type[ValueError]) -> Any:
    text = decode_csv_payload(payload)
    bare_quote_line = find_bare_quote(text)
    if bare_quote_line is not None:
        raise error_type(f'line {bare_quote_line}: bare " in non-quoted field')
    return csv.reader(io.StringIO(text, newline=""), strict=True)


def validate_csv(payload: bytes) -> int:
    """Read every row of ``payload`` and return the number of rows seen.

    Rows may have differing field counts; only quoting errors fail.
    """
    reader = _csv_reader(payload, CsvValidationError)
    rows = 0
    try:
        for _ in reader:
            rows += 1
    except csv.Error as exc:
        raise CsvValidationError(
            f"line {reader.line_num}: {format_exception_message(exc)}"
        ) from exc
    return rows


def is_nullable_numeric_field(key: str) -> bool:
    if key in NULLABLE_NUMERIC_FIELDS:
        return True
    return key.startswith(NULLABLE_NUMERIC_PREFIXES)


def parse_number(raw: str) -> Union[int, float]:
    # float() tolerates padding and digit underscores; the feed never carries either.
    if raw != raw.strip() or "_" in raw:
        raise ValueError(f"invalid number {raw!r}")
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"non-finite number {raw!r}")
    if value.is_integer() and abs(value) < MAX_INTEGRAL_JSON_NUMBER:
        return int(value)
    return value


def normalize_value(key: str, raw: str) -> FieldValue:
    nullable_numeric = is_nullable_numeric_field(key)
    if raw == "":
        return None if nullable_numeric else ""
    if nullable_numeric:
        return parse_number(raw)
    if raw in BOOLEAN_LITERALS:
        return BOOLEAN_LITERALS[raw]
    return raw


def set_nested_value(root: Dict[str, Any], path: Sequence[str], value: FieldValue) -> None:
    if not path:
        raise ConversionError("empty key path")

    current = root
    for index, segment in enumerate(path[:-1]):
        if not segment:
            raise ConversionError("empty key segment")
        if segment not in current:
            child: Dict[str, Any] = {}
            current[segment] = child
            current = child
            continue
        existing = current[segment]
        if not isinstance(existing, dict):
            raise ConversionError(f"{'.'.join(path[: index + 1])} is not an object")
        current = existing

    leaf = path[-1]
    if not leaf:
        raise ConversionError("empty key segment")
    current[leaf] = value


def build_record(header: Sequence[str], row: Sequence[str]) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for key, raw in zip(header, row):
        try:
            value = normalize_value(key, raw)
        except ValueError as exc:
            raise ConversionError(f"parse {key}: {format_exception_message(exc)}") from exc
        try:
            set_nested_value(record, key.split("."), value)
        except ConversionError as exc:
            raise ConversionError(f"set {key}: {exc}") from exc
    return record


def csv_to_records(payload: bytes) -> List[Dict[str, Any]]:
    reader = _csv_reader(payload, ConversionError)
    try:
        header = next((row for row in reader if row), None)
        if not header:
            raise ConversionError("missing header row")

        records: List[Dict[str, Any]] = []
        for row in reader:
            if not row:
                continue
            if len(row) != len(header):
                raise ConversionError(
                    f"line {reader.line_num} has {len(row)} fields, expected {len(header)}"
                )
            records.append(build_record(header, row))
    except csv.Error as exc:
        raise ConversionError(
            f"line {reader.line_num}: {format_exception_message(exc)}"
        ) from exc
    return records


def convert_csv_to_json(payload: bytes) -> bytes:
    records = csv_to_records(payload)
    return json.dumps(records, indent=2, ensure_ascii=False, allow_nan=False).encode("utf-8")
