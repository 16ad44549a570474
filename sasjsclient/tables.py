from __future__ import annotations

"""Table codec for translating row records into the SASjs upload format.

Each table becomes a header line of `column:format` tokens followed by
CRLF-joined comma separated rows. Oversized tables are split into ordered
fragments so that no single request field exceeds the server's limit.
"""

import logging
import math
import re
from collections.abc import Mapping, Sequence
from typing import Any

from .errors import ArgumentError, LengthExceededError, SpecialMissingValueError

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 32765
CHUNK_SIZE = 16000
MORE_INFO = "For more info see https://sasjs.io/sasjs-adapter/#request-response"
INVALID_TABLE_STRUCTURE = f"Parameter data contains invalid table structure. {MORE_INFO}"

_SPECIAL_MISSING = re.compile(r"^(?:[A-Za-z_]|\.[a-z_])$")
_TABLE_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_QUOTE_TRIGGERS = ("\t", "\r", "\n", ",", '"')


def is_formats_table(name: str) -> bool:
    """Return whether a table-set key holds explicit column formats."""
    return name.startswith("$")


def is_special_missing(value: Any) -> bool:
    """Return whether a value is a SAS special missing token."""
    return isinstance(value, str) and bool(_SPECIAL_MISSING.match(value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float))


def _byte_width(value: str) -> int:
    """Width of a character value as stored by SAS.

    UTF-8 bytes, plus one per embedded double quote for the doubled escape.
    """
    return len(value.encode("utf-8")) + value.count('"')


def _format_number(value: Any) -> str:
    """Render numbers the way a JSON serializer would."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        return ""
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _quote(value: str) -> str:
    """Double embedded quotes and wrap values that need CSV quoting."""
    escaped = value.replace('"', '""')
    if any(trigger in escaped for trigger in _QUOTE_TRIGGERS):
        escaped = f'"{escaped}"'
    return escaped.replace("\r\n", "\n")


def _encode_special_missing(value: str) -> str:
    if not is_special_missing(value):
        raise SpecialMissingValueError()
    if value.startswith("."):
        return value.lower()
    return "." + value.lower()


def _explicit_formats(data: Mapping[str, Any], table_name: str) -> dict[str, str]:
    entry = data.get(f"${table_name}")
    if not isinstance(entry, Mapping):
        return {}
    formats = entry.get("formats")
    if not isinstance(formats, Mapping):
        return {}
    return {str(column): str(fmt) for column, fmt in formats.items()}


def _infer_format(rows: Sequence[Mapping[str, Any]], column: str) -> str:
    """Infer a column format from its values, reporting mixed types."""
    values = [row.get(column) for row in rows]
    strings = [value for value in values if isinstance(value, str)]
    has_numeric_or_null = any(value is None or _is_number(value) for value in values)

    if strings and has_numeric_or_null and all(is_special_missing(value) for value in strings):
        return "best."

    first_type: str | None = None
    mixed_row = -1
    for index, value in enumerate(values):
        if value is None:
            continue
        current = "chars" if isinstance(value, str) else "number"
        if first_type is None:
            first_type = current
        elif current != first_type:
            mixed_row = index + 1
            break

    if mixed_row != -1:
        logger.error("Row (%d), Column (%s) has mixed types: ERROR", mixed_row, column)

    width = max((_byte_width(value) for value in strings), default=0)
    if first_type == "chars":
        return f"$char{width or 1}."
    if width:
        return f"{width}."
    return "best."


def _column_width(rows: Sequence[Mapping[str, Any]], column: str) -> int:
    return max(
        (_byte_width(row[column]) for row in rows if isinstance(row.get(column), str)),
        default=0,
    )


def _encode_cell(value: Any, is_best: bool) -> str:
    if is_best:
        if value is None or value == "":
            return "."
        if isinstance(value, str):
            return _encode_special_missing(value)
        return _format_number(value) or "."
    if value is None:
        return ""
    if isinstance(value, str):
        return _quote(value)
    return _format_number(value)


def convert_to_csv(data: Mapping[str, Any], table_name: str) -> str:
    """
    Encode one table of a table set.

    Explicit formats from a sibling `$<table_name>` entry take precedence per
    column; every other column is inferred from its values.
    """

    if table_name not in data:
        raise ArgumentError("Error while converting to CSV. No table provided to be converted to CSV.")

    rows = data[table_name]
    if not isinstance(rows, list) or not rows:
        return ""

    explicit = _explicit_formats(data, table_name)
    columns = list(rows[0].keys())

    headers: list[str] = []
    for column in columns:
        if _column_width(rows, column) > MAX_STRING_LENGTH:
            raise LengthExceededError()
        fmt = explicit.get(column) or _infer_format(rows, column)
        headers.append(f"{column}:{fmt}")

    best_columns = [header.endswith(":best.") for header in headers]
    lines = [
        ",".join(
            _encode_cell(row.get(column), is_best)
            for column, is_best in zip(columns, best_columns)
        )
        for row in rows
    ]

    return " ".join(headers) + "\r\n" + "\r\n".join(lines)


def split_chunks(content: str, size: int = CHUNK_SIZE) -> list[str]:
    """Split text into ordered fragments of at most `size` characters."""
    if size < 1:
        raise ValueError("size must be positive")
    return [content[offset:offset + size] for offset in range(0, len(content), size)]


def format_data_for_request(data: Mapping[str, Any]) -> dict[str, str | int]:
    """Build `sasjs<n>data` request fields and the `sasjs_tables` manifest."""
    fields: dict[str, str | int] = {}
    table_names: list[str] = []

    for table_name in data:
        if is_formats_table(table_name):
            continue
        table_names.append(table_name)
        index = len(table_names)
        csv = convert_to_csv(data, table_name)

        if len(csv) > CHUNK_SIZE:
            chunks = split_chunks(csv)
            fields[f"sasjs{index}data0"] = len(chunks)
            for position, chunk in enumerate(chunks, start=1):
                fields[f"sasjs{index}data{position}"] = chunk
        else:
            fields[f"sasjs{index}data"] = csv

    fields["sasjs_tables"] = " ".join(table_names)
    return fields


def validate_input(data: Mapping[str, Any] | None) -> tuple[bool, str]:
    """Check table names and row structure before anything is sent."""
    if data is None:
        return True, ""
    if not isinstance(data, Mapping):
        return False, INVALID_TABLE_STRUCTURE

    def _is_sas_formats_table(key: str) -> bool:
        return is_formats_table(key) and key[1:] in data

    for key, table in data.items():
        formats_table = _is_sas_formats_table(key)
        if not re.match(r"^[a-zA-Z_]", key) and not formats_table:
            return False, "First letter of table should be alphabet or underscore."
        if not _TABLE_NAME.match(key) and not formats_table:
            return False, "Table name should be alphanumeric."
        if len(key) > 32:
            return False, "Maximum length for table name could be 32 characters."
        if formats_table:
            continue
        if not isinstance(table, list):
            return False, INVALID_TABLE_STRUCTURE
        for row in table:
            if not isinstance(row, Mapping):
                return False, f"Table {key} contains invalid structure. {MORE_INFO}"
            for attribute, value in row.items():
                if not _is_supported_cell(value):
                    return (
                        False,
                        f"A row in table {key} contains invalid value. "
                        f"Can't assign {type(value).__name__} to {attribute}.",
                    )

    return True, ""


def _is_supported_cell(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float))


class Tables:
    """Named collection of tables, keyed by macro name."""

    def __init__(self, table: list[Mapping[str, Any]], macro_name: str) -> None:
        self.tables: dict[str, list[Mapping[str, Any]]] = {}
        self.add(table, macro_name)

    def add(self, table: list[Mapping[str, Any]] | None, macro_name: str) -> None:
        if table is None or not macro_name:
            raise ArgumentError("Missing arguments")
        if not isinstance(table, list):
            raise ArgumentError("First argument must be array")
        if not isinstance(macro_name, str):
            raise ArgumentError("Second argument must be string")
        if macro_name[-1].isdigit():
            raise ArgumentError("Macro name cannot have number at the end")
        self.tables[macro_name] = table

    def to_dict(self) -> dict[str, list[Mapping[str, Any]]]:
        return dict(self.tables)
