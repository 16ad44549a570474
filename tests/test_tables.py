from __future__ import annotations

import logging

import pytest

from sasjsclient.errors import ArgumentError, LengthExceededError, SpecialMissingValueError
from sasjsclient.tables import (
    CHUNK_SIZE,
    INVALID_TABLE_STRUCTURE,
    Tables,
    convert_to_csv,
    format_data_for_request,
    is_formats_table,
    is_special_missing,
    split_chunks,
    validate_input,
)


def test_convert_to_csv_infers_char_and_numeric_columns() -> None:
    data = {
        "foo": [
            {"var1": "string value", "var2": 232323},
            {"var1": "another string", "var2": 3},
        ]
    }

    assert convert_to_csv(data, "foo") == (
        "var1:$char14. var2:best.\r\nstring value,232323\r\nanother string,3"
    )


def test_convert_to_csv_quotes_values_and_counts_doubled_quotes_in_width() -> None:
    data = {"foo": [{"var1": 'hello "world"'}, {"var1": "a,b"}, {"var1": "it's"}]}

    assert convert_to_csv(data, "foo") == (
        'var1:$char15.\r\n"hello ""world"""\r\n"a,b"\r\nit\'s'
    )


@pytest.mark.parametrize(
    ("value", "header", "cell"),
    [
        ("a\tb", "v:$char3.", '"a\tb"'),
        ("a\r\nb", "v:$char4.", '"a\nb"'),
        ("a\nb", "v:$char3.", '"a\nb"'),
        ("a;b", "v:$char3.", "a;b"),
        ("50%", "v:$char3.", "50%"),
        ("'", "v:$char1.", "'"),
        ('a"b', "v:$char4.", '"a""b"'),
        ("€euro", "v:$char7.", "€euro"),
    ],
)
def test_convert_to_csv_encodes_special_characters(value: str, header: str, cell: str) -> None:
    assert convert_to_csv({"t": [{"v": value}]}, "t") == f"{header}\r\n{cell}"


def test_convert_to_csv_measures_utf8_byte_width() -> None:
    data = {"foo": [{"var1": "€euro"}]}

    assert convert_to_csv(data, "foo") == "var1:$char7.\r\n€euro"


def test_convert_to_csv_normalizes_crlf_inside_values() -> None:
    data = {"foo": [{"var1": "line1\r\nline2"}, {"var1": "tab\there"}]}

    csv = convert_to_csv(data, "foo")

    assert csv.split("\r\n", 1)[1] == '"line1\nline2"\r\n"tab\there"'


def test_convert_to_csv_empty_character_column_uses_char1() -> None:
    data = {"foo": [{"var1": ""}, {"var1": ""}]}

    assert convert_to_csv(data, "foo") == "var1:$char1.\r\n\r\n"


def test_convert_to_csv_null_only_column_is_best() -> None:
    data = {"foo": [{"var1": None}, {"var1": 1.5}]}

    assert convert_to_csv(data, "foo") == "var1:best.\r\n.\r\n1.5"


def test_convert_to_csv_encodes_special_missing_values() -> None:
    data = {"foo": [{"var1": 1}, {"var1": "A"}, {"var1": None}, {"var1": "._"}, {"var1": "_"}]}

    assert convert_to_csv(data, "foo") == "var1:best.\r\n1\r\n.a\r\n.\r\n._\r\n._"


def test_convert_to_csv_renders_numbers_like_json() -> None:
    data = {"foo": [{"a": 2.0, "b": True, "c": 0.1}]}

    assert convert_to_csv(data, "foo") == "a:best. b:best. c:best.\r\n2,1,0.1"


def test_convert_to_csv_logs_mixed_types(caplog: pytest.LogCaptureFixture) -> None:
    data = {"foo": [{"var1": 1}, {"var1": "abc"}]}

    with caplog.at_level(logging.ERROR, logger="sasjsclient.tables"):
        csv = convert_to_csv(data, "foo")

    assert csv == "var1:3.\r\n1\r\nabc"
    assert "Row (2), Column (var1) has mixed types: ERROR" in caplog.text


def test_convert_to_csv_applies_partial_explicit_formats() -> None:
    data = {
        "foo": [{"var1": "x", "var2": 2}],
        "$foo": {"formats": {"var2": "best."}},
    }

    assert convert_to_csv(data, "foo") == "var1:$char1. var2:best.\r\nx,2"


def test_convert_to_csv_rejects_invalid_special_missing_in_best_column() -> None:
    data = {
        "foo": [{"var1": "AB"}],
        "$foo": {"formats": {"var1": "best."}},
    }

    with pytest.raises(SpecialMissingValueError):
        convert_to_csv(data, "foo")


def test_convert_to_csv_rejects_values_over_max_length() -> None:
    data = {"foo": [{"var1": "x" * 32766}]}

    with pytest.raises(LengthExceededError) as excinfo:
        convert_to_csv(data, "foo")

    assert "32765" in str(excinfo.value)


def test_convert_to_csv_accepts_value_at_max_length() -> None:
    data = {"foo": [{"var1": "x" * 32765}]}

    assert convert_to_csv(data, "foo").startswith("var1:$char32765.\r\n")


def test_convert_to_csv_missing_or_non_list_table() -> None:
    with pytest.raises(ArgumentError):
        convert_to_csv({}, "foo")

    assert convert_to_csv({"foo": "not a table"}, "foo") == ""
    assert convert_to_csv({"foo": []}, "foo") == ""


def test_special_missing_and_formats_table_helpers() -> None:
    assert is_special_missing("A")
    assert is_special_missing("z")
    assert is_special_missing("_")
    assert is_special_missing(".a")
    assert is_special_missing("._")
    assert not is_special_missing("AB")
    assert not is_special_missing(".A")
    assert not is_special_missing(1)

    assert is_formats_table("$foo")
    assert not is_formats_table("foo")


def test_split_chunks_reassembles_exactly() -> None:
    content = "abcdefghij" * 5

    chunks = split_chunks(content, 16)

    assert [len(chunk) for chunk in chunks] == [16, 16, 16, 2]
    assert "".join(chunks) == content
    assert split_chunks("") == []


def test_format_data_for_request_small_tables() -> None:
    data = {
        "first": [{"a": 1}],
        "$first": {"formats": {"a": "best."}},
        "second": [{"b": "x"}],
    }

    fields = format_data_for_request(data)

    assert fields == {
        "sasjs1data": "a:best.\r\n1",
        "sasjs2data": "b:$char1.\r\nx",
        "sasjs_tables": "first second",
    }


def test_format_data_for_request_chunks_large_tables() -> None:
    data = {"big": [{"a": "x" * 9000}, {"a": "y" * 9000}]}

    fields = format_data_for_request(data)
    csv = convert_to_csv(data, "big")

    assert len(csv) > CHUNK_SIZE
    count = fields["sasjs1data0"]
    assert count == 2
    assert "sasjs1data" not in fields
    assert "".join(str(fields[f"sasjs1data{index}"]) for index in range(1, count + 1)) == csv
    assert fields["sasjs_tables"] == "big"


def test_validate_input_messages() -> None:
    assert validate_input(None) == (True, "")
    assert validate_input({"good_name": [{"a": 1, "b": "x", "c": None}]}) == (True, "")
    assert validate_input({"1bad": []}) == (
        False,
        "First letter of table should be alphabet or underscore.",
    )
    assert validate_input({"bad-name": []}) == (False, "Table name should be alphanumeric.")
    assert validate_input({"a" * 33: []}) == (
        False,
        "Maximum length for table name could be 32 characters.",
    )
    assert validate_input({"table": "oops"}) == (False, INVALID_TABLE_STRUCTURE)

    is_valid, message = validate_input({"table": [{"a": [1, 2]}]})
    assert not is_valid
    assert message.startswith("A row in table table contains invalid value.")


def test_validate_input_accepts_formats_table() -> None:
    data = {"foo": [{"a": 1}], "$foo": {"formats": {"a": "best."}}}

    assert validate_input(data) == (True, "")


def test_tables_collection_validates_arguments() -> None:
    tables = Tables([{"a": 1}], "first")
    tables.add([{"b": 2}], "second")

    assert tables.to_dict() == {"first": [{"a": 1}], "second": [{"b": 2}]}

    with pytest.raises(ArgumentError, match="Missing arguments"):
        tables.add(None, "third")
    with pytest.raises(ArgumentError, match="First argument must be array"):
        tables.add({"a": 1}, "third")  # type: ignore[arg-type]
    with pytest.raises(ArgumentError, match="Second argument must be string"):
        tables.add([], 3)  # type: ignore[arg-type]
    with pytest.raises(ArgumentError, match="Macro name cannot have number at the end"):
        tables.add([], "table1")
