"""Unit tests for the CSV encoder."""

import csv
import io

import pytest

from bulk_exports.encoders.csv_encoder import UTF8_BOM, CsvEncoder, sanitize_cell
from bulk_exports.models import ExportQuery


def encode(rows, batches=1, **kwargs) -> bytes:
    sink = io.BytesIO()
    encoder = CsvEncoder(sink, **kwargs)
    size = max(1, len(rows) // batches)
    for start in range(0, len(rows), size):
        encoder.write_rows(rows[start : start + size])
    encoder.close()
    return sink.getvalue()


def parse(data: bytes, delimiter=","):
    return list(csv.reader(io.StringIO(data.decode("utf-8")), delimiter=delimiter))


def test_header_from_first_row_keys():
    data = encode([{"id": 1, "name": "a"}, {"id": 2, "name": "b"}])
    assert data == b"id,name\n1,a\n2,b\n"


def test_round_trip_with_special_characters():
    rows = [
        {"id": 1, "text": "comma, inside"},
        {"id": 2, "text": 'quote " inside'},
        {"id": 3, "text": "line\nbreak"},
        {"id": 4, "text": "unicode é中"},
        {"id": 5, "text": ""},
    ]

    parsed = parse(encode(rows, batches=2))

    assert parsed[0] == ["id", "text"]
    assert parsed[1:] == [[str(row["id"]), row["text"]] for row in rows]


@pytest.mark.parametrize("value", ["=SUM(A1:A2)", "+1", "-1", "@cmd", "\tx", "\rx"])
def test_formula_injection_prefixed(value):
    parsed = parse(encode([{"v": value}]))
    assert parsed[1] == ["'" + value]


def test_negative_number_is_prefixed():
    assert sanitize_cell(-5) == "'-5"


def test_safe_values_not_prefixed():
    assert sanitize_cell("hello") == "hello"
    assert sanitize_cell(42) == "42"
    assert sanitize_cell(True) == "true"
    assert sanitize_cell("") == ""


def test_explicit_columns_order_and_missing_values():
    data = encode(
        [{"a": 1, "b": 2, "extra": 9}, {"b": 3}],
        columns=["b", "a"],
    )
    assert parse(data) == [["b", "a"], ["2", "1"], ["3", ""]]


def test_later_rows_missing_keys_get_empty_cells():
    data = encode([{"a": 1, "b": 2}, {"a": 3}])
    assert parse(data) == [["a", "b"], ["1", "2"], ["3", ""]]


def test_custom_delimiter():
    data = encode([{"a": "x;y", "b": 1}], delimiter=";")
    assert data == b'a;b\n"x;y";1\n'


def test_bom_written_once():
    data = encode([{"a": 1}, {"a": 2}], batches=2, include_bom=True)
    assert data.startswith(UTF8_BOM)
    assert data.count(UTF8_BOM) == 1
    assert data[len(UTF8_BOM):] == b"a\n1\n2\n"


def test_empty_input_without_columns_is_empty():
    assert encode([]) == b""


def test_empty_input_with_bom_is_just_bom():
    assert encode([], include_bom=True) == UTF8_BOM


def test_empty_input_with_columns_writes_header():
    assert encode([], columns=["id", "name"]) == b"id,name\n"


def test_output_emitted_per_batch():
    sink = io.BytesIO()
    encoder = CsvEncoder(sink)

    encoder.write_rows([{"a": 1}])
    assert sink.getvalue() == b"a\n1\n"

    encoder.write_rows([{"a": 2}])
    assert sink.getvalue() == b"a\n1\n2\n"


def test_from_query():
    query = ExportQuery(source="orders", columns=["id"], delimiter="|", include_bom=True)
    encoder = CsvEncoder.from_query(io.BytesIO(), query)
    assert encoder.columns == ["id"]
