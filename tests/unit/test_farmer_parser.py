import base64
import datetime as dt
import io
import json

import pytest
from openpyxl import Workbook

from farmers_service.exceptions import FormatError
from farmers_service.services.farmer_parser import (
    decode_base64_payload,
    detect_delimiter,
    normalize_header,
    parse_all,
    parse_records,
    records_from_inline,
)
from farmers_service.utils.bulk_enums import InputFormat

CSV_INPUT = (
    "First Name,Last-Name,Phone.Number,email\n"
    "John,Doe,9876543210,john@example.com\n"
    ",,,\n"
    "Asha,Patil,+91 98765 43211\n"
).encode()


def _xlsx_bytes(rows):
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.mark.parametrize("raw,expected", [
    ("First Name", "first_name"),
    (" phone-number ", "phone_number"),
    ("Postal.Code", "postal_code"),
    (None, ""),
])
def test_normalize_header(raw, expected):
    assert normalize_header(raw) == expected


@pytest.mark.parametrize("text,expected", [
    ("a;b;c\n1;2;3", ";"),
    ("a\tb\tc\n1\t2\t3", "\t"),
    ("a,b,c\n1,2,3", ","),
    ("single column", ","),
])
def test_detect_delimiter(text, expected):
    assert detect_delimiter(text) == expected


def test_csv_parsing_normalizes_headers_and_skips_empty_rows():
    records = parse_all(parse_records(CSV_INPUT, InputFormat.CSV, max_records=100))

    assert [r.index for r in records] == [0, 1]
    assert records[0].fields == {
        "first_name": "John",
        "last_name": "Doe",
        "phone_number": "9876543210",
        "email": "john@example.com",
    }
    # short rows are padded; empty cells are dropped
    assert "email" not in records[1].fields
    assert records[1].source_row == 4


def test_parsing_is_idempotent():
    first = parse_all(parse_records(CSV_INPUT, InputFormat.CSV, max_records=100))
    second = parse_all(parse_records(CSV_INPUT, InputFormat.CSV, max_records=100))

    assert len(first) == len(second)
    assert [(r.index, r.fields) for r in first] == [(r.index, r.fields) for r in second]


def test_semicolon_delimited_input():
    data = "first_name;last_name;phone_number\nJohn;Doe;9876543210\n".encode()
    records = parse_all(parse_records(data, InputFormat.CSV, max_records=10))
    assert records[0].fields["last_name"] == "Doe"


def test_missing_required_headers_is_format_error():
    data = b"first_name,city\nJohn,Pune\n"
    with pytest.raises(FormatError) as exc_info:
        parse_all(parse_records(data, InputFormat.CSV, max_records=10))
    assert "last_name" in exc_info.value.message
    assert "phone_number" in exc_info.value.message


def test_header_only_input_is_format_error():
    with pytest.raises(FormatError):
        parse_all(parse_records(b"first_name,last_name,phone_number\n", InputFormat.CSV, max_records=10))


def test_empty_payload_is_format_error():
    with pytest.raises(FormatError):
        parse_records(b"", InputFormat.JSON, max_records=10)


def test_max_records_enforced():
    rows = "\n".join(f"A{i},B{i},98765432{i:02d}" for i in range(5))
    data = f"first_name,last_name,phone_number\n{rows}\n".encode()
    with pytest.raises(FormatError) as exc_info:
        parse_all(parse_records(data, InputFormat.CSV, max_records=3))
    assert exc_info.value.context == {"max_records": 3}


def test_non_utf8_text_is_format_error():
    with pytest.raises(FormatError):
        parse_all(parse_records(b"\xff\xfe\xfa", InputFormat.CSV, max_records=10))


def test_json_array_and_single_object():
    array = json.dumps([{"First Name": "John", "last_name": "Doe", "phone_number": 9876543210}]).encode()
    records = parse_all(parse_records(array, InputFormat.JSON, max_records=10))
    assert records[0].fields == {"first_name": "John", "last_name": "Doe", "phone_number": "9876543210"}
    assert records[0].source_row is None

    single = json.dumps({"first_name": "Asha", "last_name": "Patil", "phone_number": "9876543211"}).encode()
    assert len(parse_all(parse_records(single, InputFormat.JSON, max_records=10))) == 1


def test_json_farmers_envelope():
    payload = json.dumps({"farmers": [{"first_name": "A"}, {"first_name": "B"}]}).encode()
    records = parse_all(parse_records(payload, InputFormat.JSON, max_records=10))
    assert [r.fields["first_name"] for r in records] == ["A", "B"]


@pytest.mark.parametrize("payload", [b"{not json", b"42", b"[1, 2]", b"[]"])
def test_malformed_json_is_format_error(payload):
    with pytest.raises(FormatError):
        parse_all(parse_records(payload, InputFormat.JSON, max_records=10))


def test_spreadsheet_parsing_converts_cells():
    data = _xlsx_bytes([
        ["first_name", "last_name", "phone_number", "date_of_birth"],
        ["John", "Doe", 9876543210, dt.datetime(1990, 1, 15)],
        [None, None, None, None],
        ["Asha", "Patil", "9876543211"],
    ])
    records = parse_all(parse_records(data, InputFormat.EXCEL, max_records=10))

    assert len(records) == 2
    assert records[0].fields["phone_number"] == "9876543210"
    assert records[0].fields["date_of_birth"] == "1990-01-15"
    assert records[1].index == 1
    assert records[1].source_row == 4


def test_corrupt_spreadsheet_is_format_error():
    with pytest.raises(FormatError):
        parse_all(parse_records(b"definitely not a zip", InputFormat.EXCEL, max_records=10))


def test_inline_records():
    records = parse_all(records_from_inline([{"first_name": "John", "notes": None}], max_records=10))
    assert records[0].fields == {"first_name": "John"}

    with pytest.raises(FormatError):
        records_from_inline([], max_records=10)


def test_decode_base64_payload():
    assert decode_base64_payload(base64.b64encode(b"abc").decode()) == b"abc"
    with pytest.raises(FormatError):
        decode_base64_payload("***not-base64***")
