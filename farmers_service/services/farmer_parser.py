"""
Input parser for bulk farmer uploads.

Turns raw uploaded bytes (delimited text, spreadsheet or JSON) into an
ordered, lazy sequence of ``ParsedRecord`` items. Each record keeps its
zero-based position so validation errors, outcomes and retries can be
correlated back to the uploaded file. Field-level checks are left to the
validator; the parser only fails with ``FormatError`` when the payload as a
whole is unusable.
"""
from __future__ import annotations

import base64
import binascii
import csv
import datetime as dt
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, assert_never

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from farmers_service.exceptions import FormatError
from farmers_service.utils.bulk_enums import InputFormat

logger = logging.getLogger(__name__)

REQUIRED_HEADERS = ("first_name", "last_name", "phone_number")
ALLOWED_DELIMITERS = (",", ";", "\t")
_DELIMITER_SAMPLE_SIZE = 1000


@dataclass(frozen=True)
class ParsedRecord:
    """One uploaded farmer row: its position and raw (string) fields."""

    index: int
    fields: Dict[str, str] = field(default_factory=dict)
    # 1-based line/row in the source file, header included; None for JSON input
    source_row: Optional[int] = None


def normalize_header(header: Any) -> str:
    value = str(header or "").strip().lower()
    for char in (" ", "-", "."):
        value = value.replace(char, "_")
    return value


def detect_delimiter(text: str) -> str:
    """Pick the most frequent allowed delimiter in the first chunk of text; comma by default."""
    sample = text[:_DELIMITER_SAMPLE_SIZE]
    best, best_count = ",", 0
    for delimiter in ALLOWED_DELIMITERS:
        count = sample.count(delimiter)
        if count > best_count:
            best, best_count = delimiter, count
    return best


def decode_base64_payload(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FormatError("data is not valid base64", context={"error": str(exc)}) from exc


def parse_records(data: bytes, input_format: InputFormat, *, max_records: int) -> Iterator[ParsedRecord]:
    """Lazily parse ``data`` according to ``input_format``.

    Raises ``FormatError`` while iterating if the payload cannot be parsed,
    is empty, or exceeds ``max_records``.
    """
    if not data:
        raise FormatError(f"empty {input_format.value} payload")
    if input_format is InputFormat.CSV:
        rows = _iter_delimited(data)
    elif input_format is InputFormat.EXCEL:
        rows = _iter_spreadsheet(data)
    elif input_format is InputFormat.JSON:
        return _limit(_iter_json(data), max_records)
    else:
        assert_never(input_format)
    return _limit(_records_from_rows(rows), max_records)


def records_from_inline(farmers: Sequence[Any], *, max_records: int) -> Iterator[ParsedRecord]:
    """Records submitted inline as a list of JSON objects."""
    if not farmers:
        raise FormatError("no farmer records provided")
    return _limit(_records_from_objects(farmers), max_records)


def parse_all(records: Iterable[ParsedRecord]) -> List[ParsedRecord]:
    """Materialize a parsed sequence; the single place operation-level parse failures surface."""
    parsed = list(records)
    if not parsed:
        raise FormatError("no farmer records found in input")
    logger.debug("Parsed %d farmer records", len(parsed))
    return parsed


def _limit(records: Iterator[ParsedRecord], max_records: int) -> Iterator[ParsedRecord]:
    for record in records:
        if record.index >= max_records:
            raise FormatError(
                f"exceeded maximum record limit of {max_records}",
                context={"max_records": max_records},
            )
        yield record


def _records_from_rows(rows: Iterator[tuple]) -> Iterator[ParsedRecord]:
    """Shared tabular handling: header normalization, required headers, padding, empty rows."""
    header_row = next(rows, None)
    if header_row is None:
        raise FormatError("no rows found in input")
    headers = [normalize_header(h) for h in header_row]
    if not any(headers):
        raise FormatError("no headers found in input")
    missing = [name for name in REQUIRED_HEADERS if name not in headers]
    if missing:
        raise FormatError(f"missing required columns: {', '.join(missing)}", context={"headers": headers})

    index = 0
    for row_number, row in enumerate(rows, start=2):
        cells = [_cell_to_text(value) for value in row]
        if not any(cells):
            continue
        if len(cells) < len(headers):
            cells.extend([""] * (len(headers) - len(cells)))
        fields = {
            header: value
            for header, value in zip(headers, cells)
            if header and value
        }
        yield ParsedRecord(index=index, fields=fields, source_row=row_number)
        index += 1


def _iter_delimited(data: bytes) -> Iterator[tuple]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FormatError("delimited text is not valid UTF-8", context={"error": str(exc)}) from exc
    reader = csv.reader(io.StringIO(text), delimiter=detect_delimiter(text), skipinitialspace=True)
    try:
        for row in reader:
            yield tuple(row)
    except csv.Error as exc:
        raise FormatError(f"malformed delimited text at line {reader.line_num}", context={"error": str(exc)}) from exc


def _iter_spreadsheet(data: bytes) -> Iterator[tuple]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise FormatError("could not open spreadsheet", context={"error": str(exc)}) from exc
    try:
        if not workbook.worksheets:
            raise FormatError("no sheets found in spreadsheet")
        yield from workbook.worksheets[0].iter_rows(values_only=True)
    finally:
        workbook.close()


def _iter_json(data: bytes) -> Iterator[ParsedRecord]:
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FormatError("malformed JSON payload", context={"error": str(exc)}) from exc

    if isinstance(payload, dict) and isinstance(payload.get("farmers"), list):
        objects = payload["farmers"]
    elif isinstance(payload, list):
        objects = payload
    elif isinstance(payload, dict):
        objects = [payload]
    else:
        raise FormatError("JSON payload must be an object or an array of objects")
    if not objects:
        raise FormatError("no farmer records found in JSON")
    return _records_from_objects(objects)


def _records_from_objects(objects: Sequence[Any]) -> Iterator[ParsedRecord]:
    for index, item in enumerate(objects):
        if not isinstance(item, dict):
            raise FormatError(f"record {index} is not a JSON object", context={"record_index": index})
        fields: Dict[str, str] = {}
        for key, value in item.items():
            text = _cell_to_text(value)
            if text:
                fields[normalize_header(key)] = text
        yield ParsedRecord(index=index, fields=fields)


def _cell_to_text(value: Any) -> str:
    """Render a cell/JSON value as the string the validator expects."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        # spreadsheets hand back phone numbers as floats
        return str(int(value))
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value).strip()
