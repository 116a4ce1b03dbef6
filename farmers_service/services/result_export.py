"""
File rendering for bulk operations: result exports and upload templates.

Exports are built from stored record outcomes sorted by record index, so the
file order never depends on the order in which workers finished.
"""
from __future__ import annotations

import csv
import io
import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, assert_never

from openpyxl import Workbook

from farmers_service.db.schemas import TemplateField
from farmers_service.utils.bulk_enums import ExportFormat, InputFormat

EXPORT_COLUMNS = ("record_index", "status", "farmer_id", "error_kind", "error_detail")

_MEDIA_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
    ExportFormat.EXCEL: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
_EXTENSIONS = {ExportFormat.CSV: "csv", ExportFormat.JSON: "json", ExportFormat.EXCEL: "xlsx"}

TEMPLATE_FIELDS: List[TemplateField] = [
    TemplateField(name="first_name", display_name="First Name", required=True, example="John",
                  description="Farmer's first name"),
    TemplateField(name="last_name", display_name="Last Name", required=True, example="Doe",
                  description="Farmer's last name"),
    TemplateField(name="phone_number", display_name="Phone Number", required=True, example="9876543210",
                  format="10 digits", description="10-digit mobile number"),
    TemplateField(name="email", display_name="Email", required=False, example="john.doe@example.com",
                  format="email", description="Email address"),
    TemplateField(name="date_of_birth", display_name="Date of Birth", required=False, example="1990-01-15",
                  format="YYYY-MM-DD", description="Date of birth"),
    TemplateField(name="gender", display_name="Gender", required=False, example="male",
                  description="Gender (male, female, other)"),
    TemplateField(name="street_address", display_name="Street Address", required=False,
                  example="123 Farm Street", description="Street address"),
    TemplateField(name="city", display_name="City", required=False, example="Mumbai", description="City name"),
    TemplateField(name="state", display_name="State", required=False, example="Maharashtra",
                  description="State name"),
    TemplateField(name="postal_code", display_name="Postal Code", required=False, example="400001",
                  format="6 digits", description="Postal/PIN code"),
    TemplateField(name="land_ownership_type", display_name="Land Ownership", required=False, example="owned",
                  description="Type of land ownership"),
    TemplateField(name="external_id", display_name="External ID", required=False, example="FARMER001",
                  description="External identifier for tracking"),
]

TEMPLATE_INSTRUCTIONS = """Bulk Farmer Upload Template - {format} Format

Instructions:
1. Fill in the farmer data in the rows below the header
2. Required fields: first_name, last_name, phone_number
3. Phone numbers should be 10-digit Indian mobile numbers
4. Date format: YYYY-MM-DD (e.g., 1990-01-15)
5. Gender options: male, female, other
6. Do not modify the header row
7. Maximum {max_records} farmers per upload

Tips:
- Remove any example data before uploading
- Ensure phone numbers and external_id values are unique
"""


@dataclass(frozen=True)
class ExportFile:
    content: bytes
    media_type: str
    filename: str


def outcome_rows(outcomes: Sequence[Any]) -> List[Dict[str, Any]]:
    """Flatten outcome rows into export dictionaries sorted by record index."""
    rows = [
        {
            "record_index": outcome.record_index,
            "status": outcome.status,
            "farmer_id": outcome.created_farmer_id,
            "error_kind": outcome.error_kind,
            "error_detail": outcome.error_detail,
        }
        for outcome in outcomes
    ]
    rows.sort(key=lambda row: row["record_index"])
    return rows


def export_outcomes(operation_id: uuid.UUID, outcomes: Sequence[Any], export_format: ExportFormat) -> ExportFile:
    rows = outcome_rows(outcomes)
    if export_format is ExportFormat.CSV:
        content = _render_csv(EXPORT_COLUMNS, ([row[c] for c in EXPORT_COLUMNS] for row in rows))
    elif export_format is ExportFormat.JSON:
        content = json.dumps(rows, indent=2).encode("utf-8")
    elif export_format is ExportFormat.EXCEL:
        content = _render_xlsx("Results", EXPORT_COLUMNS, [[row[c] for c in EXPORT_COLUMNS] for row in rows])
    else:
        assert_never(export_format)
    return ExportFile(
        content=content,
        media_type=_MEDIA_TYPES[export_format],
        filename=f"bulk_operation_{operation_id}_results.{_EXTENSIONS[export_format]}",
    )


def render_template(template_format: InputFormat, include_example: bool = True) -> ExportFile:
    """Build an empty upload file (optionally with one sample row) for ``template_format``."""
    headers = [f.name for f in TEMPLATE_FIELDS]
    rows = [[f.example for f in TEMPLATE_FIELDS]] if include_example else []
    if template_format is InputFormat.CSV:
        return ExportFile(_render_csv(headers, rows), _MEDIA_TYPES[ExportFormat.CSV], "farmer_upload_template.csv")
    if template_format is InputFormat.EXCEL:
        return ExportFile(
            _render_xlsx("Farmers", headers, rows),
            _MEDIA_TYPES[ExportFormat.EXCEL],
            "farmer_upload_template.xlsx",
        )
    if template_format is InputFormat.JSON:
        sample = [dict(zip(headers, row)) for row in rows]
        return ExportFile(
            json.dumps(sample, indent=2).encode("utf-8"),
            _MEDIA_TYPES[ExportFormat.JSON],
            "farmer_upload_template.json",
        )
    assert_never(template_format)


def _render_csv(headers: Sequence[str], rows) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])
    return buffer.getvalue().encode("utf-8")


def _render_xlsx(sheet_name: str, headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_name
    sheet.append(list(headers))
    for row in rows:
        sheet.append(list(row))
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
