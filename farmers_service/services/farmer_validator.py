"""
Record validation for bulk farmer uploads.

Every parsed record is checked (fail-slow): required fields, phone and
identifier formats, numeric ranges, and duplicates within the batch. The
result carries a ``ValidationReport`` keyed by record index plus the
normalized ``FarmerRecord`` payloads of the records that passed.
"""
from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from farmers_service.db.schemas import ValidationIssue, ValidationReport
from farmers_service.services.farmer_parser import ParsedRecord

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "India"
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
MIN_AGE = 18
MAX_AGE = 120
MAX_LAND_AREA_ACRES = 10000.0

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_POSTAL_CODE_RE = re.compile(r"^\d{6}$")
_AADHAAR_RE = re.compile(r"^\d{12}$")
_GENDERS = {"male": "male", "m": "male", "female": "female", "f": "female", "other": "other"}

# Columns mapped onto FarmerRecord attributes; anything else lands in custom_fields.
_KNOWN_FIELDS = (
    "first_name",
    "last_name",
    "phone_number",
    "email",
    "date_of_birth",
    "gender",
    "street_address",
    "city",
    "state",
    "postal_code",
    "country",
    "land_ownership_type",
    "land_area_acres",
    "aadhaar_number",
    "external_id",
)


@dataclass(frozen=True)
class FarmerRecord:
    """A validated, normalized farmer ready for the creation collaborator."""

    index: int
    first_name: str
    last_name: str
    phone_number: str
    external_id: str
    country: str = DEFAULT_COUNTRY
    email: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    street_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    land_ownership_type: Optional[str] = None
    land_area_acres: Optional[float] = None
    aadhaar_number: Optional[str] = None
    custom_fields: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            name: getattr(self, name)
            for name in _KNOWN_FIELDS
            if getattr(self, name) is not None
        }
        if self.custom_fields:
            payload["custom_fields"] = dict(self.custom_fields)
        return payload


@dataclass
class ValidationResult:
    report: ValidationReport
    valid_records: List[FarmerRecord]


def normalize_phone_number(value: str) -> str:
    """Strip formatting and the Indian country/trunk prefixes."""
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) == 12 and digits.startswith("91"):
        return digits[2:]
    if len(digits) == 13 and digits.startswith("091"):
        return digits[3:]
    if len(digits) == 11 and digits.startswith("0"):
        return digits[1:]
    return digits


def is_valid_phone_number(digits: str) -> bool:
    return len(digits) == 10 and digits[0] in "6789"


def normalize_date(value: str) -> str:
    """Convert YYYYMMDD to YYYY-MM-DD; other inputs are returned unchanged."""
    value = value.strip()
    if len(value) == 8 and value.isdigit():
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value


class RecordValidator:
    """Field-level and cross-record checks over a parsed batch."""

    def __init__(self, today: Optional[date] = None):
        self._today = today

    def validate(self, records: Sequence[ParsedRecord]) -> ValidationResult:
        errors: Dict[int, List[ValidationIssue]] = {}
        candidates: Dict[int, FarmerRecord] = {}

        for record in records:
            issues: List[ValidationIssue] = []
            farmer = self._validate_record(record, issues)
            if issues:
                errors[record.index] = issues
            elif farmer is not None:
                candidates[record.index] = farmer

        self._flag_duplicates(records, errors)

        valid = [farmer for index, farmer in sorted(candidates.items()) if index not in errors]
        report = ValidationReport(
            is_valid=not errors,
            total_records=len(records),
            valid_records=len(valid),
            invalid_records=len(errors),
            errors=errors,
        )
        if errors:
            logger.info("Validation flagged %d of %d records", len(errors), len(records))
        return ValidationResult(report=report, valid_records=valid)

    def _validate_record(self, record: ParsedRecord, issues: List[ValidationIssue]) -> Optional[FarmerRecord]:
        fields = record.fields

        first_name = self._check_name(fields, "first_name", issues)
        last_name = self._check_name(fields, "last_name", issues)

        phone = fields.get("phone_number", "")
        normalized_phone = normalize_phone_number(phone) if phone else ""
        if not phone:
            issues.append(_issue("phone_number", "required", "phone_number is required"))
        elif not is_valid_phone_number(normalized_phone):
            issues.append(_issue(
                "phone_number",
                "invalid_phone",
                "phone_number must be a 10 digit mobile number starting with 6-9",
            ))

        email = fields.get("email")
        if email and not _EMAIL_RE.match(email):
            issues.append(_issue("email", "invalid_email", "invalid email format"))

        date_of_birth = self._check_date_of_birth(fields.get("date_of_birth"), issues)

        gender = fields.get("gender")
        normalized_gender = None
        if gender:
            normalized_gender = _GENDERS.get(gender.lower())
            if normalized_gender is None:
                issues.append(_issue("gender", "invalid_gender", "gender must be male, female, or other"))

        postal_code = fields.get("postal_code")
        if postal_code and not _POSTAL_CODE_RE.match(postal_code):
            issues.append(_issue("postal_code", "invalid_postal_code", "postal_code must be 6 digits"))

        aadhaar = fields.get("aadhaar_number")
        if aadhaar:
            aadhaar = aadhaar.replace(" ", "").replace("-", "")
            if not _AADHAAR_RE.match(aadhaar):
                issues.append(_issue("aadhaar_number", "invalid_aadhaar", "aadhaar_number must be 12 digits"))

        land_area = self._check_land_area(fields.get("land_area_acres"), issues)

        if issues:
            return None

        external_id = fields.get("external_id") or (
            f"FARMER_{normalized_phone}_{len(first_name) + len(last_name)}"
        )
        return FarmerRecord(
            index=record.index,
            first_name=first_name,
            last_name=last_name,
            phone_number=normalized_phone,
            external_id=external_id,
            country=fields.get("country") or DEFAULT_COUNTRY,
            email=email,
            date_of_birth=date_of_birth,
            gender=normalized_gender,
            street_address=fields.get("street_address"),
            city=fields.get("city"),
            state=fields.get("state"),
            postal_code=postal_code,
            land_ownership_type=fields.get("land_ownership_type"),
            land_area_acres=land_area,
            aadhaar_number=aadhaar,
            custom_fields={k: v for k, v in fields.items() if k not in _KNOWN_FIELDS},
        )

    @staticmethod
    def _check_name(fields: Dict[str, str], name: str, issues: List[ValidationIssue]) -> str:
        value = fields.get(name, "")
        if not value:
            issues.append(_issue(name, "required", f"{name} is required"))
        elif not NAME_MIN_LENGTH <= len(value) <= NAME_MAX_LENGTH:
            issues.append(_issue(
                name,
                "invalid_length",
                f"{name} must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters",
            ))
        return value

    def _check_date_of_birth(self, value: Optional[str], issues: List[ValidationIssue]) -> Optional[str]:
        if not value:
            return None
        normalized = normalize_date(value)
        try:
            born = datetime.strptime(normalized, "%Y-%m-%d").date()
        except ValueError:
            issues.append(_issue(
                "date_of_birth", "invalid_date", "date_of_birth must be YYYY-MM-DD or YYYYMMDD"
            ))
            return None
        today = self._today or date.today()
        if born > today:
            issues.append(_issue("date_of_birth", "invalid_age", "date_of_birth cannot be in the future"))
            return None
        age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
        if not MIN_AGE <= age <= MAX_AGE:
            issues.append(_issue(
                "date_of_birth", "invalid_age", f"age must be between {MIN_AGE} and {MAX_AGE}"
            ))
        return normalized

    @staticmethod
    def _check_land_area(value: Optional[str], issues: List[ValidationIssue]) -> Optional[float]:
        if not value:
            return None
        try:
            area = float(value)
        except ValueError:
            issues.append(_issue("land_area_acres", "invalid_number", "land_area_acres must be numeric"))
            return None
        if not 0 < area <= MAX_LAND_AREA_ACRES:
            issues.append(_issue(
                "land_area_acres",
                "out_of_range",
                f"land_area_acres must be greater than 0 and at most {MAX_LAND_AREA_ACRES:g}",
            ))
        return area

    @staticmethod
    def _flag_duplicates(records: Sequence[ParsedRecord], errors: Dict[int, List[ValidationIssue]]) -> None:
        """Flag every record sharing a phone number or external id with another record."""
        by_phone: Dict[str, List[int]] = defaultdict(list)
        by_external_id: Dict[str, List[int]] = defaultdict(list)
        for record in records:
            phone = normalize_phone_number(record.fields.get("phone_number") or "")
            # digit-less phones are already invalid and are not duplicates of each other
            if phone:
                by_phone[phone].append(record.index)
            external_id = record.fields.get("external_id")
            if external_id:
                by_external_id[external_id].append(record.index)

        for phone, indices in by_phone.items():
            if len(indices) < 2:
                continue
            for index in indices:
                others = ", ".join(str(i) for i in indices if i != index)
                errors.setdefault(index, []).append(_issue(
                    "phone_number",
                    "duplicate_phone",
                    f"phone_number {phone} is also used by record(s) {others}",
                ))
        for external_id, indices in by_external_id.items():
            if len(indices) < 2:
                continue
            for index in indices:
                others = ", ".join(str(i) for i in indices if i != index)
                errors.setdefault(index, []).append(_issue(
                    "external_id",
                    "duplicate_external_id",
                    f"external_id {external_id} is also used by record(s) {others}",
                ))


def _issue(field_name: str, code: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field_name, code=code, message=message)


def describe_issues(issues: Sequence[ValidationIssue]) -> str:
    """Flatten a record's issues into the error detail stored on its outcome."""
    return "; ".join(f"{issue.field}: {issue.message}" for issue in issues)
