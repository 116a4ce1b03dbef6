from datetime import date

import pytest

from farmers_service.services.farmer_parser import ParsedRecord
from farmers_service.services.farmer_validator import (
    RecordValidator,
    describe_issues,
    is_valid_phone_number,
    normalize_date,
    normalize_phone_number,
)

TODAY = date(2026, 10, 18)


def _record(index, **fields):
    base = {"first_name": "Ravi", "last_name": "Kumar", "phone_number": f"98765432{index:02d}"}
    base.update(fields)
    return ParsedRecord(index=index, fields={k: v for k, v in base.items() if v is not None})


def _codes(report, index):
    return {issue.code for issue in report.errors[index]}


@pytest.fixture
def validator():
    return RecordValidator(today=TODAY)


@pytest.mark.parametrize("raw,expected", [
    ("+91 98765 43210", "9876543210"),
    ("091-9876543210", "9876543210"),
    ("09876543210", "9876543210"),
    ("98765-43210", "9876543210"),
])
def test_normalize_phone_number(raw, expected):
    assert normalize_phone_number(raw) == expected


def test_is_valid_phone_number():
    assert is_valid_phone_number("6123456789")
    assert not is_valid_phone_number("5123456789")
    assert not is_valid_phone_number("987654321")


def test_normalize_date():
    assert normalize_date("19900115") == "1990-01-15"
    assert normalize_date("1990-01-15") == "1990-01-15"


def test_valid_record_is_normalized(validator):
    result = validator.validate([_record(
        0,
        phone_number="+91 98765 43200",
        gender="F",
        date_of_birth="19900115",
        land_area_acres="2.5",
        aadhaar_number="1234 5678 9012",
        village_code="V-17",
    )])

    assert result.report.is_valid
    farmer = result.valid_records[0]
    assert farmer.phone_number == "9876543200"
    assert farmer.gender == "female"
    assert farmer.date_of_birth == "1990-01-15"
    assert farmer.land_area_acres == 2.5
    assert farmer.aadhaar_number == "123456789012"
    assert farmer.country == "India"
    assert farmer.custom_fields == {"village_code": "V-17"}
    assert farmer.external_id == "FARMER_9876543200_9"

    payload = farmer.to_payload()
    assert payload["custom_fields"] == {"village_code": "V-17"}
    assert "email" not in payload


def test_missing_required_fields(validator):
    result = validator.validate([ParsedRecord(index=0, fields={"city": "Pune"})])
    assert not result.report.is_valid
    assert {issue.field for issue in result.report.errors[0]} == {"first_name", "last_name", "phone_number"}
    assert _codes(result.report, 0) == {"required"}


@pytest.mark.parametrize("fields,code", [
    ({"first_name": "R"}, "invalid_length"),
    ({"last_name": "K" * 51}, "invalid_length"),
    ({"phone_number": "12345"}, "invalid_phone"),
    ({"email": "not-an-email"}, "invalid_email"),
    ({"date_of_birth": "15/01/1990"}, "invalid_date"),
    ({"date_of_birth": "2027-01-01"}, "invalid_age"),
    ({"date_of_birth": "2015-01-01"}, "invalid_age"),
    ({"gender": "unknown"}, "invalid_gender"),
    ({"postal_code": "4110"}, "invalid_postal_code"),
    ({"aadhaar_number": "1234"}, "invalid_aadhaar"),
    ({"land_area_acres": "lots"}, "invalid_number"),
    ({"land_area_acres": "0"}, "out_of_range"),
    ({"land_area_acres": "10001"}, "out_of_range"),
])
def test_field_rules(validator, fields, code):
    result = validator.validate([_record(0, **fields)])
    assert result.valid_records == []
    assert code in _codes(result.report, 0)


def test_validation_is_fail_slow(validator):
    result = validator.validate([_record(0, email="bad", postal_code="1", gender="x")])
    assert _codes(result.report, 0) == {"invalid_email", "invalid_postal_code", "invalid_gender"}


def test_duplicate_phone_flags_every_record(validator):
    records = [
        _record(0, phone_number="9876543210"),
        _record(1, phone_number="+91 98765 43210"),
        _record(2),
    ]
    result = validator.validate(records)

    assert set(result.report.errors) == {0, 1}
    assert "duplicate_phone" in _codes(result.report, 0)
    assert "duplicate_phone" in _codes(result.report, 1)
    assert [farmer.index for farmer in result.valid_records] == [2]
    assert result.report.valid_records == 1
    assert result.report.invalid_records == 2


def test_duplicate_external_id(validator):
    result = validator.validate([_record(0, external_id="X1"), _record(1, external_id="X1")])
    assert _codes(result.report, 0) == {"duplicate_external_id"}
    assert _codes(result.report, 1) == {"duplicate_external_id"}


def test_describe_issues(validator):
    result = validator.validate([_record(0, email="bad")])
    assert describe_issues(result.report.errors[0]) == "email: invalid email format"


def test_phones_without_digits_are_not_duplicates(validator):
    result = validator.validate([_record(0, phone_number="n/a"), _record(1, phone_number="---")])

    for index in (0, 1):
        codes = _codes(result.report, index)
        assert "invalid_phone" in codes
        assert "duplicate_phone" not in codes
