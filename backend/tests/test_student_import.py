from datetime import date

import pytest

from app.core.exceptions import CSVImportError
from app.models.student import Gender, StudentStatus
from app.services.student_import import (
    DuplicateReason, ReferenceData, StudentRow, parse_student_csv, reconcile, validate_row,
)


HEADER = "Registration No,Full Name,Department,Certificate ID,Gender,GPA,Status,Graduation Date\n"


@pytest.fixture
def references():
    return ReferenceData.build(
        departments=[{"id": 1, "code": "BCS", "name": "Computer Science"}, {"id": 2, "code": "CS", "name": "CS"}],
        faculties=[{"id": 10, "code": "FOC", "name": "Faculty of Computing"}],
        academic_years=[{"id": 5, "year": "2020-2021"}],
    )


def csv_bytes(*lines: str, header: str = HEADER) -> bytes:
    return (header + "\n".join(lines) + "\n").encode("utf-8")


# ==================== Parsing ====================

def test_parse_normalizes_headers_and_ids():
    rows = parse_student_csv(csv_bytes("grw-bcs-2021 , Amina Yusuf,BCS,202100123,F,3.5,cleared,2021-07-15"))

    assert len(rows) == 1
    row = rows[0]
    assert row.row_number == 1
    assert row.registration_id == "GRW-BCS-2021"
    assert row.full_name == "Amina Yusuf"
    assert row.certificate_id == "202100123"
    assert row.gpa_raw == "3.5"


def test_parse_accepts_header_aliases_and_bom():
    content = "\ufeffregistration_id,name,department_code\nGRW-BCS-2021,A,BCS\n".encode("utf-8")

    rows = parse_student_csv(content)

    assert rows[0].registration_id == "GRW-BCS-2021"
    assert rows[0].full_name == "A"
    assert rows[0].department == "BCS"


def test_parse_skips_blank_lines_and_numbers_data_rows():
    rows = parse_student_csv(csv_bytes("GRW-BCS-2021,A,BCS", ",,,", "", "GRW-BCS-2022,B,BCS"))

    assert [row.row_number for row in rows] == [1, 2]


def test_missing_required_column_rejects_file():
    with pytest.raises(CSVImportError) as exc_info:
        parse_student_csv(b"Registration No,Full Name\nGRW-BCS-2021,A\n")

    assert exc_info.value.details["missing_columns"] == ["department"]


@pytest.mark.parametrize("content", [b"", b"   \n", HEADER.encode("utf-8")])
def test_empty_file_rejected(content):
    with pytest.raises(CSVImportError):
        parse_student_csv(content)


def test_non_utf8_rejected():
    with pytest.raises(CSVImportError):
        parse_student_csv(HEADER.encode("utf-8") + b"GRW-BCS-2021,\xff\xfe,BCS\n")


def test_oversized_file_rejected():
    with pytest.raises(CSVImportError):
        parse_student_csv(csv_bytes("GRW-BCS-2021,A,BCS"), max_bytes=10)


# ==================== Validation ====================

def test_validate_fills_parsed_fields(references):
    row = StudentRow(
        row_number=1, registration_id="GRW-BCS-2021", full_name="A", department="computer science",
        gender="female", gpa_raw="3.25", status_raw="Cleared", graduation_date_raw="15/07/2021",
        faculty="FOC", academic_year="2020-2021",
    )

    assert validate_row(row, references) == []
    assert row.gpa == 3.25
    assert row.parsed_gender == Gender.FEMALE
    assert row.status == StudentStatus.CLEARED
    assert row.graduation_date == date(2021, 7, 15)
    assert (row.department_id, row.faculty_id, row.academic_year_id) == (1, 10, 5)


def test_validate_collects_every_problem(references):
    row = StudentRow(
        row_number=4, registration_id="", full_name="", department="History",
        gpa_raw="4.5", gender="x", status_raw="graduated", graduation_date_raw="soon",
    )

    errors = validate_row(row, references)
    fields = {error.field for error in errors}

    assert fields == {"registration_no", "full_name", "department", "gpa", "gender", "status", "graduation_date"}
    assert all(error.row_number == 4 for error in errors)


@pytest.mark.parametrize("registration_id", ["NOT AN ID", "GRW-BCS-21", "GRW-BC1-2021", "ABC-BCS-2021"])
def test_registration_id_must_match_format(registration_id):
    row = StudentRow(row_number=1, registration_id=registration_id, full_name="A", department="BCS")

    assert [error.field for error in validate_row(row)] == ["registration_no"]


def test_malformed_registration_id_is_invalid_not_importable(references):
    rows = parse_student_csv(csv_bytes("NOT AN ID,A,BCS", "GRW-BCS-2021,B,BCS"))

    result = reconcile(rows, [], references)

    assert result.invalid_rows == [1]
    assert [row.registration_id for row in result.valid_rows] == ["GRW-BCS-2021"]


@pytest.mark.parametrize("gpa", ["abc", "-0.1", "4.01", "nan"])
def test_gpa_out_of_range_or_not_numeric(gpa):
    row = StudentRow(row_number=1, registration_id="GRW-BCS-2021", full_name="A", department="BCS", gpa_raw=gpa)

    assert [error.field for error in validate_row(row)] == ["gpa"]


@pytest.mark.parametrize("gpa", ["0", "4", "4.0", "2.75"])
def test_gpa_bounds_inclusive(gpa):
    row = StudentRow(row_number=1, registration_id="GRW-BCS-2021", full_name="A", department="BCS", gpa_raw=gpa)

    assert validate_row(row) == []


# ==================== Reconciliation ====================

def test_in_file_duplicate_first_occurrence_wins(references):
    rows = parse_student_csv(csv_bytes("GRW-BCS-2021,A,CS,,,3.5", "GRW-BCS-2021,B,CS,,,2.0"))

    result = reconcile(rows, [], references)

    assert [row.full_name for row in result.valid_rows] == ["A"]
    assert len(result.batch_duplicates) == 1
    duplicate = result.batch_duplicates[0]
    assert duplicate.row.full_name == "B"
    assert duplicate.reason == DuplicateReason.BATCH_REGISTRATION
    assert duplicate.first_row == 1
    assert result.existing_duplicates == []


def test_existing_registration_and_certificate_are_duplicates(references):
    rows = parse_student_csv(csv_bytes(
        "GRW-BCS-2019,A,BCS,111",
        "GRW-BCS-2020,B,BCS,222",
        "GRW-BCS-2021,C,BCS,333",
    ))
    existing = [{"registration_id": "grw-bcs-2019", "certificate_id": None},
                {"registration_id": "GRW-BCS-2000", "certificate_id": "222"}]

    result = reconcile(rows, existing, references)

    reasons = {dup.row.registration_id: dup.reason for dup in result.duplicate_rows}
    assert reasons == {
        "GRW-BCS-2019": DuplicateReason.EXISTING_REGISTRATION,
        "GRW-BCS-2020": DuplicateReason.EXISTING_CERTIFICATE,
    }
    assert [row.registration_id for row in result.valid_rows] == ["GRW-BCS-2021"]


def test_existing_duplicate_reported_even_when_row_is_invalid(references):
    rows = parse_student_csv(csv_bytes("GRW-BCS-2019,A,Unknown Dept,,,9.9"))

    result = reconcile(rows, [{"registration_id": "GRW-BCS-2019"}], references)

    assert len(result.existing_duplicates) == 1
    assert result.errors == []


def test_invalid_row_does_not_claim_its_id(references):
    rows = parse_student_csv(csv_bytes("GRW-BCS-2021,A,BCS,,,7.0", "GRW-BCS-2021,B,BCS,,,3.0"))

    result = reconcile(rows, [], references)

    assert result.invalid_rows == [1]
    assert [row.full_name for row in result.valid_rows] == ["B"]
    assert result.duplicate_rows == []


def test_in_file_certificate_duplicate(references):
    rows = parse_student_csv(csv_bytes("GRW-BCS-2021,A,BCS,777", "GRW-BCS-2022,B,BCS,777"))

    result = reconcile(rows, [], references)

    assert result.duplicate_rows[0].reason == DuplicateReason.BATCH_CERTIFICATE
    assert result.duplicate_rows[0].first_row == 1


def test_every_row_lands_in_one_bucket(references):
    rows = parse_student_csv(csv_bytes(
        "GRW-BCS-2001,A,BCS",
        "GRW-BCS-2002,B,BCS,,,5",
        "GRW-BCS-2001,C,BCS",
        "GRW-BCS-2003,D,BCS",
        "GRW-BCS-2004,E,Nowhere",
        "GRW-BCS-2005,F,BCS,,,,unknown",
    ))

    result = reconcile(rows, [{"registration_id": "GRW-BCS-2003"}], references)
    summary = result.summary()

    assert summary == {
        "total": 6,
        "duplicates": 2,
        "existing_duplicates": 1,
        "batch_duplicates": 1,
        "invalid": 3,
        "will_import": 1,
    }
    assert summary["will_import"] + summary["duplicates"] + summary["invalid"] == summary["total"]


def test_payload_matches_bulk_endpoint(references):
    rows = parse_student_csv(csv_bytes("GRW-BCS-2021,Amina,BCS,202100123,M,3.5,un-cleared,2021-07-15"))

    result = reconcile(rows, [], references)
    payload = result.valid_rows[0].to_payload()

    assert payload == {
        "registration_id": "GRW-BCS-2021",
        "certificate_id": "202100123",
        "full_name": "Amina",
        "gender": "MALE",
        "phone_number": None,
        "department_id": 1,
        "faculty_id": None,
        "academic_year_id": None,
        "gpa": 3.5,
        "grade": None,
        "graduation_date": "2021-07-15",
        "status": "UN_CLEARED",
    }
