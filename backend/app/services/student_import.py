"""
Student CSV Import Reconciliation

Parses a student CSV and classifies every data row as valid, duplicate or
invalid before anything is written. Problems with the file as a whole
(encoding, empty file, missing required columns) raise CSVImportError;
problems with individual rows are collected so they can all be shown at
once.

Usage:
    from app.services.student_import import parse_student_csv, reconcile

    rows = parse_student_csv(content)
    result = reconcile(rows, existing_students, references)
    result.summary()   # {"total": 10, "duplicates": 2, "invalid": 1, "will_import": 7, ...}

Every row lands in exactly one bucket:
    len(valid_rows) + len(duplicate_rows) + len(invalid_rows) == total
"""

import csv
import io
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from app.core.exceptions import CSVImportError
from app.models.student import Gender, StudentStatus, is_registration_id


REQUIRED_COLUMNS = ("registration_no", "full_name", "department")
OPTIONAL_COLUMNS = (
    "certificate_id", "gender", "phone_number", "faculty", "academic_year",
    "gpa", "grade", "graduation_date", "status",
)

# Alternate header spellings seen in exported spreadsheets
COLUMN_ALIASES = {
    "registration_id": "registration_no",
    "registration_number": "registration_no",
    "student_id": "registration_no",
    "name": "full_name",
    "phone": "phone_number",
    "department_code": "department",
    "year": "academic_year",
}

GPA_MIN = 0.0
GPA_MAX = 4.0

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y")

GENDER_VALUES = {
    "male": Gender.MALE,
    "m": Gender.MALE,
    "female": Gender.FEMALE,
    "f": Gender.FEMALE,
}

STATUS_VALUES = {
    "cleared": StudentStatus.CLEARED,
    "un-cleared": StudentStatus.UN_CLEARED,
    "un_cleared": StudentStatus.UN_CLEARED,
    "uncleared": StudentStatus.UN_CLEARED,
    "not cleared": StudentStatus.UN_CLEARED,
}


def normalize_header(name: str) -> str:
    key = name.strip().lower().replace(" ", "_").replace("-", "_")
    return COLUMN_ALIASES.get(key, key)


def normalize_registration_id(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def normalize_certificate_id(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


@dataclass
class StudentRow:
    """One parsed CSV data row; row_number is 1-based over data rows"""
    row_number: int
    registration_id: str
    full_name: str
    department: str
    certificate_id: Optional[str] = None
    gender: str = ""
    phone_number: str = ""
    faculty: str = ""
    academic_year: str = ""
    gpa_raw: str = ""
    grade: str = ""
    graduation_date_raw: str = ""
    status_raw: str = ""

    # Filled in by reconcile() for rows that pass validation
    gpa: Optional[float] = None
    graduation_date: Optional[date] = None
    parsed_gender: Optional[Gender] = None
    status: StudentStatus = StudentStatus.UN_CLEARED
    department_id: Optional[int] = None
    faculty_id: Optional[int] = None
    academic_year_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Body for POST /students/bulk"""
        return {
            "registration_id": self.registration_id,
            "certificate_id": self.certificate_id,
            "full_name": self.full_name,
            "gender": self.parsed_gender.value if self.parsed_gender else None,
            "phone_number": self.phone_number or None,
            "department_id": self.department_id,
            "faculty_id": self.faculty_id,
            "academic_year_id": self.academic_year_id,
            "gpa": self.gpa,
            "grade": self.grade or None,
            "graduation_date": self.graduation_date.isoformat() if self.graduation_date else None,
            "status": self.status.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_payload()
        data.update({
            "row_number": self.row_number,
            "department": self.department,
            "faculty": self.faculty or None,
            "academic_year": self.academic_year or None,
        })
        return data


@dataclass
class RowError:
    row_number: int
    message: str
    field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"row_number": self.row_number, "field": self.field, "message": self.message}


class DuplicateReason(str, Enum):
    EXISTING_REGISTRATION = "existing_registration_id"
    EXISTING_CERTIFICATE = "existing_certificate_id"
    BATCH_REGISTRATION = "batch_registration_id"
    BATCH_CERTIFICATE = "batch_certificate_id"

    @property
    def pre_existing(self) -> bool:
        return self in (DuplicateReason.EXISTING_REGISTRATION, DuplicateReason.EXISTING_CERTIFICATE)


@dataclass
class DuplicateRow:
    row: StudentRow
    reason: DuplicateReason
    first_row: Optional[int] = None  # for in-batch duplicates, the row that claimed the id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_number": self.row.row_number,
            "registration_id": self.row.registration_id,
            "certificate_id": self.row.certificate_id,
            "reason": self.reason.value,
            "first_row": self.first_row,
        }


@dataclass
class ExistingStudentRef:
    registration_id: str
    certificate_id: Optional[str] = None


@dataclass
class ReferenceData:
    """
    Lookup tables used to resolve department / faculty / academic year
    columns to ids. Keys are matched case-insensitively against both
    codes and names.
    """
    departments: Dict[str, int] = field(default_factory=dict)
    faculties: Dict[str, int] = field(default_factory=dict)
    academic_years: Dict[str, int] = field(default_factory=dict)

    @staticmethod
    def _key(value: str) -> str:
        return value.strip().lower()

    @classmethod
    def build(cls, departments: Iterable[Any] = (), faculties: Iterable[Any] = (),
              academic_years: Iterable[Any] = ()) -> "ReferenceData":
        """Build from objects or dicts with id/name/code (departments, faculties) and id/year"""
        def attr(obj, name):
            return obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)

        data = cls()
        for dept in departments:
            for label in (attr(dept, "code"), attr(dept, "name")):
                if label:
                    data.departments[cls._key(label)] = attr(dept, "id")
        for fac in faculties:
            for label in (attr(fac, "code"), attr(fac, "name")):
                if label:
                    data.faculties[cls._key(label)] = attr(fac, "id")
        for year in academic_years:
            if attr(year, "year"):
                data.academic_years[cls._key(attr(year, "year"))] = attr(year, "id")
        return data

    def department_id(self, value: str) -> Optional[int]:
        return self.departments.get(self._key(value))

    def faculty_id(self, value: str) -> Optional[int]:
        return self.faculties.get(self._key(value))

    def academic_year_id(self, value: str) -> Optional[int]:
        return self.academic_years.get(self._key(value))


@dataclass
class ReconciliationResult:
    total: int
    valid_rows: List[StudentRow] = field(default_factory=list)
    duplicate_rows: List[DuplicateRow] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)

    @property
    def invalid_rows(self) -> List[int]:
        """Row numbers with at least one validation error"""
        return sorted({error.row_number for error in self.errors})

    @property
    def existing_duplicates(self) -> List[DuplicateRow]:
        return [dup for dup in self.duplicate_rows if dup.reason.pre_existing]

    @property
    def batch_duplicates(self) -> List[DuplicateRow]:
        return [dup for dup in self.duplicate_rows if not dup.reason.pre_existing]

    def summary(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "duplicates": len(self.duplicate_rows),
            "existing_duplicates": len(self.existing_duplicates),
            "batch_duplicates": len(self.batch_duplicates),
            "invalid": len(self.invalid_rows),
            "will_import": len(self.valid_rows),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "valid_rows": [row.to_dict() for row in self.valid_rows],
            "duplicate_rows": [dup.to_dict() for dup in self.duplicate_rows],
            "errors": [error.to_dict() for error in self.errors],
        }


# ========== Parsing ==========

def parse_student_csv(content: bytes, max_bytes: Optional[int] = None) -> List[StudentRow]:
    """
    Parse CSV bytes into StudentRows.

    Raises CSVImportError before any row is processed when the file is too
    large, not UTF-8, empty, malformed, or missing a required column.
    """
    if max_bytes is not None and len(content) > max_bytes:
        raise CSVImportError(f"CSV file exceeds the {max_bytes // (1024 * 1024)}MB limit")

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise CSVImportError(f"CSV file is not valid UTF-8 text (byte {e.start})")

    if not text.strip():
        raise CSVImportError("CSV file is empty")

    try:
        reader = csv.reader(io.StringIO(text))
        header = next(reader, None)
        if not header or not any(cell.strip() for cell in header):
            raise CSVImportError("CSV file has no header row")

        columns = [normalize_header(cell) for cell in header]
        missing = [col for col in REQUIRED_COLUMNS if col not in columns]
        if missing:
            raise CSVImportError(
                f"Missing required columns: {', '.join(missing)}",
                missing_columns=missing,
            )

        rows: List[StudentRow] = []
        for cells in reader:
            if not any(cell.strip() for cell in cells):
                continue
            record = {
                column: (cells[index].strip() if index < len(cells) else "")
                for index, column in enumerate(columns)
            }
            rows.append(_row_from_record(len(rows) + 1, record))
    except csv.Error as e:
        raise CSVImportError(f"Malformed CSV: {e}")

    if not rows:
        raise CSVImportError("CSV file has no data rows")
    return rows


def _row_from_record(row_number: int, record: Dict[str, str]) -> StudentRow:
    return StudentRow(
        row_number=row_number,
        registration_id=normalize_registration_id(record.get("registration_no")),
        full_name=record.get("full_name", ""),
        department=record.get("department", ""),
        certificate_id=normalize_certificate_id(record.get("certificate_id")),
        gender=record.get("gender", ""),
        phone_number=record.get("phone_number", ""),
        faculty=record.get("faculty", ""),
        academic_year=record.get("academic_year", ""),
        gpa_raw=record.get("gpa", ""),
        grade=record.get("grade", ""),
        graduation_date_raw=record.get("graduation_date", ""),
        status_raw=record.get("status", ""),
    )


# ========== Validation ==========

def _parse_date(value: str) -> Optional[date]:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def validate_row(row: StudentRow, references: Optional[ReferenceData] = None) -> List[RowError]:
    """Check one row, filling its parsed fields. Returns every problem found."""
    errors: List[RowError] = []

    def fail(field_name: str, message: str) -> None:
        errors.append(RowError(row_number=row.row_number, field=field_name, message=message))

    if not row.registration_id:
        fail("registration_no", "Registration No is required")
    elif not is_registration_id(row.registration_id):
        fail("registration_no", f"Registration No '{row.registration_id}' does not match GRW-XXX-YYYY")
    if not row.full_name:
        fail("full_name", "Full Name is required")
    if not row.department:
        fail("department", "Department is required")

    if row.gpa_raw:
        try:
            gpa = float(row.gpa_raw)
        except ValueError:
            fail("gpa", f"GPA must be a number, got '{row.gpa_raw}'")
        else:
            if gpa != gpa or not GPA_MIN <= gpa <= GPA_MAX:
                fail("gpa", f"GPA must be between {GPA_MIN:g} and {GPA_MAX:g}, got {row.gpa_raw}")
            else:
                row.gpa = gpa

    if row.gender:
        gender = GENDER_VALUES.get(row.gender.strip().lower())
        if gender is None:
            fail("gender", f"Unknown gender '{row.gender}'")
        row.parsed_gender = gender

    if row.status_raw:
        status = STATUS_VALUES.get(row.status_raw.strip().lower())
        if status is None:
            fail("status", f"Unknown status '{row.status_raw}' (expected cleared or un-cleared)")
        else:
            row.status = status

    if row.graduation_date_raw:
        parsed = _parse_date(row.graduation_date_raw)
        if parsed is None:
            fail("graduation_date", f"Unrecognized date '{row.graduation_date_raw}'")
        row.graduation_date = parsed

    if references is not None:
        if row.department:
            row.department_id = references.department_id(row.department)
            if row.department_id is None:
                fail("department", f"Unknown department '{row.department}'")
        if row.faculty:
            row.faculty_id = references.faculty_id(row.faculty)
            if row.faculty_id is None:
                fail("faculty", f"Unknown faculty '{row.faculty}'")
        if row.academic_year:
            row.academic_year_id = references.academic_year_id(row.academic_year)
            if row.academic_year_id is None:
                fail("academic_year", f"Unknown academic year '{row.academic_year}'")

    return errors


# ========== Reconciliation ==========

def reconcile(
    rows: List[StudentRow],
    existing: Iterable[Any],
    references: Optional[ReferenceData] = None,
) -> ReconciliationResult:
    """
    Classify rows against the existing students and against each other.

    `existing` holds objects (or dicts) with registration_id and
    certificate_id. Order of checks for each row:
      1. registration id or certificate id already persisted -> duplicate
      2. validation errors -> invalid
      3. registration id or certificate id claimed by an earlier valid row
         in this file -> duplicate (first occurrence wins)
      4. otherwise valid, and its ids are claimed
    """
    existing_registrations: Set[str] = set()
    existing_certificates: Set[str] = set()
    for student in existing:
        if isinstance(student, dict):
            reg, cert = student.get("registration_id"), student.get("certificate_id")
        else:
            reg, cert = getattr(student, "registration_id", None), getattr(student, "certificate_id", None)
        if reg:
            existing_registrations.add(normalize_registration_id(reg))
        cert = normalize_certificate_id(cert)
        if cert:
            existing_certificates.add(cert)

    result = ReconciliationResult(total=len(rows))
    claimed_registrations: Dict[str, int] = {}
    claimed_certificates: Dict[str, int] = {}

    for row in rows:
        if row.registration_id and row.registration_id in existing_registrations:
            result.duplicate_rows.append(DuplicateRow(row, DuplicateReason.EXISTING_REGISTRATION))
            continue
        if row.certificate_id and row.certificate_id in existing_certificates:
            result.duplicate_rows.append(DuplicateRow(row, DuplicateReason.EXISTING_CERTIFICATE))
            continue

        errors = validate_row(row, references)
        if errors:
            result.errors.extend(errors)
            continue

        if row.registration_id in claimed_registrations:
            result.duplicate_rows.append(DuplicateRow(
                row, DuplicateReason.BATCH_REGISTRATION,
                first_row=claimed_registrations[row.registration_id],
            ))
            continue
        if row.certificate_id and row.certificate_id in claimed_certificates:
            result.duplicate_rows.append(DuplicateRow(
                row, DuplicateReason.BATCH_CERTIFICATE,
                first_row=claimed_certificates[row.certificate_id],
            ))
            continue

        claimed_registrations[row.registration_id] = row.row_number
        if row.certificate_id:
            claimed_certificates[row.certificate_id] = row.row_number
        result.valid_rows.append(row)

    return result
