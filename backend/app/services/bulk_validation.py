# backend/app/services/bulk_validation.py
"""
Row validation for bulk uploads.

A validator is built once per pass over a file (``build_validator``) and
called row by row in file order. It only reads from the database (uniqueness
and reference lookups) and keeps the first row each natural key was seen on so
in-file duplicates can point back at it.

The same validators run for the preview endpoint and inside the worker; the
worker's pass is the one that counts.
"""

from __future__ import annotations

import re
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from backend.app.models.academic import Batch, Branch
from backend.app.models.enums import (
    Gender,
    InstitutionType,
    JobType,
    Role,
    STAFF_ROLE_LABELS,
    STATE_LEVEL_ROLES,
)
from backend.app.models.institution import Institution
from backend.app.models.internship_application import InternshipApplication
from backend.app.models.student import Student
from backend.app.models.user import User
from backend.app.services.row_parser import RawRow, RowSchema, get_schema

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")
PHONE_REGEX = re.compile(r"^\d{10}$")
PIN_CODE_REGEX = re.compile(r"^\d{6}$")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")

# error codes
REQUIRED = "REQUIRED"
INVALID_FORMAT = "INVALID_FORMAT"
INVALID_VALUE = "INVALID_VALUE"
OUT_OF_RANGE = "OUT_OF_RANGE"
NOT_FOUND = "NOT_FOUND"
DUPLICATE_IN_FILE = "DUPLICATE_IN_FILE"
ALREADY_EXISTS = "ALREADY_EXISTS"
NOT_PERMITTED = "NOT_PERMITTED"
INVALID_DATE_RANGE = "INVALID_DATE_RANGE"


# ---------------------------------------------------------
# Types
# ---------------------------------------------------------
@dataclass(frozen=True)
class TenantContext:
    """Who is uploading, for which institution, and (inside a job) which lineage."""
    uploader_id: int
    uploader_role: Role
    institution_id: Optional[int] = None
    lineage_id: Optional[str] = None

    @property
    def is_state_level(self) -> bool:
        return self.uploader_role in STATE_LEVEL_ROLES


@dataclass
class FieldError:
    field: str
    code: str
    message: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "code": self.code, "message": self.message, "value": self.value}


@dataclass
class ValidationVerdict:
    row: int
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[FieldError] = field(default_factory=list)
    warnings: List[FieldError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error_entry(self) -> Dict[str, Any]:
        """Error report entry: first violation up front, every violation listed."""
        first = self.errors[0]
        return {
            "row": self.row,
            "code": first.code,
            "field": first.field,
            "message": "; ".join(e.message for e in self.errors),
            "values": {e.field: e.value for e in self.errors if e.value is not None},
            "errors": [e.to_dict() for e in self.errors],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "valid": self.is_valid,
            "data": _jsonable(self.data) if self.is_valid else None,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.isoformat() if isinstance(v, (date, datetime)) else v) for k, v in data.items()}


# ---------------------------------------------------------
# Per-row checker
# ---------------------------------------------------------
class RowCheck:
    """Collects every violation for one row while normalising its values."""

    def __init__(self, row: RawRow, schema: RowSchema):
        self.row = row
        self.schema = schema
        self.errors: List[FieldError] = []
        self.warnings: List[FieldError] = []

    def label(self, name: str) -> str:
        try:
            return self.schema.column(name).label
        except KeyError:
            return name.replace("_", " ").title()

    def error(self, name: str, code: str, message: str, value: Any = None) -> None:
        self.errors.append(FieldError(name, code, message, value))

    def warn(self, name: str, message: str, value: Any = None) -> None:
        self.warnings.append(FieldError(name, "WARNING", message, value))

    # -- scalar readers --------------------------------------------------
    def text(self, name: str, required: bool = False) -> Optional[str]:
        raw = self.row.get(name)
        value = None if raw is None else str(raw).strip() or None
        if value is None and required:
            self.error(name, REQUIRED, f"{self.label(name)} is required")
        return value

    def email(self, name: str, required: bool = False) -> Optional[str]:
        value = self.text(name, required=required)
        if value is None:
            return None
        value = value.lower()
        if not EMAIL_REGEX.match(value):
            self.error(name, INVALID_FORMAT, f"Invalid {self.label(name).lower()} format", value)
            return None
        return value

    def phone(self, name: str) -> Optional[str]:
        value = self.text(name)
        if value is None:
            return None
        digits = re.sub(r"[\s\-()]", "", value)
        if digits.startswith("+91") and len(digits) == 13:
            digits = digits[3:]
        if not PHONE_REGEX.match(digits):
            self.error(name, INVALID_FORMAT, f"{self.label(name)} must be a 10-digit number", value)
            return None
        return digits

    def integer(self, name: str, low: int, high: int) -> Optional[int]:
        raw = self.row.get(name)
        if raw is None or str(raw).strip() == "":
            return None
        try:
            number = float(str(raw).strip())
        except ValueError:
            self.error(name, INVALID_FORMAT, f"{self.label(name)} must be a number", raw)
            return None
        if not number.is_integer() or not low <= number <= high:
            self.error(name, OUT_OF_RANGE, f"{self.label(name)} must be between {low} and {high}", raw)
            return None
        return int(number)

    def percentage(self, name: str) -> Optional[float]:
        raw = self.row.get(name)
        if raw is None or str(raw).strip() == "":
            return None
        try:
            number = float(str(raw).strip().rstrip("%"))
        except ValueError:
            self.error(name, INVALID_FORMAT, f"{self.label(name)} must be a number", raw)
            return None
        if not 0 <= number <= 100:
            self.error(name, OUT_OF_RANGE, f"{self.label(name)} must be between 0 and 100", raw)
            return None
        return number

    def date(self, name: str) -> Optional[date]:
        raw = self.text(name)
        if raw is None:
            return None
        candidate = raw[:10] if "T" in raw else raw
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(candidate, fmt).date()
            except ValueError:
                continue
        self.error(name, INVALID_FORMAT, f"Invalid date format: {raw}. Expected format: YYYY-MM-DD", raw)
        return None

    def choice(self, name: str, allowed: List[str], required: bool = False) -> Optional[str]:
        value = self.text(name, required=required)
        if value is None:
            return None
        normalized = value.upper().replace(" ", "_").replace("-", "_")
        if normalized not in allowed:
            self.error(
                name,
                INVALID_VALUE,
                f"Invalid {self.label(name).lower()}. Must be one of: {', '.join(allowed)}",
                value,
            )
            return None
        return normalized

    def verdict(self, data: Dict[str, Any]) -> ValidationVerdict:
        return ValidationVerdict(
            row=self.row.index,
            data=data if not self.errors else {},
            errors=self.errors,
            warnings=self.warnings,
        )


# ---------------------------------------------------------
# Validators
# ---------------------------------------------------------
class RowValidator:
    job_type: JobType

    def __init__(self, db: Session, ctx: TenantContext):
        self.db = db
        self.ctx = ctx
        self.schema = get_schema(self.job_type)
        self._first_seen: Dict[tuple, int] = {}

    def validate(self, row: RawRow) -> ValidationVerdict:
        check = RowCheck(row, self.schema)
        data = self.check(row, check)
        return check.verdict(data)

    def check(self, row: RawRow, v: RowCheck) -> Dict[str, Any]:
        raise NotImplementedError

    # -- shared helpers ----------------------------------------------------
    def seen_before(self, kind: str, key: Optional[str], row_index: int) -> Optional[int]:
        """Row index where ``key`` first appeared in this file, or None if this is the first."""
        if key is None:
            return None
        first = self._first_seen.setdefault((kind, key.lower()), row_index)
        return first if first != row_index else None

    def belongs_elsewhere(self, entity: Any, row_index: int) -> bool:
        """
        True when ``entity`` was not created by this very row of this lineage.
        Entities written by an earlier attempt of the same row are not conflicts.
        """
        if entity is None:
            return False
        if self.ctx.lineage_id is None:
            return True
        return not (entity.source_lineage_id == self.ctx.lineage_id and entity.source_row == row_index)

    def find_user(self, email: str) -> Optional[User]:
        return self.db.scalar(select(User).where(func.lower(User.email) == email.lower()))

    def unique_email(self, v: RowCheck, name: str, email: Optional[str], kind: str = "email") -> None:
        if email is None:
            return
        first = self.seen_before(kind, email, v.row.index)
        if first is not None:
            v.error(name, DUPLICATE_IN_FILE, f"Duplicate {v.label(name).lower()} in file (also found in row {first})", email)
            return
        if self.belongs_elsewhere(self.find_user(email), v.row.index):
            v.error(name, ALREADY_EXISTS, f"{v.label(name)} already exists in the system", email)


class StudentRowValidator(RowValidator):
    job_type = JobType.STUDENTS

    def __init__(self, db: Session, ctx: TenantContext):
        super().__init__(db, ctx)
        self._batches: Optional[Dict[str, Batch]] = None
        self._branches: Optional[Dict[str, Branch]] = None

    def batches(self) -> Dict[str, Batch]:
        if self._batches is None:
            rows = self.db.scalars(select(Batch).where(Batch.institution_id == self.ctx.institution_id)).all()
            self._batches = {b.name.lower(): b for b in rows}
        return self._batches

    def branches(self) -> Dict[str, Branch]:
        if self._branches is None:
            self._branches = {b.name.lower(): b for b in self.db.scalars(select(Branch)).all()}
        return self._branches

    def check(self, row: RawRow, v: RowCheck) -> Dict[str, Any]:
        name = v.text("name", required=True)
        email = v.email("email", required=True)
        self.unique_email(v, "email", email)
        phone = v.phone("phone")

        enrollment = v.text("enrollment_number", required=True)
        if enrollment is not None:
            first = self.seen_before("enrollment", enrollment, row.index)
            if first is not None:
                v.error("enrollment_number", DUPLICATE_IN_FILE,
                        f"Duplicate enrollment number in file (also found in row {first})", enrollment)
            else:
                existing = self.db.scalar(select(Student).where(Student.enrollment_number == enrollment))
                if self.belongs_elsewhere(existing, row.index):
                    v.error("enrollment_number", ALREADY_EXISTS,
                            "Enrollment number already exists in the system", enrollment)

        batch_id = None
        batch_name = v.text("batch", required=True)
        if batch_name is not None:
            batch = self.batches().get(batch_name.lower())
            if batch is None:
                available = ", ".join(sorted(b.name for b in self.batches().values())) or "none"
                v.error("batch", NOT_FOUND,
                        f'Batch "{batch_name}" not found in the system. Available batches: {available}', batch_name)
            else:
                batch_id = batch.id

        branch_id = None
        branch_name = v.text("branch")
        if branch_name is not None:
            branch = self.branches().get(branch_name.lower())
            if branch is None:
                v.warn("branch", f'Branch "{branch_name}" not found. Student will be created without branch assignment.',
                       branch_name)
            else:
                branch_id = branch.id

        dob = v.date("date_of_birth")
        if dob is not None:
            age = (date.today() - dob).days // 365
            if not 10 <= age <= 100:
                v.error("date_of_birth", OUT_OF_RANGE, "Date of birth is not plausible", dob.isoformat())
                dob = None

        return {
            "name": name,
            "email": email,
            "phone": phone,
            "enrollment_number": enrollment,
            "roll_number": v.text("roll_number"),
            "batch_id": batch_id,
            "branch_id": branch_id,
            "branch_name": branch_name,
            "current_semester": v.integer("semester", 1, 8),
            "date_of_birth": dob,
            "gender": v.choice("gender", [g.value for g in Gender]),
            "address": v.text("address"),
            "parent_name": v.text("parent_name"),
            "parent_contact": v.phone("parent_contact"),
            "tenth_percentage": v.percentage("tenth_percentage"),
            "twelfth_percentage": v.percentage("twelfth_percentage"),
        }


class UserRowValidator(RowValidator):
    job_type = JobType.USERS

    def check(self, row: RawRow, v: RowCheck) -> Dict[str, Any]:
        name = v.text("name", required=True)
        email = v.email("email", required=True)
        self.unique_email(v, "email", email)

        role = None
        role_label = v.choice("role", list(STAFF_ROLE_LABELS), required=True)
        if role_label is not None:
            role = STAFF_ROLE_LABELS[role_label]
            if role is Role.PRINCIPAL and not self.ctx.is_state_level:
                v.error("role", NOT_PERMITTED,
                        f"{self.ctx.uploader_role.value} cannot create {role_label} accounts", role_label)
                role = None

        return {
            "name": name,
            "email": email,
            "phone": v.phone("phone"),
            "role": role.value if role else None,
            "designation": v.text("designation"),
            "department": v.text("department"),
            "employee_id": v.text("employee_id"),
        }


class InstitutionRowValidator(RowValidator):
    job_type = JobType.INSTITUTIONS

    def check(self, row: RawRow, v: RowCheck) -> Dict[str, Any]:
        name = v.text("name", required=True)

        code = v.text("code", required=True)
        if code is not None:
            code = code.upper()
            first = self.seen_before("code", code, row.index)
            if first is not None:
                v.error("code", DUPLICATE_IN_FILE, f"Duplicate institution code in file (also found in row {first})", code)
            else:
                existing = self.db.scalar(select(Institution).where(func.upper(Institution.code) == code))
                if self.belongs_elsewhere(existing, row.index):
                    v.error("code", ALREADY_EXISTS, "Institution code already exists in the system", code)

        email = v.email("email", required=True)
        inst_type = v.choice("type", [t.value for t in InstitutionType]) or InstitutionType.POLYTECHNIC.value

        pin_code = v.text("pin_code")
        if pin_code is not None and not PIN_CODE_REGEX.match(pin_code):
            v.error("pin_code", INVALID_FORMAT, "Pin code must be a 6-digit number", pin_code)
            pin_code = None

        website = v.text("website")
        if website is not None and not website.lower().startswith(("http://", "https://", "www.")):
            v.warn("website", "Website does not look like a URL", website)

        principal_name = v.text("principal_name")
        principal_email = v.email("principal_email")
        self.unique_email(v, "principal_email", principal_email)
        if bool(principal_name) != bool(principal_email) and not any(
            e.field == "principal_email" for e in v.errors
        ):
            v.warn("principal_name", "Principal account is created only when both name and email are given")

        if not self.ctx.is_state_level:
            v.error("code", NOT_PERMITTED, "Only state-level users can create institutions", code)

        return {
            "name": name,
            "code": code,
            "type": inst_type,
            "email": email,
            "phone": v.phone("phone"),
            "address": v.text("address"),
            "city": v.text("city"),
            "state": v.text("state"),
            "pin_code": pin_code,
            "website": website,
            "principal_name": principal_name if principal_email else None,
            "principal_email": principal_email if principal_name else None,
            "principal_phone": v.phone("principal_phone"),
        }


class SelfInternshipRowValidator(RowValidator):
    job_type = JobType.SELF_INTERNSHIPS

    def find_student(self, email: Optional[str], roll: Optional[str], enrollment: Optional[str]) -> Optional[Student]:
        clauses = []
        if email:
            clauses.append(func.lower(Student.email) == email.lower())
        if roll:
            clauses.append(Student.roll_number == roll)
        if enrollment:
            clauses.append(Student.enrollment_number == enrollment)
        stmt = (
            select(Student)
            .where(Student.institution_id == self.ctx.institution_id)
            .where(or_(*clauses))
            .order_by(Student.id)
            .limit(1)
        )
        return self.db.scalar(stmt)

    def check(self, row: RawRow, v: RowCheck) -> Dict[str, Any]:
        student_email = v.email("student_email")
        roll = v.text("roll_number")
        enrollment = v.text("enrollment_number")

        student_id = None
        if not (row.get("student_email") or roll or enrollment):
            v.error("student_email", REQUIRED,
                    "At least one student identifier (Email, Roll Number, or Enrollment Number) is required")
        elif student_email or roll or enrollment:
            student = self.find_student(student_email, roll, enrollment)
            if student is None:
                v.error("student_email", NOT_FOUND, "Student not found in the system",
                        student_email or roll or enrollment)
            else:
                first = self.seen_before("student", str(student.id), row.index)
                if first is not None:
                    v.error("student_email", DUPLICATE_IN_FILE,
                            f"Duplicate student entry in file (also found in row {first})",
                            student_email or roll or enrollment)
                else:
                    student_id = student.id
                    self._warn_existing(v, student)

        company_name = v.text("company_name", required=True)
        start = v.date("start_date")
        end = v.date("end_date")
        if start and end and start >= end:
            v.error("end_date", INVALID_DATE_RANGE, "Start date must be before end date", end.isoformat())

        return {
            "student_id": student_id,
            "company_name": company_name,
            "company_address": v.text("company_address"),
            "company_contact": v.text("company_contact"),
            "company_email": v.email("company_email"),
            "hr_name": v.text("hr_name"),
            "hr_designation": v.text("hr_designation"),
            "hr_contact": v.text("hr_contact"),
            "hr_email": v.email("hr_email"),
            "job_profile": v.text("job_profile"),
            "stipend": v.text("stipend"),
            "start_date": start,
            "end_date": end,
            "duration": v.text("duration"),
            "faculty_mentor_name": v.text("faculty_mentor_name"),
            "faculty_mentor_email": v.email("faculty_mentor_email"),
            "faculty_mentor_contact": v.text("faculty_mentor_contact"),
            "faculty_mentor_designation": v.text("faculty_mentor_designation"),
            "joining_letter_url": v.text("joining_letter_url"),
        }

    def _warn_existing(self, v: RowCheck, student: Student) -> None:
        stmt = select(InternshipApplication.id).where(
            InternshipApplication.student_id == student.id,
            InternshipApplication.is_self_identified.is_(True),
        )
        if self.ctx.lineage_id:
            stmt = stmt.where(
                or_(
                    InternshipApplication.source_lineage_id.is_(None),
                    InternshipApplication.source_lineage_id != self.ctx.lineage_id,
                )
            )
        if self.db.scalar(stmt.limit(1)) is not None:
            v.warn("student_email", "Student already has a self-identified internship. New record will be created.")


VALIDATORS: Dict[JobType, Type[RowValidator]] = {
    JobType.STUDENTS: StudentRowValidator,
    JobType.USERS: UserRowValidator,
    JobType.INSTITUTIONS: InstitutionRowValidator,
    JobType.SELF_INTERNSHIPS: SelfInternshipRowValidator,
}


def build_validator(db: Session, job_type: JobType, ctx: TenantContext) -> RowValidator:
    return VALIDATORS[job_type](db, ctx)


def validate_rows(db: Session, job_type: JobType, rows: List[RawRow], ctx: TenantContext) -> List[ValidationVerdict]:
    """Validate a whole file in order (preview / sync path)."""
    validator = build_validator(db, job_type, ctx)
    return [validator.validate(row) for row in rows]


def summarize(verdicts: List[ValidationVerdict]) -> Dict[str, Any]:
    valid = sum(1 for v in verdicts if v.is_valid)
    return {
        "total_rows": len(verdicts),
        "valid_rows": valid,
        "invalid_rows": len(verdicts) - valid,
        "rows": [v.to_dict() for v in verdicts],
    }
