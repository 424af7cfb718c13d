from datetime import date

from backend.app.models.enums import JobType, Role
from backend.app.models.student import Student
from backend.app.models.user import User
from backend.app.services.bulk_validation import (
    ALREADY_EXISTS,
    DUPLICATE_IN_FILE,
    INVALID_DATE_RANGE,
    INVALID_FORMAT,
    NOT_FOUND,
    NOT_PERMITTED,
    REQUIRED,
    TenantContext,
    summarize,
    validate_rows,
)
from backend.app.services.row_parser import RawRow
from backend.tests.factories import student_rows, student_values


def _codes(verdict):
    return [(e.field, e.code) for e in verdict.errors]


def _existing_student(db, institution, batch, enrollment="EN9999", email="taken@example.com", lineage=None, row=None):
    user = User(email=email, hashed_password="x", name="Existing", role=Role.STUDENT.value,
                institution_id=institution.id, source_lineage_id=lineage, source_row=row)
    db.add(user)
    db.flush()
    student = Student(user_id=user.id, institution_id=institution.id, batch_id=batch.id, name="Existing",
                      email=email, enrollment_number=enrollment, roll_number="R-EX",
                      source_lineage_id=lineage, source_row=row)
    db.add(student)
    db.commit()
    return student


def test_valid_student_row_is_normalised(db, batch, principal_ctx):
    row = RawRow(1, student_values(1, email="Student1@Example.com", phone="+91 98765 43210", semester="3"))

    verdict = validate_rows(db, JobType.STUDENTS, [row], principal_ctx)[0]

    assert verdict.is_valid
    assert verdict.data["email"] == "student1@example.com"
    assert verdict.data["phone"] == "9876543210"
    assert verdict.data["batch_id"] == batch.id
    assert verdict.data["current_semester"] == 3
    assert verdict.data["branch_id"] is not None


def test_every_violation_on_a_row_is_reported(db, batch, principal_ctx):
    row = RawRow(1, student_values(1, name=None, email="nope", phone="123", batch="1999-02"))

    verdict = validate_rows(db, JobType.STUDENTS, [row], principal_ctx)[0]

    assert not verdict.is_valid
    assert _codes(verdict) == [
        ("name", REQUIRED),
        ("email", INVALID_FORMAT),
        ("phone", INVALID_FORMAT),
        ("batch", NOT_FOUND),
    ]
    entry = verdict.error_entry()
    assert entry["row"] == 1
    assert entry["code"] == REQUIRED
    assert len(entry["errors"]) == 4


def test_duplicates_within_file_point_at_first_row(db, batch, principal_ctx):
    rows = student_rows(2) + [RawRow(3, student_values(3, email="student1@example.com", enrollment_number="EN0002"))]

    verdicts = validate_rows(db, JobType.STUDENTS, rows, principal_ctx)

    assert verdicts[0].is_valid and verdicts[1].is_valid
    assert _codes(verdicts[2]) == [("email", DUPLICATE_IN_FILE), ("enrollment_number", DUPLICATE_IN_FILE)]
    assert "row 1" in verdicts[2].errors[0].message
    assert "row 2" in verdicts[2].errors[1].message


def test_existing_records_conflict_unless_created_by_same_lineage_row(db, institution, batch, principal_ctx):
    _existing_student(db, institution, batch, enrollment="EN0001", email="student1@example.com",
                      lineage="bulk-abc", row=1)
    row = student_rows(1)[0]

    fresh = validate_rows(db, JobType.STUDENTS, [row], principal_ctx)[0]
    assert _codes(fresh) == [("email", ALREADY_EXISTS), ("enrollment_number", ALREADY_EXISTS)]

    same_lineage = TenantContext(uploader_id=7, uploader_role=Role.PRINCIPAL,
                                 institution_id=institution.id, lineage_id="bulk-abc")
    again = validate_rows(db, JobType.STUDENTS, [row], same_lineage)[0]
    assert again.is_valid


def test_unknown_branch_is_only_a_warning(db, batch, principal_ctx):
    verdict = validate_rows(db, JobType.STUDENTS, student_rows(1, branch="Aeronautics"), principal_ctx)[0]

    assert verdict.is_valid
    assert verdict.data["branch_id"] is None
    assert verdict.warnings[0].field == "branch"


def test_principal_cannot_create_principals(db, institution, principal_ctx):
    rows = [
        RawRow(1, {"name": "Teacher", "email": "t@example.com", "role": "faculty"}),
        RawRow(2, {"name": "Head", "email": "h@example.com", "role": "PRINCIPAL"}),
        RawRow(3, {"name": "Odd", "email": "o@example.com", "role": "janitor"}),
    ]

    verdicts = validate_rows(db, JobType.USERS, rows, principal_ctx)

    assert verdicts[0].data["role"] == Role.TEACHER.value
    assert _codes(verdicts[1]) == [("role", NOT_PERMITTED)]
    assert verdicts[2].errors[0].code == "INVALID_VALUE"

    as_admin = validate_rows(db, JobType.USERS, rows[1:2], TenantContext(1, Role.STATE_DIRECTORATE, institution.id))
    assert as_admin[0].data["role"] == Role.PRINCIPAL.value


def test_institution_rows(db, institution, admin_ctx, principal_ctx):
    rows = [
        RawRow(1, {"name": "GP Amritsar", "code": "gpa", "email": "gpa@example.com", "pin_code": "143001"}),
        RawRow(2, {"name": "Dup", "code": "GPA", "email": "dup@example.com"}),
        RawRow(3, {"name": "Taken", "code": "GPL", "email": "x@example.com", "pin_code": "12"}),
    ]

    verdicts = validate_rows(db, JobType.INSTITUTIONS, rows, admin_ctx)

    assert verdicts[0].data["code"] == "GPA"
    assert verdicts[0].data["type"] == "POLYTECHNIC"
    assert _codes(verdicts[1]) == [("code", DUPLICATE_IN_FILE)]
    assert ("code", ALREADY_EXISTS) in _codes(verdicts[2])
    assert ("pin_code", INVALID_FORMAT) in _codes(verdicts[2])

    denied = validate_rows(db, JobType.INSTITUTIONS, rows[:1], principal_ctx)[0]
    assert ("code", NOT_PERMITTED) in _codes(denied)


def test_self_internship_rows(db, institution, batch, principal_ctx):
    student = _existing_student(db, institution, batch)
    rows = [
        RawRow(1, {"roll_number": "R-EX", "company_name": "Acme", "start_date": "2025-01-10", "end_date": "10/03/2025"}),
        RawRow(2, {"student_email": "taken@example.com", "company_name": "Acme"}),
        RawRow(3, {"enrollment_number": "NOPE", "company_name": "Acme"}),
        RawRow(4, {"company_name": "Acme"}),
    ]

    verdicts = validate_rows(db, JobType.SELF_INTERNSHIPS, rows, principal_ctx)

    assert verdicts[0].data["student_id"] == student.id
    assert verdicts[0].data["end_date"] == date(2025, 3, 10)
    assert _codes(verdicts[1]) == [("student_email", DUPLICATE_IN_FILE)]
    assert _codes(verdicts[2]) == [("student_email", NOT_FOUND)]
    assert _codes(verdicts[3]) == [("student_email", REQUIRED)]


def test_self_internship_date_range_and_bad_date(db, institution, batch, principal_ctx):
    _existing_student(db, institution, batch)
    rows = [
        RawRow(1, {"roll_number": "R-EX", "company_name": "Acme", "start_date": "2025-05-01", "end_date": "2025-04-01"}),
    ]
    verdict = validate_rows(db, JobType.SELF_INTERNSHIPS, rows, principal_ctx)[0]
    assert _codes(verdict) == [("end_date", INVALID_DATE_RANGE)]

    rows = [RawRow(1, {"roll_number": "R-EX", "company_name": "Acme", "start_date": "May first"})]
    verdict = validate_rows(db, JobType.SELF_INTERNSHIPS, rows, principal_ctx)[0]
    assert _codes(verdict) == [("start_date", INVALID_FORMAT)]


def test_summarize_counts_rows(db, batch, principal_ctx):
    rows = student_rows(2) + [RawRow(3, student_values(3, email="bad"))]

    summary = summarize(validate_rows(db, JobType.STUDENTS, rows, principal_ctx))

    assert summary["total_rows"] == 3
    assert summary["valid_rows"] == 2
    assert summary["invalid_rows"] == 1
    assert summary["rows"][2]["data"] is None
