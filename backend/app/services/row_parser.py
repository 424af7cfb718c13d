# backend/app/services/row_parser.py
"""
Decode an uploaded CSV / XLSX buffer into ordered RawRow records.

No business rules live here: the parser only maps header labels to canonical
field names (per job type), drops empty rows and converts cell values to
JSON-friendly scalars so rows can be snapshotted onto a BulkJob.
"""

from __future__ import annotations

import io
import csv
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from backend.app.models.enums import JobType
from backend.app.services.bulk_errors import MalformedFile, UnsupportedFormat

logger = logging.getLogger(__name__)

CSV_EXTENSIONS = (".csv",)
XLSX_EXTENSIONS = (".xlsx", ".xlsm")


# ---------------------------------------------------------
# Column schemas
# ---------------------------------------------------------
@dataclass(frozen=True)
class ColumnSpec:
    field: str
    label: str
    required: bool = False
    aliases: Tuple[str, ...] = ()

    def labels(self) -> Tuple[str, ...]:
        return (self.label, self.field, self.field.replace("_", " ")) + self.aliases


@dataclass(frozen=True)
class RowSchema:
    job_type: JobType
    columns: Tuple[ColumnSpec, ...]
    # each group needs at least one of its fields present in the header
    one_of: Tuple[Tuple[str, ...], ...] = ()

    @property
    def headers(self) -> List[str]:
        return [c.label for c in self.columns]

    def column(self, field_name: str) -> ColumnSpec:
        for c in self.columns:
            if c.field == field_name:
                return c
        raise KeyError(field_name)


STUDENT_SCHEMA = RowSchema(
    job_type=JobType.STUDENTS,
    columns=(
        ColumnSpec("name", "Name", required=True, aliases=("Student Name", "Full Name")),
        ColumnSpec("email", "Email", required=True, aliases=("Email Address", "E-mail")),
        ColumnSpec("phone", "Phone", aliases=("Mobile", "Phone Number", "Contact")),
        ColumnSpec("enrollment_number", "Enrollment Number", required=True, aliases=("Enrollment No", "Enrolment Number")),
        ColumnSpec("roll_number", "Roll Number", aliases=("Roll No",)),
        ColumnSpec("batch", "Batch", required=True, aliases=("Batch Name",)),
        ColumnSpec("branch", "Branch", aliases=("Branch Name",)),
        ColumnSpec("semester", "Semester", aliases=("Current Semester",)),
        ColumnSpec("date_of_birth", "Date of Birth", aliases=("DOB",)),
        ColumnSpec("gender", "Gender"),
        ColumnSpec("address", "Address"),
        ColumnSpec("parent_name", "Parent Name", aliases=("Guardian Name",)),
        ColumnSpec("parent_contact", "Parent Contact", aliases=("Guardian Contact",)),
        ColumnSpec("tenth_percentage", "10th %", aliases=("10th Percentage",)),
        ColumnSpec("twelfth_percentage", "12th %", aliases=("12th Percentage",)),
    ),
)

USER_SCHEMA = RowSchema(
    job_type=JobType.USERS,
    columns=(
        ColumnSpec("name", "Name", required=True, aliases=("Full Name",)),
        ColumnSpec("email", "Email", required=True, aliases=("Email Address", "E-mail")),
        ColumnSpec("phone", "Phone", aliases=("Mobile", "Phone Number")),
        ColumnSpec("role", "Role", required=True),
        ColumnSpec("designation", "Designation"),
        ColumnSpec("department", "Department"),
        ColumnSpec("employee_id", "Employee ID", aliases=("Employee Id", "Emp ID")),
    ),
)

INSTITUTION_SCHEMA = RowSchema(
    job_type=JobType.INSTITUTIONS,
    columns=(
        ColumnSpec("name", "Name", required=True, aliases=("Institution Name",)),
        ColumnSpec("code", "Code", required=True, aliases=("Institution Code",)),
        ColumnSpec("type", "Type", aliases=("Institution Type",)),
        ColumnSpec("email", "Email", required=True),
        ColumnSpec("phone", "Phone"),
        ColumnSpec("address", "Address"),
        ColumnSpec("city", "City"),
        ColumnSpec("state", "State"),
        ColumnSpec("pin_code", "Pin Code", aliases=("Pincode", "PIN")),
        ColumnSpec("website", "Website"),
        ColumnSpec("principal_name", "Principal Name"),
        ColumnSpec("principal_email", "Principal Email"),
        ColumnSpec("principal_phone", "Principal Phone"),
    ),
)

SELF_INTERNSHIP_SCHEMA = RowSchema(
    job_type=JobType.SELF_INTERNSHIPS,
    columns=(
        ColumnSpec("student_email", "Student Email"),
        ColumnSpec("roll_number", "Roll Number", aliases=("Student Roll Number",)),
        ColumnSpec("enrollment_number", "Enrollment Number"),
        ColumnSpec("company_name", "Company Name", required=True),
        ColumnSpec("company_address", "Company Address"),
        ColumnSpec("company_contact", "Company Contact"),
        ColumnSpec("company_email", "Company Email"),
        ColumnSpec("hr_name", "HR Name"),
        ColumnSpec("hr_designation", "HR Designation"),
        ColumnSpec("hr_contact", "HR Contact"),
        ColumnSpec("hr_email", "HR Email"),
        ColumnSpec("job_profile", "Job Profile"),
        ColumnSpec("stipend", "Stipend"),
        ColumnSpec("start_date", "Start Date"),
        ColumnSpec("end_date", "End Date"),
        ColumnSpec("duration", "Duration"),
        ColumnSpec("faculty_mentor_name", "Faculty Mentor Name"),
        ColumnSpec("faculty_mentor_email", "Faculty Mentor Email"),
        ColumnSpec("faculty_mentor_contact", "Faculty Mentor Contact"),
        ColumnSpec("faculty_mentor_designation", "Faculty Mentor Designation"),
        ColumnSpec("joining_letter_url", "Joining Letter URL"),
    ),
    one_of=(("student_email", "roll_number", "enrollment_number"),),
)

SCHEMAS: Dict[JobType, RowSchema] = {
    JobType.STUDENTS: STUDENT_SCHEMA,
    JobType.USERS: USER_SCHEMA,
    JobType.INSTITUTIONS: INSTITUTION_SCHEMA,
    JobType.SELF_INTERNSHIPS: SELF_INTERNSHIP_SCHEMA,
}


def get_schema(job_type: JobType) -> RowSchema:
    return SCHEMAS[job_type]


# ---------------------------------------------------------
# RawRow
# ---------------------------------------------------------
@dataclass
class RawRow:
    """
    One data row. ``index`` is the 1-based data row number (header excluded),
    which is what error reports show to the uploader.
    """
    index: int
    values: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.index, "values": dict(self.values)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawRow":
        return cls(index=int(data["row"]), values=dict(data.get("values") or {}))


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------
def _norm_label(label: Any) -> str:
    # template headers mark required columns with "*"
    return " ".join(str(label).rstrip("* ").split()).lower()


def _cell_value(value: Any) -> Any:
    """Convert a cell into a JSON-serialisable scalar; blanks become None."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, bool):
        return value
    if isinstance(value, datetime):
        if value.hour == value.minute == value.second == 0:
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (int, float)):
        return value
    return str(value).strip() or None


def _map_header(header: Sequence[Any], schema: RowSchema) -> Dict[int, str]:
    """
    Return {column position: canonical field}. Unknown columns are ignored;
    a missing required column fails the whole file.
    """
    lookup: Dict[str, str] = {}
    for col in schema.columns:
        for label in col.labels():
            lookup.setdefault(_norm_label(label), col.field)

    positions: Dict[int, str] = {}
    seen = set()
    for pos, label in enumerate(header):
        if label is None or str(label).strip() == "":
            continue
        fname = lookup.get(_norm_label(label))
        if fname and fname not in seen:
            positions[pos] = fname
            seen.add(fname)

    missing = [c.label for c in schema.columns if c.required and c.field not in seen]
    for group in schema.one_of:
        if not any(f in seen for f in group):
            missing.append(" / ".join(schema.column(f).label for f in group))

    if missing:
        raise MalformedFile(
            f"Missing required columns: {', '.join(missing)}",
            missing_columns=missing,
        )
    return positions


def _rows_from_table(table: Iterable[Sequence[Any]], schema: RowSchema) -> List[RawRow]:
    iterator = iter(table)
    header: Optional[Sequence[Any]] = None
    for candidate in iterator:
        if any(_cell_value(c) is not None for c in candidate):
            header = candidate
            break
    if header is None:
        raise MalformedFile("File has no header row")

    positions = _map_header(header, schema)

    rows: List[RawRow] = []
    for data_index, raw in enumerate(iterator, start=1):
        values = {}
        for pos, fname in positions.items():
            values[fname] = _cell_value(raw[pos]) if pos < len(raw) else None
        # blank lines keep their position but produce no row
        if all(v is None for v in values.values()):
            continue
        rows.append(RawRow(index=data_index, values=values))
    return rows


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")  # handles BOM
    except UnicodeDecodeError:
        return content.decode("latin-1")


def _csv_table(content: bytes, max_sample_size: int = 8192) -> List[List[str]]:
    text = _decode_text(content)
    sample = text[:max_sample_size]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel
    try:
        return list(csv.reader(io.StringIO(text, newline=""), dialect))
    except csv.Error as e:
        raise MalformedFile(f"Could not read CSV: {e}")


def _xlsx_table(content: bytes) -> List[Tuple[Any, ...]]:
    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise MalformedFile(f"Could not read spreadsheet: {e}")
    try:
        if not wb.worksheets:
            raise MalformedFile("Spreadsheet has no sheets")
        # data lives on the first sheet; later sheets (instructions) are ignored
        return list(wb.worksheets[0].iter_rows(values_only=True))
    finally:
        wb.close()


def detect_format(filename: str) -> str:
    name = (filename or "").lower().strip()
    if name.endswith(CSV_EXTENSIONS):
        return "csv"
    if name.endswith(XLSX_EXTENSIONS):
        return "xlsx"
    raise UnsupportedFormat(f"Unsupported file type: {filename or '<unnamed>'}. Upload a .csv or .xlsx file")


# ---------------------------------------------------------
# Public API
# ---------------------------------------------------------
def parse_rows(content: bytes, filename: str, job_type: JobType) -> List[RawRow]:
    """
    Parse ``content`` into RawRows for ``job_type``.

    Raises UnsupportedFormat for unknown extensions and MalformedFile when the
    file cannot be decoded or lacks a required column. No row limit is applied.
    """
    fmt = detect_format(filename)
    schema = get_schema(job_type)

    table = _csv_table(content) if fmt == "csv" else _xlsx_table(content)
    rows = _rows_from_table(table, schema)
    logger.info("Parsed %s rows from %s (%s, %s)", len(rows), filename, fmt, job_type.value)
    return rows
