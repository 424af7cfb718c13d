# backend/app/services/template_service.py
"""
Downloadable .xlsx templates for each bulk upload type: a data sheet with the
accepted headers and example rows, and an "Instructions" sheet.
"""

import io
from typing import Any, Dict, List

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill

from backend.app.models.enums import JobType
from backend.app.services.row_parser import get_schema

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

header_fill = PatternFill(start_color="4F46E5", end_color="4F46E5", fill_type="solid")
header_font = Font(bold=True, color="FFFFFF")
required_font = Font(bold=True, color="FFE082")
title_font = Font(bold=True, size=14)

EXAMPLE_ROWS: Dict[JobType, List[Dict[str, Any]]] = {
    JobType.STUDENTS: [
        {
            "name": "Aarav Sharma", "email": "aarav.sharma@example.com", "phone": "9876543210",
            "enrollment_number": "EN2024001", "roll_number": "R001", "batch": "2024-27",
            "branch": "Computer Engineering", "semester": 1, "date_of_birth": "2006-04-12",
            "gender": "MALE", "address": "12 Mall Road, Ludhiana", "parent_name": "Rakesh Sharma",
            "parent_contact": "9812345678", "tenth_percentage": 88.4, "twelfth_percentage": 82,
        },
        {
            "name": "Simran Kaur", "email": "simran.kaur@example.com", "phone": "9876500011",
            "enrollment_number": "EN2024002", "roll_number": "R002", "batch": "2024-27",
            "branch": "Electrical Engineering", "semester": 1, "date_of_birth": "2005-11-02",
            "gender": "FEMALE",
        },
    ],
    JobType.USERS: [
        {
            "name": "Dr. Meera Gupta", "email": "meera.gupta@example.com", "phone": "9811122233",
            "role": "FACULTY", "designation": "Lecturer", "department": "Computer Engineering",
            "employee_id": "EMP101",
        },
        {
            "name": "Vikram Singh", "email": "vikram.singh@example.com", "role": "MENTOR",
            "designation": "Training Officer", "department": "Training & Placement",
        },
    ],
    JobType.INSTITUTIONS: [
        {
            "name": "Government Polytechnic College, Amritsar", "code": "GPC-ASR", "type": "POLYTECHNIC",
            "email": "gpc.amritsar@example.gov.in", "phone": "1832000000", "address": "GT Road",
            "city": "Amritsar", "state": "Punjab", "pin_code": "143001", "website": "https://gpc-asr.example.gov.in",
            "principal_name": "Dr. Harpreet Gill", "principal_email": "principal.gpcasr@example.gov.in",
            "principal_phone": "9815000000",
        },
    ],
    JobType.SELF_INTERNSHIPS: [
        {
            "student_email": "aarav.sharma@example.com", "company_name": "Acme Technologies Pvt Ltd",
            "company_address": "Sector 62, Noida", "company_email": "hr@acme.example.com",
            "hr_name": "Neha Verma", "hr_designation": "HR Manager", "hr_contact": "9899000000",
            "hr_email": "neha.verma@acme.example.com", "job_profile": "Web Development Intern",
            "stipend": "10000", "start_date": "2025-06-01", "end_date": "2025-07-31", "duration": "2 months",
            "faculty_mentor_name": "Dr. Meera Gupta", "faculty_mentor_email": "meera.gupta@example.com",
        },
    ],
}

INSTRUCTIONS: Dict[JobType, List[str]] = {
    JobType.STUDENTS: [
        "Batch must already exist in your institution.",
        "Phone and Parent Contact must be 10-digit mobile numbers.",
        "Gender: MALE, FEMALE or OTHER. Semester: 1 to 8.",
        "Date of Birth: YYYY-MM-DD. Percentages between 0 and 100.",
        "Each student gets a login with the default password and must change it on first sign-in.",
    ],
    JobType.USERS: [
        "Role: FACULTY, MENTOR or PRINCIPAL (PRINCIPAL only for state-level uploaders).",
        "Each user gets a login with the default password and must change it on first sign-in.",
    ],
    JobType.INSTITUTIONS: [
        "Only state directorate and system administrators may upload institutions.",
        "Type: POLYTECHNIC, ENGINEERING_COLLEGE, UNIVERSITY, DEGREE_COLLEGE, ITI or SKILL_CENTER.",
        "Pin Code must be 6 digits. Code must be unique.",
        "Principal Name and Principal Email together create the principal's login.",
    ],
    JobType.SELF_INTERNSHIPS: [
        "Identify the student by Student Email, Roll Number or Enrollment Number.",
        "The student must belong to your institution.",
        "Dates: YYYY-MM-DD. Start Date must be before End Date.",
        "List each student once per file.",
    ],
}

GENERAL_INSTRUCTIONS = [
    "Keep the header row exactly as provided; columns marked * are required.",
    "Do not leave blank rows between records.",
    "Maximum 500 rows per file, up to 5 MB. Accepted formats: .xlsx and .csv.",
]


def template_filename(job_type: JobType) -> str:
    return f"{job_type.slug}-template.xlsx"


def build_template(job_type: JobType) -> bytes:
    schema = get_schema(job_type)
    wb = Workbook()

    ws = wb.active
    ws.title = job_type.slug
    ws.append([f"{c.label}*" if c.required else c.label for c in schema.columns])
    for cell, column in zip(ws[1], schema.columns):
        cell.fill = header_fill
        cell.font = required_font if column.required else header_font
    for example in EXAMPLE_ROWS[job_type]:
        ws.append([example.get(c.field) for c in schema.columns])
    for idx, column in enumerate(schema.columns, start=1):
        ws.column_dimensions[ws.cell(row=1, column=idx).column_letter].width = max(14, len(column.label) + 4)

    info = wb.create_sheet("Instructions")
    info.append([f"Bulk upload: {job_type.slug}"])
    info["A1"].font = title_font
    info.append([])
    for line in GENERAL_INSTRUCTIONS + INSTRUCTIONS[job_type]:
        info.append([f"- {line}"])
    if schema.one_of:
        for group in schema.one_of:
            labels = ", ".join(schema.column(f).label for f in group)
            info.append([f"- At least one of: {labels}."])
    info.column_dimensions["A"].width = 110

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
