# backend/app/services/entity_writers.py
"""
Persist one validated row per job type.

Every writer looks the row's natural key up before inserting, so running the
same row again (redelivery, retry from the stored snapshot) finds what the
earlier attempt created instead of inserting twice. The database unique
constraints remain the final guard against concurrent writers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.models.enums import JobType, Role
from backend.app.models.institution import Institution
from backend.app.models.internship_application import InternshipApplication
from backend.app.models.student import Student
from backend.app.models.user import User
from backend.app.services.bulk_validation import TenantContext, ValidationVerdict
from backend.app.utils.passwords import hash_password

logger = logging.getLogger(__name__)


class RowConflict(Exception):
    """Natural key already taken by an entity this row did not create."""

    def __init__(self, field: str, value: Any, message: str):
        super().__init__(message)
        self.field = field
        self.value = value
        self.message = message


@dataclass
class WriteOutcome:
    action: str  # created | existing
    entity: Dict[str, Any]


class EntityWriter:
    entity_type = "entity"
    key_field = "id"

    def __init__(self, db: Session, ctx: TenantContext):
        self.db = db
        self.ctx = ctx

    # -- hooks ----------------------------------------------------------
    def find_existing(self, data: Dict[str, Any], row: int) -> Optional[Any]:
        raise NotImplementedError

    def create(self, data: Dict[str, Any], row: int) -> Any:
        raise NotImplementedError

    def natural_key(self, data: Dict[str, Any]) -> Any:
        raise NotImplementedError

    # -------------------------------------------------------------------
    def write(self, verdict: ValidationVerdict) -> WriteOutcome:
        data, row = verdict.data, verdict.row
        existing = self.find_existing(data, row)
        if existing is not None:
            if existing.source_lineage_id == self.ctx.lineage_id and existing.source_row == row:
                logger.info("Row %s already imported as %s id=%s", row, self.entity_type, existing.id)
                return WriteOutcome("existing", self.reference(existing, data))
            raise RowConflict(
                self.key_field,
                self.natural_key(data),
                f"{self.entity_type.capitalize()} already exists in the system",
            )

        entity = self.create(data, row)
        self.db.flush()
        return WriteOutcome("created", self.reference(entity, data))

    def reference(self, entity: Any, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": self.entity_type, "id": entity.id, "key": self.natural_key(data)}

    def stamp(self, entity: Any, row: int) -> Any:
        entity.source_lineage_id = self.ctx.lineage_id
        entity.source_row = row
        return entity

    def new_login(self, *, name: str, email: str, role: Role, phone: Optional[str],
                  institution_id: Optional[int], row: int, **extra: Any) -> User:
        user = User(
            name=name,
            email=email,
            phone=phone,
            role=role.value,
            institution_id=institution_id,
            hashed_password=hash_password(settings.BULK_DEFAULT_PASSWORD),
            must_change_password=True,
            is_active=True,
            **extra,
        )
        self.db.add(self.stamp(user, row))
        return user


class StudentWriter(EntityWriter):
    entity_type = "student"
    key_field = "enrollment_number"

    def natural_key(self, data):
        return data["enrollment_number"]

    def find_existing(self, data, row):
        return self.db.scalar(select(Student).where(Student.enrollment_number == data["enrollment_number"]))

    def create(self, data, row):
        user = self.new_login(
            name=data["name"],
            email=data["email"],
            role=Role.STUDENT,
            phone=data.get("phone"),
            institution_id=self.ctx.institution_id,
            row=row,
        )
        self.db.flush()
        student = Student(
            user_id=user.id,
            institution_id=self.ctx.institution_id,
            batch_id=data["batch_id"],
            branch_id=data.get("branch_id"),
            branch_name=data.get("branch_name"),
            name=data["name"],
            email=data["email"],
            phone=data.get("phone"),
            enrollment_number=data["enrollment_number"],
            roll_number=data.get("roll_number"),
            current_semester=data.get("current_semester"),
            date_of_birth=data.get("date_of_birth"),
            gender=data.get("gender"),
            address=data.get("address"),
            parent_name=data.get("parent_name"),
            parent_contact=data.get("parent_contact"),
            tenth_percentage=data.get("tenth_percentage"),
            twelfth_percentage=data.get("twelfth_percentage"),
        )
        self.db.add(self.stamp(student, row))
        return student

    def reference(self, entity, data):
        ref = super().reference(entity, data)
        ref["user_id"] = entity.user_id
        return ref


class UserWriter(EntityWriter):
    entity_type = "user"
    key_field = "email"

    def natural_key(self, data):
        return data["email"]

    def find_existing(self, data, row):
        return self.db.scalar(select(User).where(func.lower(User.email) == data["email"].lower()))

    def create(self, data, row):
        return self.new_login(
            name=data["name"],
            email=data["email"],
            role=Role(data["role"]),
            phone=data.get("phone"),
            institution_id=self.ctx.institution_id,
            row=row,
            designation=data.get("designation"),
            department=data.get("department"),
            employee_id=data.get("employee_id"),
        )

    def reference(self, entity, data):
        ref = super().reference(entity, data)
        ref["role"] = entity.role
        return ref


class InstitutionWriter(EntityWriter):
    entity_type = "institution"
    key_field = "code"

    def natural_key(self, data):
        return data["code"]

    def find_existing(self, data, row):
        return self.db.scalar(select(Institution).where(func.upper(Institution.code) == data["code"].upper()))

    def create(self, data, row):
        institution = Institution(
            name=data["name"],
            code=data["code"],
            type=data["type"],
            email=data.get("email"),
            phone=data.get("phone"),
            address=data.get("address"),
            city=data.get("city"),
            state=data.get("state"),
            pin_code=data.get("pin_code"),
            website=data.get("website"),
            is_active=True,
        )
        self.db.add(self.stamp(institution, row))
        self.db.flush()

        if data.get("principal_name") and data.get("principal_email"):
            self.new_login(
                name=data["principal_name"],
                email=data["principal_email"],
                role=Role.PRINCIPAL,
                phone=data.get("principal_phone"),
                institution_id=institution.id,
                row=row,
            )
        return institution


class SelfInternshipWriter(EntityWriter):
    entity_type = "internship_application"
    key_field = "student_id"

    def natural_key(self, data):
        return data["student_id"]

    def find_existing(self, data, row):
        # no business key for self-identified internships; the source row is the key
        if self.ctx.lineage_id is None:
            return None
        return self.db.scalar(
            select(InternshipApplication).where(
                InternshipApplication.source_lineage_id == self.ctx.lineage_id,
                InternshipApplication.source_row == row,
            )
        )

    def create(self, data, row):
        fields = {k: v for k, v in data.items() if k != "student_id"}
        application = InternshipApplication(
            student_id=data["student_id"],
            institution_id=self.ctx.institution_id,
            is_self_identified=True,
            status="APPLIED",
            internship_status="SELF_IDENTIFIED",
            **fields,
        )
        self.db.add(self.stamp(application, row))
        return application

    def reference(self, entity, data):
        return {
            "type": self.entity_type,
            "id": entity.id,
            "key": entity.company_name,
            "student_id": entity.student_id,
        }


WRITERS: Dict[JobType, Type[EntityWriter]] = {
    JobType.STUDENTS: StudentWriter,
    JobType.USERS: UserWriter,
    JobType.INSTITUTIONS: InstitutionWriter,
    JobType.SELF_INTERNSHIPS: SelfInternshipWriter,
}


def build_writer(db: Session, job_type: JobType, ctx: TenantContext) -> EntityWriter:
    return WRITERS[job_type](db, ctx)
