import enum


class JobType(str, enum.Enum):
    STUDENTS = "STUDENTS"
    USERS = "USERS"
    INSTITUTIONS = "INSTITUTIONS"
    SELF_INTERNSHIPS = "SELF_INTERNSHIPS"

    @property
    def slug(self) -> str:
        """URL segment, e.g. ``self-internships``."""
        return self.value.lower().replace("_", "-")

    @classmethod
    def from_slug(cls, slug: str) -> "JobType":
        try:
            return cls(slug.strip().upper().replace("-", "_"))
        except ValueError:
            raise ValueError(f"unknown bulk upload type: {slug!r}")


class JobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})

# PROCESSING -> PROCESSING covers redelivery of a claimed job
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class Role(str, enum.Enum):
    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    STATE_DIRECTORATE = "STATE_DIRECTORATE"
    PRINCIPAL = "PRINCIPAL"
    TEACHER = "TEACHER"
    FACULTY_SUPERVISOR = "FACULTY_SUPERVISOR"
    STUDENT = "STUDENT"
    INDUSTRY = "INDUSTRY"


STATE_LEVEL_ROLES = frozenset({Role.SYSTEM_ADMIN, Role.STATE_DIRECTORATE})

# roles allowed to submit each upload type
UPLOAD_PERMISSIONS: dict[JobType, frozenset[Role]] = {
    JobType.STUDENTS: frozenset({Role.SYSTEM_ADMIN, Role.STATE_DIRECTORATE, Role.PRINCIPAL}),
    JobType.USERS: frozenset({Role.SYSTEM_ADMIN, Role.STATE_DIRECTORATE, Role.PRINCIPAL}),
    JobType.INSTITUTIONS: frozenset({Role.SYSTEM_ADMIN, Role.STATE_DIRECTORATE}),
    JobType.SELF_INTERNSHIPS: frozenset(
        {Role.SYSTEM_ADMIN, Role.STATE_DIRECTORATE, Role.PRINCIPAL, Role.TEACHER, Role.FACULTY_SUPERVISOR}
    ),
}


class InstitutionType(str, enum.Enum):
    POLYTECHNIC = "POLYTECHNIC"
    ENGINEERING_COLLEGE = "ENGINEERING_COLLEGE"
    UNIVERSITY = "UNIVERSITY"
    DEGREE_COLLEGE = "DEGREE_COLLEGE"
    ITI = "ITI"
    SKILL_CENTER = "SKILL_CENTER"


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


# spreadsheet role label -> stored role
STAFF_ROLE_LABELS: dict[str, Role] = {
    "FACULTY": Role.TEACHER,
    "MENTOR": Role.FACULTY_SUPERVISOR,
    "PRINCIPAL": Role.PRINCIPAL,
}
