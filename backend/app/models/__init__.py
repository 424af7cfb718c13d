# backend/app/models/__init__.py

# -----------------------------------
# Tenancy & identity
# -----------------------------------
from .institution import Institution
from .user import User
from .academic import Batch, Branch
from .student import Student

# -----------------------------------
# Internships
# -----------------------------------
from .internship_application import InternshipApplication

# -----------------------------------
# Bulk pipeline
# -----------------------------------
from .bulk_job import BulkJob
from .audit_log import AuditLog
