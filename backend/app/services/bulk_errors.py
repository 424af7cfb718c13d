# backend/app/services/bulk_errors.py
"""
Exceptions raised by the bulk pipeline services.

Each carries a stable ``code`` (used as the HTTP ``detail``) and the
status code routers should answer with. Per-row problems are never raised;
they travel as ValidationVerdict data.
"""


class BulkError(Exception):
    code = "bulk_error"
    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


# ---------------------------------------------------------
# Input errors (rejected before any job exists)
# ---------------------------------------------------------
class UnsupportedFormat(BulkError):
    code = "unsupported_format"
    status_code = 415


class MalformedFile(BulkError):
    code = "malformed_file"
    status_code = 422

    def __init__(self, message: str | None = None, missing_columns: list[str] | None = None):
        super().__init__(message)
        self.missing_columns = missing_columns or []


class EmptyFile(BulkError):
    code = "empty_file"
    status_code = 422


class FileTooLarge(BulkError):
    code = "file_too_large"
    status_code = 413


class RowLimitExceeded(BulkError):
    code = "row_limit_exceeded"
    status_code = 422


class TenantScopeError(BulkError):
    code = "tenant_scope_invalid"
    status_code = 403


# ---------------------------------------------------------
# Job lifecycle errors
# ---------------------------------------------------------
class JobNotFound(BulkError):
    code = "job_not_found"
    status_code = 404


class InvalidJobTransition(BulkError):
    code = "invalid_job_transition"
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"cannot move job from {current} to {target}")
        self.current = current
        self.target = target


class JobNotRetryable(BulkError):
    code = "job_not_retryable"
    status_code = 409


class QueueUnavailable(BulkError):
    code = "queue_unavailable"
    status_code = 503


class LockNotAcquired(BulkError):
    code = "lock_not_acquired"
    status_code = 409
