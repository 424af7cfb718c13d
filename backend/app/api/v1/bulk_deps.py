# backend/app/api/v1/bulk_deps.py
"""
Dependencies shared by the bulk upload and bulk job routers: job type from the
path, tenant resolution and BulkError -> HTTPException translation.
"""

import logging
from typing import Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.orm import Session

from backend.app.models.enums import JobType, UPLOAD_PERMISSIONS
from backend.app.models.institution import Institution
from backend.app.services.bulk_errors import BulkError, TenantScopeError
from backend.app.utils.security import Principal

logger = logging.getLogger(__name__)


def http_error(exc: BulkError) -> HTTPException:
    logger.info("bulk request rejected: %s (%s)", exc.code, exc.message)
    return HTTPException(status_code=exc.status_code, detail=exc.code)


def job_type_param(job_type: str) -> JobType:
    try:
        return JobType.from_slug(job_type)
    except ValueError:
        raise HTTPException(status_code=404, detail="unknown_upload_type")


def ensure_can_upload(principal: Principal, job_type: JobType) -> None:
    if principal.role not in UPLOAD_PERMISSIONS[job_type]:
        raise HTTPException(status_code=403, detail="forbidden")


def resolve_institution(
    db: Session,
    principal: Principal,
    job_type: JobType,
    requested: Optional[int] = None,
) -> Optional[int]:
    """
    Institution a new upload is written into.

    Institutions themselves are not institution-scoped. State-level roles
    must name the target institution; everyone else is pinned to their own.
    """
    if job_type is JobType.INSTITUTIONS:
        return None

    if principal.is_state_level:
        if requested is None:
            raise TenantScopeError("institution_id is required for state-level uploads")
        institution_id = requested
    else:
        if principal.institution_id is None:
            raise TenantScopeError("uploader is not attached to an institution")
        if requested is not None and requested != principal.institution_id:
            raise TenantScopeError("cannot upload into another institution")
        institution_id = principal.institution_id

    if db.get(Institution, institution_id) is None:
        raise HTTPException(status_code=404, detail="institution_not_found")
    return institution_id


def job_scope(principal: Principal) -> Tuple[Optional[int], bool]:
    """(institution_id, scoped) for job queries; state-level roles see every tenant."""
    if principal.is_state_level:
        return None, False
    return principal.institution_id, True
