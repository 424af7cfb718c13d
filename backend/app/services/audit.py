# backend/app/services/audit.py
"""
Best-effort audit trail for the bulk pipeline.

Writes go through the caller's session right after the caller has committed
its own work, so a failed audit insert only loses the audit row. Failures are
logged and swallowed; auditing never aborts an upload.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from backend.app.db import safe_commit, safe_rollback
from backend.app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditSink:
    def __init__(self, db: Session, enabled: bool = True):
        self.db = db
        self.enabled = enabled

    def log(
        self,
        event_type: str,
        message: str,
        *,
        user_id: Optional[int] = None,
        institution_id: Optional[int] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not self.enabled:
            return False
        try:
            self.db.add(AuditLog(
                event_type=event_type,
                message=message[:512],
                user_id=user_id,
                institution_id=institution_id,
                meta=meta,
            ))
            safe_commit(self.db)
            return True
        except Exception as e:
            logger.warning("audit log %s dropped: %s", event_type, e)
            try:
                safe_rollback(self.db)
            except Exception:
                logger.debug("rollback after audit failure also failed", exc_info=True)
            return False
