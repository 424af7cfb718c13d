# backend/app/routers/ws_bulk.py
"""
Bulk Job WebSocket Stream
-------------------------
Celery Worker -> ProgressPublisher -> Redis "bulk:{job_id}"
FastAPI WS    -> forwards each event to the browser.

The client authenticates with ``Authorization: Bearer <jwt>`` (or ``?token=``
for browsers that cannot set headers) and may only watch jobs in its own
tenant scope.
"""

from __future__ import annotations

import json
import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from backend.app.db import SessionLocal
from backend.app.services import bulk_job_service
from backend.app.services.bulk_errors import JobNotFound
from backend.app.services.progress_publisher import default_broker, job_channel
from backend.app.utils.security import decode_token, principal_from_payload

from backend.app.api.v1.bulk_deps import job_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["ws"])


def _bearer(websocket: WebSocket) -> str | None:
    auth = websocket.headers.get("authorization") or ""
    if auth.startswith("Bearer "):
        return auth.replace("Bearer ", "", 1).strip()
    return websocket.query_params.get("token")


def _job_visible(job_id: str, principal) -> dict | None:
    institution_id, scoped = job_scope(principal)
    db = SessionLocal()
    try:
        job = bulk_job_service.get_job(db, job_id, institution_id=institution_id, scoped=scoped)
        return {"event": "snapshot", "job_id": job.job_id, "status": job.status,
                "processed": job.processed_rows, "total": job.total_rows, "progress": job.progress}
    except JobNotFound:
        return None
    finally:
        db.close()


@router.websocket("/bulk/{job_id}")
async def bulk_ws(websocket: WebSocket, job_id: str):
    """Live bulk job progress stream for ``bulk:{job_id}``."""
    await websocket.accept()

    token = _bearer(websocket)
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        principal = principal_from_payload(decode_token(token))
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    snapshot = _job_visible(job_id, principal)
    if snapshot is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    channel = job_channel(job_id)
    logger.info("[WS] Bulk connected: job=%s user=%s", job_id, principal.user_id)
    await websocket.send_text(json.dumps(snapshot, default=str))

    async def redis_forwarder():
        try:
            async for message in default_broker.subscribe(channel):
                await websocket.send_text(json.dumps(message, default=str))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Bulk WS forwarder for %s stopped: %s", channel, exc)

    forward_task = asyncio.create_task(redis_forwarder())

    # client keep-alive loop
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        forward_task.cancel()
        try:
            await forward_task
        except asyncio.CancelledError:
            pass
        logger.info("[WS] Bulk WebSocket closed: job=%s", job_id)
