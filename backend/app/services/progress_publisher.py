# backend/app/services/progress_publisher.py
"""
Realtime bulk job progress over Redis Pub/Sub.

Architecture:
    Celery worker  ->  ProgressPublisher  ->  ProgressBroker.publish_sync()  -> Redis
    FastAPI WS     ->  ProgressBroker.subscribe()                            <- Redis

Channels:
- f"bulk:{job_id}"       -> job channel (progress / completed / failed / cancelled)
- f"user:{user_id}:bulk" -> per-user notifications (bulk_progress, bulk_completed, ...)

Delivery is best-effort: at most one progress event per batch window, and a
publish failure is logged and dropped. The job record, not the event stream,
is the source of truth for totals.
"""
from __future__ import annotations

import json
import time
import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

import redis as redis_sync
import redis.asyncio as aioredis

from backend.app.config import settings

logger = logging.getLogger(__name__)

_async_client: Optional[aioredis.Redis] = None


def job_channel(job_id: str) -> str:
    return f"bulk:{job_id}"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}:bulk"


def _get_async_client() -> aioredis.Redis:
    global _async_client
    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            encoding="utf-8",
            health_check_interval=30,
        )
    return _async_client


# -------------------------------------------------------------------
# Broker
# -------------------------------------------------------------------
class ProgressBroker:
    """
    Thin Redis Pub/Sub wrapper.

    - publish_sync(channel, payload): used from Celery workers (no event loop)
    - subscribe(channel): async generator used by the WebSocket route
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._sync_client: Optional[redis_sync.Redis] = None

    def _client(self) -> redis_sync.Redis:
        if self._sync_client is None:
            self._sync_client = redis_sync.from_url(
                self.redis_url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2
            )
        return self._sync_client

    def publish_sync(self, channel: str, payload: Dict[str, Any]) -> int:
        return int(self._client().publish(channel, json.dumps(payload, default=str)))

    async def subscribe(self, channel: str) -> AsyncIterator[Dict[str, Any]]:
        client = _get_async_client()
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel)
            logger.info("Subscribed to %s", channel)
            async for message in pubsub.listen():
                if not message or message.get("type") != "message":
                    continue
                raw = message.get("data")
                if raw is None:
                    continue
                try:
                    yield json.loads(raw)
                except ValueError:
                    yield {"_raw": raw}
        except asyncio.CancelledError:
            raise
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.close()
            except Exception:
                logger.debug("pubsub cleanup failed for %s", channel, exc_info=True)
            logger.info("Unsubscribed from %s", channel)


default_broker = ProgressBroker()


# -------------------------------------------------------------------
# Publisher
# -------------------------------------------------------------------
class ProgressPublisher:
    """
    Emits job events for one job. ``progress`` is throttled to one event every
    ``every_rows`` rows or ``interval_ms`` milliseconds, whichever comes first;
    terminal events always go out.
    """

    def __init__(
        self,
        job_id: str,
        user_id: Optional[int] = None,
        broker: Optional[ProgressBroker] = None,
        every_rows: Optional[int] = None,
        interval_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_id = job_id
        self.user_id = user_id
        self.broker = broker or default_broker
        self.every_rows = every_rows or settings.BULK_PROGRESS_EVERY_ROWS
        self.interval = (interval_ms if interval_ms is not None else settings.BULK_PROGRESS_INTERVAL_MS) / 1000
        self.clock = clock
        self._last_rows: Optional[int] = None
        self._last_at = 0.0

    def _emit(self, event: str, payload: Dict[str, Any]) -> bool:
        body = {"event": event, "job_id": self.job_id, **payload}
        try:
            self.broker.publish_sync(job_channel(self.job_id), body)
            if self.user_id:
                self.broker.publish_sync(
                    user_channel(self.user_id),
                    {**body, "event": f"bulk_{event}", "user_id": self.user_id},
                )
            return True
        except Exception as e:
            logger.warning("progress publish failed for job %s (%s): %s", self.job_id, event, e)
            return False

    def progress(self, processed: int, total: int, success: int, failed: int, force: bool = False) -> bool:
        now = self.clock()
        due = (
            force
            or self._last_rows is None
            or processed - self._last_rows >= self.every_rows
            or now - self._last_at >= self.interval
        )
        if not due or processed == self._last_rows:
            return False
        self._last_rows = processed
        self._last_at = now
        return self._emit("progress", {
            "processed": processed,
            "total": total,
            "progress": min(100, round(processed / total * 100)) if total else 100,
            "stats": {"success": success, "failed": failed, "remaining": max(0, total - processed)},
        })

    def completed(self, job) -> bool:
        return self._emit("completed", _job_stats(job))

    def failed(self, job, error: str) -> bool:
        return self._emit("failed", {**_job_stats(job), "error": error})

    def cancelled(self, job) -> bool:
        return self._emit("cancelled", _job_stats(job))


def _job_stats(job) -> Dict[str, Any]:
    return {
        "status": job.status,
        "processed": job.processed_rows,
        "total": job.total_rows,
        "progress": job.progress,
        "stats": {"success": job.success_count, "failed": job.failed_count},
    }
