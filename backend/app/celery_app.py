# backend/app/celery_app.py
"""
Celery application factory + shared singleton instance
with Prometheus worker instrumentation.
"""

from __future__ import annotations

import time
import logging
from celery import Celery, Task
from celery.schedules import crontab
from kombu import Exchange, Queue
from prometheus_client import Counter, Histogram

from backend.app.config import settings

logger = logging.getLogger(__name__)

BROKER_URL = settings.CELERY_BROKER_URL or settings.REDIS_URL
RESULT_BACKEND = settings.CELERY_RESULT_BACKEND or BROKER_URL


# ---------------------------------------------------------
# PROMETHEUS METRICS
# ---------------------------------------------------------
WORKER_TASK_TOTAL = Counter(
    "worker_tasks_total",
    "Worker tasks executed",
    ["task", "status"]  # started | success | retry | failed
)

WORKER_TASK_LATENCY = Histogram(
    "worker_task_latency_seconds",
    "Latency of worker tasks",
    ["task"]
)


# ---------------------------------------------------------
# Instrumented Task Wrapper (global)
# ---------------------------------------------------------
class InstrumentedTask(Task):
    """
    Counts every task run by outcome and records its latency.
    A scheduled retry is counted as ``retry``, not ``failed``.
    """
    def __call__(self, *args, **kwargs):
        from celery.exceptions import Retry

        task_name = self.name or "unknown"

        WORKER_TASK_TOTAL.labels(task=task_name, status="started").inc()
        start = time.time()

        try:
            result = self.run(*args, **kwargs)
            WORKER_TASK_TOTAL.labels(task=task_name, status="success").inc()
            return result

        except Retry:
            WORKER_TASK_TOTAL.labels(task=task_name, status="retry").inc()
            raise

        except Exception:
            WORKER_TASK_TOTAL.labels(task=task_name, status="failed").inc()
            raise

        finally:
            WORKER_TASK_LATENCY.labels(task=task_name).observe(time.time() - start)


# ---------------------------------------------------------
# Celery App Factory
# ---------------------------------------------------------
def make_celery_app(app_name: str = "campus_bulk_pipeline") -> Celery:

    celery = Celery(
        app_name,
        broker=BROKER_URL,
        backend=RESULT_BACKEND,
        task_cls=InstrumentedTask,
        include=[
            "backend.app.tasks.bulk_tasks",
        ],
    )

    # -----------------------------
    # CORE CONFIG
    # -----------------------------
    celery.conf.update(
        # at-least-once: a worker lost mid-job gets the job redelivered
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_reject_on_worker_lost=True,
        worker_max_tasks_per_child=200,

        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],

        timezone="UTC",
        enable_utc=True,

        broker_pool_limit=10,
        broker_heartbeat=30,
        broker_connection_retry_on_startup=True,
        result_expires=settings.BULK_RESULT_RETENTION_SECONDS,

        task_default_queue="default",
        task_default_exchange="default",
        task_default_routing_key="default",
    )

    # -----------------------------
    # QUEUES
    # -----------------------------
    celery.conf.task_queues = (
        [
            Queue("default", Exchange("default"), routing_key="default"),
            Queue("bulk_jobs", Exchange("bulk_jobs"), routing_key="bulk_jobs"),
        ]
    )

    # -----------------------------
    # ROUTES
    # -----------------------------
    celery.conf.task_routes = {
        "backend.app.tasks.bulk_tasks.process_bulk_job_task": {
            "queue": "bulk_jobs",
            "routing_key": "bulk_jobs",
        },
        "bulk.cleanup_old_jobs": {
            "queue": "default",
            "routing_key": "default",
        },
    }

    # -----------------------------
    # CELERY BEAT (job history cleanup)
    # -----------------------------
    celery.conf.beat_schedule = {
        "cleanup-bulk-jobs-daily": {
            "task": "bulk.cleanup_old_jobs",
            "schedule": crontab(hour=3, minute=0),
        }
    }

    # -----------------------------
    # TIME LIMITS
    # -----------------------------
    celery.conf.task_time_limit = int(settings.CELERY_TASK_TIME_LIMIT)
    celery.conf.task_soft_time_limit = int(settings.CELERY_TASK_SOFT_TIME_LIMIT)

    return celery


# ---------------------------------------------------------
# Singleton Instance
# ---------------------------------------------------------
celery_app = make_celery_app()
