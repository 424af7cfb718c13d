from contextlib import nullcontext

import pytest
from unittest.mock import patch
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from backend.app.celery_app import InstrumentedTask, celery_app
from backend.app.models.enums import JobStatus, JobType
from backend.app.models.student import Student
from backend.app.services import bulk_queue, progress_publisher
from backend.app.services.bulk_errors import InvalidJobTransition, JobNotFound, LockNotAcquired
from backend.app.services.progress_publisher import job_channel
from backend.app.tasks import bulk_tasks
from backend.app.tasks.bulk_tasks import cleanup_old_bulk_jobs, process_bulk_job_task, retry_countdown
from backend.tests.factories import student_rows


class RetryRequested(Exception):
    pass


@pytest.fixture
def fake_retry(monkeypatch):
    calls = []

    def retry(exc=None, countdown=None, **_):
        calls.append({"exc": exc, "countdown": countdown})
        return RetryRequested()

    monkeypatch.setattr(process_bulk_job_task, "retry", retry)
    return calls


def _db_down(*args, **kwargs):
    raise OperationalError("SELECT 1", {}, Exception("db down"))


def test_countdown_doubles_per_retry():
    assert [retry_countdown(n) for n in range(3)] == [5, 10, 20]


@patch("backend.app.tasks.bulk_tasks.process_job")
def test_task_passes_through_result(mock_process, db):
    mock_process.return_value = {"ok": True, "job_id": "bulk-1", "status": "COMPLETED"}

    out = process_bulk_job_task("bulk-1")

    assert out["status"] == "COMPLETED"
    assert mock_process.call_args.kwargs["final_attempt"] is False


@patch("backend.app.tasks.bulk_tasks.process_job", side_effect=JobNotFound("missing"))
def test_missing_job_is_not_retried(mock_process, db, fake_retry):
    out = process_bulk_job_task("bulk-missing")

    assert out == {"ok": False, "reason": "job_not_found", "job_id": "bulk-missing"}
    assert fake_retry == []


@patch("backend.app.tasks.bulk_tasks.process_job", side_effect=InvalidJobTransition("CANCELLED", "PROCESSING"))
def test_cancelled_job_is_skipped(mock_process, db):
    out = process_bulk_job_task("bulk-1")

    assert out["skipped"] is True
    assert out["status"] == "CANCELLED"


@patch("backend.app.tasks.bulk_tasks.process_job", side_effect=_db_down)
def test_infrastructure_error_schedules_retry(mock_process, db, fake_retry):
    with pytest.raises(RetryRequested):
        process_bulk_job_task("bulk-1")

    assert fake_retry[0]["countdown"] == 5
    assert isinstance(fake_retry[0]["exc"], OperationalError)


@patch("backend.app.tasks.bulk_tasks.process_job", side_effect=_db_down)
def test_last_attempt_reraises(mock_process, db, fake_retry, monkeypatch):
    monkeypatch.setattr(process_bulk_job_task, "max_retries", 0)

    with pytest.raises(OperationalError):
        process_bulk_job_task("bulk-1")

    assert mock_process.call_args.kwargs["final_attempt"] is True
    assert fake_retry == []


@patch("backend.app.tasks.bulk_tasks.process_job", side_effect=ValueError("bad snapshot"))
def test_other_errors_are_not_retried(mock_process, db, fake_retry):
    with pytest.raises(ValueError):
        process_bulk_job_task("bulk-1")

    assert fake_retry == []


def test_cleanup_task(db, monkeypatch):
    monkeypatch.setattr(bulk_tasks, "distributed_lock", lambda *args, **kwargs: nullcontext(True))
    monkeypatch.setattr(bulk_tasks, "cleanup_old_jobs", lambda session, days: 3)

    assert cleanup_old_bulk_jobs(days=10) == {"ok": True, "removed": 3}


def test_cleanup_skips_when_locked(db, monkeypatch):
    class Busy:
        def __init__(self, *args, **kwargs):
            pass

        def __enter__(self):
            raise LockNotAcquired("bulk-cleanup is locked")

        def __exit__(self, *exc):
            return False

    monkeypatch.setattr(bulk_tasks, "distributed_lock", Busy)

    assert cleanup_old_bulk_jobs()["skipped"] is True


@pytest.fixture
def eager_celery():
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True
    yield celery_app
    celery_app.conf.task_always_eager = False
    celery_app.conf.task_eager_propagates = False


def test_tasks_use_instrumented_base():
    assert isinstance(celery_app.tasks[process_bulk_job_task.name], InstrumentedTask)
    assert isinstance(celery_app.tasks[cleanup_old_bulk_jobs.name], InstrumentedTask)


def test_enqueued_job_runs_through_worker_task(db, batch, principal_ctx, eager_celery, monkeypatch):
    events = []

    class RecordingBroker:
        def publish_sync(self, channel, payload):
            events.append((channel, payload["event"]))
            return 1

    monkeypatch.setattr(progress_publisher, "default_broker", RecordingBroker())

    job = bulk_queue.enqueue(
        db, job_type=JobType.STUDENTS, rows=student_rows(3), ctx=principal_ctx,
        file_name="students.csv", file_size=512,
    )

    db.refresh(job)
    assert job.status == JobStatus.COMPLETED.value
    assert job.task_id == job.job_id
    assert (job.processed_rows, job.success_count, job.failed_count) == (3, 3, 0)
    assert db.scalar(select(func.count()).select_from(Student)) == 3
    assert (job_channel(job.job_id), "completed") in events
