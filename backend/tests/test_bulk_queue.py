import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from backend.app.models.audit_log import AuditLog
from backend.app.models.enums import JobStatus, JobType
from backend.app.models.student import Student
from backend.app.services import bulk_job_service, bulk_queue
from backend.app.services.bulk_errors import InvalidJobTransition, JobNotRetryable, QueueUnavailable
from backend.app.services.bulk_processor import process_job
from backend.app.services.entity_writers import StudentWriter
from backend.tests.factories import student_rows


def _enqueue(db, ctx, rows):
    return bulk_queue.enqueue(
        db, job_type=JobType.STUDENTS, rows=rows, ctx=ctx, file_name="students.csv", file_size=2048,
    )


def _students(db):
    return db.scalar(select(func.count()).select_from(Student))


def test_enqueue_commits_job_then_dispatches(db, principal_ctx, dispatched):
    job = _enqueue(db, principal_ctx, student_rows(3))

    assert dispatched == [job.job_id]
    assert job.task_id == job.job_id
    assert job.status == JobStatus.QUEUED.value
    assert db.scalar(select(AuditLog.event_type)) == "bulk.job_queued"


def test_broker_failure_fails_job(db, principal_ctx, monkeypatch):
    def down(job_id):
        raise ConnectionRefusedError("broker unreachable")

    monkeypatch.setattr(bulk_queue, "_dispatch_to_worker", down)

    with pytest.raises(QueueUnavailable):
        _enqueue(db, principal_ctx, student_rows(2))

    job = bulk_job_service.list_jobs(db)["items"][0]
    assert job.status == JobStatus.FAILED.value
    assert "broker unreachable" in job.error_message


def test_cancel_queued_job_before_any_worker(db, principal_ctx, dispatched, monkeypatch):
    revoked = []

    class FakeControl:
        def revoke(self, task_id):
            revoked.append(task_id)

    class FakeCelery:
        control = FakeControl()

    monkeypatch.setattr(bulk_queue, "_celery", lambda: FakeCelery())
    job = _enqueue(db, principal_ctx, student_rows(3))

    bulk_queue.cancel(db, job)

    assert job.status == JobStatus.CANCELLED.value
    assert (job.processed_rows, job.success_count, job.failed_count) == (0, 0, 0)
    assert revoked == [job.job_id]

    # the already-sent task finds nothing to do
    with pytest.raises(InvalidJobTransition):
        bulk_job_service.mark_started(db, job)
    assert process_job(db, job.job_id)["skipped"] is True
    assert _students(db) == 0


def test_cancel_finished_job_conflicts(db, batch, principal_ctx, dispatched, publishers):
    job = _enqueue(db, principal_ctx, student_rows(1))
    process_job(db, job.job_id, publisher_factory=publishers)

    with pytest.raises(InvalidJobTransition):
        bulk_queue.cancel(db, job)


def test_only_failed_jobs_can_be_retried(db, principal_ctx, dispatched):
    job = _enqueue(db, principal_ctx, student_rows(1))

    with pytest.raises(JobNotRetryable):
        bulk_queue.retry(db, job, principal_ctx)


def test_retry_resumes_from_snapshot_without_duplicates(db, batch, principal_ctx, dispatched, publishers, monkeypatch):
    job = _enqueue(db, principal_ctx, student_rows(10))
    original = StudentWriter.write

    def outage(self, verdict):
        if verdict.row == 6:
            raise OperationalError("INSERT INTO users", {}, Exception("connection reset"))
        return original(self, verdict)

    monkeypatch.setattr(StudentWriter, "write", outage)
    with pytest.raises(OperationalError):
        process_job(db, job.job_id, publisher_factory=publishers)
    monkeypatch.setattr(StudentWriter, "write", original)

    db.refresh(job)
    assert job.status == JobStatus.FAILED.value
    assert _students(db) == 5

    retried = bulk_queue.retry(db, job, principal_ctx)

    assert retried.retry_of_id == job.id
    assert retried.lineage_id == job.lineage_id
    assert retried.total_rows == 10
    assert dispatched[-1] == retried.job_id

    process_job(db, retried.job_id, publisher_factory=publishers)

    db.refresh(retried)
    assert retried.status == JobStatus.COMPLETED.value
    assert retried.failed_count == 0
    actions = [e["action"] for e in retried.success_report]
    assert actions == ["existing"] * 5 + ["created"] * 5
    assert _students(db) == 10

    with pytest.raises(JobNotRetryable):
        bulk_queue.retry(db, job, principal_ctx)


def test_queue_status_without_workers(db, principal_ctx, dispatched, monkeypatch):
    class DeadInspect:
        def active(self):
            return None

        reserved = scheduled = active

    class FakeControl:
        def inspect(self, timeout=1.0):
            return DeadInspect()

    class FakeCelery:
        control = FakeControl()

    monkeypatch.setattr(bulk_queue, "_celery", lambda: FakeCelery())
    _enqueue(db, principal_ctx, student_rows(1))

    status = bulk_queue.queue_status(db)

    assert status["queue"] == "bulk_jobs"
    assert status["waiting"] == 1
    assert status["workers"] == {"available": False, "active": 0, "reserved": 0, "scheduled": 0}


def test_pause_and_resume_toggle_bulk_consumers(monkeypatch):
    calls = []

    class FakeControl:
        def cancel_consumer(self, queue, reply=False, timeout=None):
            calls.append(("cancel_consumer", queue, reply))
            return [{"worker1@host": {"ok": f"no longer consuming from {queue}"}}]

        def add_consumer(self, queue, reply=False, timeout=None):
            calls.append(("add_consumer", queue, reply))
            return [{"worker1@host": {"ok": f"add consumer {queue}"}}, {"worker2@host": {"ok": "ok"}}]

    class FakeCelery:
        control = FakeControl()

    monkeypatch.setattr(bulk_queue, "_celery", lambda: FakeCelery())

    paused = bulk_queue.pause()
    resumed = bulk_queue.resume()

    assert calls == [("cancel_consumer", "bulk_jobs", True), ("add_consumer", "bulk_jobs", True)]
    assert paused == {"queue": "bulk_jobs", "paused": True, "delivered": True, "workers": 1}
    assert resumed == {"queue": "bulk_jobs", "paused": False, "delivered": True, "workers": 2}


def test_pause_without_broker_is_reported_not_raised(monkeypatch):
    class DownControl:
        def cancel_consumer(self, queue, **kwargs):
            raise ConnectionRefusedError("broker unreachable")

    class FakeCelery:
        control = DownControl()

    monkeypatch.setattr(bulk_queue, "_celery", lambda: FakeCelery())

    assert bulk_queue.pause() == {"queue": "bulk_jobs", "paused": True, "delivered": False, "workers": 0}
