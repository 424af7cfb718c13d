import asyncio

import pytest
from sqlalchemy import func, select
from starlette.websockets import WebSocketDisconnect

from backend.app.api.v1.bulk_uploads import _read_upload
from backend.app.config import settings
from backend.app.models.bulk_job import BulkJob
from backend.app.models.enums import Role
from backend.app.models.student import Student
from backend.app.services.bulk_errors import FileTooLarge
from backend.app.services.bulk_processor import process_job
from backend.app.services.template_service import XLSX_MEDIA_TYPE
from backend.tests.factories import auth, student_csv


def _upload(client, headers, content, name="students.csv", params=None, job_type="students"):
    return client.post(
        f"/api/v1/bulk/{job_type}/upload",
        files={"file": (name, content, "text/csv")},
        params=params or {},
        headers=headers,
    )


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def test_small_file_is_processed_in_request(client, db, batch, institution):
    headers = auth(7, Role.PRINCIPAL, institution.id)

    resp = _upload(client, headers, student_csv(3, bad_rows=(2,)))

    assert resp.status_code == 200
    body = resp.json()
    assert body["mode"] == "sync"
    assert (body["total"], body["success"], body["failed"]) == (3, 2, 1)
    assert body["error_report"][0]["row"] == 2
    assert body["error_report"][0]["field"] == "email"
    assert _count(db, Student) == 2
    assert _count(db, BulkJob) == 0


def test_async_upload_queues_job(client, db, batch, institution, dispatched):
    headers = auth(7, Role.PRINCIPAL, institution.id)

    resp = _upload(client, headers, student_csv(4), params={"async": "true"})

    assert resp.status_code == 202
    body = resp.json()
    assert body["mode"] == "async"
    assert body["status"] == "QUEUED"
    assert body["total_rows"] == 4
    assert dispatched == [body["job_id"]]

    detail = client.get(f"/api/v1/bulk/jobs/{body['job_id']}", headers=headers)
    assert detail.status_code == 200
    assert detail.json()["lineage_id"] == body["job_id"]
    assert detail.json()["institution_id"] == institution.id


def test_too_many_rows_rejected_before_any_job(client, db, batch, institution):
    headers = auth(7, Role.PRINCIPAL, institution.id)

    resp = _upload(client, headers, student_csv(600), params={"async": "true"})

    assert resp.status_code == 422
    assert resp.json()["detail"] == "row_limit_exceeded"
    assert _count(db, BulkJob) == 0
    assert _count(db, Student) == 0


def test_input_errors(client, institution):
    headers = auth(7, Role.PRINCIPAL, institution.id)

    resp = _upload(client, headers, b"%PDF-1.4", name="students.pdf")
    assert resp.status_code == 415
    assert resp.json()["detail"] == "unsupported_format"

    resp = _upload(client, headers, b"Name,Email\nA,a@example.com\n")
    assert resp.status_code == 422
    assert resp.json()["detail"] == "malformed_file"

    resp = _upload(client, headers, b"Name,Email,Enrollment Number,Batch\n")
    assert resp.status_code == 422
    assert resp.json()["detail"] == "empty_file"

    resp = _upload(client, headers, student_csv(1), job_type="courses")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "unknown_upload_type"


def test_upload_permissions_and_tenant_scope(client, institution, other_institution):
    teacher = auth(8, Role.TEACHER, institution.id)
    assert _upload(client, teacher, student_csv(1)).status_code == 403

    principal = auth(7, Role.PRINCIPAL, institution.id)
    resp = _upload(client, principal, student_csv(1), params={"institution_id": other_institution.id})
    assert resp.status_code == 403
    assert resp.json()["detail"] == "tenant_scope_invalid"

    admin = auth(1, Role.STATE_DIRECTORATE)
    resp = _upload(client, admin, student_csv(1))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "tenant_scope_invalid"

    resp = _upload(client, admin, student_csv(1), params={"institution_id": 9999})
    assert resp.status_code == 404

    assert client.post("/api/v1/bulk/students/upload", files={"file": ("s.csv", b"x")}).status_code in (401, 403)


def test_validate_writes_nothing(client, db, batch, institution):
    headers = auth(7, Role.PRINCIPAL, institution.id)

    resp = client.post(
        "/api/v1/bulk/students/validate",
        files={"file": ("students.csv", student_csv(3, bad_rows=(3,)), "text/csv")},
        headers=headers,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert (body["total_rows"], body["valid_rows"], body["invalid_rows"]) == (3, 2, 1)
    assert body["rows"][2]["errors"][0]["code"] == "INVALID_FORMAT"
    assert _count(db, Student) == 0


def test_template_download(client, institution):
    resp = client.get("/api/v1/bulk/self-internships/template", headers=auth(7, Role.PRINCIPAL, institution.id))

    assert resp.status_code == 200
    assert resp.headers["content-type"] == XLSX_MEDIA_TYPE
    assert "self-internships-template.xlsx" in resp.headers["content-disposition"]
    assert resp.content[:2] == b"PK"

    resp = client.get("/api/v1/bulk/institutions/template", headers=auth(7, Role.PRINCIPAL, institution.id))
    assert resp.status_code == 403


def test_jobs_are_tenant_scoped(client, db, batch, institution, other_institution):
    mine = auth(7, Role.PRINCIPAL, institution.id)
    job_id = _upload(client, mine, student_csv(2), params={"async": "true"}).json()["job_id"]

    stranger = auth(9, Role.PRINCIPAL, other_institution.id)
    resp = client.get(f"/api/v1/bulk/jobs/{job_id}", headers=stranger)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "job_not_found"
    assert client.post(f"/api/v1/bulk/jobs/{job_id}/cancel", headers=stranger).status_code == 404
    assert client.get("/api/v1/bulk/jobs", headers=stranger).json()["total"] == 0

    assert client.get("/api/v1/bulk/jobs", headers=mine).json()["total"] == 1
    assert len(client.get("/api/v1/bulk/jobs/active", headers=mine).json()) == 1
    assert client.get("/api/v1/bulk/jobs/my-jobs", headers=mine).json()["total"] == 1
    assert client.get("/api/v1/bulk/jobs/stats", headers=mine).json()["by_status"]["QUEUED"] == 1

    admin = auth(1, Role.SYSTEM_ADMIN)
    listed = client.get("/api/v1/bulk/jobs", params={"institution_id": other_institution.id}, headers=admin)
    assert listed.json()["total"] == 0
    assert client.get("/api/v1/bulk/jobs", params={"type": "students"}, headers=admin).json()["total"] == 1
    assert client.get(f"/api/v1/bulk/jobs/{job_id}", headers=admin).status_code == 200


def test_cancel_and_retry_endpoints(client, db, batch, institution):
    headers = auth(7, Role.PRINCIPAL, institution.id)
    job_id = _upload(client, headers, student_csv(2), params={"async": "true"}).json()["job_id"]

    resp = client.post(f"/api/v1/bulk/jobs/{job_id}/cancel", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "CANCELLED"

    resp = client.post(f"/api/v1/bulk/jobs/{job_id}/cancel", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "invalid_job_transition"

    resp = client.post(f"/api/v1/bulk/jobs/{job_id}/retry", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "job_not_retryable"


def test_error_report_csv(client, db, batch, institution, publishers):
    headers = auth(7, Role.PRINCIPAL, institution.id)
    job_id = _upload(client, headers, student_csv(3, bad_rows=(1,)), params={"async": "true"}).json()["job_id"]
    process_job(db, job_id, publisher_factory=publishers)

    detail = client.get(f"/api/v1/bulk/jobs/{job_id}", headers=headers).json()
    assert detail["status"] == "COMPLETED"
    assert (detail["success_count"], detail["failed_count"]) == (2, 1)

    resp = client.get(f"/api/v1/bulk/jobs/{job_id}/error-report", headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.content.decode("utf-8-sig").splitlines()
    assert lines[0] == "row,code,field,message,values"
    assert lines[1].startswith("1,INVALID_FORMAT,email,")


def test_queue_status_is_state_level_only(client, institution):
    resp = client.get("/api/v1/bulk/jobs/queue-status", headers=auth(7, Role.PRINCIPAL, institution.id))
    assert resp.status_code == 403


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_queue_pause_and_resume_are_admin_only(client, institution, monkeypatch):
    monkeypatch.setattr("backend.app.services.bulk_queue.pause", lambda: {"queue": "bulk_jobs", "paused": True})
    monkeypatch.setattr("backend.app.services.bulk_queue.resume", lambda: {"queue": "bulk_jobs", "paused": False})

    for role in (Role.PRINCIPAL, Role.STATE_DIRECTORATE):
        headers = auth(7, role, institution.id if role is Role.PRINCIPAL else None)
        assert client.post("/api/v1/bulk/jobs/queue/pause", headers=headers).status_code == 403

    admin = auth(1, Role.SYSTEM_ADMIN)
    assert client.post("/api/v1/bulk/jobs/queue/pause", headers=admin).json()["paused"] is True
    assert client.post("/api/v1/bulk/jobs/queue/resume", headers=admin).json()["paused"] is False


def test_oversized_upload_is_rejected(client, institution, monkeypatch):
    monkeypatch.setattr(settings, "BULK_MAX_FILE_SIZE", 64)

    resp = _upload(client, auth(7, Role.PRINCIPAL, institution.id), student_csv(5))

    assert resp.status_code == 413
    assert resp.json()["detail"] == "file_too_large"


def test_upload_read_is_bounded_by_size_limit(monkeypatch):
    monkeypatch.setattr(settings, "BULK_MAX_FILE_SIZE", 10)

    class Upload:
        def __init__(self):
            self.asked = []

        async def read(self, size=-1):
            self.asked.append(size)
            return b"x" * (size if size > 0 else 1000)

    upload = Upload()
    with pytest.raises(FileTooLarge):
        asyncio.run(_read_upload(upload))
    assert upload.asked == [11]


def test_progress_socket_requires_visible_job(client, db, batch, institution, other_institution):
    headers = auth(7, Role.PRINCIPAL, institution.id)
    job_id = _upload(client, headers, student_csv(2), params={"async": "true"}).json()["job_id"]

    with client.websocket_connect(f"/ws/bulk/{job_id}", headers=headers) as ws:
        snapshot = ws.receive_json()
    assert snapshot["event"] == "snapshot"
    assert snapshot["status"] == "QUEUED"
    assert snapshot["total"] == 2

    stranger = auth(9, Role.PRINCIPAL, other_institution.id)
    with client.websocket_connect(f"/ws/bulk/{job_id}", headers=stranger) as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()
    assert exc.value.code == 1008
