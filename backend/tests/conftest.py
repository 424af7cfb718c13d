import os

# must be set before backend.app.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BULK_ARCHIVE_UPLOADS"] = "false"
os.environ["PASSWORD_HASH_ROUNDS"] = "1000"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["REDIS_URL"] = "redis://127.0.0.1:1/0"

from contextlib import contextmanager
from types import SimpleNamespace

import pytest

import backend.app.models  # noqa: F401
from backend.app.db import Base, SessionLocal, engine
from backend.app.models.academic import Batch, Branch
from backend.app.models.enums import Role
from backend.app.models.institution import Institution
from backend.app.services.bulk_validation import TenantContext
from backend.tests.factories import FakePublisher


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def institution(db):
    inst = Institution(name="Government Polytechnic Ludhiana", code="GPL", type="POLYTECHNIC", is_active=True)
    db.add(inst)
    db.commit()
    db.refresh(inst)
    return inst


@pytest.fixture
def other_institution(db):
    inst = Institution(name="Government Polytechnic Patiala", code="GPP", type="POLYTECHNIC", is_active=True)
    db.add(inst)
    db.commit()
    db.refresh(inst)
    return inst


@pytest.fixture
def batch(db, institution):
    b = Batch(name="2024-27", institution_id=institution.id)
    db.add(b)
    db.add(Branch(name="Computer Engineering", code="CE"))
    db.commit()
    db.refresh(b)
    return b


@pytest.fixture
def principal_ctx(institution):
    return TenantContext(uploader_id=7, uploader_role=Role.PRINCIPAL, institution_id=institution.id)


@pytest.fixture
def admin_ctx():
    return TenantContext(uploader_id=1, uploader_role=Role.STATE_DIRECTORATE)


@pytest.fixture
def publishers():
    """publisher_factory for process_job that remembers every publisher it built."""
    built = []

    def factory(job_id, user_id=None):
        p = FakePublisher(job_id, user_id)
        built.append(p)
        return p

    factory.built = built
    return factory


@pytest.fixture
def dispatched(monkeypatch):
    """Replace the Celery dispatch with a recorder."""
    sent = []

    def fake_dispatch(job_id):
        sent.append(job_id)
        return job_id

    monkeypatch.setattr("backend.app.services.bulk_queue._dispatch_to_worker", fake_dispatch)

    @contextmanager
    def no_lock(resource, ttl=5.0, blocking_timeout=2.0):
        yield True

    monkeypatch.setattr("backend.app.services.bulk_queue.distributed_lock", no_lock)

    class NoBrokerControl:
        def revoke(self, task_id):
            sent.append(("revoked", task_id))

    monkeypatch.setattr("backend.app.services.bulk_queue._celery", lambda: SimpleNamespace(control=NoBrokerControl()))
    return sent


@pytest.fixture
def client(db, dispatched):
    from fastapi.testclient import TestClient
    from backend.app.main import create_app

    with TestClient(create_app()) as c:
        yield c
