"""
Pytest configuration and fixtures for engine tests
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-integrity-engine")

import pytest
from unittest.mock import MagicMock
from datetime import datetime, timedelta, timezone
import uuid
from starlette.testclient import TestClient

from exam_integrity.core.security import create_actor_token
from exam_integrity.dependencies import get_engine
from exam_integrity.main import app
from exam_integrity.models.session import Actor, ActorRole
from exam_integrity.services.audit_repository import AuditRepository
from exam_integrity.services.engine import IntegrityEngine


class FakeClock:
    """Controllable UTC clock injected into the engine"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 15, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_supabase_client():
    """Mock Supabase client for the audit mirror"""
    mock_client = MagicMock()
    mock_client.table.return_value.insert.return_value.execute.return_value.data = [
        {"id": str(uuid.uuid4())}
    ]
    return mock_client


@pytest.fixture
def engine(clock):
    """Engine with a fake clock and an in-memory audit repository"""
    return IntegrityEngine(clock=clock, audit=AuditRepository(client=None))


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN)


@pytest.fixture
def proctor():
    return Actor(id="proctor-1", role=ActorRole.PROCTOR)


@pytest.fixture
def other_proctor():
    return Actor(id="proctor-2", role=ActorRole.PROCTOR)


@pytest.fixture
def student():
    return Actor(id="student-1", role=ActorRole.STUDENT)


@pytest.fixture
def detector():
    return Actor(id="detector-1", role=ActorRole.DETECTOR)


@pytest.fixture
def start_session(engine, admin, proctor, student):
    """Factory: schedule and admit a session supervised by ``proctor``"""
    async def _start(student_id: str = None, duration: int = 3600, exam_id: str = "exam-1"):
        session = engine.create_session(
            admin,
            student_id=student_id or student.id,
            exam_id=exam_id,
            scheduled_duration_seconds=duration,
            proctor_ids=[proctor.id],
        )
        return await engine.admit(admin, session.id)
    return _start


@pytest.fixture
def client(engine):
    """FastAPI test client bound to the fixture engine"""
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(actor: Actor) -> dict:
    token = create_actor_token(actor.id, actor.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin):
    return _headers(admin)


@pytest.fixture
def proctor_headers(proctor):
    return _headers(proctor)


@pytest.fixture
def other_proctor_headers(other_proctor):
    return _headers(other_proctor)


@pytest.fixture
def student_headers(student):
    return _headers(student)


@pytest.fixture
def detector_headers(detector):
    return _headers(detector)
