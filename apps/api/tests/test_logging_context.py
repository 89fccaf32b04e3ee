from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from callcenter.authz.models import Role, User
from callcenter.authz.seed import ADMIN_ROLE_NAME, CALLER_ROLE_NAME, seed_system_roles
from callcenter.core.auth import issue_token
from callcenter.core.config import get_settings
from callcenter.core.database import Base, get_db
from callcenter.crm.models import Lead
from callcenter.main import app
from callcenter.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def roles(db_session: Session) -> dict[str, Role]:
    return seed_system_roles(db_session)


def _auth_for(session: Session, role: Role, name: str) -> tuple[User, dict[str, str]]:
    user = User(name=name, email=f"{name.lower()}@example.com", role_id=role.id)
    session.add(user)
    session.commit()
    return user, {"Authorization": f"Bearer {issue_token(user.id)}"}


def test_logs_include_correlation_id_for_http(
    client: TestClient,
    db_session: Session,
    roles: dict[str, Role],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    _, headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Root")

    response = client.get(f"/api/v1/roles/{uuid.uuid4()}", headers={**headers, "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "callcenter.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/v1/roles/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_realtime_emit_logs_carry_request_correlation_id(
    client: TestClient,
    db_session: Session,
    roles: dict[str, Role],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    caller, headers = _auth_for(db_session, roles[CALLER_ROLE_NAME], "Asha")
    lead = Lead(field_data=[{"name": "Full Name", "values": ["Ravi"]}], phone="+19995550123", assigned_to=caller.id)
    db_session.add(lead)
    db_session.commit()

    response = client.post(
        "/api/v1/calls/tasks",
        json={"lead_id": str(lead.id), "phone_number": "+19995550123"},
        headers={**headers, "X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 201
    task_id = response.json()["id"]

    emit_records = [record for record in caplog.records if record.name == "callcenter.realtime"]
    assert any(
        record.getMessage() == "realtime.emit"
        and getattr(record, "event", None) == "call:request"
        and getattr(record, "delivered", None) == 0
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in emit_records
    )

    dispatch_records = [record for record in caplog.records if record.name == "callcenter.dispatch"]
    assert any(
        record.getMessage() == "call_task.created"
        and getattr(record, "task_id", None) == task_id
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in dispatch_records
    )


def test_denials_are_logged_with_required_keys(
    client: TestClient,
    db_session: Session,
    roles: dict[str, Role],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    _, headers = _auth_for(db_session, roles[CALLER_ROLE_NAME], "Asha")

    response = client.delete(f"/api/v1/roles/{uuid.uuid4()}", headers={**headers, "X-Correlation-Id": "abc-789"})
    assert response.status_code == 403

    assert any(
        record.name.startswith("callcenter.authz")
        and getattr(record, "required", None) is not None
        and getattr(record, "correlation_id", None) == "abc-789"
        for record in caplog.records
    )
