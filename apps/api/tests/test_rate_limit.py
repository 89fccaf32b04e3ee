from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from callcenter.authz.models import Role, User
from callcenter.authz.seed import ADMIN_ROLE_NAME, seed_system_roles
from callcenter.core.auth import issue_token
from callcenter.core.config import get_settings
from callcenter.core.database import Base, get_db
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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


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


def test_mutating_endpoints_are_rate_limited(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    _, headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Root")

    responses = [
        client.post("/api/v1/roles", json={"name": f"Role {index}", "permissions": []}, headers=headers)
        for index in range(5)
    ]

    limited = [response for response in responses if response.status_code == 429]
    assert limited
    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "rate_limited"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_buckets_are_per_user_and_route_group(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    _, first_headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Root")
    _, second_headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Ops")

    for index in range(3):
        assert client.post("/api/v1/roles", json={"name": f"R{index}", "permissions": []}, headers=first_headers).status_code == 201
    assert client.post("/api/v1/roles", json={"name": "R3", "permissions": []}, headers=first_headers).status_code == 429

    assert client.post("/api/v1/roles", json={"name": "R4", "permissions": []}, headers=second_headers).status_code == 201
    alarm = client.post(
        "/api/v1/alarms",
        json={"lead_id": str(uuid.uuid4()), "alarm_time": "2030-01-01T00:00:00+00:00"},
        headers=first_headers,
    )
    assert alarm.status_code == 404


def test_get_endpoints_are_not_rate_limited(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    _, headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Root")

    responses = [client.get("/api/v1/roles", headers=headers) for _ in range(10)]

    assert all(response.status_code == 200 for response in responses)


def test_rate_limited_response_echoes_correlation_id(
    client: TestClient,
    db_session: Session,
    roles: dict[str, Role],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()
    _, headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Root")
    headers = {**headers, "X-Correlation-Id": "corr-rate-1"}

    first = client.post("/api/v1/roles", json={"name": "Once", "permissions": []}, headers=headers)
    second = client.post("/api/v1/roles", json={"name": "Twice", "permissions": []}, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 429
    assert second.json()["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"


def test_recording_uploads_have_their_own_bucket(
    client: TestClient,
    db_session: Session,
    roles: dict[str, Role],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_RECORDING_UPLOADS_PER_MINUTE", "1")
    get_settings.cache_clear()
    _, headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Root")
    task_id = uuid.uuid4()

    first, limited = [
        client.post(
            f"/api/v1/calls/tasks/{task_id}/recording",
            files={"file": ("call.mp4", b"audio", "audio/mp4")},
            headers=headers,
        )
        for _ in range(2)
    ]

    assert first.status_code == 404
    assert limited.status_code == 429
    assert limited.json()["details"]["route_group"] == "calls.recording"

    ack = client.patch(f"/api/v1/calls/tasks/{task_id}/ack", json={}, headers=headers)
    assert ack.status_code == 404


def test_sync_key_requests_use_the_automation_budget(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INTEGRATIONS_SYNC_KEY", "sync-secret")
    monkeypatch.setenv("RATE_LIMIT_AUTOMATION_MUTATIONS_PER_MINUTE", "5")
    get_settings.cache_clear()
    payload = {"lead_id": str(uuid.uuid4()), "phone_number": "+19995550123", "caller_id": str(uuid.uuid4())}

    statuses = [
        client.post("/api/v1/calls/tasks", json=payload, headers={"x-sync-key": "sync-secret"}).status_code
        for _ in range(6)
    ]

    assert 429 not in statuses[:5]
    assert statuses[5] == 429
