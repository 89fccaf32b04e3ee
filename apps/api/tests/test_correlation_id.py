from __future__ import annotations

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


def test_correlation_id_is_echoed_on_success(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    _, headers = _auth_for(db_session, roles[ADMIN_ROLE_NAME], "Root")

    response = client.get("/api/v1/roles", headers={**headers, "X-Correlation-Id": "corr-ok-1"})

    assert response.status_code == 200
    assert response.headers["x-correlation-id"] == "corr-ok-1"


def test_correlation_id_is_generated_when_absent(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    generated = response.headers["x-correlation-id"]
    assert str(uuid.UUID(generated)) == generated


def test_error_envelope_carries_correlation_id(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    _, headers = _auth_for(db_session, roles[CALLER_ROLE_NAME], "Asha")

    response = client.post(
        "/api/v1/roles",
        json={"name": "Escalations", "permissions": []},
        headers={**headers, "X-Correlation-Id": "corr-denied-1"},
    )

    assert response.status_code == 403
    body = response.json()
    assert body["correlation_id"] == "corr-denied-1"
    assert response.headers["x-correlation-id"] == "corr-denied-1"


def test_unauthenticated_error_carries_correlation_id(client: TestClient) -> None:
    response = client.get("/api/v1/alarms", headers={"X-Correlation-Id": "corr-anon-1"})

    assert response.status_code == 401
    assert response.json()["correlation_id"] == "corr-anon-1"


def test_missing_lead_error_uses_route_code(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    _, headers = _auth_for(db_session, roles[CALLER_ROLE_NAME], "Asha")

    response = client.post(
        "/api/v1/help-requests",
        json={"lead_id": str(uuid.uuid4()), "to_caller_id": str(uuid.uuid4()), "type": "share"},
        headers={**headers, "X-Correlation-Id": "corr-missing-1"},
    )

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "help_request_create_failed"
    assert body["correlation_id"] == "corr-missing-1"
