from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from callcenter.authz.models import Role, User
from callcenter.authz.seed import CALLER_ROLE_NAME, seed_system_roles
from callcenter.core.auth import issue_token
from callcenter.core.config import get_settings
from callcenter.core.database import Base, get_db
from callcenter.crm.models import Lead
from callcenter.main import app
from callcenter.middleware.rate_limit import reset_rate_limiter
from callcenter.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_call_task_span_wraps_realtime_emit(
    client: TestClient,
    db_session: Session,
    roles: dict[str, Role],
    span_exporter: InMemorySpanExporter,
) -> None:
    caller, headers = _auth_for(db_session, roles[CALLER_ROLE_NAME], "Asha")
    lead = Lead(field_data=[{"name": "Full Name", "values": ["Ravi"]}], phone="+19995550123", assigned_to=caller.id)
    db_session.add(lead)
    db_session.commit()

    response = client.post(
        "/api/v1/calls/tasks",
        json={"lead_id": str(lead.id), "phone_number": "+19995550123"},
        headers={**headers, "X-Correlation-Id": "otel-task-1"},
    )
    assert response.status_code == 201
    task_id = response.json()["id"]

    spans = span_exporter.get_finished_spans()
    create_spans = [span for span in spans if span.name == "call_task.create"]
    emit_spans = [span for span in spans if span.name == "realtime.emit"]
    assert len(create_spans) == 1
    assert create_spans[0].attributes.get("call_task.id") == task_id
    assert any(
        span.attributes.get("realtime.event") == "call:request"
        and span.parent is not None
        and span.parent.span_id == create_spans[0].context.span_id
        for span in emit_spans
    )


def test_sync_key_requests_are_tagged_as_automation(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    assert client.get("/health", headers={"x-sync-key": "anything"}).status_code == 200
    assert client.get("/health").status_code == 200

    server_spans = [span for span in span_exporter.get_finished_spans() if "callcenter.automation" in span.attributes]
    assert [span.attributes["callcenter.automation"] for span in server_spans] == [True, False]
