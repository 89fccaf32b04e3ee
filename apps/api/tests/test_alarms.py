from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from callcenter.alarms.models import Alarm
from callcenter.alarms.schemas import AlarmCreate, AlarmUpdate
from callcenter.alarms.service import AlarmScheduler, apply_status_change
from callcenter.authz.models import Role, User
from callcenter.authz.seed import ADMIN_ROLE_NAME, CALLER_ROLE_NAME, seed_system_roles
from callcenter.core.auth import issue_token, principal_for_user
from callcenter.core.clock import utcnow
from callcenter.core.config import get_settings
from callcenter.core.database import Base, get_db
from callcenter.core.errors import ForbiddenError, NotFoundError, ValidationError
from callcenter.crm.models import Lead
from callcenter.main import app
from callcenter.middleware.rate_limit import reset_rate_limiter
from callcenter.realtime import RealtimeHub, caller_room


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
def roles(db_session: Session) -> dict[str, Role]:
    return seed_system_roles(db_session)


@pytest.fixture()
def hub() -> RealtimeHub:
    return RealtimeHub()


@pytest.fixture()
def scheduler(hub: RealtimeHub) -> AlarmScheduler:
    return AlarmScheduler(hub=hub)


def _user(session: Session, role: Role, name: str) -> User:
    user = User(name=name, email=f"{name.lower()}@example.com", role_id=role.id)
    session.add(user)
    session.commit()
    return user


def _lead(session: Session, owner: User) -> Lead:
    lead = Lead(field_data=[], assigned_to=owner.id)
    session.add(lead)
    session.commit()
    return lead


def test_count_active_excludes_past_due_alarms(
    db_session: Session,
    roles: dict[str, Role],
    scheduler: AlarmScheduler,
) -> None:
    caller = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    lead = _lead(db_session, caller)
    principal = principal_for_user(db_session, caller)
    now = utcnow()

    past = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=now - timedelta(hours=1)))
    future = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=now + timedelta(hours=1)))
    scheduler.update(db_session, principal, future.id, AlarmUpdate(snoozed_until=now + timedelta(hours=2)))

    assert past.status == "active"
    assert scheduler.count_active(db_session, principal, now=now) == 1


def test_create_requires_lead_ownership(
    db_session: Session,
    roles: dict[str, Role],
    scheduler: AlarmScheduler,
) -> None:
    owner = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    other = _user(db_session, roles[CALLER_ROLE_NAME], "Gopal")
    admin = _user(db_session, roles[ADMIN_ROLE_NAME], "Root")
    lead = _lead(db_session, owner)
    when = utcnow() + timedelta(days=1)

    with pytest.raises(ForbiddenError):
        scheduler.create(db_session, principal_for_user(db_session, other), AlarmCreate(lead_id=lead.id, alarm_time=when))
    with pytest.raises(NotFoundError):
        scheduler.create(db_session, principal_for_user(db_session, owner), AlarmCreate(lead_id=uuid.uuid4(), alarm_time=when))

    created = scheduler.create(db_session, principal_for_user(db_session, admin), AlarmCreate(lead_id=lead.id, alarm_time=when))
    assert created.user_id == admin.id


def test_create_notifies_own_room(
    db_session: Session,
    roles: dict[str, Role],
    hub: RealtimeHub,
    scheduler: AlarmScheduler,
) -> None:
    caller = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    lead = _lead(db_session, caller)
    principal = principal_for_user(db_session, caller)
    phone: list[dict[str, Any]] = []
    hub.connect(principal, phone.append)

    created = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=utcnow(), notes="call back"))

    assert phone == [{"event": "alarm:created", "data": {"alarmId": created.id, "userId": caller.id}}]
    assert hub.published[-1].rooms == [caller_room(caller.id)]


def test_snoozed_until_wins_over_explicit_status(
    db_session: Session,
    roles: dict[str, Role],
    hub: RealtimeHub,
    scheduler: AlarmScheduler,
) -> None:
    caller = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    lead = _lead(db_session, caller)
    principal = principal_for_user(db_session, caller)
    alarm = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=utcnow()))
    snooze_until = utcnow() + timedelta(minutes=15)

    updated = scheduler.update(
        db_session,
        principal,
        alarm.id,
        AlarmUpdate(status="dismissed", snoozed_until=snooze_until),
    )

    assert updated.status == "snoozed"
    assert updated.snoozed_until is not None
    assert abs((updated.snoozed_until - snooze_until).total_seconds()) < 1
    assert hub.published[-1].event == "alarm:updated"
    assert hub.published[-1].payload["status"] == "snoozed"


def test_any_status_may_follow_any_other() -> None:
    alarm = Alarm(status="completed")
    apply_status_change(alarm, "active", None)
    assert alarm.status == "active"
    apply_status_change(alarm, "dismissed", None)
    assert alarm.status == "dismissed"
    apply_status_change(alarm, None, None)
    assert alarm.status == "dismissed"


def test_snoozing_requires_a_snooze_time(
    db_session: Session,
    roles: dict[str, Role],
    scheduler: AlarmScheduler,
) -> None:
    caller = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    lead = _lead(db_session, caller)
    principal = principal_for_user(db_session, caller)
    alarm = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=utcnow() + timedelta(hours=1)))

    with pytest.raises(ValidationError) as exc_info:
        scheduler.update(db_session, principal, alarm.id, AlarmUpdate(status="snoozed"))

    assert exc_info.value.details == {"missing": ["snoozed_until"]}
    stored = db_session.get(Alarm, alarm.id)
    assert stored is not None
    assert stored.status == "active"
    assert stored.snoozed_until is None


def test_leaving_snoozed_clears_the_snooze_time() -> None:
    alarm = Alarm(status="active")
    apply_status_change(alarm, None, utcnow() + timedelta(minutes=10))
    assert alarm.status == "snoozed"
    assert alarm.snoozed_until is not None

    apply_status_change(alarm, "active", None)

    assert alarm.status == "active"
    assert alarm.snoozed_until is None
    with pytest.raises(ValidationError):
        apply_status_change(alarm, "snoozed", None)


def test_list_active_includes_snoozed_sorted_by_time(
    db_session: Session,
    roles: dict[str, Role],
    scheduler: AlarmScheduler,
) -> None:
    caller = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    lead = _lead(db_session, caller)
    principal = principal_for_user(db_session, caller)
    now = utcnow()
    late = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=now + timedelta(hours=3)))
    early = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=now + timedelta(hours=1)))
    done = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=now + timedelta(hours=2)))
    scheduler.update(db_session, principal, late.id, AlarmUpdate(snoozed_until=now + timedelta(hours=4)))
    scheduler.update(db_session, principal, done.id, AlarmUpdate(status="completed"))

    active = scheduler.list_alarms(db_session, principal, status="active")
    assert [item.id for item in active] == [early.id, late.id]

    completed = scheduler.list_alarms(db_session, principal, status="completed")
    assert [item.id for item in completed] == [done.id]

    everything = scheduler.list_alarms(db_session, principal)
    assert [item.id for item in everything] == [early.id, done.id, late.id]
    assert len(scheduler.list_alarms(db_session, principal, limit=1)) == 1

    with pytest.raises(ValidationError):
        scheduler.list_alarms(db_session, principal, status="sleeping")


def test_update_and_delete_are_ownership_scoped(
    db_session: Session,
    roles: dict[str, Role],
    hub: RealtimeHub,
    scheduler: AlarmScheduler,
) -> None:
    owner = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    other = _user(db_session, roles[CALLER_ROLE_NAME], "Gopal")
    lead = _lead(db_session, owner)
    owner_principal = principal_for_user(db_session, owner)
    other_principal = principal_for_user(db_session, other)
    alarm = scheduler.create(db_session, owner_principal, AlarmCreate(lead_id=lead.id, alarm_time=utcnow()))

    with pytest.raises(NotFoundError):
        scheduler.update(db_session, other_principal, alarm.id, AlarmUpdate(status="dismissed"))
    with pytest.raises(NotFoundError):
        scheduler.delete(db_session, other_principal, alarm.id)

    result = scheduler.delete(db_session, owner_principal, alarm.id)
    assert result.deleted_alarm_id == alarm.id
    assert hub.published[-1].event == "alarm:deleted"
    assert db_session.get(Alarm, alarm.id) is None


def test_get_for_lead_returns_soonest_open_alarm(
    db_session: Session,
    roles: dict[str, Role],
    scheduler: AlarmScheduler,
) -> None:
    caller = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    lead = _lead(db_session, caller)
    principal = principal_for_user(db_session, caller)
    now = utcnow()

    assert scheduler.get_for_lead(db_session, principal, lead.id) is None

    first = scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=now + timedelta(hours=1)))
    scheduler.create(db_session, principal, AlarmCreate(lead_id=lead.id, alarm_time=now + timedelta(hours=2)))
    assert scheduler.get_for_lead(db_session, principal, lead.id).id == first.id

    scheduler.update(db_session, principal, first.id, AlarmUpdate(status="dismissed"))
    assert scheduler.get_for_lead(db_session, principal, lead.id).id != first.id


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_alarm_http_flow(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    caller = _user(db_session, roles[CALLER_ROLE_NAME], "Farah")
    lead = _lead(db_session, caller)
    headers = {"Authorization": f"Bearer {issue_token(caller.id)}"}
    alarm_time = (utcnow() + timedelta(hours=2)).isoformat()

    created = client.post(
        "/api/v1/alarms",
        json={"lead_id": str(lead.id), "alarm_time": alarm_time, "notes": "follow up"},
        headers=headers,
    )
    assert created.status_code == 201
    alarm_id = created.json()["id"]
    assert created.json()["status"] == "active"

    assert client.get("/api/v1/alarms/count", headers=headers).json() == {"count": 1}
    assert client.get(f"/api/v1/alarms/lead/{lead.id}", headers=headers).json()["id"] == alarm_id

    snoozed = client.patch(
        f"/api/v1/alarms/{alarm_id}",
        json={"snoozed_until": (utcnow() + timedelta(hours=3)).isoformat()},
        headers=headers,
    )
    assert snoozed.status_code == 200
    assert snoozed.json()["status"] == "snoozed"

    listed = client.get("/api/v1/alarms?status=active", headers=headers)
    assert [item["id"] for item in listed.json()] == [alarm_id]

    bare_snooze = client.patch(f"/api/v1/alarms/{alarm_id}", json={"status": "snoozed"}, headers=headers)
    assert bare_snooze.status_code == 400
    assert bare_snooze.json()["code"] == "alarm_update_failed"
    assert bare_snooze.json()["details"] == {"missing": ["snoozed_until"]}

    invalid = client.patch(f"/api/v1/alarms/{alarm_id}", json={"status": "sleeping"}, headers=headers)
    assert invalid.status_code == 422

    deleted = client.delete(f"/api/v1/alarms/{alarm_id}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Alarm deleted successfully"

    missing = client.delete(f"/api/v1/alarms/{alarm_id}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["code"] == "alarm_delete_failed"

    assert client.get(f"/api/v1/alarms/lead/{lead.id}", headers=headers).json() is None


def test_alarm_routes_require_alarm_permissions(client: TestClient, db_session: Session, roles: dict[str, Role]) -> None:
    limited = Role(name="Reporter", name_key="reporter", description="", is_system=False, is_active=True)
    db_session.add(limited)
    db_session.commit()
    user = _user(db_session, limited, "Hari")

    response = client.get("/api/v1/alarms", headers={"Authorization": f"Bearer {issue_token(user.id)}"})

    assert response.status_code == 403
    assert response.json()["details"] == {"required": ["alarms.alarms.view"]}
