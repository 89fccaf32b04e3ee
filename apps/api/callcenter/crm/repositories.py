from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from callcenter.authz.models import User
from callcenter.crm.models import Lead, LeadShare

UNKNOWN_LEAD_NAME = "Unknown Lead"


def lead_display_name(lead: Lead) -> str:
    for entry in lead.field_data or []:
        if not isinstance(entry, dict):
            continue
        field_name = str(entry.get("name") or "")
        if "name" not in field_name.lower():
            continue
        values = entry.get("values") or []
        if values and values[0]:
            return str(values[0])
    return UNKNOWN_LEAD_NAME


def user_summary(user: User | None, user_id: uuid.UUID | None = None) -> dict[str, Any]:
    if user is None:
        return {"id": user_id, "name": None, "email": None}
    return {"id": user.id, "name": user.name, "email": user.email}


class LeadRepository:
    """Lead reads and writes needed by the dispatch flows."""

    def find_by_id(self, session: Session, lead_id: uuid.UUID) -> Lead | None:
        return session.get(Lead, lead_id)

    def find_accessible_to(self, session: Session, user_id: uuid.UUID) -> list[Lead]:
        shared = select(LeadShare.lead_id).where(LeadShare.user_id == user_id)
        stmt = (
            select(Lead)
            .where(or_(Lead.assigned_to == user_id, Lead.id.in_(shared)))
            .order_by(Lead.created_at.desc())
        )
        return list(session.scalars(stmt).all())

    def is_accessible_to(self, lead: Lead, user_id: uuid.UUID) -> bool:
        return lead.assigned_to == user_id or user_id in lead.shared_with

    def grant_shared_access(self, lead: Lead, user_id: uuid.UUID) -> bool:
        if user_id in lead.shared_with:
            return False
        lead.shares.append(LeadShare(user_id=user_id))
        return True

    def revoke_shared_access(self, lead: Lead, user_id: uuid.UUID) -> bool:
        remaining = [share for share in lead.shares if share.user_id != user_id]
        if len(remaining) == len(lead.shares):
            return False
        lead.shares = remaining
        return True

    def save(self, session: Session, lead: Lead) -> Lead:
        session.add(lead)
        session.flush()
        return lead


class UserRepository:
    def find_by_id(self, session: Session, user_id: uuid.UUID) -> User | None:
        return session.get(User, user_id)

    def find_many(self, session: Session, user_ids: set[uuid.UUID]) -> dict[uuid.UUID, User]:
        if not user_ids:
            return {}
        rows = session.scalars(select(User).where(User.id.in_(user_ids))).all()
        return {row.id: row for row in rows}


lead_repository = LeadRepository()
user_repository = UserRepository()
