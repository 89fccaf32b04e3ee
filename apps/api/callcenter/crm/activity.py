from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.orm import Session

from callcenter.context import get_correlation_id
from callcenter.crm.models import LeadActivity


def record(
    session: Session,
    *,
    lead_id: uuid.UUID,
    actor_id: uuid.UUID | None,
    action: str,
    description: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    meta: dict[str, Any] | None = None,
) -> LeadActivity:
    diff = {"before": before, "after": after} if before is not None or after is not None else None
    entry = LeadActivity(
        lead_id=lead_id,
        actor_id=actor_id,
        action=action,
        description=description,
        diff=diff,
        meta=meta,
        correlation_id=get_correlation_id(),
    )
    session.add(entry)
    return entry
