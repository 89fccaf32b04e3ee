from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from callcenter.core.config import Settings


AUTOMATION_USER_ID = uuid.UUID(int=0)


@dataclass(frozen=True)
class Principal:
    """Authenticated actor for one request, resolved fresh on every authentication."""

    user_id: uuid.UUID
    role_id: uuid.UUID | None
    role_name: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    is_system_admin: bool = False
    is_admin_equivalent: bool = False
    name: str = ""
    email: str = ""
    is_automation: bool = False
    correlation_id: str | None = None


def build_principal(
    settings: Settings,
    *,
    user_id: uuid.UUID,
    role_id: uuid.UUID | None,
    role_name: str,
    role_is_system: bool,
    permissions: frozenset[str],
    name: str = "",
    email: str = "",
    correlation_id: str | None = None,
) -> Principal:
    lowered = role_name.strip().lower()
    is_system_admin = role_is_system and lowered in {item.lower() for item in settings.system_admin_role_names}
    is_admin_equivalent = is_system_admin or lowered in {item.lower() for item in settings.admin_equivalent_role_names}
    return Principal(
        user_id=user_id,
        role_id=role_id,
        role_name=role_name,
        permissions=permissions,
        is_system_admin=is_system_admin,
        is_admin_equivalent=is_admin_equivalent,
        name=name,
        email=email,
        correlation_id=correlation_id,
    )


def automation_principal(correlation_id: str | None = None) -> Principal:
    return Principal(
        user_id=AUTOMATION_USER_ID,
        role_id=None,
        role_name="admin",
        permissions=frozenset(),
        is_system_admin=True,
        is_admin_equivalent=True,
        name="system",
        is_automation=True,
        correlation_id=correlation_id,
    )
