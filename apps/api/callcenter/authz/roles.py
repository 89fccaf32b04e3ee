"""One-time migration of legacy user role references.

Older user records carry a free-text role name instead of a role id. Those
references are expressed as ``RoleByName`` and resolved to a ``RoleById``
exactly once; after migration the authentication path reads only
``User.role_id``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from callcenter.authz.models import Role, User
from callcenter.authz.seed import ADMIN_ROLE_NAME, CALLER_ROLE_NAME, seed_system_roles
from callcenter.authz.service import RoleStore, role_store
from callcenter.core.config import get_settings


logger = logging.getLogger("callcenter.authz.migration")


@dataclass(frozen=True)
class RoleById:
    role_id: uuid.UUID


@dataclass(frozen=True)
class RoleByName:
    name: str


RoleRef = RoleById | RoleByName


def role_ref_for(user: User) -> RoleRef | None:
    if user.role_id is not None:
        return RoleById(user.role_id)
    if user.legacy_role_name:
        return RoleByName(user.legacy_role_name)
    return None


def resolve_role_ref(session: Session, ref: RoleRef, store: RoleStore = role_store) -> Role:
    if isinstance(ref, RoleById):
        role = session.get(Role, ref.role_id)
        if role is None:
            raise LookupError(f"role {ref.role_id} does not exist")
        return role

    exact = store.find_by_name(session, ref.name)
    if exact is not None:
        return exact

    admin_names = {name.lower() for name in get_settings().admin_equivalent_role_names}
    target_name = ADMIN_ROLE_NAME if ref.name.strip().lower() in admin_names else CALLER_ROLE_NAME
    target = store.find_by_name(session, target_name)
    if target is None:
        raise LookupError(f"system role {target_name} has not been seeded")
    return target


def migrate_legacy_role_refs(session: Session, store: RoleStore = role_store) -> int:
    """Point every user still holding a legacy role name at a real role; returns users migrated."""
    seed_system_roles(session, store)

    users = session.scalars(select(User).where(User.role_id.is_(None), User.legacy_role_name.is_not(None))).all()
    migrated = 0
    for user in users:
        ref = role_ref_for(user)
        if ref is None:
            continue
        role = resolve_role_ref(session, ref, store)
        user.role_id = role.id
        user.legacy_role_name = None
        migrated += 1

    session.commit()
    logger.info("role.legacy_migrated", extra={"reassigned": migrated})
    return migrated
