from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from callcenter.authz.models import Role, RolePermission
from callcenter.authz.service import RoleStore, role_name_key, role_store


logger = logging.getLogger("callcenter.authz.seed")

ADMIN_ROLE_NAME = "Admin"
CALLER_ROLE_NAME = "Caller"

CALLER_ROLE_KEYS: tuple[str, ...] = (
    "dashboard.dashboard.view",
    "dashboard.dashboard.kpiStats",
    "leads.search.view",
    "leads.all.view",
    "leads.all.create",
    "leads.all.filters.status",
    "leads.all.filters.source",
    "leads.all.filters.campaign",
    "leads.all.filters.opdStatus",
    "leads.all.filters.ipdStatus",
    "leads.all.filters.diagnostics",
    "leads.all.filters.followup",
    "leads.all.filters.date",
    "leads.all.filters.customFields",
    "leads.detail.view",
    "leads.detail.editFields",
    "leads.detail.editStatus",
    "leads.detail.addNotes",
    "leads.detail.viewActivities",
    "leads.detail.manageBookings",
    "leads.detail.whatsapp",
    "leads.detail.documents",
    "leads.detail.calls",
    "leads.detail.defer",
    "leads.detail.helpRequest",
    "leads.duplicates.view",
    "leads.duplicates.merge",
    "alarms.alarms.view",
    "alarms.alarms.create",
    "alarms.alarms.edit",
    "alarms.alarms.delete",
)


def _upsert_system_role(
    session: Session,
    store: RoleStore,
    name: str,
    description: str,
    keys: frozenset[str],
    *,
    resync: bool,
) -> Role:
    role = store.find_by_name(session, name)
    if role is None:
        role = Role(name=name, name_key=role_name_key(name), description=description, is_system=True, is_active=True)
        role.permissions = [RolePermission(permission_key=key) for key in sorted(keys)]
        session.add(role)
        session.flush()
        logger.info("role.seeded", extra={"role_id": str(role.id)})
        return role

    role.is_system = True
    role.is_active = True
    if resync:
        missing = keys - role.permission_keys
        for key in sorted(missing):
            role.permissions.append(RolePermission(permission_key=key))
    return role


def seed_system_roles(session: Session, store: RoleStore = role_store) -> dict[str, Role]:
    """Create the protected Admin and Caller roles. Safe to run repeatedly.

    Admin is topped up with any catalog keys added since the last run; the
    Caller role keeps whatever an operator has edited it to.
    """
    admin = _upsert_system_role(
        session,
        store,
        ADMIN_ROLE_NAME,
        "Full access to every screen and action",
        store.registry.list_all_keys(),
        resync=True,
    )
    caller = _upsert_system_role(
        session,
        store,
        CALLER_ROLE_NAME,
        "Default role for callers working assigned leads",
        store.registry.validate(CALLER_ROLE_KEYS),
        resync=False,
    )
    session.commit()
    return {ADMIN_ROLE_NAME: admin, CALLER_ROLE_NAME: caller}


__all__ = ["ADMIN_ROLE_NAME", "CALLER_ROLE_NAME", "CALLER_ROLE_KEYS", "seed_system_roles"]
