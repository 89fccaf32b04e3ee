from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from fastapi import Depends

from callcenter.authz.principal import Principal
from callcenter.core.auth import get_current_principal, get_principal_or_automation
from callcenter.core.errors import ForbiddenError
from callcenter.metrics import observe_authz_denial
from callcenter.permissions import PermissionRegistry, permission_registry


logger = logging.getLogger("callcenter.authz.gate")


class AuthorizationGate:
    """Stateless allow/deny decision for a principal.

    Precedence: system admin, then the coarse role-name list, then the
    granular permission keys. A principal with no permissions is denied
    before the key check runs, and an empty required list never allows.
    """

    def __init__(self, registry: PermissionRegistry = permission_registry) -> None:
        self.registry = registry

    def is_allowed(self, principal: Principal, required: str | Sequence[str], roles: Sequence[str] = ()) -> bool:
        required_keys = _as_tuple(required)
        if principal.is_system_admin:
            return True
        if roles and principal.role_name.strip().lower() in {role.lower() for role in roles}:
            return True
        if not principal.permissions:
            return False
        if not required_keys:
            return False
        return not principal.permissions.isdisjoint(required_keys)

    def check(self, principal: Principal, required: str | Sequence[str], roles: Sequence[str] = ()) -> None:
        if self.is_allowed(principal, required, roles):
            return

        required_keys = _as_tuple(required)
        observe_authz_denial(required_keys[0] if required_keys else "role")
        logger.info(
            "authz.denied",
            extra={"user_id": str(principal.user_id), "required": list(required_keys) or list(roles)},
        )
        if required_keys:
            raise ForbiddenError(
                f"You do not have permission: {' OR '.join(required_keys)}",
                details={"required": list(required_keys)},
            )
        raise ForbiddenError(
            f"You do not have the required role: {' OR '.join(roles)}",
            details={"required_roles": list(roles)},
        )


def _as_tuple(required: str | Sequence[str]) -> tuple[str, ...]:
    if isinstance(required, str):
        return (required,)
    return tuple(required)


authorization_gate = AuthorizationGate()


def require_permission(
    *keys: str,
    roles: Sequence[str] = (),
    allow_automation: bool = False,
) -> Callable[..., Principal]:
    """Build a FastAPI dependency that authenticates and then checks ``keys``.

    Unknown keys or an empty requirement are configuration errors and fail at
    import time rather than on the first request.
    """
    if not keys and not roles:
        raise ValueError("require_permission needs at least one permission key or role")
    unknown = authorization_gate.registry.invalid_keys(keys)
    if unknown:
        raise ValueError(f"unknown permission keys: {', '.join(unknown)}")

    resolver = get_principal_or_automation if allow_automation else get_current_principal
    role_names = tuple(roles)

    def checker(principal: Principal = Depends(resolver)) -> Principal:
        authorization_gate.check(principal, keys, role_names)
        return principal

    return checker
