from __future__ import annotations

import hmac
import logging
import uuid
from datetime import timedelta
from typing import Any

from fastapi import Depends
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from callcenter.authz.models import User
from callcenter.authz.principal import Principal, automation_principal, build_principal
from callcenter.authz.service import role_store
from callcenter.context import get_correlation_id
from callcenter.core.clock import utcnow
from callcenter.core.config import get_settings
from callcenter.core.database import get_db
from callcenter.core.errors import AuthenticationError


logger = logging.getLogger("callcenter.auth")

SYNC_KEY_HEADER = "x-sync-key"


def issue_token(user_id: uuid.UUID, expires_in: timedelta | None = None) -> str:
    settings = get_settings()
    lifetime = expires_in if expires_in is not None else timedelta(minutes=settings.jwt_ttl_minutes)
    claims: dict[str, Any] = {"sub": str(user_id), "exp": utcnow() + lifetime}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> uuid.UUID:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Token has no subject")
    try:
        return uuid.UUID(str(subject))
    except ValueError as exc:
        raise AuthenticationError("Token subject is not a user id") from exc


def bearer_token(connection: HTTPConnection) -> str:
    auth_header = connection.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip()
    return ""


def principal_for_user(session: Session, user: User, correlation_id: str | None = None) -> Principal:
    role = user.role
    permissions = role_store.resolve_permissions(session, role.id) if role is not None else frozenset()
    return build_principal(
        get_settings(),
        user_id=user.id,
        role_id=role.id if role is not None else None,
        role_name=role.name if role is not None else "",
        role_is_system=bool(role is not None and role.is_system and role.is_active),
        permissions=permissions,
        name=user.name,
        email=user.email,
        correlation_id=correlation_id,
    )


def resolve_token_principal(session: Session, token: str) -> Principal:
    if not token:
        raise AuthenticationError("Not authorized, no token")
    user_id = decode_token(token)
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("User not found or inactive")
    return principal_for_user(session, user, correlation_id=get_correlation_id())


def _bind_user(connection: HTTPConnection, principal: Principal) -> None:
    context = getattr(connection.state, "context", None)
    if context is not None:
        context.user_id = str(principal.user_id)


def get_current_principal(connection: HTTPConnection, db: Session = Depends(get_db)) -> Principal:
    principal = resolve_token_principal(db, bearer_token(connection))
    _bind_user(connection, principal)
    return principal


def get_principal_or_automation(connection: HTTPConnection, db: Session = Depends(get_db)) -> Principal:
    """Accept the integrations sync key in place of a user token."""
    expected = get_settings().integrations_sync_key
    provided = connection.headers.get(SYNC_KEY_HEADER, "")
    if expected and provided and hmac.compare_digest(provided, expected):
        logger.info("auth.automation_principal")
        return automation_principal(correlation_id=get_correlation_id())
    return get_current_principal(connection, db)
