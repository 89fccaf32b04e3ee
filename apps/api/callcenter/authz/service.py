from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from callcenter.authz.models import Role, RolePermission, User
from callcenter.authz.schemas import RoleCreate, RoleDeleteResult, RoleRead, RoleUpdate
from callcenter.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from callcenter.permissions import PermissionRegistry, permission_registry


logger = logging.getLogger("callcenter.authz")


def role_name_key(name: str) -> str:
    return name.strip().lower()


class RoleStore:
    """Named sets of permission keys. Role names are unique case-insensitively."""

    def __init__(self, registry: PermissionRegistry = permission_registry) -> None:
        self.registry = registry

    def create(self, session: Session, dto: RoleCreate, created_by: uuid.UUID | None = None) -> RoleRead:
        name = self._clean_name(dto.name)
        keys = self.registry.validate(dto.permissions)
        self._ensure_name_free(session, name)

        role = Role(
            name=name,
            name_key=role_name_key(name),
            description=dto.description.strip(),
            is_system=False,
            is_active=True,
            created_by=created_by,
        )
        role.permissions = [RolePermission(permission_key=key) for key in sorted(keys)]
        session.add(role)
        self._commit(session, name)
        logger.info("role.created", extra={"role_id": str(role.id)})
        return self._to_read(session, role)

    def list_roles(self, session: Session) -> list[RoleRead]:
        rows = session.scalars(select(Role).order_by(Role.is_system.desc(), Role.name.asc())).all()
        counts = self._user_counts(session)
        return [self._to_read(session, row, user_count=counts.get(row.id, 0)) for row in rows]

    def get(self, session: Session, role_id: uuid.UUID) -> RoleRead:
        return self._to_read(session, self._get_role(session, role_id))

    def find_by_name(self, session: Session, name: str) -> Role | None:
        return session.scalar(select(Role).where(Role.name_key == role_name_key(name)))

    def update(self, session: Session, role_id: uuid.UUID, dto: RoleUpdate) -> RoleRead:
        role = self._get_role(session, role_id)

        new_name: str | None = None
        if dto.name is not None:
            candidate = self._clean_name(dto.name)
            if candidate != role.name:
                if role.is_system:
                    raise ForbiddenError("System roles cannot be renamed", details={"role_id": str(role.id)})
                if role_name_key(candidate) != role.name_key:
                    self._ensure_name_free(session, candidate)
                new_name = candidate

        keys: frozenset[str] | None = None
        if dto.permissions is not None:
            keys = self.registry.validate(dto.permissions)

        if dto.is_active is False and role.is_system:
            raise ForbiddenError("System roles cannot be deactivated", details={"role_id": str(role.id)})

        if new_name is not None:
            role.name = new_name
            role.name_key = role_name_key(new_name)
        if dto.description is not None:
            role.description = dto.description.strip()
        if dto.is_active is not None:
            role.is_active = dto.is_active
        if keys is not None:
            self._replace_permissions(role, keys)

        self._commit(session, role.name)
        logger.info("role.updated", extra={"role_id": str(role.id)})
        return self._to_read(session, role)

    def delete(self, session: Session, role_id: uuid.UUID, reassign_to: uuid.UUID | None) -> RoleDeleteResult:
        role = self._get_role(session, role_id)
        if role.is_system:
            raise ForbiddenError("System roles cannot be deleted", details={"role_id": str(role.id)})
        if reassign_to is None:
            raise ValidationError(
                "reassign_to is required: choose a role for users currently holding this role",
                details={"missing": ["reassign_to"]},
            )
        if reassign_to == role.id:
            raise ValidationError("Cannot reassign users to the role being deleted", details={"reassign_to": str(reassign_to)})

        target = session.get(Role, reassign_to)
        if target is None:
            raise ValidationError("Replacement role not found", details={"reassign_to": str(reassign_to)})

        result = session.execute(
            update(User).where(User.role_id == role.id).values(role_id=target.id).execution_options(synchronize_session="fetch")
        )
        reassigned = int(result.rowcount or 0)
        session.delete(role)
        session.commit()

        logger.info("role.deleted", extra={"role_id": str(role_id), "reassigned": reassigned})
        return RoleDeleteResult(
            deleted_role_id=role_id,
            reassigned_to=target.id,
            reassigned_count=reassigned,
            message=f"Role deleted. {reassigned} user(s) reassigned to {target.name}",
        )

    def resolve_permissions(self, session: Session, role_id: uuid.UUID) -> frozenset[str]:
        role = session.get(Role, role_id)
        if role is None or not role.is_active:
            return frozenset()
        return frozenset(key for key in role.permission_keys if self.registry.is_known(key))

    def _replace_permissions(self, role: Role, keys: Iterable[str]) -> None:
        wanted = set(keys)
        role.permissions = [item for item in role.permissions if item.permission_key in wanted]
        existing = {item.permission_key for item in role.permissions}
        for key in sorted(wanted - existing):
            role.permissions.append(RolePermission(permission_key=key))

    def _get_role(self, session: Session, role_id: uuid.UUID) -> Role:
        role = session.get(Role, role_id)
        if role is None:
            raise NotFoundError("Role not found", details={"role_id": str(role_id)})
        return role

    def _clean_name(self, name: str) -> str:
        cleaned = name.strip()
        if not cleaned:
            raise ValidationError("Role name is required", details={"missing": ["name"]})
        if len(cleaned) > 50:
            raise ValidationError("Role name cannot exceed 50 characters", details={"name": cleaned})
        return cleaned

    def _ensure_name_free(self, session: Session, name: str) -> None:
        if self.find_by_name(session, name) is not None:
            raise ConflictError(f"A role named '{name}' already exists", details={"name": name})

    def _commit(self, session: Session, name: str) -> None:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError(f"A role named '{name}' already exists", details={"name": name})

    def _user_counts(self, session: Session) -> dict[uuid.UUID, int]:
        rows = session.execute(
            select(User.role_id, func.count(User.id)).where(User.role_id.is_not(None)).group_by(User.role_id)
        ).all()
        return {role_id: int(count) for role_id, count in rows}

    def _to_read(self, session: Session, role: Role, user_count: int | None = None) -> RoleRead:
        if user_count is None:
            user_count = int(session.scalar(select(func.count(User.id)).where(User.role_id == role.id)) or 0)
        return RoleRead(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=sorted(role.permission_keys),
            is_system=role.is_system,
            is_active=role.is_active,
            user_count=user_count,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


role_store = RoleStore()
