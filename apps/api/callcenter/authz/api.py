from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from callcenter.authz.gate import require_permission
from callcenter.authz.principal import Principal
from callcenter.authz.schemas import (
    PermissionCatalogRead,
    RoleCreate,
    RoleDelete,
    RoleDeleteResult,
    RoleRead,
    RoleUpdate,
)
from callcenter.authz.service import role_store
from callcenter.core.database import get_db
from callcenter.core.errors import DomainError, domain_error_response
from callcenter.permissions import permission_registry


router = APIRouter(prefix="/api/v1/roles", tags=["roles"])

require_roles_view = require_permission("roles.roles.view")
require_roles_create = require_permission("roles.roles.create")
require_roles_edit = require_permission("roles.roles.edit")
require_roles_delete = require_permission("roles.roles.delete")


@router.get("", response_model=list[RoleRead])
def list_roles(
    db: Session = Depends(get_db),
    _principal: Principal = Depends(require_roles_view),
) -> list[RoleRead]:
    return role_store.list_roles(db)


@router.get("/permissions", response_model=PermissionCatalogRead)
def get_permission_catalog(
    _principal: Principal = Depends(require_roles_view),
) -> PermissionCatalogRead:
    return PermissionCatalogRead(
        tree=permission_registry.tree(),
        all_keys=list(permission_registry.ordered_keys()),
        default_keys=sorted(permission_registry.default_keys_for_new_role()),
    )


@router.get("/{role_id}", response_model=RoleRead)
def get_role(
    request: Request,
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    _principal: Principal = Depends(require_roles_view),
) -> RoleRead | JSONResponse:
    try:
        return role_store.get(db, role_id)
    except DomainError as exc:
        return domain_error_response(request, exc, code="role_lookup_failed")


@router.post("", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    request: Request,
    dto: RoleCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles_create),
) -> RoleRead | JSONResponse:
    try:
        return role_store.create(db, dto, created_by=principal.user_id)
    except DomainError as exc:
        return domain_error_response(request, exc, code="role_create_failed")


@router.put("/{role_id}", response_model=RoleRead)
def update_role(
    request: Request,
    role_id: uuid.UUID,
    dto: RoleUpdate,
    db: Session = Depends(get_db),
    _principal: Principal = Depends(require_roles_edit),
) -> RoleRead | JSONResponse:
    try:
        return role_store.update(db, role_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc, code="role_update_failed")


@router.delete("/{role_id}", response_model=RoleDeleteResult)
def delete_role(
    request: Request,
    role_id: uuid.UUID,
    dto: RoleDelete | None = None,
    db: Session = Depends(get_db),
    _principal: Principal = Depends(require_roles_delete),
) -> RoleDeleteResult | JSONResponse:
    try:
        return role_store.delete(db, role_id, dto.reassign_to if dto is not None else None)
    except DomainError as exc:
        return domain_error_response(request, exc, code="role_delete_failed")
