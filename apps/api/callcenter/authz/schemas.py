from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from callcenter.core.clock import UtcDatetime


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    description: str = Field(default="", max_length=200)
    permissions: list[str] = Field(default_factory=list)


class RoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=200)
    permissions: list[str] | None = None
    is_active: bool | None = None


class RoleDelete(BaseModel):
    reassign_to: UUID | None = None


class RoleRead(BaseModel):
    id: UUID
    name: str
    description: str
    permissions: list[str]
    is_system: bool
    is_active: bool
    user_count: int = 0
    created_at: UtcDatetime
    updated_at: UtcDatetime


class RoleDeleteResult(BaseModel):
    deleted_role_id: UUID
    reassigned_to: UUID
    reassigned_count: int
    message: str


class PermissionCatalogRead(BaseModel):
    tree: list[dict[str, Any]]
    all_keys: list[str]
    default_keys: list[str]
