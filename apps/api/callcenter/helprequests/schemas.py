from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field

from callcenter.core.clock import OptionalUtcDatetime, UtcDatetime


class HelpRequestCreate(BaseModel):
    lead_id: UUID
    to_caller_id: UUID
    type: str = Field(min_length=1)
    reason: str = Field(default="", max_length=1000)


class HelpRequestRespond(BaseModel):
    action: str = Field(min_length=1)


class LeadSummary(BaseModel):
    id: UUID
    name: str
    status: str | None = None


class CallerSummary(BaseModel):
    id: UUID | None
    name: str | None
    email: str | None


class HelpRequestRead(BaseModel):
    id: UUID
    lead_id: UUID
    from_caller_id: UUID
    to_caller_id: UUID
    type: str
    reason: str
    status: str
    created_at: UtcDatetime
    responded_at: OptionalUtcDatetime = None


class HelpRequestListItem(BaseModel):
    id: UUID
    type: str
    reason: str
    status: str
    created_at: UtcDatetime
    responded_at: OptionalUtcDatetime = None
    lead: LeadSummary
    from_caller: CallerSummary | None = None
    to_caller: CallerSummary | None = None

