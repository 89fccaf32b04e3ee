from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from callcenter.alarms.models import AlarmStatus
from callcenter.core.clock import OptionalUtcDatetime, UtcDatetime


class AlarmCreate(BaseModel):
    lead_id: UUID
    alarm_time: UtcDatetime
    notes: str = Field(default="", max_length=2000)


class AlarmUpdate(BaseModel):
    status: AlarmStatus | None = None
    snoozed_until: OptionalUtcDatetime = None


class AlarmRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    user_id: UUID
    alarm_time: UtcDatetime
    status: str
    snoozed_until: OptionalUtcDatetime = None
    notes: str
    created_at: UtcDatetime
    updated_at: UtcDatetime


class AlarmCount(BaseModel):
    count: int


class AlarmDeleteResult(BaseModel):
    deleted_alarm_id: UUID
    message: str
