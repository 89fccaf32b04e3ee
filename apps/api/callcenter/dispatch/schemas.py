from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from callcenter.core.clock import OptionalUtcDatetime, UtcDatetime
from callcenter.crm.models import CallOutcome


class CallTaskCreate(BaseModel):
    lead_id: UUID
    phone_number: str = Field(min_length=1, max_length=32)
    caller_id: UUID | None = None


class CallTaskAck(BaseModel):
    device_info: dict[str, Any] | None = None


class CallTaskComplete(BaseModel):
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_sec: int = Field(default=0, ge=0)
    outcome: CallOutcome | None = None
    notes: str = Field(default="", max_length=4000)


class CallTaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    caller_id: UUID
    phone_number: str
    state: str
    created_at: UtcDatetime
    pushed_at: OptionalUtcDatetime = None
    ack_at: OptionalUtcDatetime = None
    completed_at: OptionalUtcDatetime = None
    started_at: OptionalUtcDatetime = None
    ended_at: OptionalUtcDatetime = None
    duration_sec: int
    outcome: str | None
    notes: str
    recording_filename: str | None = None


class RecordingRead(BaseModel):
    task_id: UUID
    filename: str
    path: str
    size: int
    duration: int
    uploaded_at: UtcDatetime
    call_log_id: UUID | None = None
