from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from callcenter.core.clock import utcnow
from callcenter.core.database import Base


class AlarmStatus(str, Enum):
    ACTIVE = "active"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"
    COMPLETED = "completed"


PENDING_ALARM_STATUSES = (AlarmStatus.ACTIVE.value, AlarmStatus.SNOOZED.value)


class Alarm(Base):
    __tablename__ = "alarm"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("authz_user.id", ondelete="CASCADE"),
        nullable=False,
    )
    alarm_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=AlarmStatus.ACTIVE.value,
        server_default=AlarmStatus.ACTIVE.value,
    )
    snoozed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_alarm_user_status_time", "user_id", "status", "alarm_time"),
        Index("ix_alarm_lead_user", "lead_id", "user_id"),
    )
