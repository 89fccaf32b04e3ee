from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from callcenter.alarms.models import PENDING_ALARM_STATUSES, Alarm, AlarmStatus
from callcenter.alarms.schemas import AlarmCreate, AlarmDeleteResult, AlarmRead, AlarmUpdate
from callcenter.authz.principal import Principal
from callcenter.core.clock import as_utc, utcnow
from callcenter.core.config import get_settings
from callcenter.core.errors import ForbiddenError, NotFoundError, ValidationError
from callcenter.crm.repositories import LeadRepository, lead_repository
from callcenter.realtime import RealtimeHub, caller_room, realtime_hub


logger = logging.getLogger("callcenter.alarms")

_VALID_STATUSES = {item.value for item in AlarmStatus}


def apply_status_change(
    alarm: Alarm,
    status: str | None,
    snoozed_until: datetime | None,
) -> None:
    """Any status may move to any other; a snooze time always means snoozed.

    A snoozed alarm always carries the snooze time of its latest transition,
    and leaving snoozed clears it.
    """
    if snoozed_until is not None:
        alarm.snoozed_until = as_utc(snoozed_until)
        alarm.status = AlarmStatus.SNOOZED.value
        return
    if status is None:
        return
    if status == AlarmStatus.SNOOZED.value:
        raise ValidationError(
            "snoozed_until is required when status is snoozed",
            details={"missing": ["snoozed_until"]},
        )
    alarm.status = status
    alarm.snoozed_until = None


class AlarmScheduler:
    def __init__(self, hub: RealtimeHub = realtime_hub, leads: LeadRepository = lead_repository) -> None:
        self.hub = hub
        self.leads = leads

    def create(self, session: Session, principal: Principal, dto: AlarmCreate) -> AlarmRead:
        lead = self.leads.find_by_id(session, dto.lead_id)
        if lead is None:
            raise NotFoundError("Lead not found", details={"lead_id": str(dto.lead_id)})
        if not principal.is_admin_equivalent and lead.assigned_to != principal.user_id:
            raise ForbiddenError("Access denied", details={"lead_id": str(lead.id)})

        alarm = Alarm(
            lead_id=lead.id,
            user_id=principal.user_id,
            alarm_time=as_utc(dto.alarm_time),
            notes=dto.notes,
            status=AlarmStatus.ACTIVE.value,
        )
        session.add(alarm)
        session.commit()
        session.refresh(alarm)
        logger.info("alarm.created", extra={"alarm_id": str(alarm.id), "lead_id": str(lead.id)})

        self.hub.emit(
            "alarm:created",
            {"alarmId": alarm.id, "userId": principal.user_id},
            to=[caller_room(principal.user_id)],
        )
        return AlarmRead.model_validate(alarm)

    def list_alarms(
        self,
        session: Session,
        principal: Principal,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[AlarmRead]:
        stmt = select(Alarm).where(Alarm.user_id == principal.user_id)
        if status:
            if status == AlarmStatus.ACTIVE.value:
                stmt = stmt.where(Alarm.status.in_(PENDING_ALARM_STATUSES))
            elif status in _VALID_STATUSES:
                stmt = stmt.where(Alarm.status == status)
            else:
                raise ValidationError(f"Unknown alarm status: {status}", details={"status": status})
        stmt = stmt.order_by(Alarm.alarm_time.asc()).limit(limit or get_settings().alarm_list_default_limit)
        return [AlarmRead.model_validate(row) for row in session.scalars(stmt).all()]

    def count_active(self, session: Session, principal: Principal, now: datetime | None = None) -> int:
        # Past-due alarms are left out of the badge count.
        cutoff = as_utc(now) if now is not None else utcnow()
        stmt = select(func.count(Alarm.id)).where(
            Alarm.user_id == principal.user_id,
            Alarm.status.in_(PENDING_ALARM_STATUSES),
            Alarm.alarm_time >= cutoff,
        )
        return int(session.scalar(stmt) or 0)

    def update(self, session: Session, principal: Principal, alarm_id: uuid.UUID, dto: AlarmUpdate) -> AlarmRead:
        alarm = self._owned(session, principal, alarm_id)
        apply_status_change(
            alarm,
            dto.status.value if dto.status is not None else None,
            dto.snoozed_until,
        )
        session.commit()
        session.refresh(alarm)
        logger.info("alarm.updated", extra={"alarm_id": str(alarm.id), "status": alarm.status})

        self.hub.emit(
            "alarm:updated",
            {"alarmId": alarm.id, "status": alarm.status, "userId": principal.user_id},
            to=[caller_room(principal.user_id)],
        )
        return AlarmRead.model_validate(alarm)

    def delete(self, session: Session, principal: Principal, alarm_id: uuid.UUID) -> AlarmDeleteResult:
        alarm = self._owned(session, principal, alarm_id)
        session.delete(alarm)
        session.commit()
        logger.info("alarm.deleted", extra={"alarm_id": str(alarm_id)})

        self.hub.emit(
            "alarm:deleted",
            {"alarmId": alarm_id, "userId": principal.user_id},
            to=[caller_room(principal.user_id)],
        )
        return AlarmDeleteResult(deleted_alarm_id=alarm_id, message="Alarm deleted successfully")

    def get_for_lead(self, session: Session, principal: Principal, lead_id: uuid.UUID) -> AlarmRead | None:
        stmt = (
            select(Alarm)
            .where(
                Alarm.lead_id == lead_id,
                Alarm.user_id == principal.user_id,
                Alarm.status.in_(PENDING_ALARM_STATUSES),
            )
            .order_by(Alarm.alarm_time.asc())
            .limit(1)
        )
        alarm = session.scalar(stmt)
        return AlarmRead.model_validate(alarm) if alarm is not None else None

    def _owned(self, session: Session, principal: Principal, alarm_id: uuid.UUID) -> Alarm:
        alarm = session.scalar(select(Alarm).where(Alarm.id == alarm_id, Alarm.user_id == principal.user_id))
        if alarm is None:
            raise NotFoundError("Alarm not found", details={"alarm_id": str(alarm_id)})
        return alarm


alarm_scheduler = AlarmScheduler()
