from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from callcenter.authz.principal import Principal
from callcenter.core.clock import as_utc, utcnow
from callcenter.core.config import get_settings
from callcenter.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from callcenter.crm import activity
from callcenter.crm.models import CallLog, CallOutcome, Lead
from callcenter.crm.repositories import LeadRepository, UserRepository, lead_repository, user_repository
from callcenter.dispatch.models import OPEN_TASK_STATES, CallTask, CallTaskState
from callcenter.dispatch.schemas import CallTaskAck, CallTaskComplete, CallTaskCreate, CallTaskRead, RecordingRead
from callcenter.dispatch.storage import store_recording
from callcenter.metrics import observe_call_task
from callcenter.otel import get_tracer
from callcenter.realtime import RealtimeHub, caller_room, realtime_hub


logger = logging.getLogger("callcenter.dispatch")
tracer = get_tracer("callcenter.dispatch")

_STATUS_BY_OUTCOME = {
    CallOutcome.CONNECTED.value: "contacted",
    CallOutcome.INTERESTED.value: "interested",
    CallOutcome.NOT_INTERESTED.value: "not_interested",
    CallOutcome.CONVERTED.value: "converted",
}
_RETRY_OUTCOMES = {
    CallOutcome.NO_ANSWER.value,
    CallOutcome.BUSY.value,
    CallOutcome.SWITCHED_OFF.value,
    CallOutcome.CALLBACK.value,
    CallOutcome.VOICEMAIL.value,
}


def apply_call_outcome(lead: Lead, outcome: str, called_at: datetime) -> None:
    lead.call_count = (lead.call_count or 0) + 1
    lead.last_call_at = called_at
    lead.last_call_outcome = outcome
    if outcome in _STATUS_BY_OUTCOME:
        lead.status = _STATUS_BY_OUTCOME[outcome]
    elif outcome in _RETRY_OUTCOMES and lead.status == "new":
        lead.status = "in_progress"


class CallTaskDispatcher:
    def __init__(
        self,
        hub: RealtimeHub = realtime_hub,
        leads: LeadRepository = lead_repository,
        users: UserRepository = user_repository,
    ) -> None:
        self.hub = hub
        self.leads = leads
        self.users = users

    def create_task(self, session: Session, principal: Principal, dto: CallTaskCreate) -> CallTaskRead:
        lead = self.leads.find_by_id(session, dto.lead_id)
        if lead is None:
            raise NotFoundError("Lead not found", details={"lead_id": str(dto.lead_id)})

        caller_id = self._resolve_target_caller(session, principal, dto)
        if not principal.is_admin_equivalent and lead.assigned_to != principal.user_id:
            raise ForbiddenError(
                "You can only dispatch calls for leads assigned to you",
                details={"lead_id": str(lead.id)},
            )

        with tracer.start_as_current_span("call_task.create") as span:
            task = CallTask(
                lead_id=lead.id,
                caller_id=caller_id,
                phone_number=dto.phone_number.strip(),
                state=CallTaskState.CREATED.value,
                created_by=None if principal.is_automation else principal.user_id,
            )
            session.add(task)
            session.commit()
            span.set_attribute("call_task.id", str(task.id))
            observe_call_task(CallTaskState.CREATED.value)
            logger.info("call_task.created", extra={"task_id": str(task.id), "user_id": str(caller_id)})

            delivered = self.hub.emit(
                "call:request",
                {
                    "taskId": task.id,
                    "leadId": task.lead_id,
                    "phoneNumber": task.phone_number,
                    "createdAt": task.created_at,
                },
                to=[caller_room(caller_id)],
            )
            if delivered:
                task.pushed_at = utcnow()
                session.commit()
        return CallTaskRead.model_validate(task)

    def list_pending(self, session: Session, principal: Principal) -> list[CallTaskRead]:
        rows = session.scalars(
            select(CallTask)
            .where(CallTask.caller_id == principal.user_id, CallTask.state.in_(OPEN_TASK_STATES))
            .order_by(CallTask.created_at.asc())
        ).all()
        return [CallTaskRead.model_validate(row) for row in rows]

    def list_tasks(self, session: Session, principal: Principal, limit: int | None = None) -> list[CallTaskRead]:
        bounded = limit if limit is not None else get_settings().call_task_history_limit
        rows = session.scalars(
            select(CallTask)
            .where(CallTask.caller_id == principal.user_id)
            .order_by(CallTask.created_at.desc())
            .limit(bounded)
        ).all()
        return [CallTaskRead.model_validate(row) for row in rows]

    def acknowledge(
        self,
        session: Session,
        principal: Principal,
        task_id: uuid.UUID,
        dto: CallTaskAck | None = None,
    ) -> CallTaskRead:
        now = utcnow()
        values: dict[str, Any] = {"state": CallTaskState.ACKNOWLEDGED.value, "ack_at": now, "updated_at": now}
        if dto is not None and dto.device_info is not None:
            values["device_info"] = dto.device_info

        result = session.execute(
            update(CallTask)
            .where(
                CallTask.id == task_id,
                CallTask.caller_id == principal.user_id,
                CallTask.state == CallTaskState.CREATED.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise NotFoundError("Call task not found", details={"task_id": str(task_id)})
        session.commit()

        observe_call_task(CallTaskState.ACKNOWLEDGED.value)
        logger.info("call_task.acknowledged", extra={"task_id": str(task_id)})
        return CallTaskRead.model_validate(self._load(session, task_id))

    def complete(
        self,
        session: Session,
        principal: Principal,
        task_id: uuid.UUID,
        dto: CallTaskComplete,
    ) -> CallTaskRead:
        task = session.scalar(select(CallTask).where(CallTask.id == task_id, CallTask.caller_id == principal.user_id))
        if task is None:
            raise NotFoundError("Call task not found", details={"task_id": str(task_id)})
        if task.state == CallTaskState.COMPLETED.value:
            raise ConflictError("Call task is already completed", details={"task_id": str(task_id)})

        lead = self.leads.find_by_id(session, task.lead_id)
        if lead is None:
            raise NotFoundError("Lead not found", details={"lead_id": str(task.lead_id)})

        now = utcnow()
        started_at = as_utc(dto.started_at) if dto.started_at is not None else (task.started_at or now)
        ended_at = as_utc(dto.ended_at) if dto.ended_at is not None else now
        outcome = dto.outcome.value if dto.outcome is not None else ""

        with tracer.start_as_current_span("call_task.complete"):
            result = session.execute(
                update(CallTask)
                .where(
                    CallTask.id == task_id,
                    CallTask.caller_id == principal.user_id,
                    CallTask.state.in_(OPEN_TASK_STATES),
                )
                .values(
                    state=CallTaskState.COMPLETED.value,
                    completed_at=now,
                    started_at=started_at,
                    ended_at=ended_at,
                    duration_sec=dto.duration_sec,
                    outcome=outcome,
                    notes=dto.notes,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError("Call task is already completed", details={"task_id": str(task_id)})

            before = {"status": lead.status, "call_count": lead.call_count}
            apply_call_outcome(lead, outcome, now)
            self.leads.save(session, lead)

            call_log = CallLog(
                lead_id=lead.id,
                caller_id=principal.user_id,
                task_id=task_id,
                duration_sec=dto.duration_sec,
                outcome=outcome,
                notes=dto.notes,
                recording_url=task.recording_path,
                created_at=ended_at,
            )
            session.add(call_log)
            activity.record(
                session,
                lead_id=lead.id,
                actor_id=principal.user_id,
                action="call_logged",
                description=f"Call via mobile: outcome={outcome}, duration={dto.duration_sec}s",
                before=before,
                after={"status": lead.status, "call_count": lead.call_count},
                meta={"call_task_id": str(task_id), "phone_number": task.phone_number},
            )
            session.commit()

        observe_call_task(CallTaskState.COMPLETED.value)
        logger.info("call_task.completed", extra={"task_id": str(task_id), "status": outcome})

        self.hub.emit(
            "call:logged",
            {
                "leadId": lead.id,
                "call": {
                    "id": call_log.id,
                    "durationSec": call_log.duration_sec,
                    "outcome": outcome,
                    "notes": call_log.notes,
                    "recordingUrl": call_log.recording_url,
                    "createdAt": call_log.created_at,
                },
                "lead": {
                    "id": lead.id,
                    "status": lead.status,
                    "callCount": lead.call_count,
                    "lastCallAt": lead.last_call_at,
                    "lastCallOutcome": lead.last_call_outcome,
                },
            },
            to=[caller_room(principal.user_id)],
        )
        return CallTaskRead.model_validate(self._load(session, task_id))

    def attach_recording(
        self,
        session: Session,
        principal: Principal,
        task_id: uuid.UUID,
        content: bytes,
        original_name: str | None,
        duration: int = 0,
    ) -> RecordingRead:
        task = session.scalar(select(CallTask).where(CallTask.id == task_id, CallTask.caller_id == principal.user_id))
        if task is None:
            raise NotFoundError("Call task not found", details={"task_id": str(task_id)})
        if not content:
            raise ValidationError("No recording file provided", details={"missing": ["file"]})

        stored = store_recording(content, original_name)
        now = utcnow()
        task.recording_path = stored.path
        task.recording_filename = stored.filename
        task.recording_size = stored.size
        task.recording_duration = max(0, duration)
        task.recording_uploaded_at = now

        call_log = self._call_log_for_recording(session, task)
        if call_log is not None and not call_log.recording_url:
            call_log.recording_url = stored.path
        else:
            call_log = None

        activity.record(
            session,
            lead_id=task.lead_id,
            actor_id=principal.user_id,
            action="recording_uploaded",
            description=f"Call recording uploaded ({stored.size} bytes)",
            meta={"call_task_id": str(task.id), "filename": stored.filename},
        )
        session.commit()
        logger.info("call_task.recording_attached", extra={"task_id": str(task.id)})

        return RecordingRead(
            task_id=task.id,
            filename=stored.filename,
            path=stored.path,
            size=stored.size,
            duration=task.recording_duration or 0,
            uploaded_at=now,
            call_log_id=call_log.id if call_log is not None else None,
        )

    def _resolve_target_caller(self, session: Session, principal: Principal, dto: CallTaskCreate) -> uuid.UUID:
        if dto.caller_id is None or dto.caller_id == principal.user_id:
            if principal.is_automation:
                raise ValidationError("caller_id is required for automation requests", details={"missing": ["caller_id"]})
            return principal.user_id

        if not principal.is_admin_equivalent:
            raise ForbiddenError(
                "Only administrators may dispatch calls to another caller",
                details={"caller_id": str(dto.caller_id)},
            )
        target = self.users.find_by_id(session, dto.caller_id)
        if target is None or not target.is_active:
            raise NotFoundError("Caller not found", details={"caller_id": str(dto.caller_id)})
        return target.id

    def _call_log_for_recording(self, session: Session, task: CallTask) -> CallLog | None:
        linked = session.scalar(select(CallLog).where(CallLog.task_id == task.id))
        if linked is not None:
            return linked
        return session.scalar(
            select(CallLog)
            .where(CallLog.lead_id == task.lead_id, CallLog.caller_id == task.caller_id)
            .order_by(CallLog.created_at.desc())
            .limit(1)
        )

    def _load(self, session: Session, task_id: uuid.UUID) -> CallTask:
        task = session.get(CallTask, task_id, populate_existing=True)
        if task is None:
            raise NotFoundError("Call task not found", details={"task_id": str(task_id)})
        return task


call_task_dispatcher = CallTaskDispatcher()
