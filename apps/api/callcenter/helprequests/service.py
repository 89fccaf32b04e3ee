from __future__ import annotations

import logging
import uuid

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from callcenter.authz.principal import Principal
from callcenter.core.clock import utcnow
from callcenter.core.errors import ConflictError, NotFoundError, ValidationError
from callcenter.crm import activity
from callcenter.crm.models import Lead
from callcenter.crm.repositories import (
    LeadRepository,
    UserRepository,
    lead_display_name,
    lead_repository,
    user_repository,
    user_summary,
)
from callcenter.helprequests.models import HelpRequest, HelpRequestAction, HelpRequestStatus, HelpRequestType
from callcenter.helprequests.schemas import (
    CallerSummary,
    HelpRequestCreate,
    HelpRequestListItem,
    HelpRequestRead,
    LeadSummary,
)
from callcenter.metrics import observe_help_request
from callcenter.realtime import RealtimeHub, caller_room, realtime_hub


logger = logging.getLogger("callcenter.helprequests")

_VALID_TYPES = {item.value for item in HelpRequestType}
_VALID_ACTIONS = {item.value for item in HelpRequestAction}
_VALID_STATUSES = {item.value for item in HelpRequestStatus}


class HelpRequestCoordinator:
    """Transfer/share requests between callers for a single lead.

    At most one pending request may exist per (lead, target caller); the
    partial unique index ``uq_help_request_pending_target`` enforces it even
    when two creates race past the read-side check.
    """

    def __init__(
        self,
        hub: RealtimeHub = realtime_hub,
        leads: LeadRepository = lead_repository,
        users: UserRepository = user_repository,
    ) -> None:
        self.hub = hub
        self.leads = leads
        self.users = users

    def create(self, session: Session, principal: Principal, dto: HelpRequestCreate) -> HelpRequestRead:
        request_type = dto.type.strip().lower()
        if request_type not in _VALID_TYPES:
            raise ValidationError("type must be 'transfer' or 'share'", details={"type": dto.type})
        if dto.to_caller_id == principal.user_id:
            raise ValidationError("Cannot send a help request to yourself", details={"to_caller_id": str(dto.to_caller_id)})

        lead = self.leads.find_by_id(session, dto.lead_id)
        if lead is None or not (principal.is_admin_equivalent or self.leads.is_accessible_to(lead, principal.user_id)):
            raise NotFoundError("Lead not found or not assigned to you", details={"lead_id": str(dto.lead_id)})

        target = self.users.find_by_id(session, dto.to_caller_id)
        if target is None or not target.is_active:
            raise NotFoundError("Target caller not found", details={"to_caller_id": str(dto.to_caller_id)})

        if self._find_pending(session, lead.id, target.id) is not None:
            raise self._duplicate_error(lead.id, target.id)

        help_request = HelpRequest(
            lead_id=lead.id,
            from_caller_id=principal.user_id,
            to_caller_id=target.id,
            type=request_type,
            reason=dto.reason.strip(),
            status=HelpRequestStatus.PENDING.value,
        )
        session.add(help_request)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise self._duplicate_error(dto.lead_id, dto.to_caller_id)

        observe_help_request(request_type, HelpRequestStatus.PENDING.value)
        logger.info("help_request.created", extra={"request_id": str(help_request.id), "lead_id": str(lead.id)})

        self.hub.emit(
            "help:request:new",
            {
                "requestId": help_request.id,
                "lead": {"id": lead.id, "name": lead_display_name(lead)},
                "fromCaller": {"id": principal.user_id, "name": principal.name},
                "type": request_type,
                "reason": help_request.reason,
            },
            to=[caller_room(target.id)],
        )
        return self._to_read(help_request)

    def list_incoming(
        self,
        session: Session,
        principal: Principal,
        status: str | None = HelpRequestStatus.PENDING.value,
    ) -> list[HelpRequestListItem]:
        rows = self._list(session, HelpRequest.to_caller_id == principal.user_id, status)
        users = self.users.find_many(session, {row.from_caller_id for row, _ in rows})
        return [
            self._to_list_item(row, lead, from_caller=CallerSummary.model_validate(user_summary(users.get(row.from_caller_id), row.from_caller_id)))
            for row, lead in rows
        ]

    def list_sent(
        self,
        session: Session,
        principal: Principal,
        status: str | None = HelpRequestStatus.PENDING.value,
    ) -> list[HelpRequestListItem]:
        rows = self._list(session, HelpRequest.from_caller_id == principal.user_id, status)
        users = self.users.find_many(session, {row.to_caller_id for row, _ in rows})
        return [
            self._to_list_item(row, lead, to_caller=CallerSummary.model_validate(user_summary(users.get(row.to_caller_id), row.to_caller_id)))
            for row, lead in rows
        ]

    def respond(self, session: Session, principal: Principal, request_id: uuid.UUID, action: str) -> HelpRequestRead:
        normalized = action.strip().lower()
        if normalized not in _VALID_ACTIONS:
            raise ValidationError("action must be 'accept' or 'reject'", details={"action": action})

        help_request = session.scalar(
            select(HelpRequest).where(
                HelpRequest.id == request_id,
                HelpRequest.to_caller_id == principal.user_id,
                HelpRequest.status == HelpRequestStatus.PENDING.value,
            )
        )
        if help_request is None:
            raise NotFoundError("Help request not found or already handled", details={"request_id": str(request_id)})

        new_status = (
            HelpRequestStatus.ACCEPTED.value if normalized == HelpRequestAction.ACCEPT.value else HelpRequestStatus.REJECTED.value
        )
        now = utcnow()
        result = session.execute(
            update(HelpRequest)
            .where(
                HelpRequest.id == request_id,
                HelpRequest.to_caller_id == principal.user_id,
                HelpRequest.status == HelpRequestStatus.PENDING.value,
            )
            .values(status=new_status, responded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise NotFoundError("Help request not found or already handled", details={"request_id": str(request_id)})

        if new_status == HelpRequestStatus.ACCEPTED.value:
            lead = self.leads.find_by_id(session, help_request.lead_id)
            if lead is not None:
                self._apply_acceptance(session, principal, help_request, lead)

        session.commit()
        session.refresh(help_request)
        observe_help_request(help_request.type, new_status)
        logger.info("help_request.responded", extra={"request_id": str(request_id), "status": new_status})

        self.hub.emit(
            "help:request:responded",
            {
                "requestId": help_request.id,
                "leadId": help_request.lead_id,
                "action": normalized,
                "status": new_status,
                "type": help_request.type,
                "byCaller": {"id": principal.user_id, "name": principal.name},
            },
            to=[caller_room(help_request.from_caller_id)],
        )
        return self._to_read(help_request)

    def _apply_acceptance(self, session: Session, principal: Principal, help_request: HelpRequest, lead: Lead) -> None:
        before = {"assigned_to": str(lead.assigned_to) if lead.assigned_to else None, "shared_with": sorted(str(item) for item in lead.shared_with)}
        if help_request.type == HelpRequestType.SHARE.value:
            self.leads.grant_shared_access(lead, principal.user_id)
            action = "access_shared"
            description = f"Lead shared with {principal.name or principal.user_id}"
        else:
            self.leads.revoke_shared_access(lead, help_request.from_caller_id)
            lead.assigned_to = principal.user_id
            action = "ownership_transferred"
            description = f"Lead transferred to {principal.name or principal.user_id}"
        self.leads.save(session, lead)
        activity.record(
            session,
            lead_id=lead.id,
            actor_id=principal.user_id,
            action=action,
            description=description,
            before=before,
            after={"assigned_to": str(lead.assigned_to) if lead.assigned_to else None, "shared_with": sorted(str(item) for item in lead.shared_with)},
            meta={"help_request_id": str(help_request.id)},
        )

    def _find_pending(self, session: Session, lead_id: uuid.UUID, to_caller_id: uuid.UUID) -> HelpRequest | None:
        return session.scalar(
            select(HelpRequest).where(
                HelpRequest.lead_id == lead_id,
                HelpRequest.to_caller_id == to_caller_id,
                HelpRequest.status == HelpRequestStatus.PENDING.value,
            )
        )

    def _list(
        self, session: Session, owner_clause: ColumnElement[bool], status: str | None
    ) -> list[tuple[HelpRequest, Lead]]:
        stmt = select(HelpRequest, Lead).join(Lead, HelpRequest.lead_id == Lead.id).where(owner_clause)
        if status is not None:
            if status not in _VALID_STATUSES:
                raise ValidationError(f"Unknown status filter: {status}", details={"status": status})
            stmt = stmt.where(HelpRequest.status == status)
        stmt = stmt.order_by(HelpRequest.created_at.desc())
        return [(row, lead) for row, lead in session.execute(stmt).all()]

    def _to_list_item(
        self,
        row: HelpRequest,
        lead: Lead,
        from_caller: CallerSummary | None = None,
        to_caller: CallerSummary | None = None,
    ) -> HelpRequestListItem:
        return HelpRequestListItem(
            id=row.id,
            type=row.type,
            reason=row.reason,
            status=row.status,
            created_at=row.created_at,
            responded_at=row.responded_at,
            lead=LeadSummary(id=lead.id, name=lead_display_name(lead), status=lead.status),
            from_caller=from_caller,
            to_caller=to_caller,
        )

    def _duplicate_error(self, lead_id: uuid.UUID, to_caller_id: uuid.UUID) -> ConflictError:
        return ConflictError(
            "A pending request already exists for this lead and caller",
            details={"lead_id": str(lead_id), "to_caller_id": str(to_caller_id)},
        )

    def _to_read(self, row: HelpRequest) -> HelpRequestRead:
        return HelpRequestRead(
            id=row.id,
            lead_id=row.lead_id,
            from_caller_id=row.from_caller_id,
            to_caller_id=row.to_caller_id,
            type=row.type,
            reason=row.reason,
            status=row.status,
            created_at=row.created_at,
            responded_at=row.responded_at,
        )


help_request_coordinator = HelpRequestCoordinator()
