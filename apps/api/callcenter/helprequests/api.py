from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from callcenter.authz.gate import require_permission
from callcenter.authz.principal import Principal
from callcenter.core.database import get_db
from callcenter.core.errors import DomainError, domain_error_response
from callcenter.helprequests.schemas import HelpRequestCreate, HelpRequestListItem, HelpRequestRead, HelpRequestRespond
from callcenter.helprequests.service import help_request_coordinator


router = APIRouter(prefix="/api/v1/help-requests", tags=["help-requests"])

require_help_request = require_permission("leads.detail.helpRequest")


def _status_filter(value: str) -> str | None:
    normalized = value.strip().lower()
    return None if normalized == "all" else normalized


@router.post("", response_model=HelpRequestRead, status_code=status.HTTP_201_CREATED)
def create_help_request(
    request: Request,
    dto: HelpRequestCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_help_request),
) -> HelpRequestRead | JSONResponse:
    try:
        return help_request_coordinator.create(db, principal, dto)
    except DomainError as exc:
        return domain_error_response(request, exc, code="help_request_create_failed")


@router.get("", response_model=list[HelpRequestListItem])
def list_incoming_help_requests(
    request: Request,
    status_filter: str = Query(default="pending", alias="status"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_help_request),
) -> list[HelpRequestListItem] | JSONResponse:
    try:
        return help_request_coordinator.list_incoming(db, principal, _status_filter(status_filter))
    except DomainError as exc:
        return domain_error_response(request, exc, code="help_request_list_failed")


@router.get("/sent", response_model=list[HelpRequestListItem])
def list_sent_help_requests(
    request: Request,
    status_filter: str = Query(default="pending", alias="status"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_help_request),
) -> list[HelpRequestListItem] | JSONResponse:
    try:
        return help_request_coordinator.list_sent(db, principal, _status_filter(status_filter))
    except DomainError as exc:
        return domain_error_response(request, exc, code="help_request_list_failed")


@router.patch("/{request_id}/respond", response_model=HelpRequestRead)
def respond_to_help_request(
    request: Request,
    request_id: uuid.UUID,
    dto: HelpRequestRespond,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_help_request),
) -> HelpRequestRead | JSONResponse:
    try:
        return help_request_coordinator.respond(db, principal, request_id, dto.action)
    except DomainError as exc:
        return domain_error_response(request, exc, code="help_request_respond_failed")
