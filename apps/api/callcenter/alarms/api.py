from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from callcenter.alarms.schemas import AlarmCount, AlarmCreate, AlarmDeleteResult, AlarmRead, AlarmUpdate
from callcenter.alarms.service import alarm_scheduler
from callcenter.authz.gate import require_permission
from callcenter.authz.principal import Principal
from callcenter.core.database import get_db
from callcenter.core.errors import DomainError, domain_error_response


router = APIRouter(prefix="/api/v1/alarms", tags=["alarms"])

require_alarm_view = require_permission("alarms.alarms.view")
require_alarm_create = require_permission("alarms.alarms.create")
require_alarm_edit = require_permission("alarms.alarms.edit")
require_alarm_delete = require_permission("alarms.alarms.delete")


@router.post("", response_model=AlarmRead, status_code=status.HTTP_201_CREATED)
def create_alarm(
    request: Request,
    dto: AlarmCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_alarm_create),
) -> AlarmRead | JSONResponse:
    try:
        return alarm_scheduler.create(db, principal, dto)
    except DomainError as exc:
        return domain_error_response(request, exc, code="alarm_create_failed")


@router.get("", response_model=list[AlarmRead])
def list_alarms(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_alarm_view),
) -> list[AlarmRead] | JSONResponse:
    try:
        return alarm_scheduler.list_alarms(db, principal, status_filter, limit)
    except DomainError as exc:
        return domain_error_response(request, exc, code="alarm_list_failed")


@router.get("/count", response_model=AlarmCount)
def count_active_alarms(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_alarm_view),
) -> AlarmCount:
    return AlarmCount(count=alarm_scheduler.count_active(db, principal))


@router.get("/lead/{lead_id}", response_model=AlarmRead | None)
def get_lead_alarm(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_alarm_view),
) -> AlarmRead | None:
    return alarm_scheduler.get_for_lead(db, principal, lead_id)


@router.patch("/{alarm_id}", response_model=AlarmRead)
def update_alarm(
    request: Request,
    alarm_id: uuid.UUID,
    dto: AlarmUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_alarm_edit),
) -> AlarmRead | JSONResponse:
    try:
        return alarm_scheduler.update(db, principal, alarm_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc, code="alarm_update_failed")


@router.delete("/{alarm_id}", response_model=AlarmDeleteResult)
def delete_alarm(
    request: Request,
    alarm_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_alarm_delete),
) -> AlarmDeleteResult | JSONResponse:
    try:
        return alarm_scheduler.delete(db, principal, alarm_id)
    except DomainError as exc:
        return domain_error_response(request, exc, code="alarm_delete_failed")
