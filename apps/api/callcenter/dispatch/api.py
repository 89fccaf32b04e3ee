from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from callcenter.authz.gate import require_permission
from callcenter.authz.principal import Principal
from callcenter.core.database import get_db
from callcenter.core.errors import DomainError, domain_error_response
from callcenter.dispatch.schemas import CallTaskAck, CallTaskComplete, CallTaskCreate, CallTaskRead, RecordingRead
from callcenter.dispatch.service import call_task_dispatcher


router = APIRouter(prefix="/api/v1/calls/tasks", tags=["calls"])

CALLS_PERMISSION = "leads.detail.calls"
require_calls = require_permission(CALLS_PERMISSION)
require_calls_or_automation = require_permission(CALLS_PERMISSION, allow_automation=True)


@router.post("", response_model=CallTaskRead, status_code=status.HTTP_201_CREATED)
def create_call_task(
    request: Request,
    dto: CallTaskCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_calls_or_automation),
) -> CallTaskRead | JSONResponse:
    try:
        return call_task_dispatcher.create_task(db, principal, dto)
    except DomainError as exc:
        return domain_error_response(request, exc, code="call_task_create_failed")


@router.get("", response_model=list[CallTaskRead])
def list_call_tasks(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_calls),
) -> list[CallTaskRead]:
    return call_task_dispatcher.list_tasks(db, principal)


@router.get("/pending", response_model=list[CallTaskRead])
def list_pending_call_tasks(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_calls),
) -> list[CallTaskRead]:
    return call_task_dispatcher.list_pending(db, principal)


@router.patch("/{task_id}/ack", response_model=CallTaskRead)
def acknowledge_call_task(
    request: Request,
    task_id: uuid.UUID,
    dto: CallTaskAck | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_calls),
) -> CallTaskRead | JSONResponse:
    try:
        return call_task_dispatcher.acknowledge(db, principal, task_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc, code="call_task_ack_failed")


@router.patch("/{task_id}/complete", response_model=CallTaskRead)
def complete_call_task(
    request: Request,
    task_id: uuid.UUID,
    dto: CallTaskComplete,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_calls),
) -> CallTaskRead | JSONResponse:
    try:
        return call_task_dispatcher.complete(db, principal, task_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc, code="call_task_complete_failed")


@router.post("/{task_id}/recording", response_model=RecordingRead, status_code=status.HTTP_201_CREATED)
def upload_call_recording(
    request: Request,
    task_id: uuid.UUID,
    file: UploadFile = File(...),
    duration: int = Form(default=0),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_calls),
) -> RecordingRead | JSONResponse:
    try:
        content = file.file.read()
        return call_task_dispatcher.attach_recording(db, principal, task_id, content, file.filename, duration)
    except DomainError as exc:
        return domain_error_response(request, exc, code="call_task_recording_failed")
