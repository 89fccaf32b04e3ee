from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from callcenter.alarms.api import router as alarms_router
from callcenter.authz.api import router as roles_router
from callcenter.authz.gate import require_permission
from callcenter.authz.principal import Principal
from callcenter.core.config import get_settings
from callcenter.dispatch.api import router as call_tasks_router
from callcenter.helprequests.api import router as help_requests_router
from callcenter.metrics import generate_metrics_payload, metrics_content_type
from callcenter.realtime.api import router as realtime_router

router = APIRouter()
router.include_router(roles_router)
router.include_router(call_tasks_router)
router.include_router(help_requests_router)
router.include_router(alarms_router)
router.include_router(realtime_router)

require_system_admin = require_permission(roles=("admin",))


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(_principal: Principal = Depends(require_system_admin)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
