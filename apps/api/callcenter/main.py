from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from callcenter.api.routes import router as api_router
from callcenter.authz.roles import migrate_legacy_role_refs
from callcenter.core.config import get_settings
from callcenter.core.context import RequestContextMiddleware
from callcenter.core.database import SessionLocal
from callcenter.core.errors import register_exception_handlers
from callcenter.logging import configure_logging
from callcenter.middleware.correlation_id import CorrelationIdMiddleware
from callcenter.middleware.rate_limit import MutationRateLimitMiddleware
from callcenter.middleware.request_logging import RequestLoggingMiddleware
from callcenter.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("callcenter.lifecycle")


def _seed_roles() -> None:
    session = SessionLocal()
    try:
        migrated = migrate_legacy_role_refs(session)
    finally:
        session.close()
    logger.info("system.roles_seeded", extra={"reassigned": migrated})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.seed_roles_on_startup:
        _seed_roles()
    logger.info("system.started", extra={"event": "system.started"})
    yield
    logger.info("system.stopped", extra={"event": "system.stopped"})


app = FastAPI(title="Callcenter API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)
app.include_router(api_router)

settings = get_settings()
setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
