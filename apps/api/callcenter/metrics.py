from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

realtime_emits_total = Counter(
    "realtime_emits_total",
    "Realtime emits by event and outcome",
    ["event", "outcome"],
)

realtime_deliveries_total = Counter(
    "realtime_deliveries_total",
    "Realtime messages handed to live connections",
    ["event"],
)

realtime_connections = Gauge(
    "realtime_connections",
    "Open realtime connections",
    ["authenticated"],
)

authz_denials_total = Counter(
    "authz_denials_total",
    "Authorization denials by first required key",
    ["permission"],
)

call_tasks_total = Counter(
    "call_tasks_total",
    "Call task transitions by resulting state",
    ["state"],
)

help_requests_total = Counter(
    "help_requests_total",
    "Help request transitions by type and status",
    ["type", "status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_realtime_emit(event: str, outcome: str, delivered: int = 0) -> None:
    realtime_emits_total.labels(event=event, outcome=outcome).inc()
    if delivered > 0:
        realtime_deliveries_total.labels(event=event).inc(delivered)


def set_realtime_connections(authenticated: int, anonymous: int) -> None:
    realtime_connections.labels(authenticated="true").set(authenticated)
    realtime_connections.labels(authenticated="false").set(anonymous)


def observe_authz_denial(permission: str) -> None:
    authz_denials_total.labels(permission=permission).inc()


def observe_call_task(state: str) -> None:
    call_tasks_total.labels(state=state).inc()


def observe_help_request(request_type: str, status: str) -> None:
    help_requests_total.labels(type=request_type, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
