from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from callcenter.authz.principal import Principal
from callcenter.core.auth import bearer_token, resolve_token_principal
from callcenter.core.config import get_settings
from callcenter.core.database import SessionLocal
from callcenter.core.errors import AuthenticationError
from callcenter.realtime.hub import Connection, realtime_hub


logger = logging.getLogger("callcenter.realtime")

router = APIRouter(tags=["realtime"])

# Opened for the handshake only and closed before the receive loop starts.
session_factory: sessionmaker[Session] = SessionLocal


def _authenticate(token: str) -> Principal | None:
    if not token:
        return None
    with session_factory() as session:
        try:
            return resolve_token_principal(session, token)
        except AuthenticationError as exc:
            logger.info("realtime.auth_rejected", extra={"error": exc.message})
            return None


async def _pump(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(jsonable_encoder(message))


def _debug(message: str, connection: Connection, **fields: Any) -> None:
    if not get_settings().realtime_debug:
        return
    principal = connection.principal
    logger.info(
        message,
        extra={
            "connection_id": connection.connection_id,
            "user_id": str(principal.user_id) if principal else None,
            "rooms": [connection.room],
            **fields,
        },
    )


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    await websocket.accept()
    principal = await run_in_threadpool(_authenticate, token or bearer_token(websocket))

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def sender(message: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, message)

    connection = realtime_hub.connect(principal, sender)
    _debug("realtime.client_connected", connection, role_name=principal.role_name if principal else None)
    queue.put_nowait({"event": "connected", "data": {"room": connection.room, "authenticated": principal is not None}})
    pump = asyncio.create_task(_pump(websocket, queue))
    close_code: int | None = None
    try:
        while True:
            message = await websocket.receive_json()
            event = message.get("event") if isinstance(message, dict) else None
            _debug("realtime.client_event", connection, event=event)
            if event == "ping":
                queue.put_nowait({"event": "pong", "data": {}})
            elif event == "whoami":
                queue.put_nowait({"event": "whoami", "data": {"room": connection.room}})
    except WebSocketDisconnect as exc:
        close_code = exc.code
    finally:
        realtime_hub.disconnect(connection)
        _debug("realtime.client_disconnected", connection, close_code=close_code)
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await pump
