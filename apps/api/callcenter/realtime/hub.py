"""Room-addressed push channel.

Every authenticated connection joins exactly one room, ``caller:<user_id>``.
``emit`` hands messages to live connections without waiting for them to be
written to the socket and never raises: delivery is best effort and the
database stays the source of truth.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from callcenter.authz.principal import Principal
from callcenter.context import get_correlation_id
from callcenter.metrics import observe_realtime_emit, set_realtime_connections
from callcenter.otel import get_tracer


logger = logging.getLogger("callcenter.realtime")
tracer = get_tracer("callcenter.realtime")

Sender = Callable[[dict[str, Any]], None]


def caller_room(user_id: uuid.UUID | str) -> str:
    return f"caller:{user_id}"


@dataclass
class Connection:
    connection_id: str
    sender: Sender
    principal: Principal | None = None
    room: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.principal is not None and self.principal.is_admin_equivalent


@dataclass
class EmitRecord:
    event: str
    payload: dict[str, Any]
    rooms: list[str]
    include_admins: bool
    delivered: int
    correlation_id: str | None = None
    failures: list[str] = field(default_factory=list)


class RealtimeHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self.published: deque[EmitRecord] = deque(maxlen=1000)

    def connect(self, principal: Principal | None, sender: Sender) -> Connection:
        connection = Connection(connection_id=str(uuid.uuid4()), sender=sender, principal=principal)
        if principal is not None and not principal.is_automation:
            connection.room = caller_room(principal.user_id)
        with self._lock:
            self._connections[connection.connection_id] = connection
            if connection.room is not None:
                self._rooms.setdefault(connection.room, set()).add(connection.connection_id)
            self._publish_gauge()
        logger.info(
            "realtime.connected",
            extra={"user_id": str(principal.user_id) if principal else None, "rooms": [connection.room]},
        )
        return connection

    def disconnect(self, connection: Connection) -> None:
        with self._lock:
            self._connections.pop(connection.connection_id, None)
            if connection.room is not None:
                members = self._rooms.get(connection.room)
                if members is not None:
                    members.discard(connection.connection_id)
                    if not members:
                        self._rooms.pop(connection.room, None)
            self._publish_gauge()
        logger.info("realtime.disconnected", extra={"rooms": [connection.room]})

    def room_size(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def emit(
        self,
        event: str,
        payload: dict[str, Any],
        *,
        to: Iterable[str] = (),
        include_admins: bool = False,
        broadcast_on_zero: bool = False,
        exclude: Iterable[str] = (),
    ) -> int:
        """Push ``event`` to the given rooms; returns how many connections received it.

        Connections bound to a room listed in ``exclude`` are skipped even when
        ``include_admins`` or ``broadcast_on_zero`` would reach them.
        """
        rooms = [room for room in dict.fromkeys(to) if room]
        excluded = {room for room in exclude if room}
        try:
            with tracer.start_as_current_span("realtime.emit") as span:
                span.set_attribute("realtime.event", event)
                span.set_attribute("realtime.rooms", len(rooms))
                return self._emit(event, payload, rooms, include_admins, broadcast_on_zero, excluded)
        except Exception as exc:
            observe_realtime_emit(event, "failed")
            logger.error("realtime.emit_failed", exc_info=True, extra={"event": event, "rooms": rooms, "error": str(exc)})
            return 0

    def _emit(
        self,
        event: str,
        payload: dict[str, Any],
        rooms: list[str],
        include_admins: bool,
        broadcast_on_zero: bool,
        excluded: set[str],
    ) -> int:
        if not rooms and not include_admins and not broadcast_on_zero:
            observe_realtime_emit(event, "skipped")
            logger.warning("realtime.emit_skipped", extra={"event": event, "rooms": rooms})
            self._record(event, payload, rooms, include_admins, 0, [])
            return 0

        with self._lock:
            room_sizes = {room: len(self._rooms.get(room, ())) for room in rooms}
            targets: dict[str, Connection] = {}
            for room in rooms:
                for connection_id in self._rooms.get(room, ()):
                    targets[connection_id] = self._connections[connection_id]
            if include_admins:
                for connection in self._connections.values():
                    if connection.is_admin:
                        targets[connection.connection_id] = connection
            if not rooms and broadcast_on_zero:
                targets.update(self._connections)
            if excluded:
                targets = {key: item for key, item in targets.items() if item.room not in excluded}

        message = {"event": event, "data": payload}
        delivered = 0
        failures: list[str] = []
        for connection in targets.values():
            try:
                connection.sender(message)
            except Exception as exc:
                failures.append(connection.connection_id)
                logger.warning(
                    "realtime.deliver_failed",
                    extra={"event": event, "rooms": [connection.room], "error": str(exc)},
                )
                continue
            delivered += 1

        observe_realtime_emit(event, "delivered" if delivered else "undelivered", delivered)
        logger.info(
            "realtime.emit",
            extra={
                "event": event,
                "rooms": rooms,
                "room_sizes": room_sizes,
                "delivered": delivered,
                "payload_keys": sorted(payload.keys()),
            },
        )
        self._record(event, payload, rooms, include_admins, delivered, failures)
        return delivered

    def _record(
        self,
        event: str,
        payload: dict[str, Any],
        rooms: list[str],
        include_admins: bool,
        delivered: int,
        failures: list[str],
    ) -> None:
        self.published.append(
            EmitRecord(
                event=event,
                payload=payload,
                rooms=rooms,
                include_admins=include_admins,
                delivered=delivered,
                correlation_id=get_correlation_id(),
                failures=failures,
            )
        )

    def _publish_gauge(self) -> None:
        authenticated = sum(1 for item in self._connections.values() if item.room is not None)
        set_realtime_connections(authenticated, len(self._connections) - authenticated)


realtime_hub = RealtimeHub()
