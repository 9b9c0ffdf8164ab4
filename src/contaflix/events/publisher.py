"""WebSocket event publisher for the monitoring dashboard.

Dashboards connect to ``ws://<host>:<port>/events`` and receive worker events
as JSON. A connection can narrow what it receives by event type and by
tenant (accounting client id), either up front through the query string
(``/events?client_id=c1&type=close.completed``) or later with
``subscribe`` / ``unsubscribe`` messages. Recent events are buffered and
replayed to new connections, filtered the same way.
"""

import asyncio
import contextlib
import json
from collections import Counter, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs, urlsplit

import structlog
import websockets
from websockets.asyncio.server import Server, ServerConnection

from contaflix.config import get_settings
from contaflix.events.types import ContaflixEvent, EventType

logger = structlog.get_logger(__name__)

EventHook = Callable[[ContaflixEvent], None]


def _encode(payload: Any) -> str:
    # Decimal amounts and dates travel as strings.
    return json.dumps(payload, default=str, ensure_ascii=False)


def _event_types(values: Iterable[Any]) -> set[EventType]:
    types = set()
    for value in values:
        with contextlib.suppress(ValueError):
            types.add(EventType(value))
    return types


@dataclass(eq=False)
class DashboardConnection:
    """One connected dashboard and its filters.

    Empty filters mean "everything". Events without a tenant (queue batches,
    errors) pass the tenant filter.
    """

    websocket: ServerConnection
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_types: set[EventType] = field(default_factory=set)
    tenants: set[str] = field(default_factory=set)
    connection_id: str = ""

    def __post_init__(self) -> None:
        addr = self.websocket.remote_address
        if not self.connection_id and addr:
            self.connection_id = f"{addr[0]}:{addr[1]}" if isinstance(addr, tuple) else str(addr)

    # websockets v15+ connections must be usable as set members
    def __hash__(self) -> int:
        return hash(id(self.websocket))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, DashboardConnection) and self.websocket is other.websocket

    def wants(self, event: ContaflixEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.tenants and event.client_id:
            return event.client_id in self.tenants
        return True

    def apply_query(self, path: str) -> None:
        """Pre-subscribe from ``?client_id=`` and ``?type=`` parameters."""
        query = parse_qs(urlsplit(path).query)
        self.tenants.update(t for t in query.get("client_id", []) if t)
        self.event_types |= _event_types(query.get("type", []))

    def subscription(self) -> dict[str, Any]:
        return {
            "event_types": sorted(et.value for et in self.event_types),
            "client_ids": sorted(self.tenants),
        }


class EventPublisher:
    """WebSocket server broadcasting worker events.

    Usage:
        publisher = EventPublisher()
        await publisher.start()
        publisher.publish(close_started(client_id, "2026-09"))
        await publisher.stop()

    ``publish`` works without a running server: events are still buffered
    and hooks still fire, which is how the one-shot CLI commands use it.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        buffer_size: int = 100,
    ):
        settings = get_settings()
        self._host = host or settings.ws_host
        self._port = port or settings.ws_port
        self._buffer_size = buffer_size

        self._server: Server | None = None
        self._connections: set[DashboardConnection] = set()
        self._buffer: deque[ContaflixEvent] = deque(maxlen=buffer_size)
        self._hooks: list[EventHook] = []
        self._pending: set[asyncio.Task[None]] = set()

        self._logger = logger.bind(component="event_publisher")

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._connections)

    @property
    def recent_events(self) -> list[ContaflixEvent]:
        return list(self._buffer)

    def add_event_hook(self, hook: EventHook) -> None:
        """Call ``hook`` synchronously for every published event."""
        self._hooks.append(hook)

    def remove_event_hook(self, hook: EventHook) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    # --- server lifecycle ---

    async def start(self) -> None:
        if self._server is not None:
            self._logger.warning("publisher_already_running")
            return

        self._server = await websockets.serve(
            self._serve_connection,
            self._host,
            self._port,
            ping_interval=30,
            ping_timeout=10,
        )
        self._logger.info("publisher_started", address=f"ws://{self._host}:{self._port}")

    async def stop(self) -> None:
        """Flush pending deliveries, close dashboards and stop the server."""
        if self._server is None:
            return

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        await asyncio.gather(
            *(c.websocket.close(1001, "Worker shutting down") for c in self._connections),
            return_exceptions=True,
        )
        self._connections.clear()

        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._logger.info("publisher_stopped")

    async def _serve_connection(self, websocket: ServerConnection) -> None:
        connection = DashboardConnection(websocket=websocket)
        if websocket.request is not None:
            connection.apply_query(websocket.request.path)
        self._connections.add(connection)
        self._logger.info(
            "dashboard_connected",
            connection_id=connection.connection_id,
            **connection.subscription(),
        )

        try:
            await self._send_history(connection)
            async for message in websocket:
                await self._handle_message(connection, message)
        except websockets.ConnectionClosed as e:
            self._logger.info(
                "dashboard_disconnected", connection_id=connection.connection_id, code=e.code
            )
        finally:
            self._connections.discard(connection)

    # --- dashboard messages ---

    async def _handle_message(self, connection: DashboardConnection, message: str | bytes) -> None:
        """Handle ``subscribe``, ``unsubscribe``, ``history`` and ``ping``."""
        try:
            text = message.decode("utf-8") if isinstance(message, bytes) else message
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError):
            self._logger.warning("invalid_message", connection_id=connection.connection_id)
            return

        msg_type = data.get("type") if isinstance(data, dict) else None
        if msg_type == "subscribe":
            connection.event_types |= _event_types(data.get("event_types", []))
            connection.tenants.update(str(t) for t in data.get("client_ids", []) if t)
            await connection.websocket.send(
                _encode({"type": "subscribed", **connection.subscription()})
            )
        elif msg_type == "unsubscribe":
            connection.event_types -= _event_types(data.get("event_types", []))
            connection.tenants.difference_update(str(t) for t in data.get("client_ids", []))
            await connection.websocket.send(
                _encode({"type": "unsubscribed", **connection.subscription()})
            )
        elif msg_type == "history":
            await self._send_history(connection, force=True)
        elif msg_type == "ping":
            await connection.websocket.send(_encode({"type": "pong"}))
        else:
            self._logger.warning(
                "unknown_message_type", connection_id=connection.connection_id, msg_type=msg_type
            )

    async def _send_history(self, connection: DashboardConnection, force: bool = False) -> None:
        events = [e.to_dict() for e in self._buffer if connection.wants(e)]
        if events or force:
            await connection.websocket.send(_encode({"type": "event_history", "events": events}))

    # --- publishing ---

    def _record(self, event: ContaflixEvent) -> None:
        self._buffer.append(event)
        for hook in self._hooks:
            try:
                hook(event)
            except Exception as e:
                self._logger.error(
                    "event_hook_error", event_type=event.event_type.value, error=str(e)
                )

    def publish(self, event: ContaflixEvent) -> None:
        """Buffer ``event`` and schedule delivery without waiting for it."""
        self._record(event)
        if self._server is not None and self._connections:
            task = asyncio.create_task(self._deliver(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def broadcast_all(self, event: ContaflixEvent) -> None:
        """Buffer ``event`` and wait until every interested dashboard has it."""
        self._record(event)
        await self._deliver(event)

    async def _deliver(self, event: ContaflixEvent) -> None:
        recipients = [c for c in self._connections if c.wants(event)]
        if not recipients:
            return
        message = _encode(event.to_dict())
        await asyncio.gather(*(self._send(c, message) for c in recipients))

    async def _send(self, connection: DashboardConnection, message: str) -> None:
        try:
            await connection.websocket.send(message)
        except websockets.ConnectionClosed:
            self._connections.discard(connection)
        except Exception as e:
            self._logger.error(
                "send_error", connection_id=connection.connection_id, error=str(e)
            )

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "host": self._host,
            "port": self._port,
            "client_count": len(self._connections),
            "buffer_size": len(self._buffer),
            "buffered_by_type": dict(Counter(e.event_type.value for e in self._buffer)),
            "clients": [
                {
                    "id": c.connection_id,
                    "connected_at": c.connected_at.isoformat(),
                    **c.subscription(),
                }
                for c in self._connections
            ],
        }


_publisher: EventPublisher | None = None


def get_publisher() -> EventPublisher:
    """Get or create the process-wide publisher."""
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher
