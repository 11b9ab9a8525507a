"""
Connection handles — one per live participant channel.

The coordination core never touches a transport directly. It talks to a
``Connection``:

  send(event, payload)    — push one server event to this participant
  on_event(name, handler) — register the handler for one client event type
  open() / close()        — explicit lifecycle transitions

``WebSocketConnection`` adapts a FastAPI WebSocket; tests substitute an
in-memory subclass. ``ConnectionManager`` indexes live connections by id and by
room for private sends and room broadcasts.
"""
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


EventHandler = Callable[["Connection", Dict[str, Any]], Awaitable[None]]


class Connection:
    def __init__(self, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex
        self.state = ConnectionState.PENDING
        self.identity: Optional[str] = None
        self.room_code: Optional[str] = None
        self._handlers: Dict[str, EventHandler] = {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id[:8]} {self.state.value}>"

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    @property
    def is_live(self) -> bool:
        return self.state == ConnectionState.OPEN

    def open(self) -> None:
        if self.state == ConnectionState.CLOSED:
            raise RuntimeError(f"Connection {self.id} is closed and cannot be reopened")
        self.state = ConnectionState.OPEN

    def close(self) -> bool:
        """Transition to CLOSED. Returns False if it was already closed."""
        if self.state == ConnectionState.CLOSED:
            return False
        self.state = ConnectionState.CLOSED
        return True

    # ── Inbound ────────────────────────────────────────────────────────────────

    def on_event(self, name: str, handler: EventHandler) -> None:
        self._handlers[name] = handler

    async def dispatch(self, name: str, data: Dict[str, Any]) -> bool:
        """Run the handler registered for ``name``. False if none is registered."""
        handler = self._handlers.get(name)
        if handler is None:
            return False
        await handler(self, data)
        return True

    # ── Outbound ───────────────────────────────────────────────────────────────

    async def send(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Send one event. Returns False (and closes) if the channel is gone."""
        if not self.is_live:
            return False
        message = {"type": event, **(payload or {})}
        try:
            await self._transmit(message)
        except Exception as exc:
            logger.warning("send %s to %s failed: %s", event, self.id[:8], exc)
            self.close()
            return False
        return True

    async def _transmit(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError


class WebSocketConnection(Connection):
    def __init__(self, ws: WebSocket, connection_id: Optional[str] = None):
        super().__init__(connection_id)
        self.ws = ws

    async def accept(self) -> None:
        await self.ws.accept()
        self.open()

    async def _transmit(self, message: Dict[str, Any]) -> None:
        await self.ws.send_json(message)


class ConnectionManager:
    """
    Tracks live connections and room membership.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        # {room_code: {connection_id}}
        self._rooms: Dict[str, Set[str]] = {}

    def register(self, conn: Connection) -> None:
        self._connections[conn.id] = conn

    def unregister(self, conn: Connection) -> None:
        self.leave_room(conn)
        self._connections.pop(conn.id, None)

    def get(self, connection_id: Optional[str]) -> Optional[Connection]:
        if connection_id is None:
            return None
        return self._connections.get(connection_id)

    def is_connected(self, connection_id: Optional[str]) -> bool:
        conn = self.get(connection_id)
        return conn is not None and conn.is_live

    # ── Room membership ───────────────────────────────────────────────────────

    def join_room(self, conn: Connection, room_code: str) -> None:
        if conn.room_code and conn.room_code != room_code:
            self.leave_room(conn)
        conn.room_code = room_code
        self._rooms.setdefault(room_code, set()).add(conn.id)

    def leave_room(self, conn: Connection) -> None:
        if not conn.room_code:
            return
        members = self._rooms.get(conn.room_code)
        if members is not None:
            members.discard(conn.id)
            if not members:
                self._rooms.pop(conn.room_code, None)
        conn.room_code = None

    def members(self, room_code: str) -> List[Connection]:
        ids = self._rooms.get(room_code, set())
        return [self._connections[cid] for cid in list(ids) if cid in self._connections]

    # ── Sending ────────────────────────────────────────────────────────────────

    async def broadcast(
        self,
        room_code: str,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        exclude: Optional[str] = None,
    ) -> None:
        """Broadcast an event to every live member of a room."""
        for conn in self.members(room_code):
            if conn.id == exclude:
                continue
            await conn.send(event, payload)
