"""
Quick match — anonymous FIFO pairing of one detective-seeker and one
character-controller-seeker into a freshly created room.

Pairing happens synchronously inside ``enqueue_for_role`` (no await between
dequeue, room creation and seat binding), so two simultaneous arrivals can
never produce two rooms or a half-bound room.
"""
import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Tuple

from models.errors import InvalidRequest
from models.room import QUEUEABLE_ROLES, Role, Room
from services.connections import Connection
from services.room_registry import RoomRegistry
from services.sessions import SessionManager

logger = logging.getLogger(__name__)


class _Ticket:
    __slots__ = ("conn", "role", "future")

    def __init__(self, conn: Connection, role: Role, future: "asyncio.Future[Room]"):
        self.conn = conn
        self.role = role
        self.future = future


class MatchmakingQueue:
    def __init__(self, rooms: RoomRegistry, sessions: SessionManager):
        self.rooms = rooms
        self.sessions = sessions
        self._queues: Dict[Role, Deque[_Ticket]] = {role: deque() for role in QUEUEABLE_ROLES}
        self._tickets: Dict[str, _Ticket] = {}  # connection_id → ticket

    def queue_length(self, role: Role) -> int:
        return len(self._queues[role])

    def is_queued(self, conn: Connection) -> bool:
        return conn.id in self._tickets

    async def enqueue_for_role(self, conn: Connection, role: Role) -> "asyncio.Future[Room]":
        """
        Queue ``conn`` for ``role``. Returns a future resolving to the matched
        Room; both participants are also sent ``matched{room}`` when paired.
        """
        if role not in QUEUEABLE_ROLES:
            raise InvalidRequest(f"Quick match is not available for role '{role.value}'")

        self.withdraw(conn)
        future: "asyncio.Future[Room]" = asyncio.get_running_loop().create_future()
        ticket = _Ticket(conn, role, future)
        self._queues[role].append(ticket)
        self._tickets[conn.id] = ticket
        logger.info("%s queued for %s (%d waiting)", conn.id[:8], role.value, len(self._queues[role]))

        pairs = self._pair_waiting()
        for room, tickets in pairs:
            for t in tickets:
                await t.conn.send("matched", {"room": room.code, "role": t.role.value})
        return future

    def _pair_waiting(self) -> List[Tuple[Room, List[_Ticket]]]:
        pairs: List[Tuple[Room, List[_Ticket]]] = []
        detectives = self._queues[Role.DETECTIVE]
        controllers = self._queues[Role.CHARACTER_CONTROLLER]
        while detectives and controllers:
            tickets = [detectives.popleft(), controllers.popleft()]
            for t in tickets:
                self._tickets.pop(t.conn.id, None)
            if not all(t.conn.is_live for t in tickets):
                # Requeue the live one at the front; it keeps its place
                for t in tickets:
                    if t.conn.is_live:
                        self._queues[t.role].appendleft(t)
                        self._tickets[t.conn.id] = t
                    elif not t.future.done():
                        t.future.cancel()
                continue

            room = self.rooms.create_room()
            state = self.rooms.get(room.code)
            for t in tickets:
                self.sessions.bind(t.conn, state, t.role)
                if not t.future.done():
                    t.future.set_result(room)
            logger.info("[%s] Quick match paired %s + %s", room.code,
                        tickets[0].conn.id[:8], tickets[1].conn.id[:8])
            pairs.append((room, tickets))
        return pairs

    def withdraw(self, conn: Connection) -> bool:
        """Remove the connection's queue entry, if any."""
        ticket = self._tickets.pop(conn.id, None)
        if ticket is None:
            return False
        try:
            self._queues[ticket.role].remove(ticket)
        except ValueError:
            pass
        if not ticket.future.done():
            ticket.future.cancel()
        logger.info("%s left the %s queue", conn.id[:8], ticket.role.value)
        return True

    def clear(self) -> None:
        for ticket in list(self._tickets.values()):
            self.withdraw(ticket.conn)
