"""
Coordinator — one object wiring the coordination core together.

  RoomRegistry / MatchmakingQueue → SessionManager → CharacterLockManager
      → QuestionAnswerCorrelator → (controller | automated answerer)

It owns the connection lifecycle: ``connect`` opens and registers a handle,
``disconnect`` withdraws it from quick match, releases its seat and, if the
character controller left with questions outstanding, fails those questions
over to the automated answerer immediately.
"""
import asyncio
import logging
from typing import Any, List, Optional

from config import Settings, settings as default_settings
from models.room import CharacterLock, PendingQuestion, Role, RoleBinding, Room
from services.character_lock import CharacterLockManager
from services.connections import Connection, ConnectionManager, ConnectionState
from services.correlator import QuestionAnswerCorrelator
from services.identity import IdentityVerifier
from services.matchmaking import MatchmakingQueue
from services.room_registry import RoomRegistry
from services.sessions import SessionManager

logger = logging.getLogger(__name__)


class Coordinator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        answerer: Optional[Any] = None,
        verifier: Optional[IdentityVerifier] = None,
    ):
        self.settings = settings or default_settings
        if answerer is None:
            from agents.suspect_agent import suspect_agent
            answerer = suspect_agent

        self.connections = ConnectionManager()
        self.rooms = RoomRegistry(self.settings)
        self.sessions = SessionManager(self.rooms, self.connections, verifier, self.settings)
        self.locks = CharacterLockManager(self.rooms, self.connections)
        self.correlator = QuestionAnswerCorrelator(
            self.rooms, self.sessions, self.connections, answerer, self.settings,
        )
        self.matchmaking = MatchmakingQueue(self.rooms, self.sessions)

    # ── Connection lifecycle ──────────────────────────────────────────────────

    def connect(self, conn: Connection) -> None:
        if conn.state == ConnectionState.PENDING:
            conn.open()
        self.connections.register(conn)

    async def disconnect(self, conn: Connection) -> None:
        conn.close()
        self.matchmaking.withdraw(conn)
        await self._vacate(conn)
        self.connections.unregister(conn)
        logger.debug("%s disconnected", conn.id[:8])

    async def _vacate(self, conn: Connection) -> Optional[RoleBinding]:
        room_code = conn.room_code
        binding = self.sessions.release(conn)
        if binding is not None:
            await self._after_release(room_code, binding)
        return binding

    async def _after_release(self, room_code: str, binding: RoleBinding) -> None:
        if binding.role == Role.CHARACTER_CONTROLLER:
            fired = await self.correlator.fail_over(room_code)
            if fired:
                logger.info("[%s] %d question(s) failed over after controller left", room_code, fired)
        await self.sessions.announce_departure(room_code, binding)

    # ── Rooms & matchmaking ───────────────────────────────────────────────────

    def create_room(self, preferred_code: Optional[str] = None,
                    display_name: Optional[str] = None) -> Room:
        return self.rooms.create_room(preferred_code, display_name)

    def list_active_rooms(self) -> List[Room]:
        return self.rooms.list_active_rooms()

    async def queue_for_role(self, conn: Connection, role: Role) -> "asyncio.Future[Room]":
        await self._vacate(conn)
        return await self.matchmaking.enqueue_for_role(conn, role)

    def leave_queue(self, conn: Connection) -> bool:
        return self.matchmaking.withdraw(conn)

    # ── Seats & locks ─────────────────────────────────────────────────────────

    async def join_role(
        self,
        conn: Connection,
        room_code: str,
        role: Role,
        identity_token: Optional[str] = None,
    ) -> RoleBinding:
        self.matchmaking.withdraw(conn)
        previous_state = self.rooms.find(conn.room_code) if conn.room_code else None
        previous = previous_state.binding_for(conn.id) if previous_state else None

        binding = await self.sessions.join_role(conn, room_code, role, identity_token)

        if previous is not None and (
            previous.room_code != binding.room_code or previous.role != binding.role
        ):
            await self._after_release(previous.room_code, previous)
        return binding

    async def lock_character(self, conn: Connection, character: Optional[str]) -> CharacterLock:
        return await self.locks.lock_character(conn, character)

    # ── Questions ─────────────────────────────────────────────────────────────

    async def ask(self, conn: Connection, character: Optional[str],
                  question: Any) -> Optional[PendingQuestion]:
        return await self.correlator.ask(conn, character, question)

    async def answer(self, conn: Connection, correlation_id: Optional[str], text: Any) -> None:
        await self.correlator.answer(conn, correlation_id, text)

    def acknowledge(self, conn: Connection, correlation_id: Optional[str]) -> bool:
        return self.correlator.acknowledge(conn, correlation_id)

    # ── Housekeeping ──────────────────────────────────────────────────────────

    async def run_sweeper(self) -> None:
        """Background task: close idle, empty rooms on a fixed interval."""
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            closed = self.rooms.sweep_idle()
            if closed:
                logger.info("Closed %d idle room(s): %s", len(closed), ", ".join(closed))

    def shutdown(self) -> None:
        self.matchmaking.clear()
        for room in self.rooms.list_active_rooms():
            self.rooms.close_room(room.code)


_coordinator: Optional["Coordinator"] = None


def get_coordinator() -> "Coordinator":
    """Lazy singleton shared by the HTTP and WebSocket routers."""
    global _coordinator
    if _coordinator is None:
        _coordinator = Coordinator()
    return _coordinator
