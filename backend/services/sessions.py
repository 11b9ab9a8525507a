"""
Session/Role Manager — binds a connection to a room seat.

Seats: one detective, one character controller, any number of observers
(when allowed). Bindings are released on disconnect; the room, its character
lock and its pending questions outlive the connection so a participant can
reconnect and rebind.
"""
import logging
from typing import Any, Dict, Optional

from config import Settings, settings as default_settings
from models.errors import RoleRequired, RoleTaken, Unauthorized
from models.room import Role, RoleBinding, SUSPECTS
from services.connections import Connection, ConnectionManager
from services.identity import IdentityVerifier
from services.room_registry import RoomRegistry, RoomState

logger = logging.getLogger(__name__)

# Role-only wording: notices must never hint at which suspect is human.
_JOIN_NOTICES: Dict[Role, str] = {
    Role.DETECTIVE: "The detective has joined the room.",
    Role.CHARACTER_CONTROLLER: "Another participant has joined the room.",
    Role.OBSERVER: "An observer is watching the interrogation.",
}

_LEAVE_NOTICES: Dict[Role, str] = {
    Role.DETECTIVE: "The detective has left the room.",
    Role.CHARACTER_CONTROLLER: "A participant has left the room.",
    Role.OBSERVER: "An observer has left.",
}


class SessionManager:
    def __init__(
        self,
        rooms: RoomRegistry,
        connections: ConnectionManager,
        verifier: Optional[IdentityVerifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.rooms = rooms
        self.connections = connections
        self.settings = settings or default_settings
        self.verifier = verifier or IdentityVerifier(self.settings)

    async def join_role(
        self,
        conn: Connection,
        room_code: str,
        role: Role,
        identity_token: Optional[str] = None,
    ) -> RoleBinding:
        state = self.rooms.get(room_code)
        identity = await self.verifier.verify(identity_token)
        if identity is None:
            identity = conn.identity

        # State may have changed while the token was being verified
        state = self.rooms.get(state.code)
        existing = state.binding_for(conn.id)
        if existing is not None and existing.role == role:
            return existing

        binding = self._bind_seat(state, conn, role, identity)
        await self._announce(state, conn, binding)
        return binding

    def bind(self, conn: Connection, state: RoomState, role: Role) -> RoleBinding:
        """Synchronous seat binding (used by matchmaking for a fresh room)."""
        return self._bind_seat(state, conn, role, conn.identity)

    def _bind_seat(
        self, state: RoomState, conn: Connection, role: Role, identity: Optional[str]
    ) -> RoleBinding:
        if role == Role.OBSERVER:
            if not self.settings.allow_observers:
                raise RoleRequired("Observers are not allowed in this room")
        else:
            holder = state.binding(role)
            if holder is not None and holder.connection_id != conn.id:
                if self.connections.is_connected(holder.connection_id):
                    raise RoleTaken(f"The {role.value} seat is already taken")

            claim = state.character_lock
            if (
                role == Role.CHARACTER_CONTROLLER
                and claim is not None
                and claim.owner_identity is not None
                and claim.owner_identity != identity
            ):
                raise Unauthorized("Only the original character controller can rebind this seat")

            # Stale seat (disconnect not processed yet): reclaimed only after every
            # check passed, so a rejected join leaves the binding in place.
            if holder is not None and holder.connection_id != conn.id:
                state.bindings.pop(role, None)

        # One seat per connection: leave whatever was held before
        self.release(conn)

        conn.identity = identity
        binding = RoleBinding(
            room_code=state.code,
            role=role,
            connection_id=conn.id,
            identity=identity,
        )
        if role == Role.OBSERVER:
            state.observers[conn.id] = binding
        else:
            state.bindings[role] = binding
        self.connections.join_room(conn, state.code)
        state.touch()

        if (
            state.binding(Role.DETECTIVE) is not None
            and state.binding(Role.CHARACTER_CONTROLLER) is not None
        ):
            self.rooms.mark_active(state.code)

        logger.info("[%s] %s bound as %s", state.code, conn.id[:8], role.value)
        return binding

    async def _announce(self, state: RoomState, conn: Connection, binding: RoleBinding) -> None:
        await conn.send("roleJoined", self.snapshot(state, binding))
        await self.connections.broadcast(
            state.code, "system", {"msg": _JOIN_NOTICES[binding.role]}, exclude=conn.id,
        )

    def snapshot(self, state: RoomState, binding: RoleBinding) -> Dict[str, Any]:
        """Private join acknowledgment with everything a (re)joining client needs."""
        payload: Dict[str, Any] = {
            "room": state.code,
            "role": binding.role.value,
            "status": state.room.status.value,
            "characters": list(SUSPECTS),
            "transcript": [entry.to_public() for entry in state.transcript],
        }
        if binding.role == Role.CHARACTER_CONTROLLER:
            claim = state.character_lock
            payload["lockedCharacter"] = claim.character if claim else None
            payload["pendingQuestions"] = [
                {
                    "correlationId": pq.correlation_id,
                    "character": pq.character,
                    "question": pq.question_text,
                }
                for pq in state.pending.values()
            ]
        return payload

    def release(self, conn: Connection) -> Optional[RoleBinding]:
        """Release the connection's seat, if any. Room state is left intact."""
        state = self.rooms.find(conn.room_code) if conn.room_code else None
        self.connections.leave_room(conn)
        if state is None:
            return None

        binding = state.observers.pop(conn.id, None)
        if binding is None:
            for role, held in list(state.bindings.items()):
                if held.connection_id == conn.id:
                    binding = state.bindings.pop(role)
                    break
        if binding is not None:
            state.touch()
            logger.info("[%s] %s released %s seat", state.code, conn.id[:8], binding.role.value)
        return binding

    async def announce_departure(self, room_code: str, binding: RoleBinding) -> None:
        await self.connections.broadcast(
            room_code, "system", {"msg": _LEAVE_NOTICES[binding.role]},
        )

    def require_role(self, conn: Connection, role: Role) -> RoomState:
        """Return the caller's room if the caller holds ``role`` there."""
        state = self.rooms.get(conn.room_code)
        binding = state.binding(role)
        if binding is None or binding.connection_id != conn.id:
            raise RoleRequired(f"Only the {role.value} may do that")
        return state
