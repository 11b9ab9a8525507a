"""
Character-Lock Manager — the controller's one-time claim of a suspect.

The claim is irreversible for the room's lifetime, even for its owner. Only the
controller learns which suspect was claimed; everyone else is told that the
suspects are ready, nothing more.
"""
import logging
from typing import Optional

from models.errors import AlreadyLocked, RoleRequired, RoomNotFound, UnknownCharacter
from models.room import CharacterLock, Role, canonical_suspect
from services.connections import Connection, ConnectionManager
from services.room_registry import RoomRegistry

logger = logging.getLogger(__name__)


class CharacterLockManager:
    def __init__(self, rooms: RoomRegistry, connections: ConnectionManager):
        self.rooms = rooms
        self.connections = connections

    async def lock_character(self, conn: Connection, character: Optional[str]) -> CharacterLock:
        if not conn.room_code:
            raise RoomNotFound("Join a room before choosing a character")
        state = self.rooms.get(conn.room_code)

        # AlreadyLocked wins over every other failure: after a successful lock,
        # any caller gets the same answer whatever they send.
        if state.character_lock is not None:
            raise AlreadyLocked()

        binding = state.binding(Role.CHARACTER_CONTROLLER)
        if binding is None or binding.connection_id != conn.id:
            raise RoleRequired("Only the character controller can lock a character")

        name = canonical_suspect(character or "")
        if name is None:
            raise UnknownCharacter(f"'{character}' is not one of the suspects")

        claim = CharacterLock(character=name, owner=conn.id, owner_identity=binding.identity)
        state.set_character_lock(claim)
        state.touch()
        logger.info("[%s] Character lock taken by %s", state.code, conn.id[:8])

        await conn.send("characterLocked", {"character": name})
        await self.connections.broadcast(
            state.code, "system",
            {"msg": "The suspects are ready for questioning."},
            exclude=conn.id,
        )
        return claim
