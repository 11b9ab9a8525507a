"""
Room Registry — creates, looks up, lists and closes rooms.

Each room's mutable coordination state (role bindings, character lock, pending
questions, transcript) lives in a ``RoomState`` owned by that room alone.
Mutations that must be atomic with respect to each other are made while
holding ``RoomState.lock``.
"""
import asyncio
import logging
import random
import re
import string
import time
from typing import Dict, List, Optional, Set

from config import Settings, settings as default_settings
from models.errors import AlreadyLocked, InvalidName, NameConflict, RoomNotFound
from models.room import (
    CharacterLock, InterrogationEntry, PendingQuestion, Role, RoleBinding,
    Room, RoomStatus, SUSPECTS,
)
from services.timers import TimerRegistry

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_DISPLAY_NAME_RE = re.compile(r"[A-Za-z0-9]{4,32}")
_PREFERRED_CODE_RE = re.compile(r"[A-Za-z0-9]{3,12}")
# Consumed correlation ids remembered per room (oldest forgotten first)
CONSUMED_HISTORY = 256


def normalize_code(code: Optional[str]) -> str:
    return str(code or "").strip().upper()


class RoomState:
    """Runtime coordination state for one room."""

    def __init__(self, room: Room):
        self.room = room
        self.lock = asyncio.Lock()
        # One seat each for detective / characterController
        self.bindings: Dict[Role, RoleBinding] = {}
        self.observers: Dict[str, RoleBinding] = {}
        self._character_lock: Optional[CharacterLock] = None
        # correlation_id → PendingQuestion (human-routed questions only)
        self.pending: Dict[str, PendingQuestion] = {}
        # characters whose answer is being produced or delivered outside `pending`
        self.resolving: Set[str] = set()
        # correlation_id → "human" | "fallback" for recently consumed questions
        self.consumed: Dict[str, str] = {}
        self.transcript: List[InterrogationEntry] = []
        self.timers = TimerRegistry()
        self.last_activity = time.monotonic()

    @property
    def code(self) -> str:
        return self.room.code

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    # ── Character lock (write-once) ───────────────────────────────────────────

    @property
    def character_lock(self) -> Optional[CharacterLock]:
        return self._character_lock

    def set_character_lock(self, lock: CharacterLock) -> None:
        if self._character_lock is not None:
            raise AlreadyLocked()
        self._character_lock = lock

    def lock_table(self) -> Dict[str, Dict[str, object]]:
        claim = self._character_lock
        return {
            name: {
                "locked": claim is not None and claim.character == name,
                "owner": claim.owner if claim is not None and claim.character == name else None,
            }
            for name in SUSPECTS
        }

    # ── Bindings / in-flight helpers ──────────────────────────────────────────

    def binding(self, role: Role) -> Optional[RoleBinding]:
        return self.bindings.get(role)

    def binding_for(self, connection_id: str) -> Optional[RoleBinding]:
        for binding in self.bindings.values():
            if binding.connection_id == connection_id:
                return binding
        return self.observers.get(connection_id)

    def pending_for(self, character: str) -> Optional[PendingQuestion]:
        for pq in self.pending.values():
            if pq.character == character:
                return pq
        return None

    def is_in_flight(self, character: str) -> bool:
        return character in self.resolving or self.pending_for(character) is not None

    def mark_consumed(self, correlation_id: str, how: str) -> None:
        """Remember how a question was resolved, so a late answer reads as Expired."""
        self.consumed[correlation_id] = how
        while len(self.consumed) > CONSUMED_HISTORY:
            del self.consumed[next(iter(self.consumed))]

    @property
    def is_idle(self) -> bool:
        return not self.bindings and not self.observers and not self.pending \
            and not self.resolving


class RoomRegistry:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._rooms: Dict[str, RoomState] = {}

    # ── Creation ──────────────────────────────────────────────────────────────

    def create_room(
        self,
        preferred_code: Optional[str] = None,
        display_name: Optional[str] = None,
        case_ref: Optional[str] = None,
    ) -> Room:
        name = self._validate_display_name(display_name)

        code = normalize_code(preferred_code)
        if not code or not _PREFERRED_CODE_RE.fullmatch(code) or code in self._rooms:
            code = self._fresh_code()

        room = Room(
            code=code,
            display_name=name,
            case_ref=case_ref or self.settings.default_case_ref,
        )
        self._rooms[code] = RoomState(room)
        logger.info("[%s] Room created (name=%s, case=%s)", code, name, room.case_ref)
        return room

    def _validate_display_name(self, display_name: Optional[str]) -> Optional[str]:
        if display_name is None:
            return None
        name = str(display_name).strip()
        if not _DISPLAY_NAME_RE.fullmatch(name):
            raise InvalidName()
        key = name.lower()
        for state in self._rooms.values():
            existing = state.room.display_name
            if existing and existing.lower() == key and state.room.status != RoomStatus.CLOSED:
                raise NameConflict(f"A room named '{name}' already exists")
        return name

    def _fresh_code(self) -> str:
        k = self.settings.room_code_length
        while True:
            code = "".join(random.choices(_CODE_ALPHABET, k=k))
            if code not in self._rooms:
                return code

    # ── Lookup ────────────────────────────────────────────────────────────────

    def get(self, code: Optional[str]) -> RoomState:
        state = self._rooms.get(normalize_code(code))
        if state is None or state.room.status == RoomStatus.CLOSED:
            raise RoomNotFound(f"Room '{code}' not found")
        return state

    def find(self, code: Optional[str]) -> Optional[RoomState]:
        try:
            return self.get(code)
        except RoomNotFound:
            return None

    def get_case_ref(self, code: str) -> str:
        return self.get(code).room.case_ref

    def list_active_rooms(self) -> List[Room]:
        return [
            s.room for s in self._rooms.values()
            if s.room.status in (RoomStatus.FORMING, RoomStatus.ACTIVE)
        ]

    def __len__(self) -> int:
        return len(self._rooms)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def mark_active(self, code: str) -> None:
        state = self.get(code)
        if state.room.status == RoomStatus.FORMING:
            state.room.status = RoomStatus.ACTIVE
            logger.info("[%s] Room active, both seats filled", code)

    def close_room(self, code: str) -> None:
        state = self._rooms.pop(normalize_code(code), None)
        if state is None:
            return
        state.room.status = RoomStatus.CLOSED
        state.timers.cancel_all()
        logger.info("[%s] Room closed", state.code)

    def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """Close rooms with nobody bound, nothing in flight and no recent activity."""
        now = time.monotonic() if now is None else now
        ttl = self.settings.room_idle_ttl_seconds
        stale = [
            code for code, state in self._rooms.items()
            if state.is_idle and now - state.last_activity >= ttl
        ]
        for code in stale:
            self.close_room(code)
        return stale
