import asyncio
from typing import Any, Dict, List, Optional

import pytest

from config import Settings
from models.errors import Unauthorized
from models.room import Role
from services.connections import Connection
from services.coordinator import Coordinator


class RecordingConnection(Connection):
    """In-memory connection handle that records every event sent to it."""

    def __init__(self, connection_id: Optional[str] = None, fail_sends: bool = False):
        super().__init__(connection_id)
        self.sent: List[Dict[str, Any]] = []
        self.fail_sends = fail_sends

    async def _transmit(self, message: Dict[str, Any]) -> None:
        if self.fail_sends:
            raise ConnectionError("channel gone")
        self.sent.append(message)

    def events(self, event_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == event_type]

    def last(self, event_type: str) -> Optional[Dict[str, Any]]:
        found = self.events(event_type)
        return found[-1] if found else None


class FakeAnswerer:
    """Stands in for the LLM-backed suspect agent."""

    def __init__(self, reply: str = "I have nothing more to say.", delay: float = 0.0,
                 fail: bool = False):
        self.reply = reply
        self.delay = delay
        self.fail = fail
        self.calls: List[tuple] = []

    async def get_automated_answer(self, character: str, question: str, case_ref: str) -> str:
        self.calls.append((character, question, case_ref))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("model unavailable")
        return self.reply


class FakeVerifier:
    """Token → identity table instead of the Firebase verifier."""

    def __init__(self, tokens: Optional[Dict[str, str]] = None, require: bool = False):
        self.tokens = tokens or {}
        self.require = require

    async def verify(self, token: Optional[str]) -> Optional[str]:
        if not token:
            if self.require:
                raise Unauthorized()
            return None
        if token not in self.tokens:
            raise Unauthorized("Identity token could not be verified")
        return self.tokens[token]


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def settings():
    return Settings(_env_file=None, answer_timeout_seconds=0.2, room_idle_ttl_seconds=60)


@pytest.fixture
def answerer():
    return FakeAnswerer()


@pytest.fixture
def verifier():
    return FakeVerifier({"tok-alice": "alice", "tok-bob": "bob"})


@pytest.fixture
def coordinator(settings, answerer, verifier):
    return Coordinator(settings=settings, answerer=answerer, verifier=verifier)


@pytest.fixture
def seat(coordinator):
    """Async helper: a room with a live detective and controller (optionally locked)."""

    async def _seat(lock: Optional[str] = None, controller_token: Optional[str] = None):
        room = coordinator.create_room()
        detective = RecordingConnection()
        controller = RecordingConnection()
        coordinator.connect(detective)
        coordinator.connect(controller)
        await coordinator.join_role(detective, room.code, Role.DETECTIVE)
        await coordinator.join_role(controller, room.code, Role.CHARACTER_CONTROLLER, controller_token)
        if lock:
            await coordinator.lock_character(controller, lock)
        return room, detective, controller

    return _seat
