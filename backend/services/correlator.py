"""
Question–Answer Correlator with timeout fallback.

Per (room, character):

  IDLE --ask--> AWAITING_HUMAN      character locked by a live controller
  IDLE --ask--> AUTOMATED_LOOKUP    otherwise
  AWAITING_HUMAN --answer(cid)-->   ANSWERED (human)
  AWAITING_HUMAN --deadline/disconnect--> AUTOMATED_LOOKUP --> ANSWERED

A PendingQuestion leaves ``RoomState.pending`` exactly once, inside the room
lock, by whichever of answer / deadline / controller-disconnect gets there
first. The loser finds nothing to remove, so a correlation id is consumed
exactly once and every question produces exactly one ``answer`` event.

Both sources are delivered through the same ``answer{character, answer}``
broadcast so the detective side cannot tell them apart.

The automated answerer is any object with
``async get_automated_answer(character, question, case_ref) -> str``.
"""
import asyncio
import logging
import random
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from config import Settings, settings as default_settings
from models.errors import (
    Expired, Forbidden, InvalidRequest, QuestionInFlight, UnknownCharacter,
    UnknownCorrelation,
)
from models.room import InterrogationEntry, PendingQuestion, Role, canonical_suspect
from services.connections import Connection, ConnectionManager
from services.room_registry import RoomRegistry, RoomState
from services.sessions import SessionManager

logger = logging.getLogger(__name__)

MAX_QUESTION_CHARS = 500
MAX_ANSWER_CHARS = 1000

# Last resort when the automated answerer itself fails
FALLBACK_ANSWER = "I've already told you everything I know."


def _clean(text: Any, limit: int, field: str) -> str:
    cleaned = str(text or "").strip()[:limit]
    if not cleaned:
        raise InvalidRequest(f"'{field}' must not be empty")
    return cleaned


class QuestionAnswerCorrelator:
    def __init__(
        self,
        rooms: RoomRegistry,
        sessions: SessionManager,
        connections: ConnectionManager,
        answerer: Any,
        settings: Optional[Settings] = None,
    ):
        self.rooms = rooms
        self.sessions = sessions
        self.connections = connections
        self.answerer = answerer
        self.settings = settings or default_settings

    # ── ask ───────────────────────────────────────────────────────────────────

    async def ask(
        self, conn: Connection, character: Optional[str], question_text: Any
    ) -> Optional[PendingQuestion]:
        """
        Route a detective's question. Returns the PendingQuestion when it went
        to the human controller, None when it was answered automatically (the
        answer has been delivered by the time this returns).
        """
        state = self.sessions.require_role(conn, Role.DETECTIVE)
        name = canonical_suspect(character or "")
        if name is None:
            raise UnknownCharacter(f"'{character}' is not one of the suspects")
        text = _clean(question_text, MAX_QUESTION_CHARS, "question")

        pending: Optional[PendingQuestion] = None
        async with state.lock:
            if state.is_in_flight(name):
                raise QuestionInFlight(f"{name} is still answering your previous question")

            controller = self._live_controller_for(state, name)
            if controller is not None:
                now = datetime.now(timezone.utc)
                timeout = self.settings.answer_timeout_seconds
                pending = PendingQuestion(
                    correlation_id=uuid.uuid4().hex,
                    character=name,
                    question_text=text,
                    asked_by=conn.id,
                    created_at=now,
                    deadline=now + timedelta(seconds=timeout),
                )
                cid = pending.correlation_id
                state.pending[cid] = pending
                state.timers.start(cid, timeout, lambda: self._fall_back(state, cid, "timeout"))
            else:
                state.resolving.add(name)
            state.touch()

        if pending is not None:
            logger.info("[%s] Question %s routed to controller", state.code, pending.correlation_id[:8])
            delivered = await controller.send("questionForMurderer", {
                "correlationId": pending.correlation_id,
                "character": name,
                "question": text,
                "deadline": pending.deadline.isoformat(),
            })
            if not delivered:
                await self._fall_back(state, pending.correlation_id, "undeliverable")
            return pending

        try:
            started = time.monotonic()
            answer = await self._automated_answer(state, name, text)
            await self._pace(started)
            await self._deliver(state, name, text, answer)
        finally:
            state.resolving.discard(name)
        return None

    def _live_controller_for(self, state: RoomState, character: str) -> Optional[Connection]:
        claim = state.character_lock
        if claim is None or claim.character != character:
            return None
        binding = state.binding(Role.CHARACTER_CONTROLLER)
        if binding is None:
            return None
        if claim.owner_identity is not None and binding.identity != claim.owner_identity:
            return None
        conn = self.connections.get(binding.connection_id)
        if conn is None or not conn.is_live:
            return None
        return conn

    def _owns(self, state: RoomState, conn: Connection, pending: PendingQuestion) -> bool:
        binding = state.binding(Role.CHARACTER_CONTROLLER)
        claim = state.character_lock
        if binding is None or binding.connection_id != conn.id or claim is None:
            return False
        if claim.character != pending.character:
            return False
        return claim.owner_identity is None or claim.owner_identity == binding.identity

    # ── answer / acknowledge ──────────────────────────────────────────────────

    async def answer(self, conn: Connection, correlation_id: Optional[str], text: Any) -> None:
        state = self.rooms.find(conn.room_code) if conn.room_code else None
        if state is None:
            raise UnknownCorrelation()
        cid = str(correlation_id or "")
        reply = _clean(text, MAX_ANSWER_CHARS, "answer")

        async with state.lock:
            pending = state.pending.get(cid)
            if pending is None:
                if state.consumed.get(cid) == "fallback":
                    raise Expired()
                raise UnknownCorrelation()
            if not self._owns(state, conn, pending):
                raise Forbidden()
            del state.pending[cid]
            state.mark_consumed(cid, "human")
            state.timers.cancel(cid)
            state.resolving.add(pending.character)

        logger.info("[%s] Question %s answered by controller", state.code, cid[:8])
        try:
            await self._deliver(state, pending.character, pending.question_text, reply)
        finally:
            state.resolving.discard(pending.character)

    def acknowledge(self, conn: Connection, correlation_id: Optional[str]) -> bool:
        """Advisory delivery acknowledgment. Never affects the deadline."""
        state = self.rooms.find(conn.room_code) if conn.room_code else None
        pending = state.pending.get(str(correlation_id or "")) if state else None
        if pending is None or not self._owns(state, conn, pending):
            logger.debug("Ignoring ack for unknown correlation %s", correlation_id)
            return False
        if pending.acknowledged_at is None:
            pending.acknowledged_at = datetime.now(timezone.utc)
            latency = (pending.acknowledged_at - pending.created_at).total_seconds()
            logger.info("[%s] Question %s acknowledged after %.2fs",
                        state.code, pending.correlation_id[:8], latency)
        return True

    # ── Fallback ──────────────────────────────────────────────────────────────

    async def _fall_back(self, state: RoomState, correlation_id: str, reason: str) -> bool:
        """Take the question away from the human and answer it automatically."""
        async with state.lock:
            pending = state.pending.pop(correlation_id, None)
            if pending is None:
                return False
            state.mark_consumed(correlation_id, "fallback")
            state.timers.cancel(correlation_id)
            state.resolving.add(pending.character)

        logger.info("[%s] Question %s falling back to automated answer (%s)",
                    state.code, correlation_id[:8], reason)
        try:
            answer = await self._automated_answer(state, pending.character, pending.question_text)
            await self._deliver(state, pending.character, pending.question_text, answer)
        finally:
            state.resolving.discard(pending.character)
        return True

    async def fail_over(self, room_code: Optional[str]) -> int:
        """Resolve every pending question in the room automatically, now."""
        state = self.rooms.find(room_code) if room_code else None
        if state is None or not state.pending:
            return 0
        results = await asyncio.gather(*(
            self._fall_back(state, cid, "controller_disconnected")
            for cid in list(state.pending)
        ))
        return sum(1 for fired in results if fired)

    # ── Automated path + delivery ─────────────────────────────────────────────

    async def _automated_answer(self, state: RoomState, character: str, question: str) -> str:
        try:
            text = await self.answerer.get_automated_answer(character, question, state.room.case_ref)
        except Exception:
            logger.exception("[%s] Automated answerer failed for %s", state.code, character)
            text = ""
        text = str(text or "").strip()[:MAX_ANSWER_CHARS]
        return text or FALLBACK_ANSWER

    async def _pace(self, started: float) -> None:
        low = self.settings.automated_answer_min_delay_seconds
        high = self.settings.automated_answer_max_delay_seconds
        if high <= 0:
            return
        target = random.uniform(min(low, high), high)
        remaining = target - (time.monotonic() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _deliver(self, state: RoomState, character: str, question: str, answer: str) -> None:
        state.transcript.append(InterrogationEntry(
            character=character, question=question, answer=answer,
        ))
        state.touch()
        await self.connections.broadcast(state.code, "answer", {
            "character": character,
            "answer": answer,
        })
