"""
WebSocket Hub — real-time coordination channel.

URL: /ws

Connection flow:
  1. Accept connection → wrap in a WebSocketConnection handle
  2. Register the handle with the coordinator and its event handlers
  3. Send private "connected" message (connection id + suspect list)
  4. Message loop (handlers registered via Connection.on_event)
  5. On disconnect: coordinator releases the seat; if the character
     controller left with questions outstanding they fall back to the
     automated answerer immediately

Client → server message types ({type, data: {...}}):
  ping               — keep-alive heartbeat → "pong"
  createRoom         — {preferredCode?, displayName?} → "roomCreated"
  queueForRole       — {role} quick match → "queued", later "matched"
  leaveQueue         — withdraw from quick match → "queueLeft"
  joinRole           — {role, room, identityToken?} → "roleJoined"
  setHumanCharacter  — {character} controller's one-time lock → "characterLocked"
  ask                — {character, question} detective only → "answer" (room-wide)
  murdererAnswer     — {correlationId, answer} controller's reply
  murdererAck        — {correlationId} advisory delivery acknowledgment

Every coordination failure is reported to the sender only, as
{"type": "error", "msg": ..., "code": ...}. The connection stays open.
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from models.errors import CoordinationError, InvalidRequest
from models.room import Role, SUSPECTS, WSMessage
from services.connections import Connection, EventHandler, WebSocketConnection
from services.coordinator import get_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

# Strong references to in-flight ask tasks so they are not garbage collected
_background_tasks: Set[asyncio.Task] = set()

_ROLE_ALIASES: Dict[str, Role] = {
    "murderer": Role.CHARACTER_CONTROLLER,
    "controller": Role.CHARACTER_CONTROLLER,
    "character_controller": Role.CHARACTER_CONTROLLER,
}


def _parse_role(value: Any) -> Role:
    raw = str(value or "").strip()
    if raw in _ROLE_ALIASES:
        return _ROLE_ALIASES[raw]
    try:
        return Role(raw)
    except ValueError:
        raise InvalidRequest(f"Unknown role: '{raw}'")


async def _send_error(conn: Connection, exc: CoordinationError) -> None:
    await conn.send("error", {"msg": exc.message, "code": exc.code})


# ── Handlers ──────────────────────────────────────────────────────────────────

async def _on_ping(conn: Connection, data: Dict) -> None:
    await conn.send("pong")


async def _on_create_room(conn: Connection, data: Dict) -> None:
    room = get_coordinator().create_room(data.get("preferredCode"), data.get("displayName"))
    await conn.send("roomCreated", {
        "room": room.code,
        "displayName": room.display_name,
        "status": room.status.value,
    })


async def _on_queue_for_role(conn: Connection, data: Dict) -> None:
    role = _parse_role(data.get("role"))
    future = await get_coordinator().queue_for_role(conn, role)
    if not future.done():
        await conn.send("queued", {"role": role.value})


async def _on_leave_queue(conn: Connection, data: Dict) -> None:
    left = get_coordinator().leave_queue(conn)
    await conn.send("queueLeft", {"left": left})


async def _on_join_role(conn: Connection, data: Dict) -> None:
    role = _parse_role(data.get("role"))
    room = data.get("room")
    if not room:
        raise InvalidRequest("'room' is required")
    await get_coordinator().join_role(conn, str(room), role, data.get("identityToken"))


async def _on_set_human_character(conn: Connection, data: Dict) -> None:
    await get_coordinator().lock_character(conn, data.get("character"))


async def _on_ask(conn: Connection, data: Dict) -> None:
    # ask suspends until the answer is delivered; run it off the message loop
    # so the detective can keep questioning other suspects meanwhile.
    _spawn(conn, get_coordinator().ask(conn, data.get("character"), data.get("question")))


async def _on_murderer_answer(conn: Connection, data: Dict) -> None:
    await get_coordinator().answer(conn, data.get("correlationId"), data.get("answer"))


async def _on_murderer_ack(conn: Connection, data: Dict) -> None:
    get_coordinator().acknowledge(conn, data.get("correlationId"))


_HANDLERS: Dict[str, EventHandler] = {
    "ping": _on_ping,
    "createRoom": _on_create_room,
    "queueForRole": _on_queue_for_role,
    "leaveQueue": _on_leave_queue,
    "joinRole": _on_join_role,
    "setHumanCharacter": _on_set_human_character,
    "ask": _on_ask,
    "murdererAnswer": _on_murderer_answer,
    "murdererAck": _on_murderer_ack,
}


def _spawn(conn: Connection, coro: Awaitable[Any]) -> None:
    task = asyncio.create_task(_guarded(conn, coro))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def _guarded(conn: Connection, coro: Awaitable[Any]) -> None:
    try:
        await coro
    except CoordinationError as exc:
        await _send_error(conn, exc)
    except Exception:
        logger.exception("Unhandled error in background task for %s", conn.id[:8])
        await conn.send("error", {"msg": "Internal server error", "code": "SERVER_ERROR"})


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    coordinator = get_coordinator()
    conn = WebSocketConnection(ws)
    await conn.accept()
    coordinator.connect(conn)
    for name, handler in _HANDLERS.items():
        conn.on_event(name, handler)

    await conn.send("connected", {
        "connectionId": conn.id,
        "characters": list(SUSPECTS),
    })

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            # Clients send { type, data: { ... } }
            try:
                message = WSMessage.model_validate_json(raw)
            except ValidationError:
                await conn.send("error", {"msg": "Expected a JSON {type, data} object", "code": "PARSE_ERROR"})
                continue
            await _handle_message(conn, message.type, message.data)

    except WebSocketDisconnect:
        pass
    finally:
        await coordinator.disconnect(conn)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(conn: Connection, msg_type: str, data: Dict) -> None:
    try:
        handled = await conn.dispatch(msg_type, data)
        if not handled:
            await conn.send("error", {
                "msg": f"Unknown message type: '{msg_type}'",
                "code": "UNKNOWN_TYPE",
            })
    except CoordinationError as exc:
        logger.info("[%s] %s rejected for %s: %s",
                    conn.room_code or "-", msg_type, conn.id[:8], exc.code)
        await _send_error(conn, exc)
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)",
                         conn.room_code or "-", msg_type)
        await conn.send("error", {"msg": "Internal server error", "code": "SERVER_ERROR"})
