"""
Room HTTP endpoints.

Routes:
  GET  /api/rooms          — Active rooms (forming or active), display only
  POST /api/rooms          — Create a room (optional preferred code / display name)
  GET  /api/rooms/{code}   — Public room view: status and which seats are filled

Nothing here ever reveals a room's character lock.
"""
import logging
from typing import List

from fastapi import APIRouter, HTTPException

from models.errors import CoordinationError
from models.room import (
    CreateRoomRequest, RoomDetailResponse, RoomResponse, Role,
)
from services.coordinator import get_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])


def _http_error(exc: CoordinationError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "msg": exc.message})


@router.get("/rooms", response_model=List[RoomResponse])
async def list_rooms():
    return [
        RoomResponse(**r.to_public())
        for r in get_coordinator().list_active_rooms()
    ]


@router.post("/rooms", response_model=RoomResponse, status_code=201)
async def create_room(body: CreateRoomRequest):
    """Create a new room. Fails on a duplicate or malformed display name."""
    try:
        room = get_coordinator().create_room(body.preferredCode, body.displayName)
    except CoordinationError as exc:
        raise _http_error(exc)
    return RoomResponse(**room.to_public())


@router.get("/rooms/{code}", response_model=RoomDetailResponse)
async def get_room(code: str):
    coordinator = get_coordinator()
    try:
        state = coordinator.rooms.get(code)
    except CoordinationError as exc:
        raise _http_error(exc)

    connections = coordinator.connections
    detective = state.binding(Role.DETECTIVE)
    controller = state.binding(Role.CHARACTER_CONTROLLER)
    return RoomDetailResponse(
        code=state.code,
        displayName=state.room.display_name,
        status=state.room.status,
        detectivePresent=detective is not None and connections.is_connected(detective.connection_id),
        controllerPresent=controller is not None and connections.is_connected(controller.connection_id),
        observerCount=len(state.observers),
    )
