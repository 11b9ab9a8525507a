"""Quick match: FIFO pairing into a fresh room, withdrawal, stale tickets."""
import asyncio

import pytest

from models.errors import InvalidRequest
from models.room import Role, RoomStatus
from tests.conftest import RecordingConnection, run


def _connected(coordinator, count):
    conns = [RecordingConnection() for _ in range(count)]
    for conn in conns:
        coordinator.connect(conn)
    return conns


def test_detective_and_controller_are_paired(coordinator):
    async def scenario():
        detective, controller = _connected(coordinator, 2)
        waiting = await coordinator.queue_for_role(detective, Role.DETECTIVE)
        assert not waiting.done()

        matched = await coordinator.queue_for_role(controller, Role.CHARACTER_CONTROLLER)
        room = await asyncio.wait_for(waiting, 1)
        assert matched.result() is room

        assert detective.last("matched") == {"type": "matched", "room": room.code, "role": "detective"}
        assert controller.last("matched") == {
            "type": "matched", "room": room.code, "role": "characterController",
        }
        state = coordinator.rooms.get(room.code)
        assert state.binding(Role.DETECTIVE).connection_id == detective.id
        assert state.binding(Role.CHARACTER_CONTROLLER).connection_id == controller.id
        assert state.room.status == RoomStatus.ACTIVE
        assert detective.room_code == controller.room_code == room.code

    run(scenario())


def test_pairing_is_first_come_first_served(coordinator):
    async def scenario():
        first, second, controller = _connected(coordinator, 3)
        first_wait = await coordinator.queue_for_role(first, Role.DETECTIVE)
        second_wait = await coordinator.queue_for_role(second, Role.DETECTIVE)
        await coordinator.queue_for_role(controller, Role.CHARACTER_CONTROLLER)

        assert first_wait.done()
        assert not second_wait.done()
        assert coordinator.matchmaking.queue_length(Role.DETECTIVE) == 1
        assert coordinator.matchmaking.is_queued(second)
        assert second.events("matched") == []

    run(scenario())


def test_same_role_never_pairs(coordinator):
    async def scenario():
        a, b = _connected(coordinator, 2)
        await coordinator.queue_for_role(a, Role.CHARACTER_CONTROLLER)
        await coordinator.queue_for_role(b, Role.CHARACTER_CONTROLLER)
        assert coordinator.matchmaking.queue_length(Role.CHARACTER_CONTROLLER) == 2
        assert len(coordinator.rooms) == 0

    run(scenario())


def test_disconnect_withdraws_ticket(coordinator):
    async def scenario():
        detective, controller = _connected(coordinator, 2)
        waiting = await coordinator.queue_for_role(detective, Role.DETECTIVE)
        await coordinator.disconnect(detective)
        assert waiting.cancelled()

        await coordinator.queue_for_role(controller, Role.CHARACTER_CONTROLLER)
        assert controller.events("matched") == []
        assert coordinator.matchmaking.queue_length(Role.CHARACTER_CONTROLLER) == 1
        assert len(coordinator.rooms) == 0

    run(scenario())


def test_dead_ticket_is_skipped_and_live_partner_keeps_place(coordinator):
    async def scenario():
        stale, controller, detective = _connected(coordinator, 3)
        await coordinator.queue_for_role(stale, Role.DETECTIVE)
        # Channel dropped but the disconnect has not been processed yet
        stale.close()

        await coordinator.queue_for_role(controller, Role.CHARACTER_CONTROLLER)
        assert controller.events("matched") == []
        assert coordinator.matchmaking.is_queued(controller)

        await coordinator.queue_for_role(detective, Role.DETECTIVE)
        assert controller.last("matched")["room"] == detective.last("matched")["room"]

    run(scenario())


def test_leave_queue(coordinator):
    async def scenario():
        (detective,) = _connected(coordinator, 1)
        await coordinator.queue_for_role(detective, Role.DETECTIVE)
        assert coordinator.leave_queue(detective) is True
        assert coordinator.leave_queue(detective) is False
        assert coordinator.matchmaking.queue_length(Role.DETECTIVE) == 0

    run(scenario())


def test_requeue_replaces_previous_ticket(coordinator):
    async def scenario():
        (player,) = _connected(coordinator, 1)
        first = await coordinator.queue_for_role(player, Role.DETECTIVE)
        await coordinator.queue_for_role(player, Role.CHARACTER_CONTROLLER)
        assert first.cancelled()
        assert coordinator.matchmaking.queue_length(Role.DETECTIVE) == 0
        assert coordinator.matchmaking.queue_length(Role.CHARACTER_CONTROLLER) == 1

    run(scenario())


def test_observer_cannot_queue(coordinator):
    async def scenario():
        (watcher,) = _connected(coordinator, 1)
        with pytest.raises(InvalidRequest):
            await coordinator.queue_for_role(watcher, Role.OBSERVER)

    run(scenario())
