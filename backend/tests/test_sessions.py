"""Seat binding, join/leave notices, rejoin snapshots and identity checks."""
import pytest

from config import Settings
from models.errors import RoleRequired, RoleTaken, RoomNotFound, Unauthorized
from models.room import Role, RoomStatus, SUSPECTS
from services.coordinator import Coordinator
from services.identity import IdentityVerifier
from tests.conftest import FakeAnswerer, FakeVerifier, RecordingConnection, run


def _connect(coordinator):
    conn = RecordingConnection()
    coordinator.connect(conn)
    return conn


def test_join_unknown_room(coordinator):
    async def scenario():
        conn = _connect(coordinator)
        with pytest.raises(RoomNotFound):
            await coordinator.join_role(conn, "ZZZZZZ", Role.DETECTIVE)

    run(scenario())


def test_join_sends_snapshot_and_role_only_notice(coordinator):
    async def scenario():
        room = coordinator.create_room()
        detective = _connect(coordinator)
        controller = _connect(coordinator)

        await coordinator.join_role(detective, room.code.lower(), Role.DETECTIVE)
        joined = detective.last("roleJoined")
        assert joined["room"] == room.code
        assert joined["role"] == "detective"
        assert joined["status"] == "forming"
        assert joined["characters"] == SUSPECTS
        assert "lockedCharacter" not in joined

        await coordinator.join_role(controller, room.code, Role.CHARACTER_CONTROLLER)
        assert controller.last("roleJoined")["lockedCharacter"] is None
        assert detective.last("system") == {
            "type": "system", "msg": "Another participant has joined the room.",
        }
        assert coordinator.rooms.get(room.code).room.status == RoomStatus.ACTIVE

    run(scenario())


def test_rejoining_same_role_is_idempotent(coordinator):
    async def scenario():
        room = coordinator.create_room()
        detective = _connect(coordinator)
        first = await coordinator.join_role(detective, room.code, Role.DETECTIVE)
        again = await coordinator.join_role(detective, room.code, Role.DETECTIVE)
        assert again is first
        assert len(detective.events("roleJoined")) == 1

    run(scenario())


def test_taken_seat(coordinator):
    async def scenario():
        room = coordinator.create_room()
        first, second = _connect(coordinator), _connect(coordinator)
        await coordinator.join_role(first, room.code, Role.DETECTIVE)
        with pytest.raises(RoleTaken):
            await coordinator.join_role(second, room.code, Role.DETECTIVE)

    run(scenario())


def test_seat_frees_up_on_disconnect(coordinator):
    async def scenario():
        room = coordinator.create_room()
        first, second, controller = (_connect(coordinator) for _ in range(3))
        await coordinator.join_role(controller, room.code, Role.CHARACTER_CONTROLLER)
        await coordinator.join_role(first, room.code, Role.DETECTIVE)
        await coordinator.disconnect(first)

        assert controller.last("system")["msg"] == "The detective has left the room."
        await coordinator.join_role(second, room.code, Role.DETECTIVE)
        state = coordinator.rooms.get(room.code)
        assert state.binding(Role.DETECTIVE).connection_id == second.id

    run(scenario())


def test_stale_seat_is_reclaimed(coordinator):
    async def scenario():
        room = coordinator.create_room()
        ghost, fresh = _connect(coordinator), _connect(coordinator)
        await coordinator.join_role(ghost, room.code, Role.DETECTIVE)
        ghost.close()
        await coordinator.join_role(fresh, room.code, Role.DETECTIVE)
        assert coordinator.rooms.get(room.code).binding(Role.DETECTIVE).connection_id == fresh.id

    run(scenario())


def test_switching_seat_releases_previous_one(coordinator):
    async def scenario():
        room = coordinator.create_room()
        player = _connect(coordinator)
        await coordinator.join_role(player, room.code, Role.DETECTIVE)
        await coordinator.join_role(player, room.code, Role.OBSERVER)
        state = coordinator.rooms.get(room.code)
        assert state.binding(Role.DETECTIVE) is None
        assert player.id in state.observers

    run(scenario())


def test_notices_never_name_the_locked_suspect(coordinator, seat):
    async def scenario():
        room, detective, controller = await seat(lock="Mr. Holloway")
        observer = _connect(coordinator)
        await coordinator.join_role(observer, room.code, Role.OBSERVER)
        await coordinator.disconnect(controller)

        for conn in (detective, observer):
            for msg in conn.sent:
                if msg["type"] in ("system", "roleJoined"):
                    assert "lockedCharacter" not in msg
                    assert "Holloway" not in str(msg.get("msg", ""))

    run(scenario())


def test_rejoin_snapshot_restores_lock_and_pending(coordinator, seat):
    async def scenario():
        room, detective, controller = await seat(lock="Mr. Holloway")
        pending = await coordinator.ask(detective, "Mr. Holloway", "Where were you at nine?")
        # Drop the channel without processing the disconnect so the question stays pending
        controller.close()

        back = _connect(coordinator)
        await coordinator.join_role(back, room.code, Role.CHARACTER_CONTROLLER)
        snapshot = back.last("roleJoined")
        assert snapshot["lockedCharacter"] == "Mr. Holloway"
        assert snapshot["pendingQuestions"] == [{
            "correlationId": pending.correlation_id,
            "character": "Mr. Holloway",
            "question": "Where were you at nine?",
        }]

        await coordinator.answer(back, pending.correlation_id, "Reading in the library.")
        assert detective.last("answer")["answer"] == "Reading in the library."

    run(scenario())


class TestIdentity:
    def test_only_the_original_identity_rebinds_a_locked_controller_seat(self, coordinator):
        async def scenario():
            room = coordinator.create_room()
            detective, alice = _connect(coordinator), _connect(coordinator)
            await coordinator.join_role(detective, room.code, Role.DETECTIVE)
            await coordinator.join_role(alice, room.code, Role.CHARACTER_CONTROLLER, "tok-alice")
            await coordinator.lock_character(alice, "Dr. Adrian Blackwood")
            await coordinator.disconnect(alice)

            bob = _connect(coordinator)
            with pytest.raises(Unauthorized):
                await coordinator.join_role(bob, room.code, Role.CHARACTER_CONTROLLER, "tok-bob")
            anonymous = _connect(coordinator)
            with pytest.raises(Unauthorized):
                await coordinator.join_role(anonymous, room.code, Role.CHARACTER_CONTROLLER)

            alice_again = _connect(coordinator)
            binding = await coordinator.join_role(
                alice_again, room.code, Role.CHARACTER_CONTROLLER, "tok-alice",
            )
            assert binding.identity == "alice"
            assert coordinator.rooms.get(room.code).character_lock.character == "Dr. Adrian Blackwood"

        run(scenario())

    def test_bad_token_is_rejected(self, coordinator):
        async def scenario():
            room = coordinator.create_room()
            conn = _connect(coordinator)
            with pytest.raises(Unauthorized):
                await coordinator.join_role(conn, room.code, Role.DETECTIVE, "forged")
            assert coordinator.rooms.get(room.code).binding(Role.DETECTIVE) is None

        run(scenario())

    def test_required_identity(self, settings):
        coordinator = Coordinator(
            settings=settings, answerer=FakeAnswerer(), verifier=FakeVerifier(require=True),
        )

        async def scenario():
            room = coordinator.create_room()
            conn = _connect(coordinator)
            with pytest.raises(Unauthorized):
                await coordinator.join_role(conn, room.code, Role.DETECTIVE)

        run(scenario())

    def test_firebase_verifier(self, monkeypatch):
        verifier = IdentityVerifier(Settings(_env_file=None, firebase_project_id="detective-online"))
        monkeypatch.setattr(verifier, "_verify_sync", lambda token, audience: f"uid-{token}@{audience}")

        async def scenario():
            assert await verifier.verify(None) is None
            assert await verifier.verify("  ") is None
            assert await verifier.verify("abc") == "uid-abc@detective-online"

        run(scenario())

    def test_firebase_verifier_rejections(self, monkeypatch):
        verifier = IdentityVerifier(Settings(
            _env_file=None, require_identity=True, firebase_project_id="detective-online",
        ))

        def reject(token, audience):
            raise ValueError("Token expired")

        monkeypatch.setattr(verifier, "_verify_sync", reject)

        async def scenario():
            with pytest.raises(Unauthorized):
                await verifier.verify("")
            with pytest.raises(Unauthorized):
                await verifier.verify("expired-token")

        run(scenario())

    def test_tokens_are_refused_without_a_configured_project(self, monkeypatch):
        verifier = IdentityVerifier(Settings(
            _env_file=None, firebase_project_id="", google_cloud_project="",
        ))
        calls = []
        monkeypatch.setattr(verifier, "_verify_sync", lambda token, audience: calls.append(token))

        async def scenario():
            assert await verifier.verify(None) is None
            with pytest.raises(Unauthorized):
                await verifier.verify("token-from-another-project")

        run(scenario())
        assert calls == []

    @pytest.mark.parametrize("issuer, accepted", [
        ("https://securetoken.google.com/detective-online", True),
        ("https://securetoken.google.com/some-other-app", False),
        (None, False),
    ])
    def test_token_issuer_must_match_the_project(self, monkeypatch, issuer, accepted):
        from google.oauth2 import id_token

        seen = {}

        def fake_verify(token, request, audience=None):
            seen["audience"] = audience
            return {"sub": "alice", "iss": issuer}

        monkeypatch.setattr(id_token, "verify_firebase_token", fake_verify)
        verifier = IdentityVerifier(Settings(_env_file=None, firebase_project_id="detective-online"))
        verifier._request = object()

        async def scenario():
            if accepted:
                assert await verifier.verify("tok") == "alice"
            else:
                with pytest.raises(Unauthorized):
                    await verifier.verify("tok")

        run(scenario())
        assert seen["audience"] == "detective-online"

    def test_rejected_rebind_keeps_the_disconnect_fallback(self, answerer, verifier):
        coordinator = Coordinator(
            settings=Settings(_env_file=None, answer_timeout_seconds=30),
            answerer=answerer, verifier=verifier,
        )

        async def scenario():
            room = coordinator.create_room()
            detective, alice = _connect(coordinator), _connect(coordinator)
            await coordinator.join_role(detective, room.code, Role.DETECTIVE)
            await coordinator.join_role(alice, room.code, Role.CHARACTER_CONTROLLER, "tok-alice")
            await coordinator.lock_character(alice, "Mr. Holloway")
            pending = await coordinator.ask(detective, "Mr. Holloway", "Where were you?")

            # Channel dropped; the disconnect is processed only after bob's attempt
            alice.close()
            bob = _connect(coordinator)
            with pytest.raises(Unauthorized):
                await coordinator.join_role(bob, room.code, Role.CHARACTER_CONTROLLER, "tok-bob")

            state = coordinator.rooms.get(room.code)
            assert state.binding(Role.CHARACTER_CONTROLLER).connection_id == alice.id
            assert bob.room_code is None

            await coordinator.disconnect(alice)
            assert [a["character"] for a in detective.events("answer")] == ["Mr. Holloway"]
            assert pending.correlation_id not in state.pending

        run(scenario())


def test_observers_can_be_disabled(answerer, verifier):
    coordinator = Coordinator(
        settings=Settings(_env_file=None, allow_observers=False),
        answerer=answerer, verifier=verifier,
    )

    async def scenario():
        room = coordinator.create_room()
        conn = _connect(coordinator)
        with pytest.raises(RoleRequired):
            await coordinator.join_role(conn, room.code, Role.OBSERVER)

    run(scenario())
