"""Tests for the signaling relay: room membership and fan-out."""

import json

import pytest

from mesh_rtc import protocol
from mesh_rtc.relay import RelayServer, RoomService

TOPIC = "/topic/room/R1"


class FakeSocket:
    """Records frames the relay sends; iterates over scripted inbound frames."""

    def __init__(self, inbound=()):
        self.sent = []
        self._inbound = list(inbound)

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._inbound:
            raise StopAsyncIteration
        return self._inbound.pop(0)

    def bodies(self):
        return [frame["body"] for frame in self.sent]

    def types(self):
        return [body["type"] for body in self.bodies()]


def _send(message):
    return {"action": "send", "destination": message.destination, "body": message.to_dict()}


async def _join(server, socket, user_id):
    await server.handle_frame(socket, {"action": "subscribe", "topic": TOPIC})
    await server.handle_frame(socket, _send(protocol.join_room("R1", user_id, user_id.lower())))


class TestRoomService:
    def test_join_and_membership(self):
        rooms = RoomService()
        rooms.join_room("R1", "U1", "alice")
        rooms.join_room("R1", "U2")
        assert rooms.get_room_users("R1") == ["U1", "U2"]
        assert rooms.is_user_in_room("R1", "U2")
        assert not rooms.is_user_in_room("R1", None)
        assert rooms.get_user_name("U1") == "alice"
        assert rooms.get_room_size("R1") == 2

    def test_rejoin_keeps_single_entry(self):
        rooms = RoomService()
        rooms.join_room("R1", "U1")
        rooms.join_room("R1", "U1")
        assert rooms.get_room_users("R1") == ["U1"]

    def test_empty_room_is_deleted(self):
        rooms = RoomService()
        rooms.join_room("R1", "U1", "alice")
        assert rooms.leave_room("R1", "U1")
        assert rooms.rooms() == set()
        assert rooms.get_user_name("U1") is None

    def test_leave_unknown_member(self):
        rooms = RoomService()
        assert not rooms.leave_room("R1", "U1")


class TestRelayServer:
    @pytest.mark.asyncio
    async def test_join_broadcasts_snapshot_then_delta(self):
        server = RelayServer()
        first, second = FakeSocket(), FakeSocket()
        await _join(server, first, "U1")
        await _join(server, second, "U2")

        assert first.types() == ["ROOM_USERS", "USER_JOINED", "ROOM_USERS", "USER_JOINED"]
        assert first.bodies()[2]["userIds"] == ["U1", "U2"]
        assert first.bodies()[3]["userId"] == "U2"
        assert second.types() == ["ROOM_USERS", "USER_JOINED"]
        assert all(frame["topic"] == TOPIC for frame in first.sent)

    @pytest.mark.asyncio
    async def test_offer_forwarded_to_room(self):
        server = RelayServer()
        first, second = FakeSocket(), FakeSocket()
        await _join(server, first, "U1")
        await _join(server, second, "U2")
        second.sent.clear()

        offer = protocol.offer("R1", "U1", "U2", {"type": "offer", "sdp": "v=0"})
        await server.handle_frame(first, _send(offer))
        assert second.bodies() == [offer.to_dict()]

    @pytest.mark.asyncio
    async def test_target_outside_room_gets_error(self):
        server = RelayServer()
        socket = FakeSocket()
        await _join(server, socket, "U1")
        socket.sent.clear()

        await server.handle_frame(
            socket, _send(protocol.answer("R1", "U1", "U9", {"type": "answer", "sdp": "x"}))
        )
        (body,) = socket.bodies()
        assert body["type"] == "ERROR"
        assert body["errorCode"] == protocol.ERR_USER_NOT_IN_ROOM
        assert body["targetId"] == "U1"

    @pytest.mark.asyncio
    async def test_sender_outside_room_gets_error(self):
        server = RelayServer()
        socket = FakeSocket()
        await _join(server, socket, "U1")
        socket.sent.clear()

        await server.handle_frame(
            socket, _send(protocol.ice_candidate("R1", "U7", "U1", {"candidate": ""}))
        )
        assert socket.types() == ["ERROR"]
        assert socket.bodies()[0]["targetId"] == "U7"

    @pytest.mark.asyncio
    async def test_leave_broadcasts_delta_then_snapshot(self):
        server = RelayServer()
        first, second = FakeSocket(), FakeSocket()
        await _join(server, first, "U1")
        await _join(server, second, "U2")
        first.sent.clear()

        await server.handle_frame(second, _send(protocol.leave_room("R1", "U2")))
        assert first.types() == ["USER_LEFT", "ROOM_USERS"]
        assert first.bodies()[1]["userIds"] == ["U1"]
        assert second not in server.members

    @pytest.mark.asyncio
    async def test_disconnect_counts_as_leave(self):
        server = RelayServer()
        first, second = FakeSocket(), FakeSocket()
        await _join(server, first, "U1")
        await _join(server, second, "U2")
        first.sent.clear()

        await server.disconnect(second)
        assert first.types() == ["USER_LEFT", "ROOM_USERS"]
        assert server.rooms.get_room_users("R1") == ["U1"]
        assert second not in server.subscribers[TOPIC]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        server = RelayServer()
        first, second = FakeSocket(), FakeSocket()
        await _join(server, first, "U1")
        await server.handle_frame(first, {"action": "unsubscribe", "topic": TOPIC})
        first.sent.clear()
        await _join(server, second, "U2")
        assert first.sent == []

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_frames_ignored(self):
        server = RelayServer()
        socket = FakeSocket()
        await server.handle_frame(socket, {"action": "send", "destination": "/app/join", "body": {}})
        await server.handle_frame(socket, {"action": "send", "destination": "/app/nope", "body": {}})
        await server.handle_frame(socket, {"action": "dance"})
        assert socket.sent == []
        assert server.rooms.rooms() == set()

    @pytest.mark.asyncio
    async def test_handler_processes_frames_then_disconnects(self):
        server = RelayServer()
        watcher = FakeSocket()
        await _join(server, watcher, "U1")
        watcher.sent.clear()

        peer = FakeSocket(
            inbound=[
                json.dumps({"action": "subscribe", "topic": TOPIC}),
                "not json",
                json.dumps(_send(protocol.join_room("R1", "U2", "bob"))),
            ]
        )
        await server.handler(peer)

        assert watcher.types() == ["ROOM_USERS", "USER_JOINED", "USER_LEFT", "ROOM_USERS"]
        assert server.rooms.get_room_users("R1") == ["U1"]
        assert peer not in server.members
