"""Tests for the signaling message envelope and builders."""

import json

import pytest

from mesh_rtc import protocol
from mesh_rtc.protocol import (
    MessageFormatError,
    SignalingMessage,
    is_addressed_to,
    room_topic,
)


class TestEnvelope:
    def test_to_dict_merges_payload_into_envelope(self):
        msg = protocol.offer("R1", "U1", "U2", {"type": "offer", "sdp": "v=0"})
        data = msg.to_dict()
        assert data["type"] == "OFFER"
        assert data["roomId"] == "R1"
        assert data["senderId"] == "U1"
        assert data["targetId"] == "U2"
        assert data["offer"] == {"type": "offer", "sdp": "v=0"}
        assert isinstance(data["timestamp"], int)

    def test_broadcast_omits_target(self):
        data = protocol.user_joined("R1", "U2", "bob").to_dict()
        assert "targetId" not in data
        assert data["userId"] == "U2"
        assert data["userName"] == "bob"

    def test_from_json_splits_payload_from_envelope(self):
        raw = json.dumps(
            {
                "type": "ICE_CANDIDATE",
                "roomId": "R1",
                "senderId": "U1",
                "targetId": "U3",
                "timestamp": 42,
                "candidate": {"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host"},
            }
        )
        msg = SignalingMessage.from_json(raw)
        assert msg.type == protocol.MSG_ICE_CANDIDATE
        assert msg.target_id == "U3"
        assert msg.timestamp == 42
        assert set(msg.payload) == {"candidate"}

    def test_missing_timestamp_is_filled_in(self):
        msg = SignalingMessage.from_dict({"type": "LEAVE_ROOM", "roomId": "R1", "senderId": "U1"})
        assert msg.timestamp > 0

    def test_unknown_type_rejected(self):
        with pytest.raises(MessageFormatError):
            SignalingMessage.from_dict({"type": "HELLO", "roomId": "R1"})

    def test_missing_type_rejected(self):
        with pytest.raises(MessageFormatError):
            SignalingMessage.from_dict({"roomId": "R1"})

    def test_non_object_rejected(self):
        with pytest.raises(MessageFormatError):
            SignalingMessage.from_dict(["OFFER"])

    def test_invalid_json_rejected(self):
        with pytest.raises(MessageFormatError):
            SignalingMessage.from_json("{not json")


class TestAddressing:
    def test_targeted_message_only_for_target(self):
        msg = protocol.answer("R1", "U2", "U1", {"type": "answer", "sdp": "x"})
        assert is_addressed_to(msg, "U1")
        assert not is_addressed_to(msg, "U3")

    def test_broadcast_for_everyone(self):
        msg = protocol.room_users("R1", ["U1", "U2"])
        assert is_addressed_to(msg, "U1")
        assert is_addressed_to(msg, "anyone")


class TestDestinations:
    @pytest.mark.parametrize(
        "message, destination",
        [
            (protocol.join_room("R1", "U1", "alice"), "/app/join"),
            (protocol.leave_room("R1", "U1"), "/app/leave"),
            (protocol.offer("R1", "U1", "U2", {}), "/app/offer"),
            (protocol.answer("R1", "U1", "U2", {}), "/app/answer"),
            (protocol.ice_candidate("R1", "U1", "U2", {}), "/app/ice-candidate"),
        ],
    )
    def test_peer_messages_have_destinations(self, message, destination):
        assert message.destination == destination

    def test_relay_messages_have_no_destination(self):
        assert protocol.room_users("R1", []).destination is None
        assert protocol.error("R1", "U1", "nope", protocol.ERR_JOIN).destination is None

    def test_room_topic(self):
        assert room_topic("R1") == "/topic/room/R1"


class TestBuilders:
    def test_room_users_has_no_sender(self):
        msg = protocol.room_users("R1", ("U1", "U2"))
        assert msg.sender_id is None
        assert msg.get("userIds") == ["U1", "U2"]

    def test_error_payload(self):
        msg = protocol.error("R1", "U1", "User not in room", protocol.ERR_USER_NOT_IN_ROOM)
        assert msg.get("errorCode") == "USER_NOT_IN_ROOM"
        assert msg.get("errorMessage") == "User not in room"

    def test_get_default(self):
        assert protocol.leave_room("R1", "U1").get("missing", "d") == "d"
