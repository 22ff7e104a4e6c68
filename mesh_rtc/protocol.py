"""Signaling message protocol for mesh-rtc.

This module defines the message taxonomy exchanged between peers and the
signaling relay, the relay destinations each outbound message is published
to, and the addressing rule applied to every inbound message.

Message Envelope
----------------

Every message is a JSON object with a common envelope plus a payload::

    {
        "type": "OFFER",
        "roomId": "R1",
        "senderId": "U2",
        "targetId": "U1",        # optional; absent means broadcast to room
        "timestamp": 1700000000000,
        "offer": {"type": "offer", "sdp": "v=0..."}
    }

Message Types
-------------

**JOIN_ROOM{userName}**
    Sent by: Peer, once when joining a room.

**LEAVE_ROOM**
    Sent by: Peer, when leaving a room on purpose.

**USER_JOINED{userId, userName}** / **USER_LEFT{userId}**
    Sent by: Relay. Incremental membership deltas.

**ROOM_USERS{userIds}**
    Sent by: Relay. Full membership snapshot, broadcast after every join.

**OFFER{offer}** / **ANSWER{answer}**
    Sent by: Peer, always addressed with ``targetId``.
    Payload: session description ``{"type": ..., "sdp": ...}``.

**ICE_CANDIDATE{candidate}**
    Sent by: Peer, always addressed with ``targetId``.
    Payload: ``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``.

**ERROR{errorMessage, errorCode}**
    Sent by: Relay. Surfaced to observers, never auto-recovered.

Addressing
----------

A message carrying ``targetId`` is processed only by the peer whose id equals
it. Messages without ``targetId`` are broadcasts and are processed by every
peer in the room.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Message types
MSG_JOIN_ROOM = "JOIN_ROOM"
MSG_LEAVE_ROOM = "LEAVE_ROOM"
MSG_USER_JOINED = "USER_JOINED"
MSG_USER_LEFT = "USER_LEFT"
MSG_ROOM_USERS = "ROOM_USERS"
MSG_OFFER = "OFFER"
MSG_ANSWER = "ANSWER"
MSG_ICE_CANDIDATE = "ICE_CANDIDATE"
MSG_ERROR = "ERROR"

MESSAGE_TYPES = frozenset(
    {
        MSG_JOIN_ROOM,
        MSG_LEAVE_ROOM,
        MSG_USER_JOINED,
        MSG_USER_LEFT,
        MSG_ROOM_USERS,
        MSG_OFFER,
        MSG_ANSWER,
        MSG_ICE_CANDIDATE,
        MSG_ERROR,
    }
)

# Relay destinations for outbound messages
DEST_JOIN = "/app/join"
DEST_LEAVE = "/app/leave"
DEST_OFFER = "/app/offer"
DEST_ANSWER = "/app/answer"
DEST_ICE_CANDIDATE = "/app/ice-candidate"

DESTINATIONS = {
    MSG_JOIN_ROOM: DEST_JOIN,
    MSG_LEAVE_ROOM: DEST_LEAVE,
    MSG_OFFER: DEST_OFFER,
    MSG_ANSWER: DEST_ANSWER,
    MSG_ICE_CANDIDATE: DEST_ICE_CANDIDATE,
}

# Error codes emitted by the relay
ERR_USER_NOT_IN_ROOM = "USER_NOT_IN_ROOM"
ERR_JOIN = "JOIN_ERROR"
ERR_LEAVE = "LEAVE_ERROR"
ERR_OFFER = "OFFER_ERROR"
ERR_ANSWER = "ANSWER_ERROR"
ERR_ICE_CANDIDATE = "ICE_CANDIDATE_ERROR"

# Envelope keys (everything else is payload)
_ENVELOPE_KEYS = ("type", "roomId", "senderId", "targetId", "timestamp")


def room_topic(room_id: str) -> str:
    """Return the relay topic that fans out messages for ``room_id``."""
    return f"/topic/room/{room_id}"


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


class MessageFormatError(ValueError):
    """Raised when an inbound frame is not a valid signaling message."""


@dataclass
class SignalingMessage:
    """A single signaling message.

    Attributes:
        type: One of the ``MSG_*`` constants.
        room_id: Room the message is scoped to.
        sender_id: Participant that produced the message.
        target_id: Addressee, or None for a room broadcast.
        payload: Type-specific fields (``offer``, ``candidate``, ``userIds``...).
        timestamp: Milliseconds since the epoch when the message was built.
    """

    type: str
    room_id: str
    sender_id: Optional[str]
    target_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        if self.type not in MESSAGE_TYPES:
            raise MessageFormatError(f"Unknown message type: {self.type!r}")

    def get(self, key: str, default: Any = None) -> Any:
        """Read a payload field."""
        return self.payload.get(key, default)

    @property
    def destination(self) -> Optional[str]:
        """Relay destination for this message, if it is a peer-originated type."""
        return DESTINATIONS.get(self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire dictionary (camelCase envelope + payload)."""
        data = {
            "type": self.type,
            "roomId": self.room_id,
            "senderId": self.sender_id,
            "timestamp": self.timestamp,
        }
        if self.target_id is not None:
            data["targetId"] = self.target_id
        data.update(self.payload)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignalingMessage":
        """Create a message from a wire dictionary.

        Raises:
            MessageFormatError: If ``type`` is missing or unknown.
        """
        if not isinstance(data, dict):
            raise MessageFormatError(f"Expected a JSON object, got {type(data).__name__}")
        msg_type = data.get("type")
        if not msg_type:
            raise MessageFormatError("Message has no type")
        payload = {k: v for k, v in data.items() if k not in _ENVELOPE_KEYS}
        return cls(
            type=msg_type,
            room_id=data.get("roomId"),
            sender_id=data.get("senderId"),
            target_id=data.get("targetId"),
            payload=payload,
            timestamp=data.get("timestamp") or now_ms(),
        )

    def to_json(self) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> "SignalingMessage":
        """Deserialize from a JSON string."""
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as e:
            raise MessageFormatError(f"Invalid JSON: {e}") from e
        return cls.from_dict(parsed)


def is_addressed_to(message: SignalingMessage, participant_id: str) -> bool:
    """Return True if ``participant_id`` should process ``message``."""
    return message.target_id is None or message.target_id == participant_id


# ── Builders ──────────────────────────────────────────────────────────────────


def join_room(room_id: str, sender_id: str, user_name: str) -> SignalingMessage:
    return SignalingMessage(
        MSG_JOIN_ROOM, room_id, sender_id, payload={"userName": user_name}
    )


def leave_room(room_id: str, sender_id: str) -> SignalingMessage:
    return SignalingMessage(MSG_LEAVE_ROOM, room_id, sender_id)


def offer(room_id: str, sender_id: str, target_id: str, description: dict) -> SignalingMessage:
    return SignalingMessage(
        MSG_OFFER, room_id, sender_id, target_id, payload={"offer": description}
    )


def answer(room_id: str, sender_id: str, target_id: str, description: dict) -> SignalingMessage:
    return SignalingMessage(
        MSG_ANSWER, room_id, sender_id, target_id, payload={"answer": description}
    )


def ice_candidate(
    room_id: str, sender_id: str, target_id: str, candidate: dict
) -> SignalingMessage:
    return SignalingMessage(
        MSG_ICE_CANDIDATE,
        room_id,
        sender_id,
        target_id,
        payload={"candidate": candidate},
    )


def user_joined(room_id: str, user_id: str, user_name: Optional[str]) -> SignalingMessage:
    return SignalingMessage(
        MSG_USER_JOINED,
        room_id,
        user_id,
        payload={"userId": user_id, "userName": user_name},
    )


def user_left(room_id: str, user_id: str) -> SignalingMessage:
    return SignalingMessage(MSG_USER_LEFT, room_id, user_id, payload={"userId": user_id})


def room_users(room_id: str, user_ids: List[str]) -> SignalingMessage:
    return SignalingMessage(
        MSG_ROOM_USERS, room_id, None, payload={"userIds": list(user_ids)}
    )


def error(
    room_id: str, user_id: Optional[str], error_message: str, error_code: str
) -> SignalingMessage:
    return SignalingMessage(
        MSG_ERROR,
        room_id,
        user_id,
        payload={"errorMessage": error_message, "errorCode": error_code},
    )
