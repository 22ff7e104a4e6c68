"""WebSocket signaling relay for mesh-rtc rooms.

The relay keeps room membership and fans messages out to every socket
subscribed to a room topic; peers filter by ``targetId`` themselves. It
never interprets descriptions or candidates.

Usage:
    mesh-rtc relay [--host HOST] [--port PORT]

Join flow:
1. Peer subscribes to ``/topic/room/<room>`` and sends JOIN_ROOM to ``/app/join``
2. Relay records membership
3. Relay broadcasts ROOM_USERS (full snapshot) to the room
4. Relay broadcasts USER_JOINED to the room

OFFER / ANSWER / ICE_CANDIDATE are forwarded only if both sender and target
are members of the room; otherwise the sender gets ERROR{USER_NOT_IN_ROOM}.
A dropped connection is treated as a leave.
"""

import asyncio
import json
import logging
from typing import Dict, Optional, Set, Tuple

import websockets

from mesh_rtc import protocol
from mesh_rtc.protocol import MessageFormatError, SignalingMessage, room_topic
from mesh_rtc.relay.rooms import RoomService

logger = logging.getLogger(__name__)


class RelayServer:
    """Room membership plus topic fan-out.

    Attributes:
        rooms: Membership store.
        subscribers: topic -> sockets subscribed to it.
        members: socket -> (room_id, user_id) it joined as.
    """

    def __init__(self, rooms: Optional[RoomService] = None):
        self.rooms = rooms or RoomService()
        self.subscribers: Dict[str, Set] = {}
        self.members: Dict[object, Tuple[str, str]] = {}

        self._routes = {
            protocol.DEST_JOIN: self.join_room,
            protocol.DEST_LEAVE: self.leave_room,
            protocol.DEST_OFFER: self.forward,
            protocol.DEST_ANSWER: self.forward,
            protocol.DEST_ICE_CANDIDATE: self.forward,
        }

    async def handler(self, websocket):
        """Handle a WebSocket connection."""
        try:
            async for raw in websocket:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received from client")
                    continue
                await self.handle_frame(websocket, frame)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed")
        finally:
            await self.disconnect(websocket)

    async def handle_frame(self, websocket, frame: dict) -> None:
        action = frame.get("action")
        topic = frame.get("topic")

        if action == "subscribe" and topic:
            self.subscribers.setdefault(topic, set()).add(websocket)
            logger.debug(f"Subscribed socket to {topic}")

        elif action == "unsubscribe" and topic:
            self._unsubscribe(websocket, topic)

        elif action == "send":
            destination = frame.get("destination")
            route = self._routes.get(destination)
            if route is None:
                logger.warning(f"Unknown destination: {destination}")
                return
            try:
                message = SignalingMessage.from_dict(frame.get("body"))
            except MessageFormatError as e:
                logger.error(f"Dropping malformed message for {destination}: {e}")
                return
            await route(websocket, message)

        else:
            logger.warning(f"Ignoring frame with action: {action}")

    async def join_room(self, websocket, message: SignalingMessage) -> None:
        room_id, user_id = message.room_id, message.sender_id
        try:
            logger.info(f"User {user_id} joining room {room_id}")
            self.rooms.join_room(room_id, user_id, message.get("userName"))
            self.members[websocket] = (room_id, user_id)

            # Snapshot first, then the delta.
            await self.broadcast(
                room_id, protocol.room_users(room_id, self.rooms.get_room_users(room_id))
            )
            await self.broadcast(
                room_id, protocol.user_joined(room_id, user_id, message.get("userName"))
            )
            logger.info(
                f"User {user_id} joined room {room_id}. "
                f"Room size: {self.rooms.get_room_size(room_id)}"
            )
        except Exception as e:
            logger.error(f"Error joining room: {e}")
            await self.send_error(room_id, user_id, "Failed to join room", protocol.ERR_JOIN)

    async def leave_room(self, websocket, message: SignalingMessage) -> None:
        room_id, user_id = message.room_id, message.sender_id
        try:
            logger.info(f"User {user_id} leaving room {room_id}")
            self.rooms.leave_room(room_id, user_id)
            if self.members.get(websocket) == (room_id, user_id):
                del self.members[websocket]

            await self.broadcast(room_id, protocol.user_left(room_id, user_id))
            await self.broadcast(
                room_id, protocol.room_users(room_id, self.rooms.get_room_users(room_id))
            )
        except Exception as e:
            logger.error(f"Error leaving room: {e}")
            await self.send_error(room_id, user_id, "Failed to leave room", protocol.ERR_LEAVE)

    async def forward(self, websocket, message: SignalingMessage) -> None:
        room_id, user_id, target_id = message.room_id, message.sender_id, message.target_id
        error_code = {
            protocol.MSG_OFFER: protocol.ERR_OFFER,
            protocol.MSG_ANSWER: protocol.ERR_ANSWER,
        }.get(message.type, protocol.ERR_ICE_CANDIDATE)
        try:
            if not self.rooms.is_user_in_room(room_id, user_id) or not self.rooms.is_user_in_room(
                room_id, target_id
            ):
                await self.send_error(
                    room_id, user_id, "User not in room", protocol.ERR_USER_NOT_IN_ROOM
                )
                return
            await self.broadcast(room_id, message)
            logger.info(f"Forwarded {message.type} from {user_id} to {target_id} in room {room_id}")
        except Exception as e:
            logger.error(f"Error forwarding {message.type}: {e}")
            await self.send_error(
                room_id, user_id, f"Failed to handle {message.type.lower()}", error_code
            )

    async def send_error(
        self, room_id: str, user_id: Optional[str], error_message: str, error_code: str
    ) -> None:
        error = protocol.error(room_id, user_id, error_message, error_code)
        error.target_id = user_id
        await self.broadcast(room_id, error)

    async def broadcast(self, room_id: str, message: SignalingMessage) -> None:
        topic = room_topic(room_id)
        data = json.dumps({"topic": topic, "body": message.to_dict()})
        for websocket in list(self.subscribers.get(topic, ())):
            try:
                await websocket.send(data)
            except websockets.exceptions.ConnectionClosed:
                self._unsubscribe(websocket, topic)

    async def disconnect(self, websocket) -> None:
        """Forget a socket; a joined member is removed from its room."""
        for topic in list(self.subscribers):
            self._unsubscribe(websocket, topic)

        membership = self.members.pop(websocket, None)
        if membership is None:
            return
        room_id, user_id = membership
        if self.rooms.leave_room(room_id, user_id):
            logger.info(f"User {user_id} disconnected from room {room_id}")
            await self.broadcast(room_id, protocol.user_left(room_id, user_id))
            await self.broadcast(
                room_id, protocol.room_users(room_id, self.rooms.get_room_users(room_id))
            )

    def _unsubscribe(self, websocket, topic: str) -> None:
        sockets = self.subscribers.get(topic)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.subscribers[topic]


async def serve(host: str = "localhost", port: int = 8080) -> None:
    """Start the relay and run forever."""
    server = RelayServer()
    async with websockets.serve(server.handler, host, port):
        logger.info(f"Signaling relay running on ws://{host}:{port}")
        await asyncio.Future()
