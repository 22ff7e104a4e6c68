"""Orchestrator: the single entry point for room signaling.

The orchestrator receives every message delivered for the room, applies the
addressing filter, reconciles membership into session creation and removal
through the SessionRegistry, routes description and candidate messages to
the owning PeerSession, and publishes the messages sessions produce.

Offer origination policy:
- The first ROOM_USERS snapshot that lists the local participant creates a
  session for every other listed participant but originates no offers: the
  newcomer waits. Snapshots received before that only update the roster.
- USER_JOINED for another participant, once that snapshot has arrived,
  creates a session in the Caller role and originates an offer toward it,
  after ``offer_delay`` and once local media acquisition has settled. A
  USER_JOINED for a participant that already has a session originates
  nothing.
- OFFER creates (or reuses) a session in the Callee role and answers it.

So for any pair, the participant that was already present offers to the one
that arrives.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from mesh_rtc import protocol
from mesh_rtc.config import Config, get_config
from mesh_rtc.media import LocalMediaSource, MediaAcquisitionError, MediaTracks
from mesh_rtc.protocol import SignalingMessage, is_addressed_to
from mesh_rtc.registry import Listener, SessionRegistry
from mesh_rtc.session import PeerSession, Role
from mesh_rtc.signaling import SignalingChannel, SignalingError, Subscription
from mesh_rtc.transport import RemoteStream, TransportFactory, aiortc_transport_factory

logger = logging.getLogger(__name__)


class Orchestrator:
    """Routes room signaling to per-peer sessions.

    Attributes:
        local_id: Id of the local participant.
        room_id: Room this orchestrator participates in.
        channel: Signaling channel to the relay.
        media_source: Local media shared by every session.
        registry: Owner of all PeerSessions.
        roster: Participants currently believed present (local id excluded).
        errors: ERROR messages received from the relay.
    """

    def __init__(
        self,
        local_id: str,
        room_id: str,
        channel: SignalingChannel,
        transport_factory: Optional[TransportFactory] = None,
        media_source: Optional[LocalMediaSource] = None,
        config: Optional[Config] = None,
    ):
        self.local_id = local_id
        self.room_id = room_id
        self.channel = channel
        self.config = config or get_config()
        self.media_source = media_source or LocalMediaSource()
        self.registry = SessionRegistry(
            local_id,
            transport_factory or aiortc_transport_factory(self.config.ice_servers),
            emit=self._emit,
            policy=self.config.session,
            local_tracks=lambda: self.media_source.tracks,
        )
        self.roster: Set[str] = set()
        self.errors: List[SignalingMessage] = []

        self._subscription: Optional[Subscription] = None
        self._joined = False
        self._user_name: Optional[str] = None
        self._in_room = False
        self._media_settled = asyncio.Event()
        self._offer_tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._shutdown_task: Optional[asyncio.Future] = None

        self._handlers = {
            protocol.MSG_ROOM_USERS: self._on_room_users,
            protocol.MSG_USER_JOINED: self._on_user_joined,
            protocol.MSG_USER_LEFT: self._on_user_left,
            protocol.MSG_OFFER: self._on_offer,
            protocol.MSG_ANSWER: self._on_answer,
            protocol.MSG_ICE_CANDIDATE: self._on_ice_candidate,
            protocol.MSG_ERROR: self._on_error,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def media_settled(self) -> bool:
        return self._media_settled.is_set()

    @property
    def remote_streams(self) -> Dict[str, RemoteStream]:
        return {
            session.id: session.remote_stream
            for session in self.registry
            if session.remote_stream is not None
        }

    def add_listener(self, listener: Listener) -> None:
        """Register ``listener(event, peer_id, data)`` for session and room events."""
        self.registry.add_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.registry.remove_listener(listener)

    # ── lifecycle ─────────────────────────────────────────────────────────────

    async def acquire_media(
        self, want_video: bool = True, want_audio: bool = True
    ) -> Optional[MediaTracks]:
        """Acquire local media, then release any deferred offers.

        A failed acquisition is not fatal: the orchestrator continues with no
        local tracks and is not retried automatically.
        """
        tracks = None
        try:
            tracks = await self.media_source.acquire(want_video, want_audio)
        except MediaAcquisitionError as e:
            logger.warning(f"Continuing without local media: {e}")
        finally:
            self._media_settled.set()
        return tracks

    def join(self, user_name: Optional[str] = None) -> None:
        """Subscribe to the room and announce the local participant."""
        if self._closed:
            logger.warning("Cannot join: orchestrator is shut down")
            return
        if self._joined:
            logger.debug(f"Already joined room {self.room_id}")
            return
        self._subscription = self.channel.subscribe(self.room_id, self.handle_message)
        self._joined = True
        self._user_name = user_name or self.local_id
        self._publish(protocol.join_room(self.room_id, self.local_id, self._user_name))
        logger.info(f"Joining room {self.room_id} as {self.local_id}")

    async def rejoin(self) -> None:
        """Announce the local participant again after a relay reconnect.

        The relay treated the dropped connection as a leave, so every other
        participant has already closed its session with us. Local sessions
        are discarded and rebuilt from the next snapshot; the participants
        already present then offer to us again.
        """
        if self._closed or not self._joined:
            return
        logger.info(f"Rejoining room {self.room_id} as {self.local_id}")
        await self._cancel_offer_tasks()
        await self.registry.clear()
        self.roster.clear()
        self._in_room = False
        self._publish(protocol.join_room(self.room_id, self.local_id, self._user_name))

    async def shutdown(self) -> None:
        """Leave the room, close every session and stop local media.

        Idempotent: later calls, including concurrent ones, wait for the
        first teardown to finish and do no further work.
        """
        if self._shutdown_task is None:
            self._closed = True
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        logger.info("Shutting down orchestrator")

        if self._joined:
            self._publish(protocol.leave_room(self.room_id, self.local_id))
        if self._subscription is not None:
            self.channel.unsubscribe(self._subscription)
            self._subscription = None

        await self._cancel_offer_tasks()
        await self.registry.clear()
        self.media_source.stop()
        self.roster.clear()
        logger.info("Orchestrator shutdown complete")

    async def _cancel_offer_tasks(self) -> None:
        tasks = list(self._offer_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for pending offers and queued session work to finish."""
        while self._offer_tasks:
            await asyncio.gather(*list(self._offer_tasks), return_exceptions=True)
        for session in self.registry:
            await session.drain()

    # ── inbound routing ───────────────────────────────────────────────────────

    async def handle_message(self, message: SignalingMessage) -> None:
        """Process one inbound signaling message."""
        if self._closed:
            logger.debug(f"Ignoring {message.type}: orchestrator is shut down")
            return
        if not is_addressed_to(message, self.local_id):
            logger.debug(
                f"Ignoring {message.type} from {message.sender_id} "
                f"addressed to {message.target_id}"
            )
            return

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug(f"Ignoring message type: {message.type}")
            return
        await handler(message)

    async def _on_room_users(self, message: SignalingMessage) -> None:
        user_ids = [uid for uid in message.get("userIds") or [] if uid]
        self.roster = {uid for uid in user_ids if uid != self.local_id}
        self.registry.notify("roster", self.local_id, sorted(self.roster))

        if self._in_room:
            logger.debug("Room snapshot updates roster only")
            return
        if self.local_id not in user_ids:
            # Another participant's join overtook ours at the relay.
            logger.debug("Room snapshot predates our join; updating roster only")
            return
        self._in_room = True
        logger.info(f"Room snapshot: {len(self.roster)} other participant(s)")
        # The newcomer waits; each participant already present offers to us.
        for uid in user_ids:
            self.registry.ensure(uid)

    async def _on_user_joined(self, message: SignalingMessage) -> None:
        uid = message.get("userId") or message.sender_id
        if not uid or uid == self.local_id:
            return
        self.roster.add(uid)
        self.registry.notify("roster", self.local_id, sorted(self.roster))

        if not self._in_room:
            # Present before us: it will offer once it sees our USER_JOINED.
            logger.debug(f"User {uid} joined before us; waiting for its offer")
            return
        if uid in self.registry:
            logger.debug(f"Ignoring repeated join of {uid}: session already exists")
            return

        logger.info(f"New user joined, creating session: {uid}")
        session = self.registry.ensure(uid, Role.CALLER)
        task = asyncio.create_task(self._offer_when_ready(session))
        self._offer_tasks.add(task)
        task.add_done_callback(self._offer_tasks.discard)

    async def _offer_when_ready(self, session: PeerSession) -> None:
        if self.config.session.offer_delay > 0:
            await asyncio.sleep(self.config.session.offer_delay)
        if not self._media_settled.is_set():
            logger.info(f"Deferring offer to {session.id} until local media is ready")
            await self._media_settled.wait()

        if self._closed or not self.registry.holds(session):
            logger.debug(f"Dropping deferred offer to {session.id}: session was removed")
            return
        if session.role is not Role.CALLER:
            logger.warning(
                f"Not offering to {session.id}: session already negotiating as callee"
            )
            return
        session.originate_offer()

    async def _on_user_left(self, message: SignalingMessage) -> None:
        uid = message.get("userId") or message.sender_id
        if not uid or uid == self.local_id:
            return
        logger.info(f"User left, closing session: {uid}")
        self.roster.discard(uid)
        self.registry.notify("roster", self.local_id, sorted(self.roster))
        await self.registry.remove(uid)

    async def _on_offer(self, message: SignalingMessage) -> None:
        sender = message.sender_id
        if not sender or sender == self.local_id:
            return
        logger.info(f"Handling offer from {sender}")
        session = self.registry.ensure(sender, Role.CALLEE)
        session.accept_offer(message.get("offer"))

    async def _on_answer(self, message: SignalingMessage) -> None:
        session = self.registry.get(message.sender_id)
        if session is None:
            logger.warning(f"No session for answer from {message.sender_id}; discarding")
            return
        logger.info(f"Handling answer from {message.sender_id}")
        session.accept_answer(message.get("answer"))

    async def _on_ice_candidate(self, message: SignalingMessage) -> None:
        session = self.registry.get(message.sender_id)
        if session is None:
            logger.warning(
                f"No session for ICE candidate from {message.sender_id}; discarding"
            )
            return
        session.add_remote_candidate(message.get("candidate"))

    async def _on_error(self, message: SignalingMessage) -> None:
        self.errors.append(message)
        error_code = message.get("errorCode")
        error_message = message.get("errorMessage")
        logger.error(f"Relay error {error_code}: {error_message}")
        self.registry.notify(
            "error",
            message.sender_id,
            {"errorCode": error_code, "errorMessage": error_message},
        )

    # ── outbound ──────────────────────────────────────────────────────────────

    def _emit(self, session: PeerSession, msg_type: str, payload: dict) -> None:
        """Publish a message produced by ``session``, unless it went stale."""
        if self._closed or not self.registry.holds(session):
            logger.debug(f"Discarding {msg_type} for stale session {session.id}")
            return

        if msg_type == protocol.MSG_OFFER:
            message = protocol.offer(self.room_id, self.local_id, session.id, payload)
        elif msg_type == protocol.MSG_ANSWER:
            message = protocol.answer(self.room_id, self.local_id, session.id, payload)
        elif msg_type == protocol.MSG_ICE_CANDIDATE:
            message = protocol.ice_candidate(self.room_id, self.local_id, session.id, payload)
        else:
            logger.error(f"Sessions cannot emit {msg_type}")
            return
        self._publish(message)

    def _publish(self, message: SignalingMessage) -> None:
        try:
            self.channel.publish(message.destination, message)
        except SignalingError as e:
            logger.error(f"Failed to publish {message.type}: {e}")
