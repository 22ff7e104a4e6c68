"""Session registry: the only place sessions are created or removed."""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from mesh_rtc.config import SessionPolicy
from mesh_rtc.session import Emitter, PeerSession, Role
from mesh_rtc.transport import TransportFactory

logger = logging.getLogger(__name__)

# (event, peer_id, data) -> None
Listener = Callable[[str, str, Any], None]


class SessionRegistry:
    """Owning map of participant id to PeerSession.

    Guarantees at most one session per id. ``ensure`` never replaces an
    existing session, so in-flight negotiations and attached tracks are never
    orphaned.

    Events delivered to listeners as ``listener(event, peer_id, data)``:
        session_added: data is the new PeerSession.
        session_removed: data is the removed PeerSession.
        state_changed: data is the new SessionState.
        remote_stream: data is the RemoteStream.
    """

    def __init__(
        self,
        local_id: str,
        transport_factory: TransportFactory,
        emit: Emitter,
        policy: Optional[SessionPolicy] = None,
        local_tracks: Optional[Callable[[], List[Any]]] = None,
    ):
        """Initialize SessionRegistry.

        Args:
            local_id: The local participant id; never given a session.
            transport_factory: Builds a fresh transport per session.
            emit: Outbound signaling callback handed to every session.
            policy: Negotiation/recovery policy for new sessions.
            local_tracks: Returns the local tracks to attach to new sessions.
        """
        self.local_id = local_id
        self._transport_factory = transport_factory
        self._emit = emit
        self._policy = policy or SessionPolicy()
        self._local_tracks = local_tracks or (lambda: [])
        self._sessions: Dict[str, PeerSession] = {}
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def __iter__(self) -> Iterator[PeerSession]:
        return iter(list(self._sessions.values()))

    def ids(self) -> List[str]:
        return list(self._sessions)

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def ensure(self, peer_id: str, role: Optional[Role] = None) -> Optional[PeerSession]:
        """Return the session for ``peer_id``, creating it if needed.

        Args:
            peer_id: Remote participant id.
            role: Role to assign if the session has none yet.

        Returns:
            The existing or newly created session, or None for the local id.
        """
        if not peer_id or peer_id == self.local_id:
            logger.debug(f"Not creating a session for local participant {peer_id}")
            return None

        session = self._sessions.get(peer_id)
        if session is not None:
            logger.debug(f"Session already exists for {peer_id}")
            if role is not None:
                session.assign_role(role)
            return session

        logger.info(f"Creating session for {peer_id}")
        session = PeerSession(
            peer_id,
            self._transport_factory(),
            emit=self._emit,
            policy=self._policy,
            notify=self.notify,
            role=role,
        )
        tracks = self._local_tracks()
        if tracks:
            session.attach_local_tracks(tracks)
        else:
            logger.warning(f"No local media available when creating session for {peer_id}")

        self._sessions[peer_id] = session
        self.notify("session_added", peer_id, session)
        return session

    def get(self, peer_id: str) -> Optional[PeerSession]:
        return self._sessions.get(peer_id)

    def holds(self, session: PeerSession) -> bool:
        """True if ``session`` (same instance, same transport) is still registered."""
        current = self._sessions.get(session.id)
        return current is session and current.transport is session.transport

    async def remove(self, peer_id: str) -> None:
        """Close and remove the session for ``peer_id``. Absent ids are a no-op."""
        session = self._sessions.pop(peer_id, None)
        if session is None:
            logger.debug(f"No session to remove for {peer_id}")
            return
        await session.close()
        self.notify("session_removed", peer_id, session)
        logger.info(f"Removed session for {peer_id} (remaining: {len(self._sessions)})")

    async def clear(self) -> None:
        """Remove every session, releasing all transports."""
        for peer_id in list(self._sessions):
            await self.remove(peer_id)

    def notify(self, event: str, peer_id: str, data: Any = None) -> None:
        """Deliver an event to every listener."""
        for listener in list(self._listeners):
            try:
                listener(event, peer_id, data)
            except Exception as e:
                logger.error(f"Error in session listener for {event}: {e}")
