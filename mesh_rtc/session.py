"""Per-peer negotiation state machine.

One PeerSession exists per remote participant. It exclusively owns its
transport and runs every negotiation step (offer/answer creation,
description application, candidate application, ICE restart) on its own
serial work queue, so operations for the same peer never interleave while
operations for different peers proceed independently.

State machine::

    Idle ──offer originated / offer received──▶ Negotiating
    Negotiating ──transport connected──▶ Connected
    Negotiating | Connected ──transport failed / negotiation error──▶ Failed
    Failed ──ICE restart succeeds──▶ Connected
    any ──close()──▶ Closed (terminal)

Candidate queuing:
- A remote candidate that arrives while no remote description is set is
  appended to ``pending_candidates``.
- Right after a remote description is applied, queued candidates are applied
  in arrival order and the queue is cleared.
- Later candidates are applied immediately.

Recovery:
- Entering Failed schedules an ICE restart after an exponential backoff
  (see SessionPolicy). A Caller restarts by rebuilding its transport and
  originating a fresh offer; a Callee rebuilds when that offer arrives.
- After ``ice_restart_max_attempts`` restarts without reaching Connected the
  session is abandoned in Failed until it is removed.
"""

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, List, Optional

from mesh_rtc.config import SessionPolicy
from mesh_rtc.protocol import MSG_ANSWER, MSG_ICE_CANDIDATE, MSG_OFFER
from mesh_rtc.transport import RemoteStream, Transport, validate_description

logger = logging.getLogger(__name__)


class Role(enum.Enum):
    """Which side of the pair originates the offer."""

    CALLER = "caller"
    CALLEE = "callee"


class SessionState(enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class NegotiationError(Exception):
    """A description exchange step failed for a session."""

    def __init__(self, peer_id: str, stage: str, cause: Exception):
        super().__init__(f"{stage} failed for {peer_id}: {cause}")
        self.peer_id = peer_id
        self.stage = stage
        self.cause = cause


# (session, message type, payload) -> None
Emitter = Callable[["PeerSession", str, dict], None]
# (event, peer_id, data) -> None
Notifier = Callable[[str, str, Any], None]


class PeerSession:
    """Negotiation state for a single remote participant.

    Attributes:
        id: Remote participant id.
        role: Caller or Callee; None until the first negotiation step, then
            never changes.
        state: Current SessionState.
        transport: Exclusively owned connection transport.
        pending_candidates: Remote candidates waiting for a remote description.
        remote_stream: Last remote stream reported by the transport.
        errors: NegotiationErrors recorded against this session.
        restart_attempts: ICE restarts attempted since the last Connected.
    """

    def __init__(
        self,
        peer_id: str,
        transport: Transport,
        emit: Emitter,
        policy: Optional[SessionPolicy] = None,
        notify: Optional[Notifier] = None,
        role: Optional[Role] = None,
    ):
        self.id = peer_id
        self.transport = transport
        self.policy = policy or SessionPolicy()
        self.role: Optional[Role] = role
        self.state = SessionState.IDLE
        self.pending_candidates: List[dict] = []
        self.remote_stream: Optional[RemoteStream] = None
        self.errors: List[NegotiationError] = []
        self.restart_attempts = 0

        self._emit = emit
        self._notify = notify
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._restart_handle: Optional[asyncio.TimerHandle] = None

        transport.on_track = self._on_track
        transport.on_ice_candidate = self._on_local_candidate
        transport.on_connection_state_change = self._on_connection_state_change

    def __repr__(self) -> str:
        role = self.role.value if self.role else None
        return f"PeerSession(id={self.id!r}, role={role}, state={self.state.value})"

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def restart_pending(self) -> bool:
        return self._restart_handle is not None

    def assign_role(self, role: Role) -> Role:
        """Assign the role if none is set yet. Returns the effective role."""
        if self.role is None:
            self.role = role
            logger.info(f"Session {self.id} assigned role {role.value}")
        elif self.role is not role:
            logger.debug(
                f"Session {self.id} keeps role {self.role.value} (requested {role.value})"
            )
        return self.role

    def attach_local_tracks(self, tracks) -> None:
        """Attach local tracks to the transport."""
        for track in tracks:
            self.transport.add_track(track)
            logger.info(f"Added local {getattr(track, 'kind', 'media')} track for {self.id}")

    # ── public operations (queued) ────────────────────────────────────────────

    def originate_offer(self) -> asyncio.Future:
        """Queue creation and sending of a local offer (Caller role)."""
        return self.submit(self._originate)

    def accept_offer(self, description: dict) -> asyncio.Future:
        """Queue application of a remote offer and sending of the answer."""
        return self.submit(self._accept_offer, description)

    def accept_answer(self, description: dict) -> asyncio.Future:
        """Queue application of a remote answer."""
        return self.submit(self._accept_answer, description)

    def add_remote_candidate(self, candidate: dict) -> asyncio.Future:
        """Queue a remote candidate, applying the queuing rule."""
        return self.submit(self._add_remote_candidate, candidate)

    def submit(self, operation: Callable[..., Awaitable[None]], *args) -> asyncio.Future:
        """Queue ``operation(*args)`` on this session's work queue.

        Returns a future resolved when the operation finishes. Operations
        submitted to a closed session complete immediately without running.
        """
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        if self.closed:
            done.set_result(None)
            return done
        self._queue.put_nowait((operation, args, done))
        if self._task is None:
            self._task = loop.create_task(self._run(), name=f"peer-session-{self.id}")
        return done

    async def drain(self) -> None:
        """Wait until every queued operation has finished."""
        if self._task is not None and not self.closed:
            await self._queue.join()

    async def _run(self) -> None:
        while True:
            operation, args, done = await self._queue.get()
            try:
                await operation(*args)
            except asyncio.CancelledError:
                done.cancel()
                raise
            except Exception as e:
                logger.error(f"Unexpected error in session {self.id}: {e}")
            finally:
                if not done.done():
                    done.set_result(None)
                self._queue.task_done()

    # ── negotiation steps ─────────────────────────────────────────────────────

    async def _originate(self) -> None:
        if self.closed:
            return
        self.assign_role(Role.CALLER)
        if self.state is SessionState.IDLE:
            self._set_state(SessionState.NEGOTIATING)

        try:
            offer = await self.transport.create_offer()
            await self.transport.set_local_description(offer)
        except Exception as e:
            self._negotiation_failed("create offer", e)
            return

        if self.closed:
            logger.debug(f"Discarding offer for closed session {self.id}")
            return
        self._emit(self, MSG_OFFER, self.transport.local_description or offer)
        logger.info(f"Sent offer to {self.id}")

    async def _accept_offer(self, description: dict) -> None:
        if self.closed:
            return
        self.assign_role(Role.CALLEE)
        if self.state is SessionState.FAILED:
            # A fresh offer after a failure is the peer restarting ICE.
            self._cancel_restart()
            logger.info(f"Rebuilding connection with {self.id} for its new offer")
            if not await self._rebuild_transport():
                return
        if self.state is SessionState.IDLE:
            self._set_state(SessionState.NEGOTIATING)

        try:
            await self.transport.set_remote_description(validate_description(description))
        except Exception as e:
            self._negotiation_failed("apply remote offer", e)
            return
        if self.closed:
            return
        await self._flush_pending_candidates()

        try:
            answer = await self.transport.create_answer()
            await self.transport.set_local_description(answer)
        except Exception as e:
            self._negotiation_failed("create answer", e)
            return

        if self.closed:
            logger.debug(f"Discarding answer for closed session {self.id}")
            return
        self._emit(self, MSG_ANSWER, self.transport.local_description or answer)
        logger.info(f"Sent answer to {self.id}")

    async def _accept_answer(self, description: dict) -> None:
        if self.closed:
            return
        try:
            await self.transport.set_remote_description(validate_description(description))
        except Exception as e:
            self._negotiation_failed("apply remote answer", e)
            return
        if self.closed:
            return
        logger.info(f"Applied answer from {self.id}")
        await self._flush_pending_candidates()

    async def _add_remote_candidate(self, candidate: dict) -> None:
        if self.closed:
            return
        if self.transport.remote_description is None:
            self.pending_candidates.append(candidate)
            logger.debug(
                f"Queued ICE candidate from {self.id} "
                f"({len(self.pending_candidates)} pending, no remote description yet)"
            )
            return
        await self._apply_candidate(candidate)

    async def _flush_pending_candidates(self) -> None:
        if not self.pending_candidates:
            return
        logger.debug(f"Applying {len(self.pending_candidates)} queued candidates for {self.id}")
        for candidate in list(self.pending_candidates):
            if self.closed:
                break
            await self._apply_candidate(candidate)
        self.pending_candidates.clear()

    async def _apply_candidate(self, candidate: dict) -> None:
        try:
            await self.transport.add_ice_candidate(candidate)
            logger.debug(f"Added ICE candidate from {self.id}")
        except Exception as e:
            logger.error(f"Failed to add ICE candidate from {self.id}: {e}")

    # ── failure and recovery ──────────────────────────────────────────────────

    def _negotiation_failed(self, stage: str, cause: Exception) -> None:
        error = NegotiationError(self.id, stage, cause)
        self.errors.append(error)
        logger.error(str(error))
        self._enter_failed()

    def _enter_failed(self) -> None:
        if self.closed:
            return
        if self.state is not SessionState.FAILED:
            self._set_state(SessionState.FAILED)
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._restart_handle is not None or self.closed:
            return
        if self.restart_attempts >= self.policy.ice_restart_max_attempts:
            logger.error(
                f"Giving up on {self.id} after {self.restart_attempts} ICE restart attempt(s)"
            )
            return
        delay = self.policy.restart_delay(self.restart_attempts)
        logger.info(f"Scheduling ICE restart for {self.id} in {delay:.1f}s")
        self._restart_handle = asyncio.get_running_loop().call_later(
            delay, self._fire_restart
        )

    def _fire_restart(self) -> None:
        self._restart_handle = None
        if not self.closed:
            self.submit(self._restart_ice)

    async def _restart_ice(self) -> None:
        if self.closed or self.state is not SessionState.FAILED:
            return
        self.restart_attempts += 1
        if self.role is not Role.CALLER:
            logger.info(
                f"Waiting for {self.id} to re-offer (restart attempt {self.restart_attempts})"
            )
            return
        logger.info(f"Restarting ICE for {self.id} (attempt {self.restart_attempts})")
        if await self._rebuild_transport():
            await self._originate()

    async def _rebuild_transport(self) -> bool:
        """Replace the failed connection, keeping local tracks. Returns success."""
        self.pending_candidates.clear()
        self.remote_stream = None
        try:
            await self.transport.restart_ice()
        except Exception as e:
            self._negotiation_failed("restart ICE", e)
            return False
        return not self.closed

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    # ── transport callbacks ───────────────────────────────────────────────────

    def _on_track(self, stream: RemoteStream) -> None:
        if self.closed:
            return
        self.remote_stream = stream
        self._fire("remote_stream", stream)

    def _on_local_candidate(self, candidate: dict) -> None:
        if self.closed or not candidate:
            return
        self._emit(self, MSG_ICE_CANDIDATE, candidate)
        logger.debug(f"Sent ICE candidate to {self.id}")

    def _on_connection_state_change(self, connection_state: str) -> None:
        if self.closed:
            return
        logger.info(f"Connection state with {self.id}: {connection_state}")
        if connection_state == "connected":
            self.restart_attempts = 0
            self._cancel_restart()
            if self.state is not SessionState.CONNECTED:
                self._set_state(SessionState.CONNECTED)
                logger.info(f"Successfully connected to {self.id}")
        elif connection_state == "failed":
            self._enter_failed()

    # ── teardown ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close the session and its transport. Closing twice is a no-op."""
        if self.closed:
            return
        self._set_state(SessionState.CLOSED)
        self._cancel_restart()
        self.pending_candidates.clear()
        self.remote_stream = None

        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        while not self._queue.empty():
            _, _, done = self._queue.get_nowait()
            done.cancel()
            self._queue.task_done()

        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"Error closing transport for {self.id}: {e}")
        logger.info(f"Closed session for {self.id}")

    def _set_state(self, state: SessionState) -> None:
        previous, self.state = self.state, state
        logger.info(f"Session {self.id}: {previous.value} -> {state.value}")
        self._fire("state_changed", state)

    def _fire(self, event: str, data: Any) -> None:
        if self._notify is not None:
            self._notify(event, self.id, data)
