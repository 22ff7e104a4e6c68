"""Signaling channel between a peer and the relay.

The orchestrator only depends on the SignalingChannel protocol:
``subscribe(room_id, handler)`` to receive room messages and
``publish(destination, message)`` to send them. WebSocketSignalingChannel
implements it over a single websockets connection to the relay in
``mesh_rtc.relay.server``.

Frames on the socket::

    client -> relay   {"action": "subscribe",   "topic": "/topic/room/R1"}
    client -> relay   {"action": "unsubscribe", "topic": "/topic/room/R1"}
    client -> relay   {"action": "send", "destination": "/app/offer", "body": {...}}
    relay  -> client  {"topic": "/topic/room/R1", "body": {...}}

``publish`` never blocks: frames go through an outbound queue drained by a
single writer task, so messages leave in exactly the order they were
published.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

import websockets

from mesh_rtc.protocol import MessageFormatError, SignalingMessage, room_topic

logger = logging.getLogger(__name__)

Handler = Callable[[SignalingMessage], Awaitable[None]]
ReconnectListener = Callable[[], Awaitable[None]]


class SignalingError(Exception):
    """Raised when a message cannot be handed to the relay."""


@dataclass(frozen=True)
class Subscription:
    topic: str
    handler: Handler


class SignalingChannel(Protocol):
    """Room-scoped, ordered message delivery."""

    def subscribe(self, room_id: str, handler: Handler) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription) -> None: ...

    def publish(self, destination: str, message: SignalingMessage) -> None: ...


class WebSocketSignalingChannel:
    """SignalingChannel over a websockets connection to the relay.

    ``run`` keeps the channel connected: when the relay connection drops it
    waits ``reconnect_delay`` seconds, reconnects, replays every topic
    subscription and then awaits each reconnect listener.

    Attributes:
        url: Relay URL, e.g. ``ws://localhost:8080``.
        websocket: The open connection, or None.
        reconnect_delay: Seconds to wait before reconnecting.
    """

    def __init__(self, url: str, reconnect_delay: float = 5.0):
        self.url = url
        self.websocket = None
        self.reconnect_delay = reconnect_delay
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._handlers: Dict[str, List[Handler]] = {}
        self._reconnect_listeners: List[ReconnectListener] = []
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._connections = 0
        self._closed = False
        self._stopping = False

    @property
    def connected(self) -> bool:
        return self.websocket is not None and not self._closed

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Register ``await listener()`` to run after every reconnect."""
        self._reconnect_listeners.append(listener)

    async def connect(self) -> None:
        """Open the connection and start the reader and writer tasks."""
        logger.info(f"Connecting to signaling relay at {self.url}")
        self._attach(await websockets.connect(self.url))
        logger.info("Connected to signaling relay")

    async def run(self) -> None:
        """Keep the relay connection up until ``close`` is called."""
        self._run_task = asyncio.current_task()
        if self.connected:
            await self.wait_closed()
        if self._stopping:
            return
        if self._connections:
            logger.warning(
                f"Relay connection lost; reconnecting in {self.reconnect_delay}s"
            )
            await asyncio.sleep(self.reconnect_delay)

        async for websocket in websockets.connect(self.url):
            if self._stopping:
                break
            self._attach(websocket)
            logger.info("Connected to signaling relay")
            if self._connections > 1:
                for listener in list(self._reconnect_listeners):
                    try:
                        await listener()
                    except Exception as e:
                        logger.error(f"Error in reconnect listener: {e}")
            await self.wait_closed()
            if self._stopping:
                break
            logger.warning(
                f"Relay connection lost; reconnecting in {self.reconnect_delay}s"
            )
            await asyncio.sleep(self.reconnect_delay)

    def _attach(self, websocket) -> None:
        for task in (self._writer_task, self._reader_task):
            if task is not None and not task.done():
                task.cancel()
        # Frames queued for a dropped connection are stale after a rejoin.
        if not self._outbox.empty():
            logger.debug(f"Discarding {self._outbox.qsize()} unsent signaling frame(s)")
        self._outbox = asyncio.Queue()

        self.websocket = websocket
        self._closed = False
        self._connections += 1
        self._reader_task = asyncio.create_task(self._reader_loop(websocket))
        self._writer_task = asyncio.create_task(self._writer_loop(websocket, self._outbox))
        # Re-subscribe topics registered before connecting.
        for topic in self._handlers:
            self._enqueue({"action": "subscribe", "topic": topic})

    async def wait_closed(self) -> None:
        """Wait until the current relay connection ends."""
        if self._reader_task is not None:
            await asyncio.wait({self._reader_task})

    def subscribe(self, room_id: str, handler: Handler) -> Subscription:
        topic = room_topic(room_id)
        handlers = self._handlers.setdefault(topic, [])
        if not handlers and self.connected:
            self._enqueue({"action": "subscribe", "topic": topic})
        handlers.append(handler)
        logger.debug(f"Subscribed to {topic}")
        return Subscription(topic, handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.topic, [])
        if subscription.handler in handlers:
            handlers.remove(subscription.handler)
        if not handlers and subscription.topic in self._handlers:
            del self._handlers[subscription.topic]
            if self.connected:
                self._enqueue({"action": "unsubscribe", "topic": subscription.topic})
        logger.debug(f"Unsubscribed from {subscription.topic}")

    def publish(self, destination: str, message: SignalingMessage) -> None:
        """Queue ``message`` for ``destination``.

        Raises:
            SignalingError: If the channel is not connected.
        """
        if not self.connected:
            raise SignalingError(f"Cannot publish {message.type}: not connected")
        self._enqueue(
            {"action": "send", "destination": destination, "body": message.to_dict()}
        )

    def _enqueue(self, frame: dict) -> None:
        self._outbox.put_nowait(json.dumps(frame))

    async def _writer_loop(self, websocket, outbox: asyncio.Queue) -> None:
        try:
            while True:
                frame = await outbox.get()
                try:
                    await websocket.send(frame)
                finally:
                    outbox.task_done()
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Relay connection closed while sending")
        except Exception as e:
            logger.error(f"Signaling writer error: {e}")

    async def _reader_loop(self, websocket) -> None:
        try:
            async for raw in websocket:
                await self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Relay connection closed")
        finally:
            if websocket is self.websocket:
                self._closed = True

    async def _dispatch(self, raw) -> None:
        try:
            frame = json.loads(raw)
            topic = frame.get("topic")
            message = SignalingMessage.from_dict(frame.get("body"))
        except (json.JSONDecodeError, AttributeError, MessageFormatError) as e:
            logger.error(f"Dropping malformed signaling frame: {e}")
            return

        for handler in list(self._handlers.get(topic, [])):
            try:
                await handler(message)
            except Exception as e:
                logger.error(f"Error in signaling handler for {message.type}: {e}")

    async def close(self, flush_timeout: float = 1.0) -> None:
        """Close the connection and stop reconnecting. Safe to call more than once.

        Frames already published are given up to ``flush_timeout`` seconds
        to reach the relay before the connection is closed.
        """
        self._stopping = True
        if self._writer_task is not None and not self._writer_task.done():
            try:
                await asyncio.wait_for(self._outbox.join(), flush_timeout)
            except asyncio.TimeoutError:
                logger.warning("Timed out flushing outbound signaling frames")
        self._closed = True
        tasks = [self._writer_task, self._reader_task]
        if self._run_task is not asyncio.current_task():
            tasks.insert(0, self._run_task)
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
