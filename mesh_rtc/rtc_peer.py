"""Entry point for running a mesh-rtc peer."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from aiortc.contrib.media import MediaBlackhole

from mesh_rtc.config import get_config
from mesh_rtc.media import LocalMediaSource
from mesh_rtc.orchestrator import Orchestrator
from mesh_rtc.signaling import WebSocketSignalingChannel

logging.basicConfig(level=logging.INFO)


class RemoteMediaSink:
    """Consumes remote tracks so their receivers keep draining.

    One MediaBlackhole per remote track; all of a peer's sinks are stopped
    when its session is removed.
    """

    def __init__(self):
        self._sinks: Dict[str, List[MediaBlackhole]] = {}
        self._seen: Dict[str, set] = {}
        self._tasks: set = set()

    def __call__(self, event: str, peer_id: str, data: Any) -> None:
        if event == "remote_stream":
            self._consume(peer_id, data)
        elif event == "session_removed":
            self._spawn(self.stop_peer(peer_id))
        elif event == "state_changed":
            logging.info(f"Peer {peer_id} is {data.value}")
        elif event == "roster":
            logging.info(f"Room members: {', '.join(data) or '(none)'}")
        elif event == "error":
            logging.error(f"Relay reported {data['errorCode']}: {data['errorMessage']}")

    def _consume(self, peer_id: str, stream) -> None:
        seen = self._seen.setdefault(peer_id, set())
        for track in stream.tracks:
            if id(track) in seen:
                continue
            seen.add(id(track))
            sink = MediaBlackhole()
            sink.addTrack(track)
            self._sinks.setdefault(peer_id, []).append(sink)
            self._spawn(sink.start())
            logging.info(f"Receiving {track.kind} from {peer_id}")

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def stop_peer(self, peer_id: str) -> None:
        self._seen.pop(peer_id, None)
        for sink in self._sinks.pop(peer_id, []):
            await sink.stop()

    async def stop(self) -> None:
        for peer_id in list(self._sinks):
            await self.stop_peer(peer_id)


async def run_peer_async(
    room_id: str,
    user_id: str,
    user_name: Optional[str] = None,
    signaling_url: Optional[str] = None,
    source: Optional[str] = None,
    source_format: Optional[str] = None,
    want_video: bool = True,
    want_audio: bool = True,
    offer_delay: Optional[float] = None,
) -> None:
    """Join ``room_id`` and keep the mesh up, rejoining after relay reconnects."""
    config = get_config()
    if offer_delay is not None:
        config.session.offer_delay = offer_delay

    channel = WebSocketSignalingChannel(signaling_url or config.get_websocket_url())
    orchestrator = Orchestrator(
        user_id,
        room_id,
        channel,
        media_source=LocalMediaSource(source, format=source_format),
        config=config,
    )
    sink = RemoteMediaSink()
    orchestrator.add_listener(sink)
    channel.add_reconnect_listener(orchestrator.rejoin)

    await channel.connect()
    try:
        await orchestrator.acquire_media(want_video=want_video, want_audio=want_audio)
        orchestrator.join(user_name)
        await channel.run()
    finally:
        await orchestrator.shutdown()
        await sink.stop()
        await channel.close()


def run_peer(**kwargs) -> None:
    """Run a peer until interrupted.

    Args:
        **kwargs: Passed to run_peer_async.
    """
    try:
        asyncio.run(run_peer_async(**kwargs))
    except KeyboardInterrupt:
        logging.info("Peer interrupted by user. Shutting down...")
    finally:
        logging.info("Peer exiting...")
