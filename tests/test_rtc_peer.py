"""Tests for RemoteMediaSink and the peer runner."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mesh_rtc.rtc_peer import RemoteMediaSink, run_peer_async
from mesh_rtc.transport import RemoteStream


def _blackhole():
    sink = MagicMock()
    sink.start = AsyncMock()
    sink.stop = AsyncMock()
    return sink


class FakeRemoteTrack:
    def __init__(self, kind):
        self.kind = kind


@pytest.fixture
def blackholes():
    created = []

    def factory():
        sink = _blackhole()
        created.append(sink)
        return sink

    with patch("mesh_rtc.rtc_peer.MediaBlackhole", side_effect=factory):
        yield created


class TestRemoteMediaSink:
    @pytest.mark.asyncio
    async def test_one_sink_per_track(self, blackholes):
        sink = RemoteMediaSink()
        audio, video = FakeRemoteTrack("audio"), FakeRemoteTrack("video")
        stream = RemoteStream(tracks=[audio])
        sink("remote_stream", "U2", stream)
        stream.add(video)
        sink("remote_stream", "U2", stream)
        await asyncio.sleep(0.01)

        assert len(blackholes) == 2
        blackholes[0].addTrack.assert_called_once_with(audio)
        blackholes[1].addTrack.assert_called_once_with(video)
        assert all(b.start.await_count == 1 for b in blackholes)

    @pytest.mark.asyncio
    async def test_session_removed_stops_peer_sinks(self, blackholes):
        sink = RemoteMediaSink()
        sink("remote_stream", "U2", RemoteStream(tracks=[FakeRemoteTrack("video")]))
        sink("remote_stream", "U3", RemoteStream(tracks=[FakeRemoteTrack("video")]))
        sink("session_removed", "U2", None)
        await asyncio.sleep(0.01)

        blackholes[0].stop.assert_awaited_once()
        blackholes[1].stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_all(self, blackholes):
        sink = RemoteMediaSink()
        sink("remote_stream", "U2", RemoteStream(tracks=[FakeRemoteTrack("audio")]))
        await sink.stop()
        blackholes[0].stop.assert_awaited_once()

    def test_other_events_only_logged(self, blackholes):
        sink = RemoteMediaSink()
        sink("roster", "U1", ["U2"])
        sink("error", "U1", {"errorCode": "USER_NOT_IN_ROOM", "errorMessage": "nope"})
        assert blackholes == []


class TestRunPeer:
    @pytest.mark.asyncio
    async def test_rejoins_room_after_relay_reconnect(self, blackholes):
        channel = MagicMock()
        channel.connect = AsyncMock()
        channel.close = AsyncMock()

        async def run():
            # The relay dropped us once; the channel reconnects and notifies.
            (listener,), _ = channel.add_reconnect_listener.call_args
            await listener()

        channel.run = run
        with patch("mesh_rtc.rtc_peer.WebSocketSignalingChannel", return_value=channel):
            await run_peer_async(room_id="R1", user_id="U1", signaling_url="ws://relay")

        destinations = [c.args[0] for c in channel.publish.call_args_list]
        assert destinations == ["/app/join", "/app/join", "/app/leave"]
        channel.close.assert_awaited_once()
