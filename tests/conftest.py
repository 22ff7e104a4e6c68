"""Shared fakes for mesh-rtc tests.

FakeTransport stands in for an aiortc peer connection: it records every
call, produces predictable descriptions, and lets a test drive the
callbacks a real connection would fire. FakeChannel records published
messages instead of sending them to a relay.
"""

import asyncio

import pytest

from mesh_rtc.config import Config, SessionPolicy
from mesh_rtc.media import LocalMediaSource
from mesh_rtc.protocol import room_topic
from mesh_rtc.signaling import Subscription


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.stop_count = 0

    def stop(self):
        self.stop_count += 1


class FakePlayer:
    """Mimics aiortc's MediaPlayer: exposes ``audio`` and ``video`` tracks."""

    def __init__(self, audio=True, video=True):
        self.audio = FakeTrack("audio") if audio else None
        self.video = FakeTrack("video") if video else None


class FakeTransport:
    """In-memory Transport that records what the session asks of it."""

    def __init__(self, hold_offers=False):
        self.on_track = None
        self.on_ice_candidate = None
        self.on_connection_state_change = None

        self.calls = []
        self.tracks = []
        self.candidates = []
        self.fail_on = set()
        self.restarts = 0
        self.close_count = 0
        self.close_delay = 0
        self.offers_created = 0

        # When set, create_offer blocks until ``release_offer`` is set.
        self.hold_offers = hold_offers
        self.offer_started = asyncio.Event()
        self.release_offer = asyncio.Event()

        self._local = None
        self._remote = None

    @property
    def local_description(self):
        return self._local

    @property
    def remote_description(self):
        return self._remote

    @property
    def closed(self):
        return self.close_count > 0

    def _check(self, stage):
        self.calls.append(stage)
        if stage in self.fail_on:
            raise RuntimeError(f"{stage} exploded")

    async def create_offer(self):
        self.offer_started.set()
        if self.hold_offers:
            await self.release_offer.wait()
        self._check("create_offer")
        self.offers_created += 1
        return {"type": "offer", "sdp": f"offer-sdp-{self.offers_created}"}

    async def create_answer(self):
        self._check("create_answer")
        return {"type": "answer", "sdp": "answer-sdp"}

    async def set_local_description(self, description):
        self._check("set_local_description")
        self._local = description

    async def set_remote_description(self, description):
        self._check("set_remote_description")
        self._remote = description

    async def add_ice_candidate(self, candidate):
        self._check("add_ice_candidate")
        self.candidates.append(candidate)

    def add_track(self, track):
        self.tracks.append(track)

    async def restart_ice(self):
        """Like a rebuilt peer connection: descriptions are gone."""
        self._check("restart_ice")
        self.restarts += 1
        self._local = None
        self._remote = None

    async def close(self):
        self.close_count += 1
        if self.close_delay:
            await asyncio.sleep(self.close_delay)


class FakeTransportFactory:
    """Callable TransportFactory that remembers every transport it built."""

    def __init__(self):
        self.created = []
        self.hold_offers = False

    def __call__(self):
        transport = FakeTransport(hold_offers=self.hold_offers)
        self.created.append(transport)
        return transport


class FakeChannel:
    """SignalingChannel that records instead of sending."""

    def __init__(self):
        self.published = []
        self.subscriptions = []
        self.unsubscribed = []

    def subscribe(self, room_id, handler):
        subscription = Subscription(room_topic(room_id), handler)
        self.subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription):
        self.unsubscribed.append(subscription)

    def publish(self, destination, message):
        self.published.append((destination, message))

    def sent(self, msg_type):
        return [message for _, message in self.published if message.type == msg_type]


def fake_player_factory(audio=True, video=True):
    def factory(source, format=None, options=None):
        return FakePlayer(audio=audio, video=video)

    return factory


@pytest.fixture
def policy():
    """Fast policy: no offer delay, millisecond restart backoff."""
    return SessionPolicy(
        offer_delay=0,
        ice_restart_max_attempts=2,
        ice_restart_backoff=0.01,
        ice_restart_backoff_max=0.02,
    )


@pytest.fixture
def config(policy):
    cfg = Config()
    cfg.session = policy
    return cfg


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def media_source():
    return LocalMediaSource("clip.mp4", player_factory=fake_player_factory())
