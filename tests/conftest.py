"""
Shared fakes for the Realtime Client tests.

The fakes stand in for aiortc objects (peer connection, data channel, media
tracks) and for the two HTTP hops (backend credential, provider SDP), so the
negotiator and the conversation manager run without devices or network.
"""
import asyncio
from types import SimpleNamespace

import av
import numpy as np
import pytest
from aiortc.mediastreams import MediaStreamError

from credential_broker.models import CredentialLease
from realtime_client.config import ClientConfig
from realtime_client.negotiator import SessionNegotiator
from realtime_client.pubsub import EventBus

ANSWER_SDP = "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"
OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 127.0.0.1\r\ns=offer\r\nt=0 0\r\n"


class FakeAudioTrack:
    """Audio track producing 10 ms s16 mono frames of a sine tone."""

    kind = "audio"

    def __init__(self, frequency=1000.0, amplitude=0.5, sample_rate=48000, frame_delay=0.002):
        self.frequency = frequency
        self.amplitude = amplitude
        self.sample_rate = sample_rate
        self.frame_delay = frame_delay
        self.stopped = False
        self._pts = 0

    async def recv(self):
        if self.stopped:
            raise MediaStreamError
        await asyncio.sleep(self.frame_delay)
        if self.stopped:
            raise MediaStreamError
        samples = self.sample_rate // 100
        t = (np.arange(samples) + self._pts) / self.sample_rate
        pcm = (np.sin(2 * np.pi * self.frequency * t) * self.amplitude * 32767).astype(np.int16)
        frame = av.AudioFrame.from_ndarray(pcm.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = self.sample_rate
        frame.pts = self._pts
        self._pts += samples
        return frame

    def stop(self):
        self.stopped = True


class FakeCapture:
    def __init__(self, constraints):
        self.constraints = constraints
        self.track = SimpleNamespace(kind="audio")
        self.enabled = False
        self.stopped = False
        self.taps = []
        self.stop_error = None

    @property
    def live(self):
        return not self.stopped

    def set_enabled(self, enabled):
        self.enabled = enabled

    def tap(self):
        track = FakeAudioTrack()
        self.taps.append(track)
        return track

    def stop(self):
        self.stopped = True
        if self.stop_error is not None:
            raise self.stop_error


class FakePlayback:
    def __init__(self):
        self.remote = None
        self.detached = False
        self.taps = []

    @property
    def bound(self):
        return self.remote is not None

    async def bind(self, track):
        self.remote = track

    def tap(self):
        if self.remote is None:
            return None
        track = FakeAudioTrack(frequency=440.0)
        self.taps.append(track)
        return track

    async def detach(self):
        self.detached = True
        self.remote = None


class FakeChannel:
    def __init__(self, label):
        self.label = label
        self.handlers = {}
        self.closed = False

    def on(self, event, handler):
        self.handlers[event] = handler

    def close(self):
        self.closed = True

    def deliver(self, message):
        self.handlers["message"](message)


class FakePeerConnection:
    def __init__(self, ice_servers, fail_on=()):
        self.ice_servers = ice_servers
        self.fail_on = set(fail_on)
        self.tracks = []
        self.handlers = {}
        self.channels = []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.closed = False

    def addTrack(self, track):
        self.tracks.append(track)

    def on(self, event, handler):
        self.handlers[event] = handler

    def createDataChannel(self, label):
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        if "offer" in self.fail_on:
            raise RuntimeError("offer failed")
        return SimpleNamespace(sdp=OFFER_SDP, type="offer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if "remote" in self.fail_on:
            raise ValueError("Invalid SDP")
        self.remoteDescription = description
        self.connectionState = "connected"

    async def close(self):
        self.closed = True

    def emit_track(self, track):
        self.handlers["track"](track)

    def set_connection_state(self, state):
        self.connectionState = state
        self.handlers["connectionstatechange"]()


class FakeCredentials:
    """Backend credential hop. `gate`, when set, blocks every call until released."""

    def __init__(self):
        self.calls = []
        self.error = None
        self.gate = None

    async def request_ephemeral_credential(self, voice, model):
        self.calls.append((voice, model))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return CredentialLease(value=f"ek_{len(self.calls)}", expires_at=1700000000)


class FakeSdpExchange:
    def __init__(self):
        self.calls = []
        self.error = None
        self.answer = ANSWER_SDP

    async def exchange(self, offer_sdp, lease):
        self.calls.append((offer_sdp, lease.value))
        if self.error is not None:
            raise self.error
        return self.answer


class Harness:
    """Builds a SessionNegotiator wired to fakes and records what it allocated."""

    def __init__(self):
        self.bus = EventBus()
        self.config = ClientConfig()
        self.credentials = FakeCredentials()
        self.sdp = FakeSdpExchange()
        self.captures = []
        self.playbacks = []
        self.peer_connections = []
        self.capture_error = None
        self.pc_fail_on = ()
        self.capture_stop_error = None

    async def capture_factory(self, constraints):
        if self.capture_error is not None:
            raise self.capture_error
        capture = FakeCapture(constraints)
        capture.stop_error = self.capture_stop_error
        self.captures.append(capture)
        return capture

    def playback_factory(self):
        playback = FakePlayback()
        self.playbacks.append(playback)
        return playback

    def pc_factory(self, ice_servers):
        pc = FakePeerConnection(ice_servers, fail_on=self.pc_fail_on)
        self.peer_connections.append(pc)
        return pc

    def negotiator(self):
        return SessionNegotiator(
            self.config,
            self.bus,
            credentials=self.credentials,
            sdp_exchange=self.sdp,
            capture_factory=self.capture_factory,
            playback_factory=self.playback_factory,
            peer_connection_factory=self.pc_factory,
        )


async def wait_for(predicate, timeout=1.0):
    """Yield to the loop until `predicate()` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def audio_track():
    return FakeAudioTrack


@pytest.fixture
def until():
    return wait_for
