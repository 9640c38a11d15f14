"""
Tests for SessionNegotiator and SdpExchange.

Verifies:
- Offer/answer sequence against the credential and provider hops
- Release of every allocated resource when any step fails
- Cancellation at suspension points
- Signaling channel decoding and transport loss reporting
"""
import asyncio

import aiohttp
import pytest

from credential_broker.models import CredentialLease
from realtime_client import negotiator as negotiator_module
from realtime_client.cancellation import CancellationToken
from realtime_client.config import DEFAULT_ICE_SERVER
from realtime_client.negotiator import DATA_CHANNEL_LABEL, SdpExchange
from realtime_client.pubsub import StreamKind
from voice_errors import (
    CredentialError,
    ErrorCategory,
    MediaAccessError,
    NegotiationCancelled,
    NegotiationError,
    TransportError,
    classify_error,
)

from conftest import ANSWER_SDP, OFFER_SDP


def _assert_released(harness):
    assert all(c.stopped for c in harness.captures)
    assert all(pc.closed for pc in harness.peer_connections)
    assert all(ch.closed for pc in harness.peer_connections for ch in pc.channels)
    assert all(p.detached for p in harness.playbacks)


@pytest.mark.asyncio
async def test_establish_runs_offer_answer_sequence(harness):
    session = await harness.negotiator().establish("verse", CancellationToken(1))

    pc = harness.peer_connections[0]
    capture = harness.captures[0]
    assert session.generation == 1
    assert session.voice == "verse"
    assert pc.ice_servers == [DEFAULT_ICE_SERVER]
    assert pc.tracks == [capture.track]
    assert [ch.label for ch in pc.channels] == [DATA_CHANNEL_LABEL]
    assert harness.credentials.calls == [("verse", harness.config.model)]
    assert harness.sdp.calls == [(OFFER_SDP, "ek_1")]
    assert pc.remoteDescription.type == "answer"
    assert pc.remoteDescription.sdp == ANSWER_SDP
    assert not session.closed
    assert not capture.stopped


@pytest.mark.asyncio
async def test_establish_leaves_transmission_off(harness):
    """The conversation decides when to transmit."""
    session = await harness.negotiator().establish("verse", CancellationToken(1))

    assert session.transmitting is False
    session.set_transmitting(True)
    assert session.transmitting is True


@pytest.mark.asyncio
async def test_remote_audio_track_binds_playback(harness, audio_track, until):
    session = await harness.negotiator().establish("verse", CancellationToken(1))
    notified = []
    session.add_remote_audio_listener(lambda: notified.append(True))

    harness.peer_connections[0].emit_track(audio_track())
    await until(lambda: session.remote_audio_ready)

    assert harness.playbacks[0].bound
    assert notified == [True]

    # Late listeners fire immediately
    session.add_remote_audio_listener(lambda: notified.append(True))
    assert notified == [True, True]


@pytest.mark.asyncio
async def test_remote_video_track_is_ignored(harness):
    session = await harness.negotiator().establish("verse", CancellationToken(1))

    harness.peer_connections[0].emit_track(type("VideoTrack", (), {"kind": "video"})())

    assert not harness.playbacks[0].bound
    assert not session.remote_audio_ready


@pytest.mark.asyncio
async def test_capture_failure_allocates_nothing_else(harness):
    harness.capture_error = MediaAccessError("Permission denied")

    with pytest.raises(MediaAccessError):
        await harness.negotiator().establish("verse", CancellationToken(1))

    assert harness.peer_connections == []
    assert harness.credentials.calls == []


@pytest.mark.asyncio
async def test_credential_failure_releases_resources(harness):
    harness.credentials.error = CredentialError(
        "Failed to create session: Missing OPENAI_API_KEY configuration",
        status_code=500,
        response_text="Missing OPENAI_API_KEY configuration",
    )

    with pytest.raises(CredentialError):
        await harness.negotiator().establish("verse", CancellationToken(1))

    assert harness.sdp.calls == []
    _assert_released(harness)


@pytest.mark.asyncio
async def test_sdp_rejection_releases_resources(harness):
    harness.sdp.error = NegotiationError("SDP exchange failed: bad", status_code=400, response_text="bad")

    with pytest.raises(NegotiationError) as exc_info:
        await harness.negotiator().establish("verse", CancellationToken(1))

    assert classify_error(exc_info.value) == ErrorCategory.NEGOTIATION_REJECTED
    _assert_released(harness)


@pytest.mark.asyncio
async def test_release_failure_does_not_mask_credential_error(harness):
    harness.credentials.error = CredentialError("Failed to create session: boom", status_code=502)
    harness.capture_stop_error = OSError("device gone")

    with pytest.raises(CredentialError):
        await harness.negotiator().establish("verse", CancellationToken(1))

    _assert_released(harness)


@pytest.mark.asyncio
async def test_unusable_answer_is_a_negotiation_error(harness):
    harness.pc_fail_on = ("remote",)

    with pytest.raises(NegotiationError) as exc_info:
        await harness.negotiator().establish("verse", CancellationToken(1))

    assert exc_info.value.status_code == 200
    assert classify_error(exc_info.value) == ErrorCategory.NEGOTIATION_MALFORMED_ANSWER
    _assert_released(harness)


@pytest.mark.asyncio
async def test_offer_failure_releases_resources(harness):
    harness.pc_fail_on = ("offer",)

    with pytest.raises(RuntimeError):
        await harness.negotiator().establish("verse", CancellationToken(1))

    assert harness.credentials.calls == []
    _assert_released(harness)


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_next_step(harness):
    token = CancellationToken(3)
    token.cancel("stopped")

    with pytest.raises(NegotiationCancelled) as exc_info:
        await harness.negotiator().establish("verse", token)

    assert exc_info.value.generation == 3
    assert harness.peer_connections == []
    _assert_released(harness)


@pytest.mark.asyncio
async def test_cancellation_during_credential_request(harness, until):
    harness.credentials.gate = asyncio.Event()
    token = CancellationToken(1)
    task = asyncio.create_task(harness.negotiator().establish("verse", token))

    await until(lambda: harness.credentials.calls)
    token.cancel("superseded")
    harness.credentials.gate.set()

    with pytest.raises(NegotiationCancelled):
        await task

    assert harness.sdp.calls == []
    _assert_released(harness)


@pytest.mark.asyncio
async def test_signaling_messages_are_published(harness):
    received = []
    harness.bus.subscribe(StreamKind.SIGNALING_EVENT, received.append)
    await harness.negotiator().establish("verse", CancellationToken(1))
    channel = harness.peer_connections[0].channels[0]

    channel.deliver('{"type": "session.created", "session": {"id": "sess_1"}}')
    channel.deliver("not json")
    channel.deliver(b"\x00\x01")
    channel.deliver("[1, 2, 3]")

    assert received == [{"type": "session.created", "session": {"id": "sess_1"}}]


@pytest.mark.asyncio
async def test_transport_failure_is_reported(harness):
    errors = []
    harness.bus.subscribe(StreamKind.TRANSPORT_ERROR, errors.append)
    session = await harness.negotiator().establish("verse", CancellationToken(1))
    pc = harness.peer_connections[0]

    pc.set_connection_state("disconnected")
    assert errors == []

    pc.set_connection_state("failed")
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    assert errors[0].connection_state == "failed"
    assert not session.closed


@pytest.mark.asyncio
async def test_no_transport_report_after_close(harness):
    errors = []
    harness.bus.subscribe(StreamKind.TRANSPORT_ERROR, errors.append)
    session = await harness.negotiator().establish("verse", CancellationToken(1))

    await session.close()
    harness.peer_connections[0].set_connection_state("closed")

    assert errors == []


@pytest.mark.asyncio
async def test_session_close_is_idempotent(harness):
    session = await harness.negotiator().establish("verse", CancellationToken(1))

    await session.close()
    await session.close()

    assert session.closed
    assert session.transmitting is False
    _assert_released(harness)


# --- SdpExchange ---


@pytest.mark.asyncio
async def test_sdp_exchange_sends_offer_with_bearer(monkeypatch):
    calls = []

    async def _fake_post_sdp(url, sdp, headers, timeout):
        calls.append((url, sdp, headers, timeout))
        return 201, ANSWER_SDP

    monkeypatch.setattr(negotiator_module, "_post_sdp", _fake_post_sdp)

    exchange = SdpExchange("https://api.openai.com/v1/realtime", "gpt-4o-realtime-preview-2024-12-17", 5)
    answer = await exchange.exchange(OFFER_SDP, CredentialLease(value="ek_abc"))

    assert answer == ANSWER_SDP
    url, sdp, headers, timeout = calls[0]
    assert url == "https://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17"
    assert sdp == OFFER_SDP
    assert headers["Authorization"] == "Bearer ek_abc"
    assert headers["Content-Type"] == "application/sdp"
    assert headers["Accept"] == "application/sdp"
    assert headers["OpenAI-Beta"] == "realtime=v1"
    assert timeout == 5


@pytest.mark.asyncio
async def test_sdp_exchange_rejection_carries_provider_text(monkeypatch):
    async def _fake_post_sdp(url, sdp, headers, timeout):
        return 401, "Invalid ephemeral key"

    monkeypatch.setattr(negotiator_module, "_post_sdp", _fake_post_sdp)

    with pytest.raises(NegotiationError) as exc_info:
        await SdpExchange("https://x/realtime", "m").exchange(OFFER_SDP, CredentialLease(value="ek"))

    assert exc_info.value.status_code == 401
    assert exc_info.value.response_text == "Invalid ephemeral key"
    assert "Invalid ephemeral key" in str(exc_info.value)


@pytest.mark.asyncio
async def test_sdp_exchange_malformed_answer(monkeypatch):
    async def _fake_post_sdp(url, sdp, headers, timeout):
        return 200, '{"not": "sdp"}'

    monkeypatch.setattr(negotiator_module, "_post_sdp", _fake_post_sdp)

    with pytest.raises(NegotiationError) as exc_info:
        await SdpExchange("https://x/realtime", "m").exchange(OFFER_SDP, CredentialLease(value="ek"))

    assert classify_error(exc_info.value) == ErrorCategory.NEGOTIATION_MALFORMED_ANSWER


@pytest.mark.asyncio
async def test_sdp_exchange_network_failure(monkeypatch):
    async def _fake_post_sdp(url, sdp, headers, timeout):
        raise aiohttp.ClientConnectionError("connection reset")

    monkeypatch.setattr(negotiator_module, "_post_sdp", _fake_post_sdp)

    with pytest.raises(NegotiationError) as exc_info:
        await SdpExchange("https://x/realtime", "m").exchange(OFFER_SDP, CredentialLease(value="ek"))

    assert exc_info.value.status_code is None
    assert classify_error(exc_info.value) == ErrorCategory.NEGOTIATION_NETWORK_ERROR
