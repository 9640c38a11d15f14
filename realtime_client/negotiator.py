"""
WebRTC session negotiation with the realtime speech provider.

establish() runs the three-party handshake:
capture -> peer connection -> offer -> ephemeral credential (backend) ->
SDP exchange (provider) -> answer. Every step can fail on its own; whatever
was allocated before the failure is released before the error surfaces, so a
failed or cancelled attempt never leaves a partial session behind.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from credential_broker.models import CredentialLease
from logging_setup import get_logger, Component
from voice_errors import NegotiationError, TransportError
from .cancellation import CancellationToken
from .config import ClientConfig
from .credentials import CredentialClient
from .media import CaptureConstraints, LocalCapture, PlaybackSink, open_capture
from .pubsub import EventBus, StreamKind


logger = get_logger(Component.NEGOTIATOR)

DATA_CHANNEL_LABEL = "oai-events"
SDP_CONTENT_TYPE = "application/sdp"

CaptureFactory = Callable[[CaptureConstraints], Awaitable[LocalCapture]]
PlaybackFactory = Callable[[], PlaybackSink]
PeerConnectionFactory = Callable[[List[str]], Any]


def create_peer_connection(ice_servers: List[str]) -> RTCPeerConnection:
    return RTCPeerConnection(
        configuration=RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
    )


async def _post_sdp(url: str, sdp: str, headers: Dict[str, str], timeout: float) -> Tuple[int, str]:
    """POST a raw SDP offer; returns (status, body text)."""
    async with aiohttp.ClientSession() as s:
        async with s.post(
            url,
            data=sdp.encode("utf-8"),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            return resp.status, await resp.text()


class SdpExchange:
    """Offer/answer exchange against the provider's realtime endpoint."""

    def __init__(self, realtime_url: str, model: str, timeout_seconds: float = 10):
        self.url = f"{realtime_url}?model={quote(model, safe='')}"
        self._timeout = timeout_seconds

    async def exchange(self, offer_sdp: str, lease: CredentialLease) -> str:
        """
        Send the local offer, return the provider's answer SDP.

        Raises:
            NegotiationError: network failure, non-success status (carrying
                the provider text verbatim) or an answer that is not SDP.
        """
        headers = {
            "Authorization": f"Bearer {lease.value}",
            "Content-Type": SDP_CONTENT_TYPE,
            "Accept": SDP_CONTENT_TYPE,
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            status, text = await _post_sdp(self.url, offer_sdp, headers, self._timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NegotiationError(f"SDP exchange failed: {e}") from e

        if not 200 <= status < 300:
            raise NegotiationError(
                f"SDP exchange failed: {text}",
                status_code=status,
                response_text=text,
            )
        if not text.strip().startswith("v="):
            raise NegotiationError(
                "SDP exchange failed: malformed answer",
                status_code=status,
                response_text=text,
            )
        return text


class Session:
    """
    One established transport: peer connection, local capture, remote
    playback and the signaling channel. Owned by exactly one generation.
    """

    def __init__(
        self,
        generation: int,
        voice: str,
        peer_connection,
        capture: LocalCapture,
        playback: PlaybackSink,
        channel,
        pending: Optional[List[asyncio.Task]] = None,
    ):
        self.generation = generation
        self.voice = voice
        self.peer_connection = peer_connection
        self.capture = capture
        self.playback = playback
        self.channel = channel
        self.closed = False
        self.remote_audio_ready = False
        self._remote_listeners: List[Callable[[], None]] = []
        self._pending = pending if pending is not None else []

    @property
    def transmitting(self) -> bool:
        return not self.closed and self.capture.enabled

    def set_transmitting(self, enabled: bool) -> None:
        if not self.closed:
            self.capture.set_enabled(enabled)

    def add_remote_audio_listener(self, listener: Callable[[], None]) -> None:
        """Call `listener` once remote audio plays (immediately if it already does)."""
        if self.remote_audio_ready:
            listener()
        else:
            self._remote_listeners.append(listener)

    def _mark_remote_audio_ready(self) -> None:
        self.remote_audio_ready = True
        listeners, self._remote_listeners = self._remote_listeners, []
        for listener in listeners:
            listener()

    async def close(self) -> None:
        """Release everything. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self._remote_listeners.clear()
        await _release(
            capture=self.capture,
            peer_connection=self.peer_connection,
            channel=self.channel,
            playback=self.playback,
            pending=self._pending,
        )
        logger.debug("Session closed", generation=self.generation)


async def _release(capture=None, peer_connection=None, channel=None, playback=None, pending=()) -> None:
    """Release negotiation resources in dependency order, logging failures."""
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    if channel is not None:
        try:
            channel.close()
        except Exception as e:
            logger.warning("Data channel close failed", error=str(e), error_type=type(e).__name__)

    if peer_connection is not None:
        try:
            await peer_connection.close()
        except Exception as e:
            logger.warning("Peer connection close failed", error=str(e), error_type=type(e).__name__)

    if playback is not None:
        try:
            await playback.detach()
        except Exception as e:
            logger.warning("Playback detach failed", error=str(e), error_type=type(e).__name__)

    if capture is not None:
        try:
            capture.stop()
        except Exception as e:
            logger.warning("Capture stop failed", error=str(e), error_type=type(e).__name__)


class SessionNegotiator:
    """Builds Sessions. Holds no session itself."""

    def __init__(
        self,
        config: ClientConfig,
        bus: EventBus,
        credentials: Optional[CredentialClient] = None,
        sdp_exchange: Optional[SdpExchange] = None,
        capture_factory: Optional[CaptureFactory] = None,
        playback_factory: Optional[PlaybackFactory] = None,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
    ):
        self._config = config
        self._bus = bus
        self._credentials = credentials or CredentialClient(
            config.server_base_url, config.http_timeout_seconds
        )
        self._sdp = sdp_exchange or SdpExchange(
            config.provider_realtime_url, config.model, config.http_timeout_seconds
        )
        self._capture_factory = capture_factory or (
            lambda constraints: open_capture(config.capture_device, config.capture_format, constraints)
        )
        self._playback_factory = playback_factory or (
            lambda: PlaybackSink(config.playback_device, config.playback_format)
        )
        self._pc_factory = peer_connection_factory or create_peer_connection

    async def establish(self, voice: str, token: CancellationToken) -> Session:
        """
        Negotiate a new Session for `voice`.

        Raises:
            MediaAccessError, CredentialError, NegotiationError: the attempt failed.
            NegotiationCancelled: `token` was cancelled at a suspension point.
        """
        session_logger = logger.with_session(f"gen_{token.generation}")
        start_ts = time.time()
        capture = peer_connection = channel = playback = None
        pending: List[asyncio.Task] = []
        session: Optional[Session] = None

        try:
            capture = await self._capture_factory(CaptureConstraints())
            token.raise_if_cancelled()

            peer_connection = self._pc_factory(self._config.ice_servers)
            peer_connection.addTrack(capture.track)

            playback = self._playback_factory()
            ready_listeners: List[Callable[[], None]] = []

            async def bind_remote(track) -> None:
                try:
                    await playback.bind(track)
                except Exception as e:
                    session_logger.warning(
                        "Remote playback failed", error=str(e), error_type=type(e).__name__
                    )
                    return
                for listener in ready_listeners:
                    listener()

            def on_track(track) -> None:
                if track.kind != "audio":
                    return
                session_logger.debug("Remote audio track received")
                pending.append(asyncio.ensure_future(bind_remote(track)))

            peer_connection.on("track", on_track)

            channel = peer_connection.createDataChannel(DATA_CHANNEL_LABEL)
            channel.on("message", self._on_channel_message)

            offer = await peer_connection.createOffer()
            token.raise_if_cancelled()
            await peer_connection.setLocalDescription(offer)
            token.raise_if_cancelled()

            lease = await self._credentials.request_ephemeral_credential(voice, self._config.model)
            token.raise_if_cancelled()

            answer_sdp = await self._sdp.exchange(peer_connection.localDescription.sdp, lease)
            token.raise_if_cancelled()

            try:
                await peer_connection.setRemoteDescription(
                    RTCSessionDescription(sdp=answer_sdp, type="answer")
                )
            except (ValueError, TypeError, AttributeError) as e:
                raise NegotiationError(
                    f"SDP exchange failed: answer rejected ({e})",
                    status_code=200,
                    response_text=answer_sdp,
                ) from e
            token.raise_if_cancelled()

            session = Session(
                token.generation, voice, peer_connection, capture, playback, channel, pending=pending
            )
            ready_listeners.append(session._mark_remote_audio_ready)
            if playback.bound:
                session._mark_remote_audio_ready()
            self._watch_transport(session)

            session_logger.info(
                "Session established",
                voice=voice,
                model=self._config.model,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            return session
        finally:
            if session is None:
                await _release(capture, peer_connection, channel, playback, pending)
                session_logger.debug("Negotiation resources released", cancelled=token.cancelled)

    def _on_channel_message(self, message) -> None:
        if not isinstance(message, str):
            return
        try:
            event = json.loads(message)
        except json.JSONDecodeError:
            return
        if isinstance(event, dict):
            logger.debug("Realtime event", event_type=event.get("type"))
            self._bus.publish(StreamKind.SIGNALING_EVENT, event)

    def _watch_transport(self, session: Session) -> None:
        pc = session.peer_connection

        def on_state_change() -> None:
            state = getattr(pc, "connectionState", None)
            if session.closed:
                return
            if state in ("failed", "closed"):
                logger.warning("Transport lost", generation=session.generation, connection_state=state)
                self._bus.publish(
                    StreamKind.TRANSPORT_ERROR,
                    TransportError(f"Transport {state}", connection_state=state),
                )
            elif state == "disconnected":
                logger.warning("Transport disconnected", generation=session.generation)

        pc.on("connectionstatechange", on_state_change)
