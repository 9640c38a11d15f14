"""
Local capture and remote playback built on aiortc media primitives.

The outbound microphone track is wrapped in a gate: while disabled it keeps
the RTP stream alive but transmits silence, like a browser track with
`enabled = false`. Capture and playback both go through a MediaRelay so level
monitors can tap the same audio without competing for frames.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder, MediaRelay
from av import AudioFrame
from av.error import FFmpegError

from logging_setup import get_logger, Component
from voice_errors import MediaAccessError


logger = get_logger(Component.MEDIA)


@dataclass(frozen=True)
class CaptureConstraints:
    """Processing requested for local capture."""

    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int = 48000
    channels: int = 1

    def to_device_options(self) -> Dict[str, str]:
        # Echo cancellation, noise suppression and AGC belong to the capture
        # source (e.g. a PulseAudio echo-cancel source); ffmpeg only takes
        # the stream shape.
        return {"sample_rate": str(self.sample_rate), "channels": str(self.channels)}


def silence_like(frame: AudioFrame) -> AudioFrame:
    """A zero-filled frame with the same shape and timing as `frame`."""
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    if frame.time_base is not None:
        silent.time_base = frame.time_base
    return silent


class GatedAudioTrack(MediaStreamTrack):
    """Outbound audio track that sends silence while disabled."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, enabled: bool = False):
        super().__init__()
        self._source = source
        self.enabled = enabled

    async def recv(self) -> AudioFrame:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return silence_like(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class LocalCapture:
    """Microphone capture: one gated outbound track plus on-demand taps."""

    def __init__(self, source: MediaStreamTrack, constraints: CaptureConstraints, player=None):
        self.constraints = constraints
        self._player = player
        self._source = source
        self._relay = MediaRelay()
        self.track = GatedAudioTrack(self._relay.subscribe(source))
        self._stopped = False

    @property
    def enabled(self) -> bool:
        return self.track.enabled

    def set_enabled(self, enabled: bool) -> None:
        self.track.enabled = enabled

    @property
    def live(self) -> bool:
        return not self._stopped

    def tap(self) -> MediaStreamTrack:
        """A new read-only view of the raw microphone audio."""
        return self._relay.subscribe(self._source)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.track.stop()
        self._source.stop()


async def open_capture(
    device: str,
    format: Optional[str],
    constraints: CaptureConstraints,
) -> LocalCapture:
    """
    Open the microphone.

    Raises:
        MediaAccessError: device missing, busy, or access denied.
    """
    logger.debug(
        "Opening capture device",
        device=device,
        format=format,
        echo_cancellation=constraints.echo_cancellation,
        noise_suppression=constraints.noise_suppression,
        auto_gain_control=constraints.auto_gain_control,
    )
    try:
        player = await asyncio.to_thread(
            MediaPlayer, device, format=format, options=constraints.to_device_options()
        )
    except (OSError, FFmpegError) as e:
        raise MediaAccessError(f"Could not open capture device {device!r}: {e}") from e

    if player.audio is None:
        if player.video is not None:
            player.video.stop()
        raise MediaAccessError(f"Capture device {device!r} has no audio stream")

    return LocalCapture(player.audio, constraints, player=player)


class PlaybackSink:
    """Plays the remote audio track to a device, or discards it."""

    def __init__(self, device: Optional[str] = None, format: Optional[str] = None):
        self._device = device
        self._format = format
        self._relay = MediaRelay()
        self._remote: Optional[MediaStreamTrack] = None
        self._relayed: Optional[MediaStreamTrack] = None
        self._sink = None

    @property
    def bound(self) -> bool:
        return self._sink is not None

    def _new_sink(self):
        if self._device:
            return MediaRecorder(self._device, format=self._format)
        return MediaBlackhole()

    async def bind(self, track: MediaStreamTrack) -> None:
        """Route `track` to the output and start playback."""
        if self._sink is not None:
            await self.detach()
        self._remote = track
        self._sink = self._new_sink()
        self._relayed = self._relay.subscribe(track)
        self._sink.addTrack(self._relayed)
        await self._sink.start()
        logger.debug("Remote playback started", device=self._device or "discard")

    def tap(self) -> Optional[MediaStreamTrack]:
        """A new read-only view of the remote audio, if bound."""
        if self._remote is None:
            return None
        return self._relay.subscribe(self._remote)

    async def detach(self) -> None:
        sink, self._sink = self._sink, None
        relayed, self._relayed = self._relayed, None
        self._remote = None
        if sink is not None:
            await sink.stop()
        if relayed is not None:
            relayed.stop()
