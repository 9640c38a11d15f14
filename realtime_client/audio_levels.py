"""
Audio level monitoring for visualization.

Taps a live audio track and produces LevelSample values at animation-frame
cadence. The analysis mirrors a browser AnalyserNode: a 512-point FFT with a
Blackman window, temporal smoothing, and magnitudes mapped from a decibel
range onto bytes (0..255).

- level: mean byte magnitude over the spectrum / 128, clamped to [0, 1]
- bands: 32 equal-width slices of the spectrum, each averaged / 255
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional, Set, Tuple

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from logging_setup import get_logger, Component


logger = get_logger(Component.AUDIO_LEVELS)

FFT_SIZE = 512
BAND_COUNT = 32
SMOOTHING = 0.8
MIN_DB = -90.0
MAX_DB = -10.0
LEVEL_REFERENCE = 128.0
MAX_MAGNITUDE = 255.0


@dataclass(frozen=True)
class LevelSample:
    """One visualization sample."""

    level: float
    bands: Tuple[float, ...]


def compute_sample(magnitudes: np.ndarray, band_count: int = BAND_COUNT) -> LevelSample:
    """Reduce byte magnitudes (0..255 per bin) to a LevelSample."""
    magnitudes = np.asarray(magnitudes, dtype=np.float64)
    if magnitudes.size < band_count:
        raise ValueError(f"need at least {band_count} bins, got {magnitudes.size}")

    level = float(np.clip(magnitudes.mean() / LEVEL_REFERENCE, 0.0, 1.0))

    band_size = magnitudes.size // band_count
    bands = magnitudes[: band_size * band_count].reshape(band_count, band_size).mean(axis=1)
    bands = np.clip(bands / MAX_MAGNITUDE, 0.0, 1.0)

    return LevelSample(level=level, bands=tuple(float(b) for b in bands))


def pcm_from_frame(frame) -> np.ndarray:
    """Mono float samples in [-1, 1] from an av.AudioFrame."""
    data = frame.to_ndarray()
    if np.issubdtype(data.dtype, np.integer):
        data = data.astype(np.float32) / float(np.iinfo(data.dtype).max + 1)
    else:
        data = data.astype(np.float32)

    if frame.format.is_planar:
        return data.mean(axis=0) if data.ndim == 2 else data

    channels = max(len(frame.layout.channels), 1)
    return data.reshape(-1, channels).mean(axis=1)


class SpectrumAnalyser:
    """Rolling-window magnitude spectrum."""

    def __init__(
        self,
        fft_size: int = FFT_SIZE,
        smoothing: float = SMOOTHING,
        min_db: float = MIN_DB,
        max_db: float = MAX_DB,
        band_count: int = BAND_COUNT,
    ):
        if fft_size // 2 < band_count:
            raise ValueError("fft_size too small for band_count")
        self.fft_size = fft_size
        self.band_count = band_count
        self._smoothing = smoothing
        self._min_db = min_db
        self._max_db = max_db
        self._window = np.blackman(fft_size)
        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)

    def push(self, samples: np.ndarray) -> None:
        """Append mono samples; only the newest fft_size are kept."""
        samples = np.asarray(samples, dtype=np.float32).ravel()
        if samples.size >= self.fft_size:
            self._buffer[:] = samples[-self.fft_size:]
        elif samples.size:
            self._buffer = np.roll(self._buffer, -samples.size)
            self._buffer[-samples.size:] = samples

    def byte_frequency_data(self) -> np.ndarray:
        spectrum = np.abs(np.fft.rfft(self._buffer * self._window))[: self.fft_size // 2]
        spectrum /= self.fft_size
        self._smoothed = self._smoothing * self._smoothed + (1.0 - self._smoothing) * spectrum

        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        scaled = (db - self._min_db) * (MAX_MAGNITUDE / (self._max_db - self._min_db))
        return np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0, posinf=MAX_MAGNITUDE), 0.0, MAX_MAGNITUDE)

    def sample(self) -> LevelSample:
        return compute_sample(self.byte_frequency_data(), self.band_count)


_END = object()


class LevelSubscription:
    """
    A running sample stream over one tapped track.

    Samples are pushed to `on_sample` and can also be pulled with
    `async for`. After detach() no further callbacks happen and iteration
    ends.
    """

    def __init__(
        self,
        track: MediaStreamTrack,
        analyser: SpectrumAnalyser,
        frame_interval: float,
        on_sample: Optional[Callable[[LevelSample], None]] = None,
        on_close: Optional[Callable[["LevelSubscription"], None]] = None,
    ):
        self._track = track
        self._analyser = analyser
        self._interval = frame_interval
        self._on_sample = on_sample
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._reader: Optional[asyncio.Task] = None
        self._sampler: Optional[asyncio.Task] = None
        self._closed = False
        self.last_sample: Optional[LevelSample] = None

    @property
    def active(self) -> bool:
        return not self._closed and self._sampler is not None

    def start(self) -> None:
        if self._sampler is not None or self._closed:
            return
        self._reader = asyncio.create_task(self._read_frames())
        self._sampler = asyncio.create_task(self._sample_frames())

    async def _read_frames(self) -> None:
        while not self._closed:
            try:
                frame = await self._track.recv()
            except MediaStreamError:
                logger.debug("Tapped track ended")
                return
            self._analyser.push(pcm_from_frame(frame))

    async def _sample_frames(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self._closed:
                return
            sample = self._analyser.sample()
            self.last_sample = sample
            if self._on_sample is not None:
                try:
                    self._on_sample(sample)
                except Exception as e:
                    logger.warning("Level callback raised", error=str(e), error_type=type(e).__name__)
            # pull consumers only ever see the newest sample
            if self._queue.full():
                self._queue.get_nowait()
            self._queue.put_nowait(sample)

    def cancel(self) -> None:
        """Stop sampling immediately; safe to call from synchronous code."""
        if self._closed:
            return
        self._closed = True
        for task in (self._reader, self._sampler):
            if task is not None:
                task.cancel()
        self._track.stop()
        if self._on_close is not None:
            self._on_close(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    async def detach(self) -> None:
        """Stop sampling and wait for the loops to unwind."""
        self.cancel()
        tasks = [t for t in (self._reader, self._sampler) if t is not None]
        await asyncio.gather(*tasks, return_exceptions=True)

    def __aiter__(self) -> "LevelSubscription":
        return self

    async def __anext__(self) -> LevelSample:
        item = await self._queue.get()
        if item is _END:
            # leave the marker for any other waiting consumer
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item


class AudioLevelMonitor:
    """Attaches level subscriptions to audio tracks."""

    def __init__(
        self,
        frame_rate: int = 60,
        fft_size: int = FFT_SIZE,
        smoothing: float = SMOOTHING,
        band_count: int = BAND_COUNT,
    ):
        if frame_rate <= 0:
            raise ValueError("frame_rate must be positive")
        self.frame_interval = 1.0 / frame_rate
        self._fft_size = fft_size
        self._smoothing = smoothing
        self._band_count = band_count
        self._subscriptions: Set[LevelSubscription] = set()

    def attach(
        self,
        track: MediaStreamTrack,
        on_sample: Optional[Callable[[LevelSample], None]] = None,
    ) -> LevelSubscription:
        """Start sampling `track`. Each call starts a fresh sequence."""
        subscription = LevelSubscription(
            track,
            SpectrumAnalyser(self._fft_size, self._smoothing, band_count=self._band_count),
            self.frame_interval,
            on_sample,
            on_close=self._forget,
        )
        subscription.start()
        self._subscriptions.add(subscription)
        return subscription

    def _forget(self, subscription: LevelSubscription) -> None:
        self._subscriptions.discard(subscription)

    async def detach(self, subscription: LevelSubscription) -> None:
        await subscription.detach()

    async def detach_all(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.detach()

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    def __len__(self) -> int:
        return len(self._subscriptions)
