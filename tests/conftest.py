"""Shared fixtures: in-memory stream source, test-driven audio output, PCM tracks."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import numpy as np
import pytest

from waveplay.audio import RenderCallback
from waveplay.config import PlaybackConfig
from waveplay.errors import AudioDeviceError, FatalFetchError, FetchError
from waveplay.models import Track, seconds_to_ns

SAMPLE_RATE = 100


class FakeSource:
    """Byte-range source over in-memory streams with call counters."""

    def __init__(self) -> None:
        self.streams: dict[str, bytes] = {}
        self.range_calls: list[tuple[str, int, int]] = []
        self.length_calls: list[str] = []
        # Errors raised by upcoming read_range calls, per locator, in order
        self.failures: dict[str, list[FetchError]] = {}
        # Locators whose every read fails with the given error
        self.broken: dict[str, Exception] = {}

    def add(self, locator: str, data: bytes) -> None:
        self.streams[locator] = data

    def calls_for(self, locator: str) -> list[tuple[int, int]]:
        return [(start, end) for loc, start, end in self.range_calls if loc == locator]

    async def content_length(self, locator: str) -> int:
        self.length_calls.append(locator)
        await asyncio.sleep(0)
        if locator not in self.streams:
            raise FatalFetchError(f"Unknown stream {locator}")
        return len(self.streams[locator])

    async def read_range(self, locator: str, start: int, end: int) -> bytes:
        self.range_calls.append((locator, start, end))
        await asyncio.sleep(0)
        if locator in self.broken:
            raise self.broken[locator]
        pending = self.failures.get(locator)
        if pending:
            raise pending.pop(0)
        return self.streams[locator][start:end]


class FakeOutput:
    """Audio output whose device callback is driven by the test."""

    def __init__(self) -> None:
        self.callback: RenderCallback | None = None
        self.format: tuple[int, int] | None = None
        self.open_count = 0
        self.fail_open = False

    @property
    def is_open(self) -> bool:
        return self.callback is not None

    def open(self, sample_rate: int, channels: int, callback: RenderCallback) -> None:
        if self.fail_open:
            raise AudioDeviceError("no device")
        self.callback = callback
        self.format = (sample_rate, channels)
        self.open_count += 1

    def close(self) -> None:
        self.callback = None
        self.format = None

    def render(self, frames: int) -> np.ndarray:
        """Run one device callback and return the rendered samples."""
        assert self.callback is not None and self.format is not None
        channels = self.format[1]
        buf = bytearray(frames * channels * 2)
        self.callback(memoryview(buf), frames)
        return np.frombuffer(bytes(buf), dtype=np.int16)


def pcm_stream(seconds: float, *, value: int = 1000, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Mono s16 PCM where frame ``i`` holds ``value + i % 100``."""
    frames = int(seconds * sample_rate)
    samples = (value + np.arange(frames) % 100).astype(np.int16)
    return samples.tobytes()


def pcm_track(
    track_id: str,
    seconds: float,
    *,
    sample_rate: int = SAMPLE_RATE,
    with_size: bool = False,
    **kwargs: object,
) -> Track:
    data_size = int(seconds * sample_rate) * 2
    return Track(
        track_id=track_id,
        duration_ns=seconds_to_ns(seconds),
        locator=f"mem://{track_id}",
        codec="pcm_s16le",
        bitrate=sample_rate * 16,
        sample_rate=sample_rate,
        channels=1,
        size_bytes=data_size if with_size else None,
        **kwargs,  # type: ignore[arg-type]
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


async def pump(output: FakeOutput, engine: object, frames: int, *, step: int = 10) -> None:
    """Render ``frames`` frames, waiting for decoded audio before each block."""
    remaining = frames
    while remaining > 0:
        block = min(step, remaining)
        await wait_until(
            lambda: engine.buffered_frames >= block or engine.input_done  # type: ignore[attr-defined]
        )
        output.render(block)
        remaining -= block
        await asyncio.sleep(0)


@pytest.fixture
def config() -> PlaybackConfig:
    """Small buffers so tests exercise watermarks and refetching."""
    return PlaybackConfig(
        chunk_size=1000,
        buffer_capacity=8000,
        low_watermark=2000,
        lookbehind_bytes=1000,
        start_threshold=1000,
        gapless_prefetch_bytes=2000,
        gapless_lead_seconds=10.0,
        fetch_retries=2,
        backoff_initial=0.5,
        backoff_factor=2.0,
        backoff_max=8.0,
        pcm_buffer_ms=1000,
        blocksize=10,
        position_interval=0.005,
    )


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def output() -> FakeOutput:
    return FakeOutput()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], object]:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return _sleep
