"""Tests for the decoder/playback engine."""

from __future__ import annotations

import asyncio
import threading

import numpy as np
import pytest

from waveplay.buffer import ChunkBuffer
from waveplay.config import PlaybackConfig
from waveplay.decoder import PcmDecoder
from waveplay.engine import EngineEvent, EngineEventKind, PlaybackEngine, fade_gains
from waveplay.errors import FatalFetchError
from waveplay.models import Chunk, Fade, Track, seconds_to_ns

from .conftest import FakeOutput, pcm_stream, pcm_track, pump, wait_until


def filled_buffer(track: Track, data: bytes, *, end: bool = True, chunk: int = 1000) -> ChunkBuffer:
    capacity = max(len(data) * 2, 4000)
    buffer = ChunkBuffer(track.track_id, capacity=capacity, low_watermark=capacity // 4, lookbehind=1000)
    for index, offset in enumerate(range(0, len(data), chunk)):
        buffer.push(Chunk(track.track_id, index, offset, data[offset : offset + chunk]))
    if end:
        buffer.mark_end(0)
    return buffer


@pytest.fixture
def events() -> list[EngineEvent]:
    return []


@pytest.fixture
def engine(output: FakeOutput, config: PlaybackConfig, events: list[EngineEvent]) -> PlaybackEngine:
    return PlaybackEngine(output, config, events.append)


def kinds(events: list[EngineEvent]) -> list[EngineEventKind]:
    return [event.kind for event in events]


async def test_renders_decoded_audio_and_tracks_position(
    engine: PlaybackEngine, output: FakeOutput, events: list[EngineEvent]
) -> None:
    track = pcm_track("t1", 5.0)
    data = pcm_stream(5.0)
    await engine.load(track, filled_buffer(track, data), PcmDecoder(1), generation=1)
    await wait_until(lambda: EngineEventKind.PLAYING in kinds(events))

    assert output.format == (100, 1)
    first = output.render(10)
    assert first.tolist() == np.frombuffer(data[:20], dtype=np.int16).tolist()

    await pump(output, engine, 190)
    assert engine.current_position() == seconds_to_ns(2.0)
    assert all(event.generation == 1 for event in events)


async def test_position_stops_at_duration_and_ends_once(
    engine: PlaybackEngine, output: FakeOutput, events: list[EngineEvent]
) -> None:
    track = pcm_track("t1", 3.0)
    await engine.load(track, filled_buffer(track, pcm_stream(3.0)), PcmDecoder(1), generation=1)

    positions = []
    remaining = 300
    while remaining > 0:
        await pump(output, engine, 50)
        remaining -= 50
        positions.append(engine.current_position())

    output.render(20)
    output.render(20)
    await asyncio.sleep(0)

    assert positions == sorted(positions)
    assert engine.current_position() == track.duration_ns
    assert kinds(events).count(EngineEventKind.ENDED) == 1


async def test_pause_freezes_position_and_outputs_silence(
    engine: PlaybackEngine, output: FakeOutput, events: list[EngineEvent]
) -> None:
    track = pcm_track("t1", 5.0)
    await engine.load(track, filled_buffer(track, pcm_stream(5.0)), PcmDecoder(1), generation=1)
    await pump(output, engine, 100)
    position = engine.current_position()

    engine.pause()
    assert not output.render(20).any()
    assert engine.current_position() == position

    engine.play()
    await wait_until(lambda: engine.buffered_frames >= 10)
    assert output.render(10).any()
    assert engine.current_position() > position


async def test_volume_scales_output_and_mute_preserves_volume(
    engine: PlaybackEngine, output: FakeOutput
) -> None:
    track = pcm_track("t1", 5.0)
    data = pcm_stream(5.0)
    await engine.load(track, filled_buffer(track, data), PcmDecoder(1), generation=1)
    await wait_until(lambda: engine.buffered_frames >= 30)

    assert engine.set_volume(50) == 50
    scaled = output.render(10)
    original = np.frombuffer(data[:20], dtype=np.int16)
    expected = (original * (0.5**1.5)).astype(np.int16)
    assert scaled.tolist() == expected.tolist()

    assert engine.toggle_mute() is True
    assert not output.render(10).any()
    assert engine.volume == 50

    assert engine.toggle_mute() is False
    assert output.render(10).any()


def test_set_volume_clamps(engine: PlaybackEngine) -> None:
    assert engine.set_volume(150) == 100
    assert engine.set_volume(-5) == 0


async def test_reposition_continues_from_moved_cursor(
    engine: PlaybackEngine, output: FakeOutput, events: list[EngineEvent]
) -> None:
    track = pcm_track("t1", 20.0)
    data = pcm_stream(20.0)
    buffer = filled_buffer(track, data)
    await engine.load(track, buffer, PcmDecoder(1), generation=1)
    await pump(output, engine, 50)

    # Frame 300 starts at byte 600
    buffer.seek_cursor(600)
    await engine.reposition(seconds_to_ns(3.0), generation=2)
    assert engine.current_position() == seconds_to_ns(3.0)

    await wait_until(lambda: engine.buffered_frames >= 10)
    rendered = output.render(10)
    assert rendered.tolist() == np.frombuffer(data[600:620], dtype=np.int16).tolist()
    assert engine.current_position() == seconds_to_ns(3.1)
    assert events[-1] == EngineEvent(EngineEventKind.PLAYING, 2)


async def test_fetch_failure_reports_failed(
    engine: PlaybackEngine, events: list[EngineEvent]
) -> None:
    track = pcm_track("t1", 5.0)
    buffer = filled_buffer(track, b"", end=False)
    await engine.load(track, buffer, PcmDecoder(1), generation=4)
    await asyncio.sleep(0)
    assert kinds(events) == [EngineEventKind.BUFFERING]

    error = FatalFetchError("gone")
    buffer.fail(error, 0)
    await wait_until(lambda: EngineEventKind.FAILED in kinds(events))
    assert events[-1] == EngineEvent(EngineEventKind.FAILED, 4, error=error)


async def test_underrun_and_recovery(
    engine: PlaybackEngine, output: FakeOutput, events: list[EngineEvent]
) -> None:
    track = pcm_track("t1", 60.0)
    data = pcm_stream(60.0)
    buffer = filled_buffer(track, data[:2000], end=False)
    await engine.load(track, buffer, PcmDecoder(1), generation=1)
    await pump(output, engine, 1000)

    output.render(10)
    await asyncio.sleep(0)
    assert kinds(events)[-1] is EngineEventKind.UNDERRUN

    buffer.push(Chunk(track.track_id, 2, 2000, data[2000:3000]))
    await wait_until(lambda: kinds(events)[-1] is EngineEventKind.PLAYING)
    assert kinds(events).count(EngineEventKind.UNDERRUN) == 1


async def test_device_callback_during_reposition_sees_no_stale_end(
    engine: PlaybackEngine,
    output: FakeOutput,
    events: list[EngineEvent],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    track = pcm_track("t1", 0.5)
    buffer = filled_buffer(track, pcm_stream(0.5))
    await engine.load(track, buffer, PcmDecoder(1), generation=1)
    await wait_until(lambda: engine.input_done)

    fifo = engine._fifo
    clear = fifo.clear
    callbacks: list[threading.Thread] = []

    def clear_then_fire_callback() -> None:
        clear()
        # The device thread wakes up while the restart is half done
        thread = threading.Thread(target=output.render, args=(10,))
        thread.start()
        callbacks.append(thread)

    monkeypatch.setattr(fifo, "clear", clear_then_fire_callback)
    buffer.seek_cursor(0)
    await engine.reposition(0, generation=2)
    monkeypatch.undo()

    await asyncio.to_thread(callbacks[0].join, 2.0)
    assert not callbacks[0].is_alive()
    for _ in range(3):
        await asyncio.sleep(0)

    assert EngineEvent(EngineEventKind.ENDED, 2) not in events
    assert engine.generation == 2


async def test_output_reused_for_same_format(engine: PlaybackEngine, output: FakeOutput) -> None:
    first = pcm_track("t1", 2.0)
    second = pcm_track("t2", 2.0)
    other_rate = pcm_track("t3", 2.0, sample_rate=200)

    await engine.load(first, filled_buffer(first, pcm_stream(2.0)), PcmDecoder(1), generation=1)
    await engine.load(second, filled_buffer(second, pcm_stream(2.0)), PcmDecoder(1), generation=2)
    assert output.open_count == 1

    data = pcm_stream(2.0, sample_rate=200)
    await engine.load(other_rate, filled_buffer(other_rate, data), PcmDecoder(1), generation=3)
    assert output.open_count == 2
    assert output.format == (200, 1)

    await engine.close()
    assert not output.is_open


async def test_fade_in_envelope(engine: PlaybackEngine, output: FakeOutput) -> None:
    track = pcm_track("t1", 5.0, fade=Fade(in_start=0.0, in_stop=1.0, out_start=4.0, out_stop=5.0))
    await engine.load(track, filled_buffer(track, pcm_stream(5.0)), PcmDecoder(1), generation=1)
    await wait_until(lambda: engine.buffered_frames >= 10)

    opening = output.render(10)
    assert opening[0] == 0
    assert list(opening) == sorted(opening)

    await pump(output, engine, 190)
    await wait_until(lambda: engine.buffered_frames >= 10)
    middle = output.render(10)
    assert middle.tolist() == (1000 + np.arange(0, 10)).tolist()


def test_fade_gains_match_scalar_envelope() -> None:
    fade = Fade(in_start=1.0, in_stop=2.0, out_start=8.0, out_stop=10.0)
    times = np.array([0.0, 1.5, 5.0, 9.0, 10.0])
    gains = fade_gains(fade, times)
    assert gains.tolist() == pytest.approx([fade.gain_at(t) for t in times])
    assert gains.tolist() == pytest.approx([0.0, 0.5, 1.0, 0.5, 0.0])
