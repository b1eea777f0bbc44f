"""Decoder/playback engine.

The engine owns the audio output for the lifetime of a session. For the
current track it runs a decode task that drains the chunk buffer in order,
decodes to 16-bit PCM and queues the samples in a bounded FIFO. The audio
device callback renders from that FIFO on the device thread, applying volume
and mute, and counts rendered frames to derive the playback position.

State changes are never applied here: the engine reports them as
``EngineEvent`` messages tagged with the generation they belong to, and the
playback controller decides what they mean.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Final

import numpy as np

from waveplay.errors import PlaybackError
from waveplay.models import NANOS_PER_SECOND, Fade, Track
from waveplay.utils import cancel_task, clamp, create_task

if TYPE_CHECKING:
    from waveplay.audio import AudioOutput
    from waveplay.buffer import ChunkBuffer
    from waveplay.config import PlaybackConfig
    from waveplay.decoder import StreamDecoder

logger = logging.getLogger(__name__)


class EngineEventKind(Enum):
    """Notifications sent from the engine to the controller."""

    BUFFERING = auto()
    """Waiting for enough buffered data before decoding starts."""

    PLAYING = auto()
    """Decoded audio is flowing (first PCM after load/seek, or recovery after underrun)."""

    UNDERRUN = auto()
    """The device ran out of decoded audio while the stream has not ended."""

    ENDED = auto()
    """The stream is exhausted and every decoded frame has been rendered."""

    FAILED = auto()
    """A track-fatal fetch or decode error stopped decoding."""


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """An engine notification for a specific generation."""

    kind: EngineEventKind
    generation: int
    error: PlaybackError | None = None


class _PcmFifo:
    """Thread-safe bounded byte FIFO between the decode task and the device thread."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._data = bytearray()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def free(self) -> int:
        return self._capacity - len(self._data)

    def write(self, data: memoryview) -> int:
        with self._lock:
            accepted = min(len(data), self._capacity - len(self._data))
            if accepted > 0:
                self._data.extend(data[:accepted])
            return accepted

    def read_into(self, out: memoryview, num_bytes: int) -> int:
        with self._lock:
            count = min(num_bytes, len(self._data))
            if count > 0:
                out[:count] = self._data[:count]
                del self._data[:count]
            return count

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


def fade_gains(fade: Fade, times: np.ndarray) -> np.ndarray:
    """Return the fade envelope gain for each track time (seconds)."""
    gains = np.ones_like(times, dtype=np.float64)
    if fade.in_stop > fade.in_start:
        gains *= np.clip((times - fade.in_start) / (fade.in_stop - fade.in_start), 0.0, 1.0)
    else:
        gains[times < fade.in_start] = 0.0
    if fade.out_stop > fade.out_start:
        gains *= np.clip(1.0 - (times - fade.out_start) / (fade.out_stop - fade.out_start), 0.0, 1.0)
    return gains


class PlaybackEngine:
    """Decodes the current track and drives the audio output at real-time cadence.

    Attributes:
        generation: Generation of the currently loaded track/seek epoch, if any.
    """

    _MIN_FIFO_BLOCKS: Final[int] = 2
    """The PCM FIFO always holds at least this many device blocks."""

    def __init__(
        self,
        output: AudioOutput,
        config: PlaybackConfig,
        notify: Callable[[EngineEvent], None],
    ) -> None:
        """Initialize the engine.

        Args:
            output: Audio output owned by this engine for the whole session.
            config: Output and buffering configuration.
            notify: Receives engine events on the event loop thread.
        """
        self._output = output
        self._config = config
        self._notify = notify
        self._loop: asyncio.AbstractEventLoop | None = None
        self._format: tuple[int, int] | None = None
        self._fifo = _PcmFifo(0)
        self._space_ready = asyncio.Event()

        self._volume = clamp(config.volume, 0, 100)
        self._muted = config.muted
        self._paused = False

        self.generation: int | None = None
        self._track: Track | None = None
        self._buffer: ChunkBuffer | None = None
        self._decoder: StreamDecoder | None = None
        self._task: asyncio.Task[None] | None = None

        # Position bookkeeping (frames are per channel)
        self._base_ns = 0
        self._frames_rendered = 0
        self._frames_decoded = 0

        # Guards generation, FIFO swaps, position counters and the flags below,
        # which are shared with the device thread
        self._state_lock = threading.Lock()
        self._input_done = False
        self._announced = False
        self._starved = False
        self._end_signaled = False

    # ------------------------------------------------------------------
    # Transport controls
    # ------------------------------------------------------------------

    @property
    def volume(self) -> int:
        """Get the current volume level (0-100)."""
        return self._volume

    @property
    def muted(self) -> bool:
        """Get the current mute state."""
        return self._muted

    @property
    def paused(self) -> bool:
        """Whether rendering is paused."""
        return self._paused

    @property
    def track(self) -> Track | None:
        """Track currently loaded."""
        return self._track

    @property
    def buffered_frames(self) -> int:
        """Decoded frames waiting to be rendered."""
        if self._track is None:
            return 0
        return self._fifo.size // self._track.frame_size

    @property
    def input_done(self) -> bool:
        """Whether the whole stream of the current track has been decoded."""
        return self._input_done

    def set_volume(self, volume: int) -> int:
        """Set the volume, clamped to 0-100. Muting is unaffected."""
        self._volume = clamp(int(volume), 0, 100)
        return self._volume

    def set_muted(self, muted: bool) -> None:
        """Set the mute state without touching the volume."""
        self._muted = muted

    def toggle_mute(self) -> bool:
        """Toggle mute, preserving the volume setting. Returns the new state."""
        self._muted = not self._muted
        return self._muted

    def play(self) -> None:
        """Resume rendering."""
        self._paused = False

    def pause(self) -> None:
        """Stop rendering; the position is frozen until play() is called."""
        self._paused = True

    def current_position(self) -> int:
        """Position in nanoseconds derived from frames actually rendered."""
        track = self._track
        if track is None:
            return 0
        position = self._base_ns + self._frames_rendered * NANOS_PER_SECOND // track.sample_rate
        return min(position, track.duration_ns)

    # ------------------------------------------------------------------
    # Track lifecycle
    # ------------------------------------------------------------------

    async def load(
        self,
        track: Track,
        buffer: ChunkBuffer,
        decoder: StreamDecoder,
        generation: int,
        *,
        start_ns: int = 0,
    ) -> None:
        """Start decoding a track from its buffer.

        The output stream stays open across tracks with the same format, so a
        track change does not reopen the device.

        Raises:
            AudioDeviceError: If the output device cannot be opened.
        """
        await cancel_task(self._task)
        self._task = None
        self._loop = asyncio.get_running_loop()
        self._ensure_output(track)
        self._track = track
        self._buffer = buffer
        self._decoder = decoder
        self._restart(start_ns, generation)
        logger.info("Loaded %s at %.1fs (generation %d)", track.describe(), start_ns / 1e9, generation)

    async def reposition(self, position_ns: int, generation: int) -> None:
        """Continue decoding from the buffer's (moved) cursor at ``position_ns``."""
        if self._track is None or self._buffer is None or self._decoder is None:
            return
        await cancel_task(self._task)
        self._task = None
        self._decoder.reset()
        self._restart(position_ns, generation)

    async def unload(self) -> None:
        """Stop decoding and drop all queued audio; the device stays open."""
        await cancel_task(self._task)
        self._task = None
        with self._state_lock:
            self.generation = None
            self._track = None
            self._buffer = None
            self._decoder = None
            self._fifo.clear()
            self._base_ns = 0
            self._frames_rendered = 0

    async def close(self) -> None:
        """Unload and release the audio device."""
        await self.unload()
        self._output.close()
        self._format = None

    def _ensure_output(self, track: Track) -> None:
        fmt = (track.sample_rate, track.channels)
        if self._format == fmt and self._output.is_open:
            return
        with self._state_lock:
            self._fifo = _PcmFifo(self._fifo_capacity(track))
        self._output.open(track.sample_rate, track.channels, self._render)
        self._format = fmt

    def _fifo_capacity(self, track: Track) -> int:
        frames = track.sample_rate * self._config.pcm_buffer_ms // 1000
        frames = max(frames, self._config.blocksize * self._MIN_FIFO_BLOCKS)
        return frames * track.frame_size

    def _restart(self, position_ns: int, generation: int) -> None:
        assert self._track is not None
        assert self._buffer is not None
        assert self._decoder is not None
        with self._state_lock:
            self._fifo.clear()
            self._base_ns = clamp(position_ns, 0, self._track.duration_ns)
            self._frames_rendered = 0
            self._input_done = False
            self._announced = False
            self._starved = False
            self._end_signaled = False
            self._space_ready = asyncio.Event()
            # Assigned last, after every flag the device thread reads
            self.generation = generation
        self._frames_decoded = 0
        self._task = create_task(
            self._decode_loop(self._track, self._buffer, self._decoder, generation),
            name=f"decode-{self._track.track_id}-{generation}",
        )

    # ------------------------------------------------------------------
    # Decode task (event loop thread)
    # ------------------------------------------------------------------

    async def _decode_loop(
        self,
        track: Track,
        buffer: ChunkBuffer,
        decoder: StreamDecoder,
        generation: int,
    ) -> None:
        try:
            if buffer.buffered_bytes < self._config.start_threshold and not buffer.ended:
                self._notify(EngineEvent(EngineEventKind.BUFFERING, generation))
            await buffer.wait_ready(self._config.start_threshold)

            while True:
                chunk = await buffer.pop_for_decode()
                if chunk is None:
                    pcm = decoder.flush()
                    if pcm:
                        await self._write_pcm(track, pcm, generation)
                    break
                pcm = decoder.decode(chunk.data)
                if pcm:
                    await self._write_pcm(track, pcm, generation)
        except PlaybackError as err:
            logger.warning("Playback of %s failed: %s", track.describe(), err)
            self._notify(EngineEvent(EngineEventKind.FAILED, generation, error=err))
            return

        with self._state_lock:
            self._input_done = True
            # Nothing decodable followed the cursor; the track is over
            end_now = not self._announced
            if end_now:
                self._end_signaled = True
        logger.debug("Decoded all of %s (generation %d)", track.track_id, generation)
        if end_now:
            self._notify(EngineEvent(EngineEventKind.ENDED, generation))

    async def _write_pcm(self, track: Track, pcm: bytes, generation: int) -> None:
        if track.fade is not None:
            pcm = self._apply_fade(track, pcm)
        self._frames_decoded += len(pcm) // track.frame_size

        view = memoryview(pcm)
        while view:
            written = self._fifo.write(view)
            view = view[written:]
            if written:
                with self._state_lock:
                    resumed = not self._announced or self._starved
                    self._announced = True
                    self._starved = False
                if resumed:
                    self._notify(EngineEvent(EngineEventKind.PLAYING, generation))
            if view:
                self._space_ready.clear()
                if self._fifo.free == 0:
                    await self._space_ready.wait()

    def _apply_fade(self, track: Track, pcm: bytes) -> bytes:
        assert track.fade is not None
        samples = np.frombuffer(pcm, dtype=np.int16).reshape(-1, track.channels)
        start = self._base_ns / NANOS_PER_SECOND + self._frames_decoded / track.sample_rate
        times = start + np.arange(samples.shape[0]) / track.sample_rate
        gains = fade_gains(track.fade, times)[:, np.newaxis]
        return (samples * gains).astype(np.int16).tobytes()

    # ------------------------------------------------------------------
    # Device callback (audio thread)
    # ------------------------------------------------------------------

    def _render(self, outdata: memoryview, frames: int) -> None:
        """Fill the device buffer with decoded audio, or silence."""
        fmt = self._format
        frame_size = fmt[1] * 2 if fmt is not None else 4
        bytes_needed = frames * frame_size

        try:
            event: EngineEventKind | None = None
            with self._state_lock:
                track = self._track
                generation = self.generation
                silent = track is None or self._paused or generation is None
                if silent:
                    got = 0
                    self._fill_silence(outdata, 0, bytes_needed)
                else:
                    got = self._fifo.read_into(outdata, bytes_needed)
                    if got < bytes_needed:
                        self._fill_silence(outdata, got, bytes_needed - got)
                    self._frames_rendered += got // frame_size
                    if got < bytes_needed:
                        if self._input_done and not self._end_signaled:
                            self._end_signaled = True
                            event = EngineEventKind.ENDED
                        elif self._announced and not self._input_done and not self._starved:
                            self._starved = True
                            event = EngineEventKind.UNDERRUN
                space_ready = self._space_ready
        except Exception:
            logger.exception("Error in audio callback")
            self._fill_silence(outdata, 0, bytes_needed)
            return

        if got:
            self._call_soon(space_ready.set)
        if event is not None:
            assert track is not None and generation is not None
            if event is EngineEventKind.UNDERRUN:
                logger.warning("Audio underrun while playing %s", track.track_id)
            self._call_soon(self._notify, EngineEvent(event, generation))
        if not silent:
            self._apply_volume(outdata, bytes_needed)

    def _call_soon(self, callback: Callable[..., object], *args: object) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def _fill_silence(self, output_buffer: memoryview, offset: int, num_bytes: int) -> None:
        """Fill output buffer range with silence."""
        if num_bytes > 0:
            output_buffer[offset : offset + num_bytes] = b"\x00" * num_bytes

    def _apply_volume(self, output_buffer: memoryview, num_bytes: int) -> None:
        """Scale the rendered 16-bit samples by the current volume.

        Muting only gates the output; the decoded data and the volume setting
        are left untouched.
        """
        muted = self._muted
        volume = self._volume

        if muted or volume == 0:
            output_buffer[:num_bytes] = b"\x00" * num_bytes
            return

        if volume == 100:
            return

        samples = np.frombuffer(output_buffer[:num_bytes], dtype=np.int16).copy()
        # Power curve for natural volume control (gentler at high volumes)
        amplitude = (volume / 100.0) ** 1.5
        samples = (samples * amplitude).astype(np.int16)
        output_buffer[:num_bytes] = samples.tobytes()
