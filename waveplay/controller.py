"""Playback controller: the coordinating task of a playback session.

All transport and queue state is owned by a single controller task. Public
control methods, engine notifications and position ticks are messages on the
controller's inbox and are handled strictly one at a time, so no other task
ever mutates the state directly.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

from waveplay.audio import AudioOutput
from waveplay.buffer import ChunkBuffer
from waveplay.config import PlaybackConfig
from waveplay.decoder import create_decoder
from waveplay.engine import EngineEvent, EngineEventKind, PlaybackEngine
from waveplay.errors import AudioDeviceError, ErrorKind, FetchError, PlaybackError
from waveplay.events import (
    EventListener,
    EventListenerManager,
    PlaybackFailed,
    PositionChanged,
    QueueChanged,
    StateChanged,
    TrackEnded,
    TrackStarted,
)
from waveplay.fetcher import ChunkFetcher, SleepFunc
from waveplay.models import RepeatMode, Track, TransportState, seconds_to_ns
from waveplay.queue import QueueManager, QueueSnapshot
from waveplay.seek import SeekController, SeekOutcome
from waveplay.source import StreamSource
from waveplay.utils import GenerationCounter, cancel_task, clamp, create_task

logger = logging.getLogger(__name__)

_TICK: Final = object()


@dataclass(slots=True)
class _Command:
    handler: Callable[..., Awaitable[Any]]
    args: tuple[Any, ...]
    future: asyncio.Future[Any] = field(repr=False)


@dataclass(slots=True)
class _Pipeline:
    """Fetcher and buffer of one track, plus its seek controller once active."""

    track: Track
    buffer: ChunkBuffer
    fetcher: ChunkFetcher
    seek: SeekController | None = None

    async def close(self) -> None:
        await self.fetcher.cancel()


class PlaybackController:
    """Public control surface of the playback core.

    Usage::

        async with PlaybackController(config, source=source, output=output) as player:
            player.add_listener(print)
            await player.load(tracks)
    """

    def __init__(
        self,
        config: PlaybackConfig | None = None,
        *,
        source: StreamSource,
        output: AudioOutput,
        rng: random.Random | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the controller.

        Args:
            config: Session configuration, defaults when omitted.
            source: Byte-range source the tracks are streamed from.
            output: Audio output, owned by the engine for the whole session.
            rng: Random source for shuffling.
            sleep: Sleep function for fetch backoff (injectable for tests).
        """
        self._config = config or PlaybackConfig()
        self._source = source
        self._sleep = sleep
        self._generations = GenerationCounter()
        self._engine = PlaybackEngine(output, self._config, self._on_engine_event)
        self._queue = QueueManager(
            repeat=self._config.repeat,
            shuffle=self._config.shuffle,
            max_history=self._config.max_history,
            rng=rng,
        )
        self._listeners = EventListenerManager()

        self._inbox: asyncio.Queue[_Command | EngineEvent | object] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._ticker: asyncio.Task[None] | None = None

        self._state = TransportState.IDLE
        self._current: _Pipeline | None = None
        self._prefetched: _Pipeline | None = None
        self._generation: int | None = None
        self._paused = False
        self._ready = False
        self._last_error: PlaybackError | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> PlaybackController:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        """Start the controller task and the position ticker."""
        if self._task is not None:
            return
        self._task = create_task(self._run(), name="playback-controller")
        self._ticker = create_task(self._tick_loop(), name="playback-position")

    async def close(self) -> None:
        """Stop playback, release the output device and end the controller task."""
        await cancel_task(self._ticker)
        self._ticker = None
        if self._task is not None:
            await self._submit(self._do_shutdown)
            await cancel_task(self._task)
            self._task = None
        else:
            await self._do_shutdown()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def config(self) -> PlaybackConfig:
        return self._config

    @property
    def state(self) -> TransportState:
        """Current transport state."""
        return self._state

    @property
    def current_track(self) -> Track | None:
        """Track owning the active pipeline."""
        return self._current.track if self._current is not None else None

    @property
    def position_ns(self) -> int:
        """Playback position of the current track in nanoseconds."""
        if self._current is None:
            return 0
        return self._engine.current_position()

    @property
    def buffered_ratio(self) -> float:
        """Fetched fraction of the current track's stream."""
        if self._current is None:
            return 0.0
        return self._current.fetcher.buffered_ratio

    @property
    def volume(self) -> int:
        return self._engine.volume

    @property
    def muted(self) -> bool:
        return self._engine.muted

    @property
    def repeat(self) -> RepeatMode:
        return self._queue.repeat

    @property
    def shuffle(self) -> bool:
        return self._queue.shuffle

    @property
    def last_error(self) -> PlaybackError | None:
        """Most recent track or device error, if any."""
        return self._last_error

    def queue_snapshot(self) -> QueueSnapshot:
        """Return a read-only view of queue and history."""
        return self._queue.snapshot()

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """Register an event listener. Returns unsubscribe function."""
        return self._listeners.add_listener(listener)

    # ------------------------------------------------------------------
    # Transport controls
    # ------------------------------------------------------------------

    async def play(self) -> None:
        """Resume playback, or start the current/next queued track when stopped."""
        await self._submit(self._do_play)

    async def pause(self) -> None:
        await self._submit(self._do_pause)

    async def toggle_pause(self) -> None:
        """Pause when playing, play otherwise."""
        await self._submit(self._do_toggle_pause)

    async def stop(self) -> None:
        """Stop playback and drop the current pipeline; the queue is kept."""
        await self._submit(self._do_stop)

    async def set_volume(self, volume: int) -> int:
        """Set the volume (clamped to 0-100) and return the applied value."""
        result: int = await self._submit(self._do_set_volume, volume)
        return result

    async def volume_up(self) -> int:
        return await self.set_volume(self._engine.volume + self._config.volume_step)

    async def volume_down(self) -> int:
        return await self.set_volume(self._engine.volume - self._config.volume_step)

    async def toggle_mute(self) -> bool:
        """Toggle mute; the volume setting is preserved. Returns the new state."""
        result: bool = await self._submit(self._do_toggle_mute)
        return result

    async def seek(self, seconds: float) -> None:
        """Seek the current track to an absolute position in seconds."""
        await self._submit(self._do_seek, seconds_to_ns(seconds))

    async def seek_relative(self, seconds: float | None = None) -> None:
        """Seek by ``seconds`` from the current position (default seek step)."""
        if seconds is None:
            seconds = self._config.seek_step_seconds
        await self._submit(self._do_seek_relative, seconds_to_ns(seconds))

    async def skip_next(self) -> None:
        """Skip to the next track, even under Repeat=Track."""
        await self._submit(self._do_skip_next)

    async def skip_previous(self) -> None:
        """Go back in history, or restart the current track at the start of history."""
        await self._submit(self._do_skip_previous)

    # ------------------------------------------------------------------
    # Queue controls
    # ------------------------------------------------------------------

    async def enqueue(self, track: Track, position: int | None = None) -> None:
        await self._submit(self._do_queue_edit, self._queue.enqueue, track, position)

    async def remove(self, index: int) -> Track:
        result: Track = await self._submit(self._do_queue_edit, self._queue.remove, index)
        return result

    async def move(self, from_index: int, to_index: int) -> None:
        await self._submit(self._do_queue_edit, self._queue.move, from_index, to_index)

    async def clear_queue(self) -> None:
        await self._submit(self._do_queue_edit, self._queue.clear)

    async def load(self, tracks: Sequence[Track], start_index: int = 0, *, play: bool = True) -> None:
        """Replace the queue with ``tracks`` and optionally start playing."""
        await self._submit(self._do_load, list(tracks), start_index, play)

    async def play_index(self, index: int) -> None:
        """Skip forward to the upcoming entry at ``index`` and play it.

        Raises:
            IndexError: If ``index`` is not a valid upcoming position.
        """
        await self._submit(self._do_play_index, index)

    async def toggle_shuffle(self) -> bool:
        """Toggle shuffle and return the new state."""
        result: bool = await self._submit(self._do_toggle_shuffle)
        return result

    async def cycle_repeat(self) -> RepeatMode:
        """Cycle repeat mode Off -> Queue -> Track -> Off and return it."""
        result: RepeatMode = await self._submit(self._do_cycle_repeat)
        return result

    # ------------------------------------------------------------------
    # Controller task
    # ------------------------------------------------------------------

    async def _submit(self, handler: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        if self._task is None:
            self.start()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Command(handler, args, future))
        return await future

    def _on_engine_event(self, event: EngineEvent) -> None:
        self._inbox.put_nowait(event)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.position_interval)
            self._inbox.put_nowait(_TICK)

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            if isinstance(message, _Command):
                try:
                    result = await message.handler(*message.args)
                except Exception as err:
                    if not message.future.done():
                        message.future.set_exception(err)
                else:
                    if not message.future.done():
                        message.future.set_result(result)
                continue

            try:
                if isinstance(message, EngineEvent):
                    await self._handle_engine_event(message)
                elif message is _TICK:
                    await self._handle_tick()
            except AudioDeviceError as err:
                logger.debug("Playback halted by audio device failure: %s", err)
            except Exception:
                logger.exception("Unexpected error in playback controller")

    # ------------------------------------------------------------------
    # Command handlers (controller task only)
    # ------------------------------------------------------------------

    async def _do_play(self) -> None:
        if self._current is None:
            track = self._queue.current or self._queue.advance()
            self._emit_queue()
            if track is None:
                logger.info("Nothing to play")
                return
            self._paused = False
            await self._start_track(track)
            return
        if self._paused:
            self._paused = False
            self._engine.play()
            self._set_state(TransportState.PLAYING if self._ready else TransportState.BUFFERING)

    async def _do_pause(self) -> None:
        if self._current is None or self._paused:
            return
        self._paused = True
        self._engine.pause()
        self._set_state(TransportState.PAUSED)

    async def _do_toggle_pause(self) -> None:
        if self._current is not None and not self._paused:
            await self._do_pause()
        else:
            await self._do_play()

    async def _do_stop(self) -> None:
        await self._teardown()
        self._paused = False
        self._set_state(TransportState.IDLE)

    async def _do_set_volume(self, volume: int) -> int:
        return self._engine.set_volume(volume)

    async def _do_toggle_mute(self) -> bool:
        return self._engine.toggle_mute()

    async def _do_seek(self, position_ns: int) -> None:
        pipeline = self._current
        if pipeline is None or pipeline.seek is None:
            return
        track = pipeline.track
        if position_ns >= track.duration_ns:
            logger.info("Seek past the end of %s, treating as end of track", track.track_id)
            await self._finish_track()
            return
        position_ns = max(position_ns, 0)

        try:
            outcome = await pipeline.seek.seek_to(position_ns)
        except FetchError as err:
            await self._fail_track(err)
            return

        self._generation = self._engine.generation
        if outcome is SeekOutcome.REFETCH:
            self._ready = False
            if not self._paused:
                self._set_state(TransportState.SEEKING)
        elif outcome is SeekOutcome.END:
            await self._finish_track()

    async def _do_seek_relative(self, delta_ns: int) -> None:
        if self._current is None:
            return
        target = self._engine.current_position() + delta_ns
        target = clamp(target, 0, self._current.track.duration_ns)
        await self._do_seek(target)

    async def _do_skip_next(self) -> None:
        await self._advance(force=True)

    async def _do_skip_previous(self) -> None:
        track = self._queue.go_back()
        if track is None:
            if self._current is not None:
                await self._do_seek(0)
            return
        self._emit_queue()
        await self._start_track(track)

    async def _do_queue_edit(self, edit: Callable[..., Any], *args: Any) -> Any:
        result = edit(*args)
        await self._discard_stale_prefetch()
        self._emit_queue()
        return result

    async def _do_play_index(self, index: int) -> None:
        track = self._queue.jump(index)
        self._emit_queue()
        await self._start_track(track)

    async def _do_load(self, tracks: list[Track], start_index: int, play: bool) -> None:
        await self._teardown()
        self._queue.load(tracks, start_index)
        self._set_state(TransportState.IDLE)
        self._emit_queue()
        if play:
            await self._do_play()

    async def _do_toggle_shuffle(self) -> bool:
        self._queue.set_shuffle(not self._queue.shuffle)
        await self._discard_stale_prefetch()
        self._emit_queue()
        return self._queue.shuffle

    async def _do_cycle_repeat(self) -> RepeatMode:
        mode = self._queue.cycle_repeat()
        await self._discard_stale_prefetch()
        self._emit_queue()
        return mode

    async def _do_shutdown(self) -> None:
        await self._teardown()
        await self._engine.close()
        self._set_state(TransportState.IDLE)

    # ------------------------------------------------------------------
    # Engine events and ticks
    # ------------------------------------------------------------------

    async def _handle_engine_event(self, event: EngineEvent) -> None:
        if self._current is None or event.generation != self._generation:
            logger.debug("Discarding stale %s event (generation %d)", event.kind.name, event.generation)
            return

        if event.kind is EngineEventKind.BUFFERING:
            self._ready = False
            if not self._paused:
                self._set_state(TransportState.BUFFERING)
        elif event.kind is EngineEventKind.PLAYING:
            self._ready = True
            if not self._paused:
                self._set_state(TransportState.PLAYING)
        elif event.kind is EngineEventKind.UNDERRUN:
            self._ready = False
            if not self._paused:
                self._set_state(TransportState.BUFFERING)
        elif event.kind is EngineEventKind.ENDED:
            await self._finish_track()
        elif event.kind is EngineEventKind.FAILED:
            assert event.error is not None
            await self._fail_track(event.error)

    async def _handle_tick(self) -> None:
        pipeline = self._current
        if pipeline is None or self._state is not TransportState.PLAYING:
            return
        position = self._engine.current_position()
        self._listeners.emit(
            PositionChanged(
                track=pipeline.track,
                position_ns=position,
                duration_ns=pipeline.track.duration_ns,
                buffered_ratio=pipeline.fetcher.buffered_ratio,
            )
        )
        self._maybe_prefetch_next(pipeline, position)

    def _maybe_prefetch_next(self, pipeline: _Pipeline, position_ns: int) -> None:
        """Start fetching the opening of the next track near the end of this one."""
        if self._prefetched is not None or not pipeline.buffer.ended:
            return
        remaining = pipeline.track.duration_ns - position_ns
        if remaining > seconds_to_ns(self._config.gapless_lead_seconds):
            return
        track = self._queue.peek_next()
        if track is None:
            return
        capacity = self._config.gapless_prefetch_bytes
        self._prefetched = self._create_pipeline(
            track, capacity=capacity, low_watermark=max(1, capacity // 4)
        )
        logger.debug("Prefetching opening of %s for gapless transition", track.track_id)

    # ------------------------------------------------------------------
    # Pipeline management
    # ------------------------------------------------------------------

    def _create_pipeline(self, track: Track, *, capacity: int, low_watermark: int) -> _Pipeline:
        generation = self._generations.next()
        buffer = ChunkBuffer(
            track.track_id,
            capacity=capacity,
            low_watermark=low_watermark,
            lookbehind=self._config.lookbehind_bytes,
            generation=generation,
        )
        fetcher = ChunkFetcher(self._source, track, buffer, self._config, sleep=self._sleep)
        fetcher.start(0, generation)
        return _Pipeline(track=track, buffer=buffer, fetcher=fetcher)

    async def _start_track(self, track: Track) -> None:
        """Make ``track`` current, reusing a gapless prefetch when it matches."""
        if self._current is not None:
            await self._current.close()
            self._current = None

        pipeline = self._prefetched
        self._prefetched = None
        if pipeline is not None and pipeline.track == track:
            pipeline.buffer.resize(self._config.buffer_capacity, self._config.low_watermark)
            logger.debug("Promoting prefetched buffer of %s", track.track_id)
        else:
            if pipeline is not None:
                await pipeline.close()
            pipeline = self._create_pipeline(
                track,
                capacity=self._config.buffer_capacity,
                low_watermark=self._config.low_watermark,
            )

        self._current = pipeline
        self._ready = False
        self._paused = False
        self._set_state(TransportState.LOADING)
        self._listeners.emit(TrackStarted(track))
        logger.info("Starting %s", track.describe())

        generation = self._generations.next()
        self._generation = generation
        try:
            decoder = create_decoder(track)
        except PlaybackError as err:
            # Reported through the inbox like any other track failure
            self._inbox.put_nowait(EngineEvent(EngineEventKind.FAILED, generation, error=err))
            return

        pipeline.seek = SeekController(
            track, pipeline.buffer, pipeline.fetcher, self._engine, self._generations
        )
        try:
            await self._engine.load(track, pipeline.buffer, decoder, generation)
        except AudioDeviceError as err:
            self._device_failed(err)
            raise
        self._engine.play()

    async def _teardown(self) -> None:
        for pipeline in (self._current, self._prefetched):
            if pipeline is not None:
                await pipeline.close()
        self._current = None
        self._prefetched = None
        self._generation = None
        self._ready = False
        await self._engine.unload()

    async def _discard_stale_prefetch(self) -> None:
        pipeline = self._prefetched
        if pipeline is not None and pipeline.track != self._queue.peek_next():
            self._prefetched = None
            await pipeline.close()

    async def _finish_track(self) -> None:
        assert self._current is not None
        track = self._current.track
        self._set_state(TransportState.ENDED)
        self._listeners.emit(TrackEnded(track))
        await self._advance(force=False)

    async def _fail_track(self, error: PlaybackError) -> None:
        track = self._current.track if self._current is not None else None
        self._last_error = error
        self._set_state(TransportState.ERRORED)
        self._listeners.emit(PlaybackFailed(track=track, kind=error.kind, detail=str(error)))
        # Failing tracks are skipped even under Repeat=Track
        await self._advance(force=True)

    async def _advance(self, *, force: bool) -> None:
        track = self._queue.advance(force=force)
        self._emit_queue()
        if track is None:
            logger.info("Queue exhausted")
            await self._teardown()
            self._paused = False
            self._set_state(TransportState.IDLE)
            return
        await self._start_track(track)

    def _device_failed(self, error: AudioDeviceError) -> None:
        logger.error("Audio device failure: %s", error)
        self._last_error = error
        track = self._current.track if self._current is not None else None
        self._set_state(TransportState.ERRORED)
        self._listeners.emit(PlaybackFailed(track=track, kind=ErrorKind.DEVICE, detail=str(error)))

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: TransportState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.debug("Transport state %s -> %s", previous.value, state.value)
        self._listeners.emit(StateChanged(previous=previous, state=state, track=self.current_track))

    def _emit_queue(self) -> None:
        self._listeners.emit(QueueChanged(self._queue.snapshot()))
