"""Chunk fetcher: pulls a track's stream into a chunk buffer ahead of playback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from waveplay.buffer import ChunkBuffer
from waveplay.config import PlaybackConfig
from waveplay.errors import FatalFetchError, PlaybackError, TransientFetchError
from waveplay.models import Chunk, Track
from waveplay.source import StreamSource
from waveplay.utils import cancel_task, create_task

_T = TypeVar("_T")

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class ChunkFetcher:
    """Fetches a track in bounded-size chunks and pushes them into a buffer.

    Fetching is paced by the buffer's watermarks: the fetch task suspends while
    the buffer is above its high watermark and resumes once playback drained
    it below the low watermark. Every fetch run is tied to a generation token;
    restarting (on seek) invalidates the previous run so none of its chunks can
    reach the buffer.
    """

    def __init__(
        self,
        source: StreamSource,
        track: Track,
        buffer: ChunkBuffer,
        config: PlaybackConfig,
        *,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the fetcher.

        Args:
            source: Remote stream source.
            track: Track to fetch.
            buffer: Buffer receiving the chunks.
            config: Chunk size and retry/backoff policy.
            sleep: Sleep function used for backoff (injectable for tests).
        """
        self._source = source
        self._track = track
        self._buffer = buffer
        self._config = config
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._total_bytes: int | None = track.size_bytes
        self._fetched_bytes = 0
        self._requests = 0

    @property
    def track(self) -> Track:
        """Track being fetched."""
        return self._track

    @property
    def total_bytes(self) -> int | None:
        """Total stream size, once known."""
        return self._total_bytes

    @property
    def requests(self) -> int:
        """Number of range requests issued, including retries."""
        return self._requests

    @property
    def running(self) -> bool:
        """Whether a fetch run is in progress."""
        return self._task is not None and not self._task.done()

    @property
    def buffered_ratio(self) -> float:
        """Highest fetched offset relative to the stream size."""
        if not self._total_bytes:
            return 0.0
        return min(1.0, self._buffer.expected_offset / self._total_bytes)

    def start(self, offset: int, generation: int) -> None:
        """Start fetching from ``offset`` for ``generation``.

        Any previous run is cancelled; the buffer must already have been reset
        to ``offset`` and ``generation`` by the caller.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = create_task(
            self._run(offset, generation),
            name=f"fetch-{self._track.track_id}-{generation}",
        )

    async def restart(self, offset: int, generation: int) -> None:
        """Cancel the current run, reset the buffer and fetch from ``offset``."""
        await cancel_task(self._task)
        self._buffer.reset(offset, generation)
        self.start(offset, generation)

    async def cancel(self) -> None:
        """Cancel any in-flight fetch."""
        await cancel_task(self._task)
        self._task = None

    async def ensure_total_bytes(self) -> int:
        """Resolve the stream size, asking the source if the track does not carry it."""
        if self._total_bytes is None:
            self._total_bytes = await self._with_retry(
                lambda: self._source.content_length(self._track.locator),
                "content length",
            )
            logger.debug("Stream size of %s: %d bytes", self._track.track_id, self._total_bytes)
        return self._total_bytes

    async def _run(self, offset: int, generation: int) -> None:
        buffer = self._buffer
        self._fetched_bytes = 0
        try:
            total = await self.ensure_total_bytes()
            index = offset // self._config.chunk_size
            while offset < total:
                await buffer.wait_for_space()
                if buffer.generation != generation:
                    logger.debug("Fetch generation %d superseded; stopping", generation)
                    return
                end = min(offset + self._config.chunk_size, total)
                data = await self._with_retry(
                    lambda start=offset, stop=end: self._source.read_range(
                        self._track.locator, start, stop
                    ),
                    f"range {offset}-{end}",
                )
                if not data:
                    raise FatalFetchError(
                        f"Empty response for {self._track.track_id} at offset {offset}"
                    )
                chunk = Chunk(
                    track_id=self._track.track_id,
                    index=index,
                    offset=offset,
                    data=data[: end - offset],
                    generation=generation,
                )
                if not buffer.push(chunk):
                    # The buffer logged why; this run cannot continue from here
                    logger.debug("Stopping fetch of %s at offset %d", self._track.track_id, offset)
                    return
                self._fetched_bytes += len(chunk)
                offset = chunk.end
                index += 1
            buffer.mark_end(generation)
            logger.debug(
                "Finished fetching %s (%d bytes this run)", self._track.track_id, self._fetched_bytes
            )
        except PlaybackError as err:
            logger.warning("Fetch failed for %s: %s", self._track.track_id, err)
            buffer.fail(err, generation)
        except Exception as err:
            logger.exception("Unexpected error fetching %s", self._track.track_id)
            buffer.fail(FatalFetchError(f"Unexpected fetch error: {err!r}"), generation)

    async def _with_retry(self, request: Callable[[], Awaitable[_T]], what: str) -> _T:
        attempt = 0
        while True:
            self._requests += 1
            try:
                return await request()
            except TransientFetchError as err:
                attempt += 1
                if attempt > self._config.fetch_retries:
                    raise FatalFetchError(
                        f"Giving up on {what} of {self._track.track_id} after "
                        f"{attempt} attempts: {err}"
                    ) from err
                delay = self._config.backoff_delay(attempt)
                logger.warning(
                    "Transient error fetching %s of %s (attempt %d), retrying in %.1fs: %s",
                    what,
                    self._track.track_id,
                    attempt,
                    delay,
                    err,
                )
                await self._sleep(delay)
