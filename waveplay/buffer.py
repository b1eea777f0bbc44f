"""Chunk buffer between the fetcher and the decoder.

The buffer holds the chunks of one track that were fetched but not yet
decoded, plus a small look-behind window of already decoded bytes so that
short backward seeks stay local. It paces the fetcher through a low and a
high watermark and hands undecoded bytes to the decoder strictly in offset
order.
"""

from __future__ import annotations

import asyncio
import collections
import logging

from waveplay.errors import PlaybackError
from waveplay.models import Chunk

logger = logging.getLogger(__name__)


class ChunkBuffer:
    """Ordered, bounded buffer of contiguous chunks for a single track.

    Attributes:
        track_id: Track whose chunks this buffer holds.
        generation: Seek/track generation the buffer currently accepts chunks for.
    """

    def __init__(
        self,
        track_id: str,
        *,
        capacity: int,
        low_watermark: int,
        lookbehind: int = 0,
        start_offset: int = 0,
        generation: int = 0,
    ) -> None:
        """Initialize the buffer.

        Args:
            track_id: Track whose chunks this buffer holds.
            capacity: High watermark in undecoded bytes.
            low_watermark: Occupancy below which a suspended fetcher resumes.
            lookbehind: Decoded bytes retained for backward seeks.
            start_offset: Offset of the first expected chunk.
            generation: Initial generation token.
        """
        if not 0 < low_watermark < capacity:
            raise ValueError("low_watermark must be between 0 and capacity")
        self.track_id = track_id
        self.generation = generation
        self._capacity = capacity
        self._low_watermark = low_watermark
        self._lookbehind = lookbehind

        self._chunks: collections.deque[Chunk] = collections.deque()
        self._cursor = start_offset
        self._expected = start_offset
        self._ended = False
        self._error: PlaybackError | None = None
        self._fetch_suspended = False

        self._data_ready = asyncio.Event()
        self._space_ready = asyncio.Event()
        self._space_ready.set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def cursor(self) -> int:
        """Offset of the next byte to be decoded."""
        return self._cursor

    @property
    def expected_offset(self) -> int:
        """Offset the next pushed chunk must start at."""
        return self._expected

    @property
    def buffered_bytes(self) -> int:
        """Undecoded bytes currently held."""
        return self._expected - self._cursor

    @property
    def retained_start(self) -> int:
        """Lowest offset still held, including the look-behind window."""
        if self._chunks:
            return self._chunks[0].offset
        return self._cursor

    @property
    def chunk_count(self) -> int:
        """Number of chunks currently retained."""
        return len(self._chunks)

    @property
    def capacity(self) -> int:
        """High watermark in undecoded bytes."""
        return self._capacity

    @property
    def ended(self) -> bool:
        """Whether the fetcher delivered the last chunk of the stream."""
        return self._ended

    @property
    def exhausted(self) -> bool:
        """Whether every byte up to the end of the stream has been handed out."""
        return self._ended and self._cursor >= self._expected

    @property
    def fetch_suspended(self) -> bool:
        """Whether the fetcher is currently held back by the high watermark."""
        return self._fetch_suspended

    def covers(self, offset: int) -> bool:
        """Return whether ``offset`` is inside the retained byte range."""
        return self.retained_start <= offset < self._expected

    # ------------------------------------------------------------------
    # Producer side (fetcher)
    # ------------------------------------------------------------------

    def push(self, chunk: Chunk) -> bool:
        """Append a chunk if it is the next contiguous one for this generation.

        Returns:
            True if the chunk was accepted, False if it was rejected. Rejected
            chunks leave the buffer untouched.
        """
        if chunk.generation != self.generation:
            logger.debug(
                "Discarding stale chunk %d of %s (generation %d, current %d)",
                chunk.index,
                chunk.track_id,
                chunk.generation,
                self.generation,
            )
            return False
        if chunk.track_id != self.track_id:
            logger.debug("Rejecting chunk for %s in buffer of %s", chunk.track_id, self.track_id)
            return False
        if self._ended or self._error is not None:
            logger.debug("Rejecting chunk at %d after end of stream", chunk.offset)
            return False
        if chunk.offset != self._expected or not chunk.data:
            logger.debug(
                "Rejecting non-contiguous chunk at %d (expected %d)", chunk.offset, self._expected
            )
            return False

        self._chunks.append(chunk)
        self._expected = chunk.end
        self._data_ready.set()
        if self.buffered_bytes >= self._capacity:
            self._fetch_suspended = True
            self._space_ready.clear()
        return True

    def mark_end(self, generation: int) -> None:
        """Record that the stream ends at the current expected offset."""
        if generation != self.generation:
            return
        self._ended = True
        self._data_ready.set()

    def fail(self, error: PlaybackError, generation: int) -> None:
        """Record a track-fatal error; the decoder sees it on its next pop."""
        if generation != self.generation:
            logger.debug("Ignoring failure from stale generation %d: %s", generation, error)
            return
        self._error = error
        self._data_ready.set()

    async def wait_for_space(self) -> None:
        """Suspend the producer while the buffer is above its high watermark.

        Once suspended, the producer resumes only after occupancy drops below
        the low watermark.
        """
        while self._fetch_suspended:
            self._space_ready.clear()
            await self._space_ready.wait()

    # ------------------------------------------------------------------
    # Consumer side (decoder)
    # ------------------------------------------------------------------

    async def wait_ready(self, threshold: int) -> None:
        """Wait until ``threshold`` undecoded bytes are buffered or the stream ended."""
        threshold = min(threshold, self._capacity)
        while self.buffered_bytes < threshold and not self._ended and self._error is None:
            self._data_ready.clear()
            await self._data_ready.wait()

    async def pop_for_decode(self) -> Chunk | None:
        """Return the next undecoded bytes as a chunk.

        Blocks only until at least one chunk is available. Returns None once the
        stream is exhausted.

        Raises:
            PlaybackError: If the fetcher reported a track-fatal error.
        """
        while self._cursor >= self._expected and not self._ended and self._error is None:
            self._data_ready.clear()
            await self._data_ready.wait()

        if self._error is not None and self._cursor >= self._expected:
            raise self._error
        if self._cursor >= self._expected:
            return None

        chunk = self._chunk_at(self._cursor)
        start = self._cursor - chunk.offset
        piece = chunk if start == 0 else Chunk(
            track_id=chunk.track_id,
            index=chunk.index,
            offset=self._cursor,
            data=chunk.data[start:],
            generation=chunk.generation,
        )
        self._cursor = chunk.end
        self._trim_lookbehind()
        self._update_space()
        return piece

    # ------------------------------------------------------------------
    # Seeking and lifecycle
    # ------------------------------------------------------------------

    def seek_cursor(self, offset: int) -> None:
        """Move the decode cursor within the retained range without fetching."""
        if not self.covers(offset):
            raise ValueError(f"Offset {offset} is not buffered")
        logger.debug("Moving decode cursor from %d to %d", self._cursor, offset)
        self._cursor = offset
        self._trim_lookbehind()
        self._update_space()
        self._data_ready.set()

    def reset(self, offset: int, generation: int) -> None:
        """Flush all content and expect chunks from ``offset`` for a new generation."""
        logger.debug(
            "Resetting buffer of %s to offset %d (generation %d)", self.track_id, offset, generation
        )
        self._chunks.clear()
        self.generation = generation
        self._cursor = offset
        self._expected = offset
        self._ended = False
        self._error = None
        self._fetch_suspended = False
        self._space_ready.set()
        self._data_ready.clear()

    def resize(self, capacity: int, low_watermark: int) -> None:
        """Change the watermarks, e.g. when a gapless prefetch buffer is promoted."""
        if not 0 < low_watermark < capacity:
            raise ValueError("low_watermark must be between 0 and capacity")
        self._capacity = capacity
        self._low_watermark = low_watermark
        if self._fetch_suspended and self.buffered_bytes < capacity:
            self._fetch_suspended = False
            self._space_ready.set()

    def _chunk_at(self, offset: int) -> Chunk:
        for chunk in self._chunks:
            if chunk.offset <= offset < chunk.end:
                return chunk
        raise LookupError(f"No chunk covers offset {offset}")

    def _trim_lookbehind(self) -> None:
        keep_from = self._cursor - self._lookbehind
        while self._chunks and self._chunks[0].end <= keep_from:
            self._chunks.popleft()

    def _update_space(self) -> None:
        if self._fetch_suspended and self.buffered_bytes < self._low_watermark:
            self._fetch_suspended = False
            self._space_ready.set()
        elif not self._fetch_suspended and self.buffered_bytes >= self._capacity:
            self._fetch_suspended = True
            self._space_ready.clear()
