"""Seek controller: maps a target time onto the active pipeline."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from waveplay.models import NANOS_PER_SECOND, Track
from waveplay.utils import GenerationCounter, clamp

if TYPE_CHECKING:
    from waveplay.buffer import ChunkBuffer
    from waveplay.engine import PlaybackEngine
    from waveplay.fetcher import ChunkFetcher

logger = logging.getLogger(__name__)


class SeekOutcome(Enum):
    """How a seek request was satisfied."""

    BUFFERED = "buffered"
    """The target was already buffered; only the decode cursor moved."""

    REFETCH = "refetch"
    """The buffer was flushed and fetching restarted at the target offset."""

    END = "end"
    """The target lies at or past the end of the track."""


class SeekController:
    """Translates seek times into byte offsets for one track's pipeline."""

    def __init__(
        self,
        track: Track,
        buffer: ChunkBuffer,
        fetcher: ChunkFetcher,
        engine: PlaybackEngine,
        generations: GenerationCounter,
    ) -> None:
        self._track = track
        self._buffer = buffer
        self._fetcher = fetcher
        self._engine = engine
        self._generations = generations

    def byte_offset_for(self, position_ns: int) -> int:
        """Approximate the stream byte offset of a track position.

        Uses the stream size over the duration when the size is known, the
        bitrate otherwise. Raw PCM offsets are aligned down to whole frames.
        """
        track = self._track
        position_ns = clamp(position_ns, 0, track.duration_ns)
        total = self._fetcher.total_bytes
        if total is not None and track.duration_ns > 0:
            offset = total * position_ns // track.duration_ns
        else:
            offset = position_ns * track.bitrate // (8 * NANOS_PER_SECOND)
        if total is not None:
            offset = min(offset, max(total - 1, 0))
        if track.is_pcm:
            offset -= offset % track.frame_size
        return offset

    async def seek_to(self, position_ns: int) -> SeekOutcome:
        """Move playback of the current track to ``position_ns``.

        Negative targets clamp to the start. Targets at or beyond the duration
        are reported as ``SeekOutcome.END`` and left to the caller.
        """
        track = self._track
        if position_ns >= track.duration_ns:
            logger.info("Seek to %.1fs is past the end of %s", position_ns / 1e9, track.track_id)
            return SeekOutcome.END
        position_ns = max(position_ns, 0)

        await self._fetcher.ensure_total_bytes()
        offset = self.byte_offset_for(position_ns)
        generation = self._generations.next()

        if self._buffer.covers(offset):
            self._buffer.seek_cursor(offset)
            await self._engine.reposition(position_ns, generation)
            logger.info(
                "Seeked %s to %.1fs within buffered data (offset %d)",
                track.track_id,
                position_ns / 1e9,
                offset,
            )
            return SeekOutcome.BUFFERED

        await self._fetcher.restart(offset, generation)
        await self._engine.reposition(position_ns, generation)
        logger.info(
            "Seeked %s to %.1fs, refetching from offset %d", track.track_id, position_ns / 1e9, offset
        )
        return SeekOutcome.REFETCH
