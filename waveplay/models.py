"""Value types shared by the playback core.

Tracks and chunks are immutable once created and are passed around by
reference between the fetcher, buffer, engine and controller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

NANOS_PER_SECOND = 1_000_000_000


class TransportState(Enum):
    """Transport state of the current track."""

    IDLE = "idle"
    LOADING = "loading"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"
    SEEKING = "seeking"
    ENDED = "ended"
    ERRORED = "errored"


class RepeatMode(Enum):
    """Repeat policy applied by the queue when a track finishes."""

    OFF = "off"
    QUEUE = "queue"
    TRACK = "track"

    def next(self) -> RepeatMode:
        """Return the mode that follows this one when cycling."""
        order = (RepeatMode.OFF, RepeatMode.QUEUE, RepeatMode.TRACK)
        return order[(order.index(self) + 1) % len(order)]


@dataclass(frozen=True, slots=True)
class Fade:
    """Linear fade-in/fade-out windows, in seconds from the track start."""

    in_start: float = 0.0
    in_stop: float = 0.0
    out_start: float = 0.0
    out_stop: float = 0.0

    def gain_at(self, seconds: float) -> float:
        """Return the envelope gain (0.0-1.0) at a track time."""
        gain = 1.0
        if seconds < self.in_start:
            gain = 0.0
        elif seconds < self.in_stop:
            gain *= (seconds - self.in_start) / (self.in_stop - self.in_start)

        if self.out_stop > self.out_start:
            if seconds >= self.out_stop:
                gain = 0.0
            elif seconds >= self.out_start:
                gain *= 1.0 - (seconds - self.out_start) / (self.out_stop - self.out_start)
        return gain


@dataclass(frozen=True, slots=True)
class Track:
    """A playable track as resolved by the metadata collaborator.

    Attributes:
        track_id: Stable identifier of the track.
        duration_ns: Total duration in nanoseconds.
        locator: Opaque stream locator (usually an HTTP URL).
        codec: Encoded format of the stream ("mp3", "aac", "flac", "pcm_s16le", ...).
        bitrate: Average stream bitrate in bits per second.
        sample_rate: Native sample rate in Hz.
        channels: Number of audio channels.
        size_bytes: Total stream size when known up front.
        title: Display title, informational only.
        fade: Optional fade envelope applied during playback.
    """

    track_id: str
    duration_ns: int
    locator: str
    codec: str = "mp3"
    bitrate: int = 320_000
    sample_rate: int = 44_100
    channels: int = 2
    size_bytes: int | None = None
    title: str | None = None
    fade: Fade | None = None

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        return self.duration_ns / NANOS_PER_SECOND

    @property
    def is_pcm(self) -> bool:
        """Whether the stream carries raw signed 16-bit PCM."""
        return self.codec == "pcm_s16le"

    @property
    def frame_size(self) -> int:
        """Bytes per decoded PCM frame (all channels, 16-bit)."""
        return self.channels * 2

    def describe(self) -> str:
        """Return a short human-friendly label."""
        return self.title or self.track_id


@dataclass(frozen=True, slots=True)
class Chunk:
    """A contiguous byte range ``[offset, offset + len(data))`` of a track stream."""

    track_id: str
    index: int
    offset: int
    data: bytes = field(repr=False)
    generation: int = 0

    @property
    def end(self) -> int:
        """Offset one past the last byte of this chunk."""
        return self.offset + len(self.data)

    def __len__(self) -> int:
        return len(self.data)


def seconds_to_ns(seconds: float) -> int:
    """Convert seconds to integer nanoseconds."""
    return int(round(seconds * NANOS_PER_SECOND))
