"""Playback configuration supplied by the host at session construction.

The core never loads or persists configuration itself; the host builds a
``PlaybackConfig`` (directly or from a JSON-shaped mapping) and passes it to
the controller.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any

from waveplay.models import RepeatMode

logger = logging.getLogger(__name__)

KIB = 1024
MIB = 1024 * KIB


@dataclass(slots=True)
class PlaybackConfig:
    """Buffering, retry and transport defaults for a playback session."""

    # Chunk buffer and prefetch pacing
    chunk_size: int = 256 * KIB
    buffer_capacity: int = 16 * MIB
    """High watermark: the fetcher suspends once this many undecoded bytes are buffered."""
    low_watermark: int = 4 * MIB
    """The fetcher resumes once undecoded bytes drop below this level."""
    lookbehind_bytes: int = 1 * MIB
    """Already decoded bytes kept for cheap backward seeks."""
    start_threshold: int = 64 * KIB
    """Bytes buffered before decoding starts (Buffering -> Playing)."""
    gapless_prefetch_bytes: int = 512 * KIB
    gapless_lead_seconds: float = 10.0

    # Fetch retry policy
    fetch_retries: int = 3
    backoff_initial: float = 0.5
    backoff_factor: float = 2.0
    backoff_max: float = 8.0
    fetch_timeout: float = 10.0

    # Output
    pcm_buffer_ms: int = 500
    blocksize: int = 2048
    position_interval: float = 0.1
    audio_device: int | None = None

    # Transport defaults
    volume: int = 100
    muted: bool = False
    repeat: RepeatMode = RepeatMode.OFF
    shuffle: bool = False
    volume_step: int = 5
    seek_step_seconds: float = 5.0
    max_history: int = 500

    def __post_init__(self) -> None:
        if isinstance(self.repeat, str):
            self.repeat = RepeatMode(self.repeat)
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 < self.low_watermark < self.buffer_capacity:
            raise ValueError("low_watermark must be between 0 and buffer_capacity")
        if not 0 < self.gapless_prefetch_bytes <= self.buffer_capacity:
            raise ValueError("gapless_prefetch_bytes must not exceed buffer_capacity")
        if self.start_threshold < 0 or self.lookbehind_bytes < 0:
            raise ValueError("start_threshold and lookbehind_bytes must not be negative")
        if self.fetch_retries < 0:
            raise ValueError("fetch_retries must not be negative")
        if self.backoff_initial < 0 or self.backoff_factor < 1.0:
            raise ValueError("backoff must be non-negative and non-decreasing")
        if not 0 <= self.volume <= 100:
            raise ValueError("volume must be within 0-100")
        if self.pcm_buffer_ms <= 0 or self.blocksize <= 0 or self.position_interval <= 0:
            raise ValueError("pcm_buffer_ms, blocksize and position_interval must be positive")
        if self.max_history <= 0:
            raise ValueError("max_history must be positive")

    def backoff_delay(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (1-based)."""
        delay = self.backoff_initial * self.backoff_factor ** max(0, attempt - 1)
        return min(delay, self.backoff_max)

    def to_dict(self) -> dict[str, Any]:
        """Convert the configuration to a JSON-serializable dictionary."""
        data = asdict(self)
        data["repeat"] = self.repeat.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlaybackConfig:
        """Create a configuration from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown playback config keys: %s", ", ".join(sorted(unknown)))
        return cls(**{key: value for key, value in data.items() if key in known})
