"""Playback events and multi-listener dispatch.

Events are emitted by the playback controller task only. Listeners are plain
callables invoked synchronously on the event loop; an exception raised by one
listener is logged and does not affect the others or the controller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias

from waveplay.errors import ErrorKind
from waveplay.models import TransportState

if TYPE_CHECKING:
    from waveplay.models import Track
    from waveplay.queue import QueueSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StateChanged:
    """The transport state changed."""

    previous: TransportState
    state: TransportState
    track: Track | None


@dataclass(frozen=True, slots=True)
class PositionChanged:
    """Periodic position update for the current track."""

    track: Track
    position_ns: int
    duration_ns: int
    buffered_ratio: float


@dataclass(frozen=True, slots=True)
class TrackStarted:
    """A track was loaded as the current track."""

    track: Track


@dataclass(frozen=True, slots=True)
class TrackEnded:
    """The current track played to its end."""

    track: Track


@dataclass(frozen=True, slots=True)
class PlaybackFailed:
    """A track (or the output device) failed."""

    track: Track | None
    kind: ErrorKind
    detail: str


@dataclass(frozen=True, slots=True)
class QueueChanged:
    """Queue, history, shuffle or repeat changed."""

    snapshot: QueueSnapshot


PlaybackEvent: TypeAlias = (
    StateChanged | PositionChanged | TrackStarted | TrackEnded | PlaybackFailed | QueueChanged
)
EventListener = Callable[[PlaybackEvent], None]


class EventListenerManager:
    """Keeps the registered listeners and fans events out to them."""

    def __init__(self) -> None:
        """Initialize the listener manager."""
        self._listeners: list[EventListener] = []

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """Add an event listener. Returns unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: PlaybackEvent) -> None:
        """Dispatch an event to every registered listener."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Error in %s listener", type(event).__name__)
