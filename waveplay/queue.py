"""Queue and history of a playback session.

The queue is a forward list of upcoming entries. History is a separate list
of entries that already played, with the current entry in between. Going
back moves the current entry onto a replay list instead of touching the
queue, so going forward again replays those entries before anything else.
"""

from __future__ import annotations

import itertools
import logging
import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from waveplay.models import RepeatMode, Track

logger = logging.getLogger(__name__)

_entry_ids = itertools.count(1)


@dataclass(eq=False, slots=True)
class QueueEntry:
    """A track occupying one slot in the queue.

    Entries compare by identity, so the same track can be queued twice.
    """

    track: Track
    entry_id: int = field(default_factory=lambda: next(_entry_ids))


@dataclass(frozen=True, slots=True)
class QueueSnapshot:
    """Read-only view of the queue for UI collaborators."""

    current: Track | None
    upcoming: tuple[Track, ...]
    history: tuple[Track, ...]
    replay: tuple[Track, ...]
    repeat: RepeatMode
    shuffle: bool


class QueueManager:
    """Upcoming queue, play history, shuffle and repeat policy.

    Only the playback controller task calls into this class.
    """

    def __init__(
        self,
        *,
        repeat: RepeatMode = RepeatMode.OFF,
        shuffle: bool = False,
        max_history: int = 500,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize an empty queue.

        Args:
            repeat: Initial repeat mode.
            shuffle: Whether shuffle starts enabled.
            max_history: Maximum number of history entries kept.
            rng: Random source for shuffling (seedable for tests).
        """
        self._rng = rng or random.Random()
        self._repeat = repeat
        self._max_history = max_history

        self._upcoming: list[QueueEntry] = []
        self._original: list[QueueEntry] | None = [] if shuffle else None
        self._cycle: list[QueueEntry] = []
        self._pending_refill: list[QueueEntry] | None = None

        self._history: list[QueueEntry] = []
        self._now: QueueEntry | None = None
        self._replay: list[QueueEntry] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def current(self) -> Track | None:
        """Track currently selected for playback."""
        return self._now.track if self._now is not None else None

    @property
    def upcoming(self) -> list[Track]:
        """Tracks in the forward queue, in play order."""
        return [entry.track for entry in self._upcoming]

    @property
    def history(self) -> list[Track]:
        """Previously played tracks, oldest first."""
        return [entry.track for entry in self._history]

    @property
    def repeat(self) -> RepeatMode:
        return self._repeat

    @property
    def shuffle(self) -> bool:
        return self._original is not None

    @property
    def browsing_history(self) -> bool:
        """Whether the cursor is behind the live head of playback."""
        return bool(self._replay)

    def __len__(self) -> int:
        return len(self._upcoming)

    def snapshot(self) -> QueueSnapshot:
        """Return an immutable view of the current queue state."""
        return QueueSnapshot(
            current=self.current,
            upcoming=tuple(self.upcoming),
            history=tuple(self.history),
            replay=tuple(entry.track for entry in self._replay),
            repeat=self._repeat,
            shuffle=self.shuffle,
        )

    # ------------------------------------------------------------------
    # Queue editing
    # ------------------------------------------------------------------

    def enqueue(self, track: Track, position: int | None = None) -> None:
        """Insert a track before ``position`` in the queue, or append it.

        While shuffled, the track is placed at ``position`` in the shuffled
        order and appended to the stored original order.
        """
        entry = QueueEntry(track)
        self._pending_refill = None
        if position is None or position >= len(self._upcoming):
            self._upcoming.append(entry)
            self._cycle.append(entry)
        else:
            position = max(position, 0)
            self._upcoming.insert(position, entry)
            if self._original is None:
                self._place_in_cycle(entry, position)
            else:
                self._cycle.append(entry)
        if self._original is not None:
            self._original.append(entry)
        logger.debug("Enqueued %s (%d upcoming)", track.track_id, len(self._upcoming))

    def extend(self, tracks: Iterable[Track]) -> None:
        """Append several tracks in order."""
        for track in tracks:
            self.enqueue(track)

    def remove(self, index: int) -> Track:
        """Remove the upcoming entry at ``index`` and return its track.

        Raises:
            IndexError: If ``index`` is out of range.
        """
        entry = self._upcoming.pop(index)
        self._forget(entry)
        logger.debug("Removed %s from queue", entry.track.track_id)
        return entry.track

    def move(self, from_index: int, to_index: int) -> None:
        """Move an upcoming entry to a new position.

        Raises:
            IndexError: If ``from_index`` is out of range.
        """
        entry = self._upcoming.pop(from_index)
        to_index = max(0, min(to_index, len(self._upcoming)))
        self._upcoming.insert(to_index, entry)
        self._pending_refill = None
        if self._original is None:
            self._cycle.remove(entry)
            self._place_in_cycle(entry, to_index)

    def clear(self) -> None:
        """Empty the upcoming queue. History and the current track stay."""
        for entry in self._upcoming:
            self._forget(entry)
        self._upcoming.clear()

    def load(self, tracks: Sequence[Track], start_index: int = 0) -> None:
        """Replace everything with a new play context.

        Tracks before ``start_index`` are dropped. History, the replay list and
        the repeat cycle are reset; the stored shuffle permutation is discarded
        and, with shuffle enabled, the new context is shuffled afresh.
        """
        entries = [QueueEntry(track) for track in tracks[start_index:]]
        self._history.clear()
        self._replay.clear()
        self._now = None
        self._pending_refill = None
        self._cycle = list(entries)
        self._upcoming = list(entries)
        if self._original is not None:
            self._original = list(entries)
            self._rng.shuffle(self._upcoming)
        logger.debug("Loaded %d tracks into the queue", len(entries))

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def peek_next(self) -> Track | None:
        """Return the track ``advance()`` would select, without side effects."""
        if self._repeat is RepeatMode.TRACK and self._now is not None:
            return self._now.track
        if self._replay:
            return self._replay[0].track
        if self._upcoming:
            return self._upcoming[0].track
        refill = self._refill_preview()
        return refill[0].track if refill else None

    def advance(self, *, force: bool = False) -> Track | None:
        """Move to the next track and return it, or None when nothing is left.

        Args:
            force: Ignore Repeat=Track, as for a user initiated skip.
        """
        if self._repeat is RepeatMode.TRACK and not force and self._now is not None:
            return self._now.track
        if self._replay:
            return self.go_forward()

        if not self._upcoming:
            refill = self._refill_preview()
            if refill:
                logger.info("Repeating queue of %d tracks", len(refill))
                self._upcoming = refill
                if self._original is not None:
                    self._original = list(self._cycle)
        self._pending_refill = None

        if self._now is not None:
            self._push_history(self._now)
        if not self._upcoming:
            self._now = None
            return None

        entry = self._upcoming.pop(0)
        if self._original is not None and entry in self._original:
            self._original.remove(entry)
        self._now = entry
        return entry.track

    def go_back(self) -> Track | None:
        """Step back to the previous history entry without touching the queue."""
        if not self._history:
            return None
        if self._now is not None:
            self._replay.insert(0, self._now)
        self._now = self._history.pop()
        return self._now.track

    def go_forward(self) -> Track | None:
        """Step toward the live head, replaying entries left by ``go_back()``."""
        if not self._replay:
            return None
        if self._now is not None:
            self._push_history(self._now)
        self._now = self._replay.pop(0)
        return self._now.track

    def jump(self, index: int) -> Track:
        """Skip forward to the upcoming entry at ``index`` and make it current.

        The current entry, any entries left on the replay list and the
        upcoming entries before ``index`` move to history in play order. The
        repeat cycle is kept.

        Raises:
            IndexError: If ``index`` is not a valid upcoming position.
        """
        if not 0 <= index < len(self._upcoming):
            raise IndexError(f"Queue index {index} out of range")
        skipped = [self._now] if self._now is not None else []
        skipped.extend(self._replay)
        skipped.extend(self._upcoming[:index])
        self._replay.clear()

        entry = self._upcoming[index]
        del self._upcoming[: index + 1]
        if self._original is not None:
            taken = {id(e) for e in skipped}
            taken.add(id(entry))
            self._original = [e for e in self._original if id(e) not in taken]
        for skipped_entry in skipped:
            self._push_history(skipped_entry)
        self._pending_refill = None
        self._now = entry
        logger.info("Jumping to queue position %d (%s)", index, entry.track.track_id)
        return entry.track

    # ------------------------------------------------------------------
    # Shuffle and repeat
    # ------------------------------------------------------------------

    def enable_shuffle(self) -> None:
        """Shuffle the upcoming queue, keeping the original order for restore."""
        if self._original is not None:
            return
        self._original = list(self._upcoming)
        self._rng.shuffle(self._upcoming)
        self._pending_refill = None
        logger.info("Shuffle enabled (%d upcoming)", len(self._upcoming))

    def disable_shuffle(self) -> None:
        """Restore the original order of the remaining entries.

        Entries enqueued while shuffled follow the restored sequence in the
        order they were added.
        """
        if self._original is None:
            return
        remaining = set(map(id, self._upcoming))
        restored = [entry for entry in self._original if id(entry) in remaining]
        known = set(map(id, restored))
        restored.extend(entry for entry in self._upcoming if id(entry) not in known)
        self._upcoming = restored
        self._original = None
        self._pending_refill = None
        logger.info("Shuffle disabled (%d upcoming)", len(self._upcoming))

    def set_shuffle(self, enabled: bool) -> None:
        if enabled:
            self.enable_shuffle()
        else:
            self.disable_shuffle()

    def set_repeat(self, mode: RepeatMode) -> None:
        self._repeat = mode
        self._pending_refill = None
        logger.info("Repeat mode: %s", mode.value)

    def cycle_repeat(self) -> RepeatMode:
        """Switch to the next repeat mode (Off -> Queue -> Track -> Off)."""
        self.set_repeat(self._repeat.next())
        return self._repeat

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _refill_preview(self) -> list[QueueEntry]:
        """Entries Repeat=Queue would put back once the queue runs dry."""
        if self._repeat is not RepeatMode.QUEUE or not self._cycle:
            return []
        if self._pending_refill is None:
            refill = list(self._cycle)
            if self._original is not None:
                self._rng.shuffle(refill)
            self._pending_refill = refill
        return list(self._pending_refill)

    def _push_history(self, entry: QueueEntry) -> None:
        self._history.append(entry)
        overflow = len(self._history) - self._max_history
        if overflow > 0:
            del self._history[:overflow]

    def _place_in_cycle(self, entry: QueueEntry, index: int) -> None:
        """Insert ``entry`` into the cycle next to its neighbour in the queue."""
        if index + 1 < len(self._upcoming):
            following = self._upcoming[index + 1]
            if following in self._cycle:
                self._cycle.insert(self._cycle.index(following), entry)
                return
        if index > 0:
            preceding = self._upcoming[index - 1]
            if preceding in self._cycle:
                self._cycle.insert(self._cycle.index(preceding) + 1, entry)
                return
        self._cycle.append(entry)

    def _forget(self, entry: QueueEntry) -> None:
        self._pending_refill = None
        if entry in self._cycle:
            self._cycle.remove(entry)
        if self._original is not None and entry in self._original:
            self._original.remove(entry)
