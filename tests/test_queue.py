"""Tests for the queue and history manager."""

from __future__ import annotations

import random

import pytest

from waveplay.models import RepeatMode, Track
from waveplay.queue import QueueManager

from .conftest import pcm_track

A, B, C, D, E = (pcm_track(name, 60.0) for name in "ABCDE")


def ids(tracks: list[Track] | tuple[Track, ...]) -> list[str]:
    return [track.track_id for track in tracks]


@pytest.fixture
def queue() -> QueueManager:
    manager = QueueManager(rng=random.Random(7))
    manager.extend([A, B, C])
    return manager


def test_advance_moves_previous_track_to_history(queue: QueueManager) -> None:
    assert queue.advance() == A
    assert queue.advance() == B
    assert queue.current == B
    assert ids(queue.history) == ["A"]
    assert ids(queue.upcoming) == ["C"]


def test_advance_on_empty_queue_returns_none(queue: QueueManager) -> None:
    for _ in range(3):
        queue.advance()
    assert queue.advance() is None
    assert queue.current is None
    assert ids(queue.history) == ["A", "B", "C"]
    assert queue.peek_next() is None


def test_enqueue_remove_and_move(queue: QueueManager) -> None:
    queue.enqueue(D, position=1)
    assert ids(queue.upcoming) == ["A", "D", "B", "C"]

    assert queue.remove(2) == B
    queue.move(0, 2)
    assert ids(queue.upcoming) == ["D", "C", "A"]

    with pytest.raises(IndexError):
        queue.remove(10)

    queue.clear()
    assert queue.upcoming == []


def test_shuffle_then_unshuffle_restores_order_with_additions(queue: QueueManager) -> None:
    queue.enable_shuffle()
    assert sorted(ids(queue.upcoming)) == ["A", "B", "C"]
    assert queue.shuffle

    queue.enqueue(D)
    queue.disable_shuffle()
    assert ids(queue.upcoming) == ["A", "B", "C", "D"]
    assert not queue.shuffle


def test_unshuffle_keeps_only_remaining_tracks(queue: QueueManager) -> None:
    queue.enable_shuffle()
    played = queue.advance()
    queue.disable_shuffle()
    expected = [name for name in "ABC" if played is None or name != played.track_id]
    assert ids(queue.upcoming) == expected


def test_repeat_track_keeps_returning_current(queue: QueueManager) -> None:
    queue.advance()
    queue.set_repeat(RepeatMode.TRACK)

    assert queue.advance() == A
    assert queue.peek_next() == A
    queue.enqueue(D, position=0)
    queue.remove(1)
    assert queue.peek_next() == A
    assert queue.advance() == A
    assert ids(queue.history) == []


def test_forced_advance_ignores_repeat_track(queue: QueueManager) -> None:
    queue.advance()
    queue.set_repeat(RepeatMode.TRACK)
    assert queue.advance(force=True) == B


def test_repeat_queue_refills_original_order_when_exhausted() -> None:
    queue = QueueManager(repeat=RepeatMode.QUEUE, rng=random.Random(3))
    queue.load([A, B])

    assert queue.advance() == A
    assert queue.advance() == B
    assert queue.upcoming == []
    assert queue.peek_next() == A

    assert queue.advance() == A
    assert ids(queue.upcoming) == ["B"]


def test_repeat_queue_ignores_previous_shuffle() -> None:
    queue = QueueManager(repeat=RepeatMode.QUEUE, rng=random.Random(3))
    queue.load([A, B, C, D])
    queue.enable_shuffle()
    queue.disable_shuffle()

    played = [queue.advance() for _ in range(4)]
    assert ids(played) == ["A", "B", "C", "D"]
    assert queue.advance() == A
    assert ids(queue.upcoming) == ["B", "C", "D"]


def test_repeat_queue_refill_is_shuffled_while_shuffle_active() -> None:
    queue = QueueManager(repeat=RepeatMode.QUEUE, rng=random.Random(11))
    queue.load([A, B, C, D, E])
    queue.enable_shuffle()
    for _ in range(5):
        queue.advance()

    upcoming_head = queue.peek_next()
    assert queue.advance() == upcoming_head
    assert sorted(ids([queue.current, *queue.upcoming])) == ["A", "B", "C", "D", "E"]  # type: ignore[list-item]

    queue.disable_shuffle()
    remaining = ids(queue.upcoming)
    assert remaining == [name for name in "ABCDE" if name != upcoming_head.track_id]  # type: ignore[union-attr]


def test_go_back_and_forward_do_not_touch_queue(queue: QueueManager) -> None:
    queue.enqueue(D)
    for _ in range(3):
        queue.advance()
    assert queue.current == C

    assert queue.go_back() == B
    assert queue.go_back() == A
    assert queue.go_back() is None
    assert ids(queue.upcoming) == ["D"]
    assert queue.browsing_history

    assert queue.go_forward() == B
    assert queue.go_forward() == C
    assert queue.go_forward() is None
    assert not queue.browsing_history
    assert ids(queue.upcoming) == ["D"]


def test_advance_while_browsing_replays_history_first(queue: QueueManager) -> None:
    for _ in range(3):
        queue.advance()
    queue.go_back()
    queue.go_back()

    assert queue.peek_next() == B
    assert queue.advance() == B
    assert queue.advance() == C
    assert queue.advance() is None
    assert ids(queue.history) == ["A", "B", "C"]


def test_history_is_capped() -> None:
    queue = QueueManager(max_history=2)
    queue.extend([A, B, C, D])
    for _ in range(4):
        queue.advance()
    assert ids(queue.history) == ["B", "C"]


def test_load_replaces_context(queue: QueueManager) -> None:
    queue.advance()
    queue.load([C, D, E], start_index=1)
    assert queue.current is None
    assert queue.history == []
    assert ids(queue.upcoming) == ["D", "E"]


def test_cycle_repeat_order() -> None:
    queue = QueueManager()
    assert queue.cycle_repeat() is RepeatMode.QUEUE
    assert queue.cycle_repeat() is RepeatMode.TRACK
    assert queue.cycle_repeat() is RepeatMode.OFF


def test_snapshot_reflects_state(queue: QueueManager) -> None:
    queue.advance()
    queue.advance()
    queue.go_back()
    snapshot = queue.snapshot()

    assert snapshot.current == A
    assert ids(snapshot.upcoming) == ["C"]
    assert ids(snapshot.replay) == ["B"]
    assert snapshot.history == ()
    assert snapshot.repeat is RepeatMode.OFF
    assert snapshot.shuffle is False


def test_jump_moves_skipped_entries_to_history(queue: QueueManager) -> None:
    queue.extend([D, E])
    queue.advance()

    assert queue.jump(2) == D
    assert queue.current == D
    assert ids(queue.history) == ["A", "B", "C"]
    assert ids(queue.upcoming) == ["E"]

    with pytest.raises(IndexError):
        queue.jump(1)


def test_jump_while_browsing_history_keeps_play_order(queue: QueueManager) -> None:
    queue.enqueue(D)
    for _ in range(3):
        queue.advance()
    queue.go_back()
    queue.go_back()

    assert queue.jump(0) == D
    assert ids(queue.history) == ["A", "B", "C"]
    assert not queue.browsing_history


def test_jump_keeps_repeat_cycle() -> None:
    queue = QueueManager(repeat=RepeatMode.QUEUE)
    queue.load([A, B, C])
    queue.advance()

    assert queue.jump(1) == C
    assert queue.upcoming == []
    assert queue.peek_next() == A


def test_jump_while_shuffled_drops_entries_from_original_order(queue: QueueManager) -> None:
    queue.enable_shuffle()
    order = list(queue.upcoming)

    assert queue.jump(1) == order[1]
    queue.disable_shuffle()
    assert queue.upcoming == [order[2]]
    assert queue.history == [order[0]]
