"""Tests for keyboard command handling."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from waveplay.config import PlaybackConfig
from waveplay.controller import PlaybackController
from waveplay.keyboard import CommandHandler
from waveplay.models import TransportState, seconds_to_ns

from .conftest import FakeOutput, FakeSource, pcm_stream, pcm_track


@pytest.fixture
async def player(
    config: PlaybackConfig, source: FakeSource, output: FakeOutput
) -> AsyncIterator[PlaybackController]:
    async with PlaybackController(config, source=source, output=output) as controller:
        yield controller


async def test_commands_report_changes(player: PlaybackController, source: FakeSource) -> None:
    printed: list[str] = []
    handler = CommandHandler(player, printed.append)
    track = pcm_track("A", 60.0)
    source.add(track.locator, pcm_stream(60.0))
    await player.load([track])

    await handler.change_volume(up=False)
    await handler.toggle_mute()
    await handler.toggle_shuffle()
    await handler.cycle_repeat()
    await handler.toggle_play_pause()

    assert printed == ["Volume: 95%", "Muted", "Shuffle: on", "Repeat: queue", "Paused"]
    assert player.state is TransportState.PAUSED


async def test_seek_steps_by_configured_amount(
    player: PlaybackController, source: FakeSource
) -> None:
    handler = CommandHandler(player)
    track = pcm_track("A", 60.0)
    source.add(track.locator, pcm_stream(60.0))
    await player.load([track])

    await handler.seek(forward=True)
    assert player.position_ns == seconds_to_ns(5.0)
    await handler.seek(forward=False)
    assert player.position_ns == 0
