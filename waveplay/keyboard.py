"""Keyboard input handling for the waveplay CLI."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import readchar

from waveplay.models import TransportState

if TYPE_CHECKING:
    from waveplay.controller import PlaybackController

logger = logging.getLogger(__name__)


class CommandHandler:
    """Maps keyboard commands onto the playback controller."""

    def __init__(
        self,
        controller: PlaybackController,
        print_event: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the command handler."""
        self._controller = controller
        self._print_event = print_event or (lambda _: None)

    async def toggle_play_pause(self) -> None:
        """Toggle between play and pause."""
        await self._controller.toggle_pause()
        if self._controller.state is TransportState.PAUSED:
            self._print_event("Paused")

    async def change_volume(self, up: bool) -> None:
        """Step the volume up or down."""
        if up:
            volume = await self._controller.volume_up()
        else:
            volume = await self._controller.volume_down()
        self._print_event(f"Volume: {volume}%")

    async def toggle_mute(self) -> None:
        muted = await self._controller.toggle_mute()
        self._print_event("Muted" if muted else "Unmuted")

    async def seek(self, forward: bool) -> None:
        """Seek by the configured step."""
        step = self._controller.config.seek_step_seconds
        await self._controller.seek_relative(step if forward else -step)

    async def toggle_shuffle(self) -> None:
        shuffle = await self._controller.toggle_shuffle()
        self._print_event(f"Shuffle: {'on' if shuffle else 'off'}")

    async def cycle_repeat(self) -> None:
        mode = await self._controller.cycle_repeat()
        self._print_event(f"Repeat: {mode.value}")


async def keyboard_loop(
    controller: PlaybackController,
    print_event: Callable[[str], None] | None = None,
) -> None:
    """Run the keyboard input loop until the user quits.

    Args:
        controller: Playback controller to drive.
        print_event: Function to print events.
    """
    handler = CommandHandler(controller, print_event)

    # For keys that need case-insensitive matching, use lowercase
    shortcuts: dict[str, Callable[[], Awaitable[None]]] = {
        " ": handler.toggle_play_pause,
        "n": controller.skip_next,
        "p": controller.skip_previous,
        "m": handler.toggle_mute,
        "s": handler.toggle_shuffle,
        "r": handler.cycle_repeat,
        readchar.key.LEFT: lambda: handler.seek(forward=False),
        readchar.key.RIGHT: lambda: handler.seek(forward=True),
        readchar.key.UP: lambda: handler.change_volume(up=True),
        readchar.key.DOWN: lambda: handler.change_volume(up=False),
    }

    if not sys.stdin.isatty():
        logger.info("No interactive terminal, keyboard controls disabled")
        await asyncio.Event().wait()
        return

    loop = asyncio.get_running_loop()

    while True:
        try:
            # Run blocking readkey in executor to not block the event loop
            key = await loop.run_in_executor(None, readchar.readkey)
        except (asyncio.CancelledError, KeyboardInterrupt):
            break

        # Ctrl+C
        if key == "\x03":
            break

        if key in ("q", "Q"):
            break

        action = shortcuts.get(key) or shortcuts.get(key.lower())
        if action:
            await action()
            continue

        # Ignore unhandled escape sequences
        if key.startswith("\x1b"):
            continue
