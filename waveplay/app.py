"""Headless player application driving the playback core from the terminal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass, field

import sounddevice

from waveplay.audio import SoundDeviceOutput, resolve_audio_device
from waveplay.config import PlaybackConfig
from waveplay.controller import PlaybackController
from waveplay.events import (
    PlaybackEvent,
    PlaybackFailed,
    StateChanged,
    TrackEnded,
    TrackStarted,
)
from waveplay.keyboard import keyboard_loop
from waveplay.models import RepeatMode, Track, TransportState, seconds_to_ns
from waveplay.source import HttpStreamSource
from waveplay.utils import create_task

logger = logging.getLogger(__name__)


@dataclass
class AppConfig:
    """Configuration for the waveplay application."""

    urls: list[str] = field(default_factory=list)
    duration: float = 0.0
    codec: str = "mp3"
    bitrate: int = 320_000
    sample_rate: int = 44_100
    channels: int = 2
    audio_device: str | None = None
    repeat: RepeatMode = RepeatMode.OFF
    shuffle: bool = False
    volume: int = 100
    log_level: str = "INFO"

    def build_tracks(self) -> list[Track]:
        """Create one track per stream URL from the shared format hints."""
        return [
            Track(
                track_id=f"track-{index + 1}",
                duration_ns=seconds_to_ns(self.duration),
                locator=url,
                codec=self.codec,
                bitrate=self.bitrate,
                sample_rate=self.sample_rate,
                channels=self.channels,
                title=url.rsplit("/", 1)[-1] or url,
            )
            for index, url in enumerate(self.urls)
        ]


class PlayerApp:
    """Plays a list of stream URLs with keyboard transport controls."""

    def __init__(self, config: AppConfig) -> None:
        """Initialize the application."""
        self._config = config
        self._finished = asyncio.Event()

    def _print_event(self, message: str) -> None:
        """Print an event message."""
        print(message, flush=True)  # noqa: T201

    def _on_event(self, event: PlaybackEvent) -> None:
        if isinstance(event, TrackStarted):
            self._print_event(f"Now playing: {event.track.describe()}")
        elif isinstance(event, TrackEnded):
            logger.info("Finished %s", event.track.describe())
        elif isinstance(event, PlaybackFailed):
            title = event.track.describe() if event.track is not None else "playback"
            self._print_event(f"Error ({event.kind.value}) in {title}: {event.detail}")
        elif isinstance(event, StateChanged):
            if event.state is TransportState.BUFFERING:
                self._print_event("Buffering...")
            elif event.state is TransportState.IDLE and event.previous is not TransportState.IDLE:
                self._finished.set()

    async def run(self) -> int:
        """Run the application."""
        config = self._config

        # Keep the terminal quiet in interactive mode unless explicitly set to DEBUG
        if sys.stdin.isatty() and config.log_level != "DEBUG":
            logging.basicConfig(level=logging.WARNING)
        else:
            logging.basicConfig(level=getattr(logging, config.log_level))

        try:
            audio_device = resolve_audio_device(config.audio_device)
        except ValueError as e:
            logger.error("Audio device error: %s", e)
            return 1
        device_index = audio_device if audio_device is not None else sounddevice.default.device[1]
        device_name = sounddevice.query_devices(device_index)["name"]
        self._print_event(f"Using audio device: {device_name}")

        playback_config = PlaybackConfig(
            audio_device=audio_device,
            repeat=config.repeat,
            shuffle=config.shuffle,
            volume=config.volume,
        )
        source = HttpStreamSource(timeout=playback_config.fetch_timeout)
        output = SoundDeviceOutput(
            playback_config.audio_device, blocksize=playback_config.blocksize
        )
        controller = PlaybackController(playback_config, source=source, output=output)
        controller.add_listener(self._on_event)

        loop = asyncio.get_running_loop()
        try:
            async with controller:
                await controller.load(config.build_tracks())

                keyboard_task = create_task(keyboard_loop(controller, self._print_event))
                finished_task = create_task(self._finished.wait())

                def signal_handler() -> None:
                    logger.debug("Received interrupt signal, shutting down...")
                    keyboard_task.cancel()

                # Signal handlers aren't supported on this platform (e.g., Windows)
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(signal.SIGINT, signal_handler)
                    loop.add_signal_handler(signal.SIGTERM, signal_handler)

                try:
                    await asyncio.wait(
                        (keyboard_task, finished_task), return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    with contextlib.suppress(NotImplementedError):
                        loop.remove_signal_handler(signal.SIGINT)
                        loop.remove_signal_handler(signal.SIGTERM)
                    keyboard_task.cancel()
                    finished_task.cancel()
        except Exception as err:
            logger.error("Playback stopped: %s", err)
            return 1
        finally:
            await source.close()
        return 0
