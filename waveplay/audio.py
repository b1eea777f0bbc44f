"""Audio output devices.

This module wraps sounddevice behind a small ``AudioOutput`` protocol so the
playback engine can drive any callback-based sink, and provides device
enumeration utilities for listing and resolving output devices.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import sounddevice

from waveplay.errors import AudioDeviceError

logger = logging.getLogger(__name__)

RenderCallback = Callable[[memoryview, int], None]
"""Fills ``frames`` int16 frames into the given output buffer."""


@dataclass(slots=True)
class AudioDevice:
    """Represents an audio output device.

    Attributes:
        index: Device index used for selection.
        name: Human-readable device name.
        output_channels: Number of output channels supported.
        sample_rate: Default sample rate in Hz.
        is_default: Whether this is the system default output device.
    """

    index: int
    name: str
    output_channels: int
    sample_rate: float
    is_default: bool


def query_devices() -> list[AudioDevice]:
    """Query all available audio output devices.

    Returns:
        List of AudioDevice objects for devices with output channels.
    """
    devices = sounddevice.query_devices()
    default_output = int(sounddevice.default.device[1])

    result: list[AudioDevice] = []
    for i in range(len(devices)):
        dev = devices[i]
        if dev["max_output_channels"] > 0:
            result.append(
                AudioDevice(
                    index=i,
                    name=str(dev["name"]),
                    output_channels=int(dev["max_output_channels"]),
                    sample_rate=float(dev["default_samplerate"]),
                    is_default=(i == default_output),
                )
            )
    return result


def resolve_audio_device(device: str | None) -> int | None:
    """Resolve an audio device by index or name prefix.

    Args:
        device: Device index (numeric string) or name prefix to match.

    Returns:
        Device index if valid, None for default device.

    Raises:
        ValueError: If device is invalid or not found.
    """
    if device is None:
        return None

    devices = query_devices()
    if device.isnumeric():
        device_id = int(device)
        for dev in devices:
            if dev.index == device_id:
                return device_id
        raise ValueError(f"Device {device_id} is not an output device")

    for dev in devices:
        if dev.name.startswith(device):
            return dev.index

    raise ValueError(f"No audio output device found matching '{device}'")


class AudioOutput(Protocol):
    """A callback-driven audio sink accepting interleaved int16 frames."""

    @property
    def is_open(self) -> bool:
        """Whether a stream is currently open."""
        ...

    def open(self, sample_rate: int, channels: int, callback: RenderCallback) -> None:
        """Open (or reopen) the stream with the given format and start rendering."""
        ...

    def close(self) -> None:
        """Stop rendering and release the device."""
        ...


class SoundDeviceOutput:
    """Audio output backed by a sounddevice ``RawOutputStream``."""

    def __init__(self, device: int | None = None, *, blocksize: int = 2048) -> None:
        """Initialize the output.

        Args:
            device: Device index, None for the system default.
            blocksize: Frames per callback (~46ms at 44.1kHz for 2048).
        """
        self._device = device
        self._blocksize = blocksize
        self._stream: sounddevice.RawOutputStream | None = None
        self._format: tuple[int, int] | None = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def format(self) -> tuple[int, int] | None:
        """Open ``(sample_rate, channels)``, if any."""
        return self._format

    def open(self, sample_rate: int, channels: int, callback: RenderCallback) -> None:
        self.close()

        def _callback(outdata: Any, frames: int, time: Any, status: Any) -> None:  # noqa: ARG001
            if status:
                logger.debug("Audio callback status: %s", status)
            callback(memoryview(outdata).cast("B"), frames)

        try:
            self._stream = sounddevice.RawOutputStream(
                samplerate=sample_rate,
                channels=channels,
                dtype="int16",
                blocksize=self._blocksize,
                callback=_callback,
                latency="high",
                device=self._device,
            )
            self._stream.start()
        except (sounddevice.PortAudioError, ValueError) as err:
            self._stream = None
            raise AudioDeviceError(f"Cannot open audio device {self._device}: {err}") from err
        self._format = (sample_rate, channels)
        logger.info(
            "Audio stream configured: %d Hz, %d channel(s), blocksize=%d, device=%s",
            sample_rate,
            channels,
            self._blocksize,
            self._device if self._device is not None else "default",
        )

    def close(self) -> None:
        stream = self._stream
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sounddevice.PortAudioError:
                logger.exception("Failed to close audio output stream")
        self._stream = None
        self._format = None
