"""Command-line interface for playing streams with waveplay."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence

from waveplay.app import AppConfig, PlayerApp
from waveplay.audio import query_devices
from waveplay.models import RepeatMode


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the waveplay player."""
    parser = argparse.ArgumentParser(description="Play remote audio streams with gapless queueing")
    parser.add_argument("urls", nargs="*", metavar="URL", help="Stream URLs to queue in order")
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Track duration in seconds (applies to every URL)",
    )
    parser.add_argument(
        "--codec",
        default="mp3",
        choices=["mp3", "aac", "flac", "pcm_s16le"],
        help="Stream codec",
    )
    parser.add_argument("--bitrate", type=int, default=320_000, help="Stream bitrate in bits/s")
    parser.add_argument("--sample-rate", type=int, default=44_100, help="Output sample rate in Hz")
    parser.add_argument("--channels", type=int, default=2, choices=[1, 2], help="Output channels")
    parser.add_argument(
        "--repeat",
        default=RepeatMode.OFF.value,
        choices=[mode.value for mode in RepeatMode],
        help="Initial repeat mode",
    )
    parser.add_argument("--shuffle", action="store_true", help="Start with shuffle enabled")
    parser.add_argument("--volume", type=int, default=100, help="Initial volume (0-100)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    parser.add_argument(
        "--audio-device",
        type=str,
        default=None,
        help=(
            "Audio output device by index (e.g., 0, 1, 2) or name prefix (e.g., 'MacBook'). "
            "Use --list-audio-devices to see available devices."
        ),
    )
    parser.add_argument(
        "--list-audio-devices",
        action="store_true",
        help="List available audio output devices and exit",
    )
    return parser.parse_args(argv)


def list_audio_devices() -> None:
    """List all available audio output devices."""
    try:
        devices = query_devices()
    except Exception as e:  # noqa: BLE001
        print(f"Error listing audio devices: {e}")
        sys.exit(1)

    print("Available audio output devices:")
    print()
    for device in devices:
        default_marker = " (default)" if device.is_default else ""
        print(
            f"  [{device.index}] {device.name}{default_marker}\n"
            f"       Channels: {device.output_channels}, "
            f"Sample rate: {device.sample_rate} Hz"
        )
    if devices:
        print("\nTo select an audio device:\n  waveplay --audio-device 0 URL")


def main(argv: Sequence[str] | None = None) -> int:
    """Run the CLI player."""
    # Handle --list-audio-devices before starting async runtime
    args = parse_args(sys.argv[1:] if argv is None else argv)
    if args.list_audio_devices:
        list_audio_devices()
        return 0

    if not args.urls:
        print("No stream URLs given", file=sys.stderr)
        return 2
    if args.duration is None or args.duration <= 0:
        print("--duration is required and must be positive", file=sys.stderr)
        return 2

    config = AppConfig(
        urls=list(args.urls),
        duration=args.duration,
        codec=args.codec,
        bitrate=args.bitrate,
        sample_rate=args.sample_rate,
        channels=args.channels,
        audio_device=args.audio_device,
        repeat=RepeatMode(args.repeat),
        shuffle=args.shuffle,
        volume=max(0, min(100, args.volume)),
        log_level=args.log_level,
    )

    app = PlayerApp(config)
    return asyncio.run(app.run())


if __name__ == "__main__":
    raise SystemExit(main())
