"""Error taxonomy for the playback core."""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Kind of failure carried on error notifications."""

    FETCH = "fetch"
    DECODE = "decode"
    DEVICE = "device"


class PlaybackError(Exception):
    """Base class for playback core errors."""

    kind: ErrorKind = ErrorKind.FETCH


class FetchError(PlaybackError):
    """Retrieving stream bytes failed."""

    kind = ErrorKind.FETCH


class TransientFetchError(FetchError):
    """A recoverable network hiccup; retried inside the fetcher."""


class FatalFetchError(FetchError):
    """Retries are exhausted or the remote reports the stream as unavailable."""


class DecodeError(PlaybackError):
    """Stream data could not be decoded."""

    kind = ErrorKind.DECODE


class AudioDeviceError(PlaybackError):
    """The audio output device could not be opened or driven.

    This is the only session-fatal condition; it is raised to the host
    application instead of being handled per track.
    """

    kind = ErrorKind.DEVICE
