"""Audio decoders turning ordered stream bytes into interleaved 16-bit PCM."""

from __future__ import annotations

import logging
import struct
from typing import TYPE_CHECKING, Final, Protocol

import av
import av.error
import numpy as np

from waveplay.errors import DecodeError

if TYPE_CHECKING:
    from av.audio.codeccontext import AudioCodecContext

    from waveplay.models import Track

logger = logging.getLogger(__name__)

# Codec names accepted on Track.codec, mapped to FFmpeg decoder names
_AV_CODECS: Final[dict[str, str]] = {
    "mp3": "mp3",
    "aac": "aac",
    "flac": "flac",
}

FLAC_MARKER: Final[bytes] = b"fLaC"
ID3_MARKER: Final[bytes] = b"ID3"


class StreamDecoder(Protocol):
    """Protocol for incremental decoders fed with consecutive stream bytes."""

    def decode(self, data: bytes) -> bytes:
        """Decode the next stream bytes, returning whole PCM frames."""
        ...

    def flush(self) -> bytes:
        """Drain any PCM still held by the decoder at end of stream."""
        ...

    def reset(self) -> None:
        """Drop decoder state after a discontinuity (seek)."""
        ...


class PcmDecoder:
    """Pass-through decoder for raw little-endian signed 16-bit PCM streams.

    Keeps partial frames between calls so output is always frame aligned.
    """

    def __init__(self, channels: int) -> None:
        self._frame_size = channels * 2
        self._remainder = b""

    def decode(self, data: bytes) -> bytes:
        data = self._remainder + data
        usable = len(data) - len(data) % self._frame_size
        self._remainder = data[usable:]
        return data[:usable]

    def flush(self) -> bytes:
        if self._remainder:
            logger.debug("Dropping %d trailing bytes of a partial PCM frame", len(self._remainder))
        self._remainder = b""
        return b""

    def reset(self) -> None:
        self._remainder = b""


class AvStreamDecoder:
    """Decoder for compressed elementary streams (MP3, ADTS AAC, FLAC) using PyAV.

    Bytes are fed through the codec parser as they arrive, so chunk boundaries
    need not line up with codec frames. Decoded frames are resampled to packed
    16-bit PCM at the track's sample rate and channel count.
    """

    _MAX_CONSECUTIVE_ERRORS: Final[int] = 8
    """Invalid packets tolerated in a row (e.g. right after a seek) before giving up."""

    def __init__(self, track: Track) -> None:
        """Initialize the decoder for a stream fed from its first byte.

        Args:
            track: Track whose codec and output format to use.
        """
        codec_name = _AV_CODECS.get(track.codec)
        if codec_name is None:
            raise DecodeError(f"Unsupported codec: {track.codec}")
        self._codec_name = codec_name
        self._sample_rate = track.sample_rate
        self._layout = "mono" if track.channels == 1 else "stereo"
        self._streaminfo: bytes | None = None
        self._header_pending = True
        self._header_bytes = b""
        self._consecutive_errors = 0
        self._codec = self._open_codec()
        self._resampler = av.AudioResampler(format="s16", layout=self._layout, rate=self._sample_rate)

    def _open_codec(self) -> AudioCodecContext:
        codec = av.CodecContext.create(self._codec_name, "r")
        if self._streaminfo is not None:
            codec.extradata = self._streaminfo
        return codec  # type: ignore[return-value]

    def decode(self, data: bytes) -> bytes:
        if self._header_pending:
            data = self._consume_header(data)
            if not data:
                return b""
        pcm = bytearray()
        try:
            for packet in self._codec.parse(data):
                pcm.extend(self._decode_packet(packet))
        except av.FFmpegError as err:
            raise DecodeError(f"{self._codec_name} parse error: {err}") from err
        return bytes(pcm)

    def flush(self) -> bytes:
        pcm = bytearray()
        try:
            for packet in self._codec.parse(None):
                pcm.extend(self._decode_packet(packet))
            pcm.extend(self._decode_packet(None))
            for frame in self._resampler.resample(None):
                pcm.extend(self._frame_to_pcm(frame))
        except av.FFmpegError as err:
            logger.warning("Error while flushing %s decoder: %s", self._codec_name, err)
        return bytes(pcm)

    def reset(self) -> None:
        self._header_pending = False
        self._header_bytes = b""
        self._consecutive_errors = 0
        self._codec = self._open_codec()
        self._resampler = av.AudioResampler(format="s16", layout=self._layout, rate=self._sample_rate)

    def _decode_packet(self, packet: av.Packet | None) -> bytes:
        pcm = bytearray()
        try:
            frames = self._codec.decode(packet)
        except av.error.InvalidDataError as err:
            self._consecutive_errors += 1
            if self._consecutive_errors > self._MAX_CONSECUTIVE_ERRORS:
                raise DecodeError(
                    f"Too many invalid {self._codec_name} packets in a row: {err}"
                ) from err
            logger.debug("Skipping invalid %s packet: %s", self._codec_name, err)
            return b""
        except av.FFmpegError as err:
            raise DecodeError(f"{self._codec_name} decode error: {err}") from err

        self._consecutive_errors = 0
        for frame in frames:
            for resampled in self._resampler.resample(frame):
                pcm.extend(self._frame_to_pcm(resampled))
        return bytes(pcm)

    def _frame_to_pcm(self, frame: av.AudioFrame) -> bytes:
        """Convert a packed s16 frame to interleaved PCM bytes."""
        samples = frame.to_ndarray()
        return np.ascontiguousarray(samples, dtype=np.int16).tobytes()

    def _consume_header(self, data: bytes) -> bytes:
        """Strip stream headers the codec parser does not understand.

        Handles a leading ID3v2 tag (MP3) and the FLAC marker plus metadata
        blocks, whose STREAMINFO block becomes the codec extradata. Returns the
        audio bytes following the header, or b"" while more header bytes are
        needed.
        """
        buf = self._header_bytes + data
        if len(buf) < 10:
            self._header_bytes = buf
            return b""

        if buf.startswith(ID3_MARKER):
            # Syncsafe 28-bit size, plus 10 bytes of tag header
            size = 10 + sum((byte & 0x7F) << (7 * (3 - i)) for i, byte in enumerate(buf[6:10]))
            if len(buf) < size:
                self._header_bytes = buf
                return b""
            buf = buf[size:]
            logger.debug("Skipped %d byte ID3 tag", size)
            if len(buf) < 10:
                self._header_bytes = buf
                return b""

        if buf.startswith(FLAC_MARKER):
            pos = len(FLAC_MARKER)
            while True:
                if len(buf) < pos + 4:
                    self._header_bytes = buf
                    return b""
                # Metadata block header: last-block flag + type, then 24-bit length
                flags = buf[pos]
                length = struct.unpack(">I", b"\x00" + buf[pos + 1 : pos + 4])[0]
                block_end = pos + 4 + length
                if len(buf) < block_end:
                    self._header_bytes = buf
                    return b""
                if flags & 0x7F == 0:
                    self._streaminfo = buf[pos + 4 : block_end]
                pos = block_end
                if flags & 0x80:
                    break
            buf = buf[pos:]
            if self._streaminfo is not None:
                self._codec = self._open_codec()

        self._header_pending = False
        self._header_bytes = b""
        return buf


def create_decoder(track: Track) -> StreamDecoder:
    """Create a decoder for a track's codec.

    Raises:
        DecodeError: If the codec is not supported.
    """
    if track.is_pcm:
        return PcmDecoder(track.channels)
    return AvStreamDecoder(track)
