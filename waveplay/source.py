"""Byte-range capable remote stream sources."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import aiohttp
from aiohttp import ClientError

from waveplay.errors import FatalFetchError, TransientFetchError

logger = logging.getLogger(__name__)

# HTTP statuses that mean the stream is gone rather than temporarily failing
_UNAVAILABLE_STATUSES = frozenset({401, 403, 404, 410})


class StreamSource(Protocol):
    """Protocol for remote sources reachable through a track's stream locator."""

    async def content_length(self, locator: str) -> int:
        """Return the total size of the stream in bytes."""
        ...

    async def read_range(self, locator: str, start: int, end: int) -> bytes:
        """Return bytes ``[start, end)`` of the stream."""
        ...


class HttpStreamSource:
    """Stream source backed by HTTP range requests.

    Raises ``TransientFetchError`` for connection problems, timeouts and
    server errors, and ``FatalFetchError`` when the remote reports the stream
    as unavailable.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the source.

        Args:
            session: Optional shared client session. One is created lazily if omitted.
            timeout: Total timeout for a single request, in seconds.
        """
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def content_length(self, locator: str) -> int:
        """Return the stream size reported by a HEAD request."""
        session = self._get_session()
        try:
            async with session.head(locator, allow_redirects=True) as resp:
                self._check_status(resp.status, locator)
                length = resp.headers.get(aiohttp.hdrs.CONTENT_LENGTH)
        except (TimeoutError, ClientError) as err:
            raise TransientFetchError(f"HEAD {locator} failed: {err}") from err
        if length is None or not length.isdigit():
            raise FatalFetchError(f"Content length missing for {locator}")
        return int(length)

    async def read_range(self, locator: str, start: int, end: int) -> bytes:
        """Fetch ``[start, end)`` with a ``Range`` request."""
        session = self._get_session()
        headers = {aiohttp.hdrs.RANGE: f"bytes={start}-{end - 1}"}
        try:
            async with session.get(locator, headers=headers) as resp:
                self._check_status(resp.status, locator)
                data = await resp.read()
        except (TimeoutError, ClientError) as err:
            raise TransientFetchError(f"GET {locator} [{start}, {end}) failed: {err}") from err
        if resp.status == 200:
            # Server ignored the range header and sent the whole stream
            data = data[start:end]
        return data

    def _check_status(self, status: int, locator: str) -> None:
        if status in _UNAVAILABLE_STATUSES:
            raise FatalFetchError(f"Stream unavailable ({status}): {locator}")
        if status >= 400:
            raise TransientFetchError(f"HTTP {status} for {locator}")

    async def close(self) -> None:
        """Close the owned client session."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            # Give the connector a moment to release sockets
            await asyncio.sleep(0)
        self._session = None
