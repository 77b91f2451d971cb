"""
The HTTP capability consumed by the manifest resolver and the downloader, plus
its default aiohttp implementation.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Protocol, runtime_checkable

import aiohttp

from engine_cache import __version__
from engine_cache.exceptions import NetworkError

log = logging.getLogger(__name__)


@dataclass
class StreamResponse:
    """A streaming response body with its advertised length, if any."""

    total_bytes: int | None
    read_chunks: Callable[[int], AsyncIterator[bytes]]

    def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        return self.read_chunks(chunk_size)


@runtime_checkable
class HttpTransport(Protocol):
    """A minimal GET-only HTTP capability. Failures raise NetworkError."""

    async def get_json(self, url: str) -> Any:
        """Fetches and decodes a JSON document."""
        ...

    def stream(self, url: str) -> AsyncContextManager[StreamResponse]:
        """Opens a streaming GET whose body is read with ``iter_chunks``."""
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """
    HttpTransport backed by a pooled aiohttp ClientSession that the transport owns.

    The session is created lazily on first use so the transport can be built
    outside of a running event loop.
    """

    def __init__(self, max_connections: int = 4, user_agent: str | None = None):
        self.max_connections = max_connections
        self.user_agent = user_agent or f"engine-cache/{__version__}"
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Gets or creates the ClientSession used for every request."""
        async with self._session_lock:
            if self._session and not self._session.closed:
                return self._session

            connector = aiohttp.TCPConnector(
                limit=self.max_connections * 2,
                limit_per_host=self.max_connections,
                ttl_dns_cache=600,  # 10 minutes
                enable_cleanup_closed=True,
            )
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={"User-Agent": self.user_agent},
            )
            log.debug(
                f"Created HTTP pool with limit_per_host={self.max_connections}"
            )
        return self._session

    async def get_json(self, url: str) -> Any:
        session = await self._get_session()
        try:
            async with session.get(url, allow_redirects=True) as response:
                response.raise_for_status()
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Failed to fetch '{url}': {e}", url) from e
        except ValueError as e:
            raise NetworkError(f"Response from '{url}' is not valid JSON: {e}", url) from e

    @asynccontextmanager
    async def stream(self, url: str) -> AsyncIterator[StreamResponse]:
        session = await self._get_session()
        try:
            response = await session.get(url, allow_redirects=True)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Failed to connect to '{url}': {e}", url) from e

        try:
            if response.status >= 400:
                raise NetworkError(
                    f"Server returned HTTP {response.status} for '{url}'.", url
                )
            yield StreamResponse(
                total_bytes=response.content_length,
                read_chunks=lambda size: _read_body(response, url, size),
            )
        finally:
            response.release()

    async def close(self) -> None:
        """Closes the owned ClientSession."""
        async with self._session_lock:
            if self._session and not self._session.closed:
                await self._session.close()
                log.debug("HTTP transport session closed.")
            self._session = None


async def _read_body(
    response: aiohttp.ClientResponse, url: str, chunk_size: int
) -> AsyncIterator[bytes]:
    """Yields the response body, translating transport errors into NetworkError."""
    try:
        async for chunk in response.content.iter_chunked(chunk_size):
            yield chunk
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise NetworkError(f"Transfer from '{url}' interrupted: {e}", url) from e
