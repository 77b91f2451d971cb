"""
Handles the low-level streaming of engine packages over HTTP into temporary
files, with retry logic, cancellation and rate-limited progress reporting.
"""

import asyncio
import logging
import os
from pathlib import Path

import aiofiles

from engine_cache.api.transport import HttpTransport
from engine_cache.core.cancellation import CancelToken
from engine_cache.exceptions import DownloadCancelledError, EngineIOError, NetworkError
from engine_cache.models.progress import (
    ProgressCallback,
    ProgressThrottle,
    TransferProgress,
)

log = logging.getLogger(__name__)


class Downloader:
    """A streaming file downloader with retry logic and cooperative cancellation."""

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(
        self,
        transport: HttpTransport,
        max_attempts: int = 3,
        base_delay: float = 1.5,
        progress_interval: float = 0.25,
    ):
        self.transport = transport
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.progress_interval = progress_interval

    async def fetch(
        self,
        url: str,
        destination_path: Path,
        progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
        expected_size: int | None = None,
    ) -> int:
        """
        Downloads ``url`` into ``destination_path``, which must be a temporary path.

        On any failure or cancellation the destination file is removed before
        the exception propagates.

        Returns:
            The number of bytes written.

        Raises:
            DownloadCancelledError: If ``cancel_token`` fired during the transfer.
            NetworkError: If every attempt failed in transport.
            EngineIOError: If the destination could not be written.
        """
        throttle = ProgressThrottle(progress, self.progress_interval)
        state = TransferProgress(total_bytes=expected_size)
        last_exception: NetworkError | None = None

        try:
            for attempt in range(1, self.max_attempts + 1):
                if cancel_token is not None and cancel_token.cancelled:
                    raise DownloadCancelledError(f"Download of '{url}' was cancelled.")
                try:
                    return await self._fetch_once(
                        url, destination_path, state, throttle, cancel_token, expected_size
                    )
                except NetworkError as e:
                    last_exception = e
                    log.debug(
                        f"Download attempt {attempt}/{self.max_attempts} for "
                        f"'{destination_path.name}' failed: {e}."
                    )
                    if attempt < self.max_attempts:
                        await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
        except BaseException:
            _remove_partial(destination_path)
            raise

        _remove_partial(destination_path)
        raise last_exception

    async def _fetch_once(
        self,
        url: str,
        destination_path: Path,
        state: TransferProgress,
        throttle: ProgressThrottle,
        cancel_token: CancelToken | None,
        expected_size: int | None,
    ) -> int:
        state.reset()
        async with self.transport.stream(url) as response:
            if response.total_bytes is not None:
                if expected_size is not None and response.total_bytes != expected_size:
                    log.debug(
                        f"Server reports {response.total_bytes} bytes for '{url}', "
                        f"manifest says {expected_size}."
                    )
                state.total_bytes = response.total_bytes
            throttle.report(state, force=True)

            try:
                async with aiofiles.open(destination_path, "wb") as f:
                    async for chunk in response.iter_chunks(self.CHUNK_SIZE):
                        if cancel_token is not None and cancel_token.cancelled:
                            raise DownloadCancelledError(
                                f"Download of '{url}' was cancelled."
                            )
                        await f.write(chunk)
                        state.advance(len(chunk))
                        throttle.report(state)
            except OSError as e:
                raise EngineIOError(
                    f"Could not write '{destination_path}': {e}"
                ) from e

        throttle.report(state, force=True)
        log.debug(f"Downloaded {state.bytes_so_far} bytes from {url}")
        return state.bytes_so_far


def _remove_partial(path: Path) -> None:
    """Removes a partially written download."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"Could not remove partial download '{path}': {e}")
