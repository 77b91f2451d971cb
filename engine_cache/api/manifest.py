"""
Resolves engine versions to download descriptors using the remote build manifest.
"""

import asyncio
import logging
import time
from collections.abc import Callable

from engine_cache.exceptions import NetworkError, NotFoundError
from engine_cache.models.manifest import ManifestEntry, ManifestFormatError, parse_manifest
from engine_cache.storage.cache import DocumentCache

from .transport import HttpTransport

log = logging.getLogger(__name__)


class ManifestResolver:
    """
    Fetches the build manifest and looks up versions in it.

    A fetched manifest is reused for ``ttl_seconds``. When a DocumentCache is
    given, the raw document is also persisted so a fresh copy survives restarts.
    """

    def __init__(
        self,
        transport: HttpTransport,
        manifest_url: str,
        platform: str,
        ttl_seconds: float = 300,
        document_cache: DocumentCache | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.manifest_url = manifest_url
        self.platform = platform
        self.ttl_seconds = ttl_seconds
        self.document_cache = document_cache
        self._clock = clock
        self._entries: dict[str, ManifestEntry] | None = None
        self._fetched_at = 0.0
        self._fetch_count = 0
        self._refresh_lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return (
            self._entries is not None
            and self._clock() - self._fetched_at <= self.ttl_seconds
        )

    async def resolve(self, version: str) -> ManifestEntry:
        """
        Resolves a version to its download URL and expected signature.

        Raises:
            NotFoundError: If the version is not published for this platform.
            NetworkError: If the manifest could not be fetched or parsed.
        """
        fetches_before = self._fetch_count
        entries = await self._get_entries()
        entry = entries.get(version)
        if entry is None:
            # A version published after our copy was fetched is worth one refetch.
            if self._fetch_count == fetches_before:
                entries = await self._get_entries(force=True)
                entry = entries.get(version)
            if entry is None:
                raise NotFoundError(
                    f"Engine version '{version}' is not in the build manifest "
                    f"for platform '{self.platform}'."
                )
        if entry.insecure:
            log.warning(
                f"[yellow]⚠ Engine version '{version}' is marked insecure in the "
                "manifest.[/yellow]"
            )
        return entry

    async def available_versions(self) -> list[str]:
        """Lists every version published for this platform."""
        entries = await self._get_entries()
        return sorted(entries)

    async def refresh(self) -> None:
        """Forces the manifest to be fetched again."""
        await self._get_entries(force=True)

    async def _get_entries(self, force: bool = False) -> dict[str, ManifestEntry]:
        if not force and self._is_fresh():
            return self._entries

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited.
            if not force and self._is_fresh():
                return self._entries

            if not force and self.document_cache is not None:
                cached = await asyncio.to_thread(
                    self.document_cache.get, self.manifest_url
                )
                if cached is not None:
                    document, stored_at = cached
                    try:
                        self._store(parse_manifest(document, self.platform), stored_at)
                        log.debug("Loaded build manifest from disk cache.")
                        return self._entries
                    except ManifestFormatError as e:
                        log.debug(f"Ignoring unreadable cached manifest: {e}")

            log.debug(f"Fetching build manifest from {self.manifest_url}")
            document = await self.transport.get_json(self.manifest_url)
            self._fetch_count += 1
            try:
                entries = parse_manifest(document, self.platform)
            except ManifestFormatError as e:
                raise NetworkError(
                    f"Build manifest is malformed: {e}", self.manifest_url
                ) from e

            self._store(entries, self._clock())
            if self.document_cache is not None:
                await asyncio.to_thread(
                    self.document_cache.set, self.manifest_url, document
                )
            log.info(f"Build manifest loaded ({len(entries)} versions).")
            return entries

    def _store(self, entries: dict[str, ManifestEntry], fetched_at: float) -> None:
        self._entries = entries
        self._fetched_at = fetched_at
