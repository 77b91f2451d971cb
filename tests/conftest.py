import asyncio
import copy
import hashlib
from contextlib import asynccontextmanager

import pytest

from engine_cache.api.manifest import ManifestResolver
from engine_cache.api.transport import StreamResponse
from engine_cache.core.engine_manager import CachingEngineManager
from engine_cache.exceptions import NetworkError
from engine_cache.storage.store import LocalStore
from engine_cache.transfer.downloader import Downloader

MANIFEST_URL = "https://builds.example.test/manifest.json"
PLATFORM = "linux-x64"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def package_url(version: str) -> str:
    return f"https://builds.example.test/Robust_{version}.zip"


class FakeClock:
    """A settable POSIX clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory HttpTransport serving a manifest and package bodies."""

    def __init__(self):
        self.manifest: object = {}
        self.packages: dict[str, bytes | list[bytes]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.manifest_fetches = 0
        self.stream_calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    def publish(self, version: str, body: bytes, signature: str | None = None) -> str:
        """Adds a version to the flat manifest and serves its package."""
        url = package_url(version)
        self.manifest[version] = {
            "url": url,
            "sha256": signature or sha256_hex(body),
            "size": len(body),
        }
        self.packages[url] = body
        return url

    def hold_downloads(self) -> asyncio.Event:
        """Makes package bodies block until the returned event is set."""
        self.gate = asyncio.Event()
        return self.gate

    async def get_json(self, url: str):
        self.manifest_fetches += 1
        if isinstance(self.manifest, Exception):
            raise self.manifest
        return copy.deepcopy(self.manifest)

    @asynccontextmanager
    async def stream(self, url: str):
        self.stream_calls.append(url)
        pending = self.failures.get(url)
        if pending:
            raise pending.pop(0)
        if url not in self.packages:
            raise NetworkError(f"Server returned HTTP 404 for '{url}'.", url)

        body = self.packages[url]
        if isinstance(body, list):
            body = body.pop(0) if len(body) > 1 else body[0]

        async def read_chunks(size: int):
            for start in range(0, len(body), size):
                if self.gate is not None:
                    await self.gate.wait()
                yield body[start : start + size]

        yield StreamResponse(total_bytes=len(body), read_chunks=read_chunks)

    async def close(self) -> None:
        self.closed = True


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yields to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def install_directly(store: LocalStore, version: str, body: bytes = b"engine") -> None:
    """Commits a package into the store without going through a download."""
    temp_path = store.new_temp_path(version)
    temp_path.write_bytes(body)
    store.commit(version, temp_path, sha256_hex(body))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store(tmp_path, clock):
    return LocalStore(tmp_path / "engines", clock)


@pytest.fixture
def make_manager(store, transport, clock):
    def _make(**kwargs) -> CachingEngineManager:
        resolver = ManifestResolver(
            transport, MANIFEST_URL, PLATFORM, ttl_seconds=300, clock=clock
        )
        downloader = Downloader(
            transport, max_attempts=1, base_delay=0, progress_interval=0
        )
        return CachingEngineManager(store, resolver, downloader, clock=clock, **kwargs)

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()
