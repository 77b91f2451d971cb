"""
The public engine management contract and its implementations.

``CachingEngineManager`` is the on-demand download cache; ``BundledEngineManager``
serves engines shipped pre-installed alongside the application. Consumers depend
only on the ``EngineManager`` protocol and receive a concrete manager built once
at start-up (see ``build_engine_manager``).
"""

import asyncio
import logging
import time
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager, suppress
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from engine_cache.api.manifest import ManifestResolver
from engine_cache.api.transport import AiohttpTransport, HttpTransport
from engine_cache.exceptions import (
    CorruptError,
    DownloadCancelledError,
    EngineCacheError,
    EngineInUseError,
    EngineIOError,
    NotFoundError,
)
from engine_cache.models.config import CullPolicy, EngineCacheConfig
from engine_cache.models.installation import EngineInstallation
from engine_cache.models.manifest import ManifestEntry
from engine_cache.models.progress import ProgressCallback
from engine_cache.storage.cache import DocumentCache
from engine_cache.storage.store import LocalStore, load_installation
from engine_cache.transfer.downloader import Downloader
from engine_cache.transfer.integrity import IntegrityVerifier
from engine_cache.utils.path import package_file_name, validate_version_name

from .cancellation import CancelToken
from .culler import Culler
from .events import EngineEvent, EngineEventKind, EventBus
from .locks import VersionLocks

log = logging.getLogger(__name__)

# Total download attempts for a version whose package fails verification.
CORRUPT_DOWNLOAD_ATTEMPTS = 2

# Failed versions remembered for state_of, oldest forgotten first.
MAX_FAILED_STATES = 64


class EngineState(Enum):
    """Lifecycle of a single engine version inside the cache."""

    ABSENT = "absent"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    INSTALLED = "installed"
    FAILED = "failed"


@runtime_checkable
class EngineManager(Protocol):
    """Manages engine installations."""

    def get_engine_path(self, version: str) -> Path:
        ...

    def get_engine_signature(self, version: str) -> str:
        ...

    async def download_engine_if_necessary(
        self,
        version: str,
        progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> bool:
        ...

    async def do_engine_cull_maybe_async(self) -> list[str]:
        ...

    async def clear_all_engines(self) -> list[str]:
        ...


class _InstallJob:
    """A single in-flight installation shared by every caller waiting on it."""

    def __init__(self, version: str, events: EventBus):
        self.version = version
        self.task: asyncio.Task[bool] | None = None
        self.cancel_token = CancelToken()
        self.listeners: list[ProgressCallback] = []
        self.waiters = 0
        self.committing = False
        self._events = events

    def report(self, bytes_so_far: int, total_bytes: int | None) -> None:
        """Fans a progress report out to every waiter and to event subscribers."""
        for listener in list(self.listeners):
            try:
                listener(bytes_so_far, total_bytes)
            except Exception as e:
                log.debug(f"Progress listener raised, ignoring: {e}", exc_info=True)
        self._events.emit(
            EngineEvent(
                EngineEventKind.PROGRESS,
                self.version,
                bytes_so_far=bytes_so_far,
                total_bytes=total_bytes,
            )
        )


class CachingEngineManager:
    """
    Keeps a disk cache of engine versions, downloading them on demand.

    Concurrent requests for the same version share one download. All state
    changes for a version (install, cull) are serialized on that version's
    lock, while different versions proceed independently.
    """

    def __init__(
        self,
        store: LocalStore,
        resolver: ManifestResolver,
        downloader: Downloader,
        verifier: IntegrityVerifier | None = None,
        policy: CullPolicy | None = None,
        events: EventBus | None = None,
        pin_provider: Callable[[], Iterable[str]] | None = None,
        clock: Callable[[], float] = time.time,
        transport: HttpTransport | None = None,
    ):
        """
        Args:
            store: The local store installations are committed to.
            resolver: Resolves versions to download descriptors.
            downloader: Streams packages into temporary files.
            verifier: Checks packages against their expected signature.
            policy: Retention policy for ``do_engine_cull_maybe_async``.
            events: Channel lifecycle events are published on.
            pin_provider: Extra versions to protect from culling, queried at
                cull time (e.g. the engines required by installed content).
            clock: Source of the current POSIX time.
            transport: HTTP transport owned by this manager, closed by ``aclose``.
        """
        self.store = store
        self.resolver = resolver
        self.downloader = downloader
        self.verifier = verifier or IntegrityVerifier()
        self.policy = policy or CullPolicy()
        self.events = events or EventBus()
        self._pin_provider = pin_provider
        self._transport = transport
        self._locks = VersionLocks()
        self._culler = Culler(store, self._locks, clock)
        self._jobs: dict[str, _InstallJob] = {}
        self._states: dict[str, EngineState] = {}
        self._pins: Counter[str] = Counter()
        self._cull_task: asyncio.Task | None = None

    # --- Queries ---

    def get_engine_path(self, version: str) -> Path:
        """
        Returns the installation directory of a version and marks it as used.

        Raises:
            NotFoundError: If the version is not installed.
        """
        path = self.store.get_path(version)
        self.store.touch(version)
        return path

    def get_engine_signature(self, version: str) -> str:
        """
        Returns the verified signature of an installed version.

        Raises:
            NotFoundError: If the version is not installed.
        """
        return self.store.get_signature(version)

    def installations(self) -> list[EngineInstallation]:
        return self.store.installations()

    def state_of(self, version: str) -> EngineState:
        if self.store.has(version):
            return EngineState.INSTALLED
        return self._states.get(version, EngineState.ABSENT)

    # --- Installation ---

    async def download_engine_if_necessary(
        self,
        version: str,
        progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> bool:
        """
        Makes sure a version is installed, downloading it if needed.

        Returns:
            True once the version is installed, False if the caller's
            ``cancel_token`` fired (or the shared download was cancelled) first.

        Raises:
            NotFoundError: If the version is not in the manifest.
            NetworkError: If the manifest or package could not be fetched.
            CorruptError: If the package failed verification twice.
            EngineIOError: If the installation could not be written.
        """
        validate_version_name(version)
        if self.store.has(version):
            with suppress(NotFoundError):
                await asyncio.to_thread(self.store.touch, version)
                return True

        if cancel_token is not None and cancel_token.cancelled:
            return False

        job = self._jobs.get(version)
        if job is None:
            self._states.pop(version, None)
            job = _InstallJob(version, self.events)
            job.task = asyncio.create_task(
                self._install(job), name=f"install-engine-{version}"
            )
            job.task.add_done_callback(lambda _t, j=job: self._forget_job(j))
            self._jobs[version] = job
        else:
            log.debug(f"Joining in-flight download of engine '{version}'.")

        return await self._wait_for(job, progress, cancel_token)

    async def _wait_for(
        self,
        job: _InstallJob,
        progress: ProgressCallback | None,
        cancel_token: CancelToken | None,
    ) -> bool:
        """Waits for a shared job on behalf of one caller."""
        job.waiters += 1
        if progress is not None:
            job.listeners.append(progress)

        waitables: set[asyncio.Future] = {job.task}
        cancel_wait: asyncio.Future | None = None
        if cancel_token is not None:
            cancel_wait = asyncio.ensure_future(cancel_token.wait())
            waitables.add(cancel_wait)

        try:
            # asyncio.wait never cancels what it waits on, so leaving early
            # does not disturb the shared task.
            await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            self._detach(job, progress)

        if not job.task.done() or job.task.cancelled():
            log.info(f"Stopped waiting for engine '{job.version}' (cancelled).")
            return False
        return job.task.result()

    def _detach(self, job: _InstallJob, progress: ProgressCallback | None) -> None:
        job.waiters -= 1
        if progress is not None and progress in job.listeners:
            job.listeners.remove(progress)
        if job.waiters == 0 and not job.task.done():
            log.info(f"Cancelling download of engine '{job.version}': no one is waiting.")
            job.cancel_token.cancel()
            # A stalled read or backoff never sees the token, so stop the task
            # too. The commit rename is left to finish.
            if not job.committing:
                job.task.cancel()
            # New requests must start a fresh job rather than join a dying one.
            if self._jobs.get(job.version) is job:
                del self._jobs[job.version]

    def _forget_job(self, job: _InstallJob) -> None:
        if self._jobs.get(job.version) is job:
            del self._jobs[job.version]
        # Mark the outcome as retrieved even when every waiter has left.
        if not job.task.cancelled():
            job.task.exception()

    async def _install(self, job: _InstallJob) -> bool:
        """Drives one version through resolve, download, verify and commit."""
        version = job.version
        async with self._locks.get(version):
            if self.store.has(version):
                return True
            try:
                self._check_cancelled(job)
                self._set_state(version, EngineState.RESOLVING)
                entry = await self.resolver.resolve(version)
                temp_path, signature = await self._download_verified(job, entry)
                try:
                    self._check_cancelled(job)
                    job.committing = True
                    await asyncio.to_thread(
                        self.store.commit,
                        version,
                        temp_path,
                        signature,
                        package_file_name(entry.download_url, version),
                    )
                finally:
                    _discard(temp_path)
            except DownloadCancelledError:
                self._states.pop(version, None)
                log.info(f"Download of engine '{version}' cancelled.")
                return False
            except asyncio.CancelledError:
                self._states.pop(version, None)
                log.info(f"Download of engine '{version}' cancelled.")
                raise
            except EngineCacheError as e:
                self._set_state(version, EngineState.FAILED, error=str(e))
                log.error(f"[red]✗ Could not install engine '{version}': {e}[/red]")
                raise

        self._states.pop(version, None)
        self.events.emit(EngineEvent(EngineEventKind.INSTALLED, version))
        return True

    async def _download_verified(
        self, job: _InstallJob, entry: ManifestEntry
    ) -> tuple[Path, str]:
        """
        Downloads and verifies a package, retrying once on a signature mismatch.

        Returns:
            The verified temporary file and its signature.
        """
        attempt = 1
        while True:
            self._check_cancelled(job)
            temp_path = await asyncio.to_thread(self.store.new_temp_path, entry.version)
            try:
                self._set_state(entry.version, EngineState.DOWNLOADING)
                await self.downloader.fetch(
                    entry.download_url,
                    temp_path,
                    progress=job.report,
                    cancel_token=job.cancel_token,
                    expected_size=entry.size_bytes,
                )
                self._check_cancelled(job)
                self._set_state(entry.version, EngineState.VERIFYING)
                signature = await self.verifier.verify(
                    temp_path, entry.expected_signature
                )
                return temp_path, signature
            except CorruptError:
                _discard(temp_path)
                if attempt >= CORRUPT_DOWNLOAD_ATTEMPTS:
                    raise
                attempt += 1
                log.warning(
                    f"[yellow]Engine '{entry.version}' failed verification, "
                    "downloading again...[/yellow]"
                )
            except BaseException:
                _discard(temp_path)
                raise

    def _check_cancelled(self, job: _InstallJob) -> None:
        if job.cancel_token.cancelled:
            raise DownloadCancelledError(f"Download of engine '{job.version}' cancelled.")

    def _set_state(
        self, version: str, state: EngineState, error: str | None = None
    ) -> None:
        self._states.pop(version, None)
        self._states[version] = state
        if state is EngineState.FAILED:
            failed = [v for v, s in self._states.items() if s is EngineState.FAILED]
            for stale in failed[: len(failed) - MAX_FAILED_STATES]:
                del self._states[stale]
        kind = {
            EngineState.RESOLVING: EngineEventKind.RESOLVING,
            EngineState.DOWNLOADING: EngineEventKind.DOWNLOADING,
            EngineState.VERIFYING: EngineEventKind.VERIFYING,
            EngineState.FAILED: EngineEventKind.FAILED,
        }.get(state)
        if kind is not None:
            self.events.emit(EngineEvent(kind, version, error=error))

    # --- Pins and culling ---

    @asynccontextmanager
    async def pinned(self, *versions: str) -> AsyncIterator[None]:
        """Protects versions from culling for as long as the block runs."""
        for version in versions:
            self._pins[version] += 1
        try:
            yield
        finally:
            for version in versions:
                self._pins[version] -= 1
                if self._pins[version] <= 0:
                    del self._pins[version]

    def pinned_versions(self) -> set[str]:
        """Versions currently protected from culling, including in-flight installs."""
        pinned = set(self._pins) | set(self._jobs)
        if self._pin_provider is not None:
            pinned.update(self._pin_provider())
        return pinned

    def _is_busy(self, version: str) -> bool:
        return version in self._pins or version in self._jobs

    async def cull_maybe(
        self, pinned: Iterable[str] = (), policy: CullPolicy | None = None
    ) -> list[str]:
        """Culls with an explicit pin set and policy, on top of the manager's own pins."""
        removed = await self._culler.cull_maybe(
            self.pinned_versions() | set(pinned),
            policy or self.policy,
            is_busy=self._is_busy,
        )
        for version in removed:
            self.events.emit(EngineEvent(EngineEventKind.EVICTED, version))
        return removed

    async def do_engine_cull_maybe_async(self) -> list[str]:
        """Applies the configured retention policy. Never raises for a single failure."""
        return await self.cull_maybe()

    async def clear_all_engines(self) -> list[str]:
        """
        Removes every installed engine.

        Raises:
            EngineInUseError: If a session still pins any version.
            EngineIOError: If some installations could not be removed.
        """
        if self._pins:
            raise EngineInUseError(
                "Cannot clear engines while in use: "
                f"{', '.join(sorted(self._pins))}."
            )
        log.info("Clearing all engine installations...")
        removed: list[str] = []
        failures: list[str] = []
        for version in sorted(self.store.versions()):
            async with self._locks.get(version):
                try:
                    if not await asyncio.to_thread(self.store.remove, version):
                        continue
                except EngineIOError as e:
                    log.error(f"[red]✗ {e}[/red]")
                    failures.append(version)
                    continue
            removed.append(version)
            self.events.emit(EngineEvent(EngineEventKind.EVICTED, version))

        if failures:
            raise EngineIOError(
                f"Could not remove engine versions: {', '.join(failures)}."
            )
        return removed

    async def start_background_cull(self, interval_seconds: float) -> None:
        """Starts culling periodically in the background."""
        if self._cull_task is None or self._cull_task.done():
            self._cull_task = asyncio.create_task(self._cull_loop(interval_seconds))
            log.debug("Started background engine cull task.")

    async def _cull_loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.do_engine_cull_maybe_async()
            except asyncio.CancelledError:
                log.debug("Engine cull task cancelled.")
                raise
            except Exception as e:
                log.warning(f"Error in engine cull loop: {e}")
            await asyncio.sleep(interval_seconds)

    async def stop_background_cull(self) -> None:
        """Stops the background cull task gracefully."""
        if self._cull_task and not self._cull_task.done():
            self._cull_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._cull_task
            log.debug("Stopped background engine cull task.")
        self._cull_task = None

    async def aclose(self) -> None:
        """Stops background work, abandons in-flight downloads and closes the transport."""
        await self.stop_background_cull()
        tasks = [job.task for job in self._jobs.values() if not job.task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, EngineCacheError):
                await task
        if self._transport is not None:
            await self._transport.close()

    async def __aenter__(self) -> "CachingEngineManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


class BundledEngineManager:
    """
    Serves engines shipped pre-installed in a read-only directory that uses the
    same layout as the local store. Nothing is ever downloaded or removed.
    """

    def __init__(self, bundle_dir: Path):
        self.bundle_dir = bundle_dir
        self._installations: dict[str, EngineInstallation] = {}
        if bundle_dir.is_dir():
            for entry in sorted(bundle_dir.iterdir()):
                if entry.name.startswith(".") or not entry.is_dir():
                    continue
                installation = load_installation(entry)
                if installation is None:
                    log.warning(f"[yellow]Ignoring unusable bundled engine '{entry.name}'.[/yellow]")
                    continue
                self._installations[installation.version] = installation
        log.debug(f"Found {len(self._installations)} bundled engine(s) in '{bundle_dir}'.")

    def _get(self, version: str) -> EngineInstallation:
        installation = self._installations.get(version)
        if installation is None:
            raise NotFoundError(f"Engine version '{version}' is not bundled.")
        return installation

    def get_engine_path(self, version: str) -> Path:
        return self._get(version).install_path

    def get_engine_signature(self, version: str) -> str:
        return self._get(version).signature

    async def download_engine_if_necessary(
        self,
        version: str,
        progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> bool:
        self._get(version)
        return True

    async def do_engine_cull_maybe_async(self) -> list[str]:
        return []

    async def clear_all_engines(self) -> list[str]:
        raise EngineIOError("Bundled engines are read-only and cannot be cleared.")


def build_engine_manager(
    config: EngineCacheConfig,
    transport: HttpTransport | None = None,
    pin_provider: Callable[[], Iterable[str]] | None = None,
    clock: Callable[[], float] = time.time,
) -> CachingEngineManager:
    """
    Composes a CachingEngineManager from configuration.

    When no transport is given an AiohttpTransport is created and owned by the
    returned manager.
    """
    store = LocalStore(Path(config.engines_dir).expanduser(), clock)
    owned_transport = None
    if transport is None:
        transport = owned_transport = AiohttpTransport(config.max_connections)

    resolver = ManifestResolver(
        transport,
        config.manifest_url,
        config.platform,
        ttl_seconds=config.manifest_ttl_seconds,
        document_cache=DocumentCache(
            store.manifest_cache_dir, config.manifest_ttl_seconds, clock
        ),
        clock=clock,
    )
    downloader = Downloader(
        transport,
        max_attempts=config.download_attempts,
        progress_interval=config.progress_interval_seconds,
    )
    return CachingEngineManager(
        store,
        resolver,
        downloader,
        IntegrityVerifier(),
        policy=config.cull_policy(),
        pin_provider=pin_provider,
        clock=clock,
        transport=owned_transport,
    )


def _discard(path: Path) -> None:
    """Removes a temporary download if it is still there."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning(f"Could not delete temporary file '{path}': {e}")
