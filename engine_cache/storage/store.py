"""
The on-disk store of installed engine versions.

Layout under the store root:

    .staging/                  temporary downloads and half-built installations
    .manifest-cache/           cached copy of the build manifest
    <version>/
        <package file>
        .engine-install.json   sidecar with signature and timestamps

An installation directory only ever appears under its final name through a
single rename of a fully written staging directory, so a directory named after
a version is always complete. Anything else found at startup is swept away.
"""

import json
import logging
import os
import shutil
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from engine_cache.exceptions import EngineIOError, NotFoundError
from engine_cache.models.installation import EngineInstallation
from engine_cache.utils.path import create_dir, validate_version_name

log = logging.getLogger(__name__)

SIDECAR_NAME = ".engine-install.json"
STAGING_DIR_NAME = ".staging"
MANIFEST_CACHE_DIR_NAME = ".manifest-cache"
TRASH_PREFIX = ".trash-"


class LocalStore:
    """
    Authoritative index of installed engine versions, backed by the filesystem.

    All methods are synchronous and thread-safe; async callers are expected to
    run the ones that touch the disk heavily through ``asyncio.to_thread``.
    """

    def __init__(self, root: Path, clock: Callable[[], float] = time.time):
        self.root = root
        self.staging_dir = root / STAGING_DIR_NAME
        self.manifest_cache_dir = root / MANIFEST_CACHE_DIR_NAME
        self._clock = clock
        self._index: dict[str, EngineInstallation] = {}
        self._lock = threading.RLock()
        self._scan()

    # --- Queries ---

    def has(self, version: str) -> bool:
        with self._lock:
            return version in self._index

    def get(self, version: str) -> EngineInstallation:
        """
        Returns a copy of the installation record for a version.

        Raises:
            NotFoundError: If the version is not installed.
        """
        with self._lock:
            installation = self._index.get(version)
            if installation is None:
                raise NotFoundError(f"Engine version '{version}' is not installed.")
            return replace(installation)

    def get_path(self, version: str) -> Path:
        return self.get(version).install_path

    def get_signature(self, version: str) -> str:
        return self.get(version).signature

    def installations(self) -> list[EngineInstallation]:
        """Returns copies of all installations, least recently used first."""
        with self._lock:
            records = [replace(i) for i in self._index.values()]
        return sorted(records, key=lambda i: (i.last_used_at, i.version))

    def versions(self) -> set[str]:
        with self._lock:
            return set(self._index)

    def total_size_bytes(self) -> int:
        with self._lock:
            return sum(i.size_bytes for i in self._index.values())

    # --- Mutations ---

    def new_temp_path(self, version: str) -> Path:
        """
        Allocates a unique temporary file path for downloading a version.

        Temp files live on the same filesystem as the store so they can be
        renamed into place.
        """
        try:
            create_dir(self.staging_dir)
        except OSError as e:
            raise EngineIOError(f"Could not create staging directory: {e}") from e
        return self.staging_dir / f"{version}-{uuid.uuid4().hex}.part"

    def commit(
        self,
        version: str,
        temp_path: Path,
        signature: str,
        package_file: str | None = None,
    ) -> EngineInstallation:
        """
        Moves a verified download into the store and records the installation.

        The package is placed in a fresh staging directory together with its
        sidecar, and the directory is then renamed into its final slot. The
        index is only updated after that rename succeeded.

        Raises:
            EngineIOError: If any filesystem step fails. Nothing is left behind.
        """
        validate_version_name(version)
        package_file = package_file or f"engine_{version}.zip"
        staging = self.staging_dir / f"{version}-{uuid.uuid4().hex}"
        final_dir = self.root / version

        try:
            staging.mkdir(parents=True)
            size_bytes = temp_path.stat().st_size
            os.replace(temp_path, staging / package_file)

            now = self._clock()
            installation = EngineInstallation(
                version=version,
                install_path=final_dir,
                signature=signature,
                package_file=package_file,
                installed_at=now,
                last_used_at=now,
                size_bytes=size_bytes,
            )
            _write_sidecar(staging, installation)

            with self._lock:
                self._activate(staging, final_dir)
                self._index[version] = installation
        except OSError as e:
            _delete_tree(staging)
            _delete_file(temp_path)
            raise EngineIOError(
                f"Could not install engine version '{version}': {e}"
            ) from e

        log.info(f"[green]✓ Installed engine version '{version}'.[/green]")
        return replace(installation)

    def touch(self, version: str) -> None:
        """
        Marks a version as just used.

        Failure to persist the new timestamp is logged, the in-memory value
        still moves forward.

        Raises:
            NotFoundError: If the version is not installed.
        """
        with self._lock:
            installation = self._index.get(version)
            if installation is None:
                raise NotFoundError(f"Engine version '{version}' is not installed.")
            installation.last_used_at = self._clock()
            try:
                _write_sidecar(installation.install_path, installation)
            except OSError as e:
                log.warning(f"Could not record last use of '{version}': {e}")

    def remove(self, version: str) -> bool:
        """
        Deletes an installation. Does nothing if the version is not installed.

        The directory is renamed out of the way before it is deleted, so a
        failed deletion never leaves a half-removed installation visible.

        Returns:
            True if an installation was removed.

        Raises:
            EngineIOError: If the installation could not be moved aside.
        """
        with self._lock:
            installation = self._index.get(version)
            if installation is None:
                return False
            trash = self.root / f"{TRASH_PREFIX}{version}-{uuid.uuid4().hex}"
            try:
                os.rename(installation.install_path, trash)
            except FileNotFoundError:
                log.warning(
                    f"Installation directory for '{version}' vanished; "
                    "dropping the stale record."
                )
                trash = None
            except OSError as e:
                raise EngineIOError(
                    f"Could not remove engine version '{version}': {e}"
                ) from e
            del self._index[version]

        if trash is not None:
            _delete_tree(trash)
        log.info(f"Removed engine version '{version}'.")
        return True

    def remove_all(self) -> list[str]:
        """
        Deletes every installation.

        Returns:
            The versions that were removed.

        Raises:
            EngineIOError: If one or more installations could not be removed.
            The others are still removed.
        """
        removed: list[str] = []
        failures: list[str] = []
        for version in sorted(self.versions()):
            try:
                if self.remove(version):
                    removed.append(version)
            except EngineIOError as e:
                log.error(f"[red]✗ {e}[/red]")
                failures.append(version)
        if failures:
            raise EngineIOError(
                f"Could not remove engine versions: {', '.join(failures)}."
            )
        return removed

    # --- Internals ---

    def _activate(self, staged_dir: Path, final_dir: Path) -> None:
        """Renames a staged installation into its final slot, replacing any leftover."""
        backup_dir: Path | None = None
        if final_dir.exists():
            backup_dir = self.root / f"{TRASH_PREFIX}{final_dir.name}-{uuid.uuid4().hex}"
            os.rename(final_dir, backup_dir)

        try:
            os.rename(staged_dir, final_dir)
        except OSError:
            if backup_dir is not None and not final_dir.exists():
                try:
                    os.rename(backup_dir, final_dir)
                except OSError as restore_error:
                    log.error(
                        "Failed to restore previous installation after rename "
                        f"error: {restore_error}"
                    )
            raise

        if backup_dir is not None:
            _delete_tree(backup_dir)

    def _scan(self) -> None:
        """Rebuilds the index from disk and sweeps away incomplete leftovers."""
        try:
            create_dir(self.root)
        except OSError as e:
            raise EngineIOError(f"Could not create engine store '{self.root}': {e}") from e

        _delete_tree(self.staging_dir)

        for entry in self.root.iterdir():
            name = entry.name
            if name.startswith(TRASH_PREFIX):
                _delete_tree(entry)
                continue
            if name.startswith(".") or not entry.is_dir():
                continue

            if not _has_sidecar(entry):
                log.warning(
                    f"[yellow]Ignoring '{name}' in the engine store: it is not an "
                    "engine installation.[/yellow]"
                )
                continue

            installation = load_installation(entry)
            if installation is None:
                log.warning(
                    f"[yellow]Removing incomplete engine installation "
                    f"'{name}'.[/yellow]"
                )
                _delete_tree(entry)
                continue
            self._index[installation.version] = installation

        log.debug(f"Engine store at '{self.root}' has {len(self._index)} installations.")


def _has_sidecar(install_dir: Path) -> bool:
    return (install_dir / SIDECAR_NAME).exists() or (
        install_dir / f"{SIDECAR_NAME}.tmp"
    ).exists()


def load_installation(install_dir: Path) -> EngineInstallation | None:
    """Loads an installation from its sidecar, or returns None if it is unusable."""
    try:
        with open(install_dir / SIDECAR_NAME, encoding="utf-8") as f:
            installation = EngineInstallation.from_record(install_dir, json.load(f))
    except (OSError, ValueError, KeyError, TypeError) as e:
        log.debug(f"Unreadable install record in '{install_dir}': {e}")
        return None

    if installation.version != install_dir.name:
        log.debug(
            f"Install record in '{install_dir}' names version "
            f"'{installation.version}'."
        )
        return None
    if not installation.package_path.is_file():
        log.debug(f"Package file missing from '{install_dir}'.")
        return None
    return installation


def _write_sidecar(install_dir: Path, installation: EngineInstallation) -> None:
    """Writes the sidecar atomically via a temporary file and os.replace."""
    sidecar = install_dir / SIDECAR_NAME
    tmp = install_dir / f"{SIDECAR_NAME}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(installation.to_record(), f, indent=2)
    os.replace(tmp, sidecar)


def _delete_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        log.warning(f"Could not delete '{path}': {e}")


def _delete_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning(f"Could not delete '{path}': {e}")
