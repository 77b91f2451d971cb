"""
Applies the retention policy to the local store.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Collection

from engine_cache.exceptions import EngineCacheError
from engine_cache.models.config import CullPolicy
from engine_cache.models.installation import EngineInstallation
from engine_cache.storage.store import LocalStore

from .locks import VersionLocks

log = logging.getLogger(__name__)


def select_for_removal(
    installations: list[EngineInstallation],
    pinned: Collection[str],
    policy: CullPolicy,
    now: float,
) -> list[str]:
    """
    Picks the versions the policy wants gone, least recently used first.

    Pinned versions are never candidates. Among the rest, anything unused for
    longer than ``max_age`` goes, then the oldest go until at most
    ``max_installations`` candidates remain.
    """
    candidates = sorted(
        (i for i in installations if i.version not in pinned),
        key=lambda i: (i.last_used_at, i.version),
    )
    max_age_seconds = (
        policy.max_age.total_seconds() if policy.max_age is not None else None
    )

    selected: list[str] = []
    remaining = len(candidates)
    for installation in candidates:
        too_old = (
            max_age_seconds is not None
            and now - installation.last_used_at > max_age_seconds
        )
        too_many = (
            policy.max_installations is not None
            and remaining > policy.max_installations
        )
        if too_old or too_many:
            selected.append(installation.version)
            remaining -= 1
    return selected


class Culler:
    """Removes installations that are neither pinned nor needed, best effort."""

    def __init__(
        self,
        store: LocalStore,
        locks: VersionLocks,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.locks = locks
        self._clock = clock

    async def cull_maybe(
        self,
        pinned: Collection[str],
        policy: CullPolicy,
        is_busy: Callable[[str], bool] | None = None,
    ) -> list[str]:
        """
        Removes installations according to ``policy``.

        Each removal happens under the version's lock, after re-checking that
        the version is still installed and not pinned or busy. A failure to
        remove one version is logged and does not stop the others.

        Returns:
            The versions that were removed, oldest first.
        """
        if policy.is_unbounded:
            return []

        installations = self.store.installations()
        last_used = {i.version: i.last_used_at for i in installations}
        victims = select_for_removal(installations, pinned, policy, self._clock())
        removed: list[str] = []
        for version in victims:
            async with self.locks.get(version):
                if version in pinned or (is_busy is not None and is_busy(version)):
                    log.debug(f"Skipping cull of '{version}': now in use.")
                    continue
                try:
                    current = self.store.get(version)
                except EngineCacheError:
                    continue
                if current.last_used_at != last_used[version]:
                    log.debug(f"Skipping cull of '{version}': used since selection.")
                    continue
                try:
                    if await asyncio.to_thread(self.store.remove, version):
                        removed.append(version)
                except (EngineCacheError, OSError) as e:
                    log.warning(f"[yellow]Could not cull '{version}': {e}[/yellow]")

        if removed:
            log.info(f"Culled {len(removed)} engine version(s): {', '.join(removed)}")
        return removed
