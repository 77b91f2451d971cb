"""
Provides content signature computation and verification for downloaded engine
packages.
"""

import asyncio
import hashlib
import hmac
import logging
from pathlib import Path

from engine_cache.exceptions import CorruptError, EngineIOError

log = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


def normalize_signature(signature: str) -> str:
    """Lower-cases a hex signature and strips whitespace and any 'sha256:' prefix."""
    normalized = signature.strip().lower()
    if normalized.startswith("sha256:"):
        normalized = normalized[len("sha256:") :]
    return normalized


class IntegrityVerifier:
    """Verifies packages against the SHA-256 signature published in the manifest."""

    def compute(self, file_path: Path) -> str:
        """
        Computes the SHA-256 signature of a file with streaming reads.

        Raises:
            EngineIOError: If the file cannot be read.
        """
        sha256 = hashlib.sha256()
        try:
            with open(file_path, "rb") as f:
                for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                    sha256.update(chunk)
        except OSError as e:
            raise EngineIOError(f"Could not read '{file_path}' for hashing: {e}") from e
        return sha256.hexdigest()

    async def verify(self, file_path: Path, expected_signature: str) -> str:
        """
        Checks a downloaded file against its expected signature.

        Hashing runs in a worker thread so large packages don't stall the loop.

        Returns:
            The computed signature.

        Raises:
            CorruptError: If the computed signature does not match.
        """
        actual = normalize_signature(await asyncio.to_thread(self.compute, file_path))
        expected = normalize_signature(expected_signature)
        if not hmac.compare_digest(actual.encode(), expected.encode()):
            log.warning(
                f"[yellow]Integrity check failed for '{file_path.name}': expected "
                f"{expected}, got {actual}.[/yellow]"
            )
            raise CorruptError(
                f"Signature mismatch for '{file_path.name}'.",
                expected=expected,
                actual=actual,
            )
        log.debug(f"Integrity check passed for '{file_path.name}'.")
        return actual
