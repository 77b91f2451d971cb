"""
Models for the remote build manifest and the parser that turns any of the
supported manifest layouts into a flat mapping of version to ManifestEntry.
"""

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

log = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class ManifestEntry:
    """Download descriptor for a single engine version."""

    version: str
    download_url: str
    expected_signature: str
    size_bytes: int | None = None
    insecure: bool = False


class BuildRecord(BaseModel):
    """A single downloadable build, as written by the build repository."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    download_url: str = Field(
        validation_alias=AliasChoices("downloadUrl", "download_url", "url")
    )
    signature: str = Field(validation_alias=AliasChoices("signature", "sha256", "hash"))
    size_bytes: int | None = Field(
        default=None, validation_alias=AliasChoices("size", "sizeBytes", "size_bytes")
    )


class VersionRecord(BaseModel):
    """A published version, either a single build or one build per platform."""

    model_config = ConfigDict(extra="ignore")

    insecure: bool = False
    platforms: dict[str, BuildRecord] | None = None


class ManifestFormatError(ValueError):
    """Raised when a manifest document has no recognisable layout."""


def parse_manifest(document: Any, platform: str) -> dict[str, ManifestEntry]:
    """
    Parses a manifest document into a mapping of version to ManifestEntry.

    Versions without a build for ``platform`` are left out, as are records that
    fail validation (logged at debug level).

    Raises:
        ManifestFormatError: If the document layout is not recognised.
    """
    if isinstance(document, dict) and ("engines" in document or "versions" in document):
        schema_version = document.get("schemaVersion", SUPPORTED_SCHEMA_VERSION)
        if isinstance(schema_version, int) and schema_version > SUPPORTED_SCHEMA_VERSION:
            log.warning(
                f"[yellow]Manifest schema version {schema_version} is newer than "
                f"supported ({SUPPORTED_SCHEMA_VERSION}); parsing best-effort.[/yellow]"
            )
        body = document.get("engines", document.get("versions"))
    else:
        body = document

    if isinstance(body, dict):
        records = body.items()
    elif isinstance(body, list):
        records = []
        for item in body:
            if isinstance(item, dict) and isinstance(item.get("version"), str):
                records.append((item["version"], item))
            else:
                log.debug(f"Skipping manifest record without a version: {item!r}")
    else:
        raise ManifestFormatError(
            f"Unsupported manifest layout: expected an object or array, got "
            f"{type(body).__name__}."
        )

    entries: dict[str, ManifestEntry] = {}
    for version, raw in records:
        entry = _parse_version(str(version), raw, platform)
        if entry is not None:
            entries[entry.version] = entry
    return entries


def _parse_version(version: str, raw: Any, platform: str) -> ManifestEntry | None:
    """Parses a single version record, selecting the platform build if needed."""
    if not isinstance(raw, dict):
        log.debug(f"Skipping malformed manifest record for '{version}'.")
        return None

    try:
        record = VersionRecord.model_validate(raw)
        if record.platforms is not None:
            build = record.platforms.get(platform)
            if build is None:
                log.debug(f"Version '{version}' has no build for platform '{platform}'.")
                return None
        else:
            build = BuildRecord.model_validate(raw)
    except ValidationError as e:
        log.debug(f"Skipping invalid manifest record for '{version}': {e}")
        return None

    return ManifestEntry(
        version=version,
        download_url=build.download_url,
        expected_signature=build.signature.lower(),
        size_bytes=build.size_bytes,
        insecure=record.insecure,
    )
