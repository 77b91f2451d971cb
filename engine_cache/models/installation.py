"""
Dataclass for a verified, on-disk engine installation and its sidecar record.
"""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

SIDECAR_FORMAT = 1


@dataclass
class EngineInstallation:
    """A fully verified engine version installed in the local store."""

    version: str
    install_path: Path
    signature: str
    package_file: str
    installed_at: float
    last_used_at: float
    size_bytes: int = 0

    @property
    def package_path(self) -> Path:
        return self.install_path / self.package_file

    def to_record(self) -> dict[str, Any]:
        """Serialises the installation for the sidecar file."""
        record = asdict(self)
        record.pop("install_path")
        record["format"] = SIDECAR_FORMAT
        return record

    @classmethod
    def from_record(cls, install_path: Path, record: dict[str, Any]) -> "EngineInstallation":
        """
        Rebuilds an installation from its sidecar record.

        Raises:
            KeyError, TypeError, ValueError: If the record is incomplete or malformed.
        """
        return cls(
            version=str(record["version"]),
            install_path=install_path,
            signature=str(record["signature"]),
            package_file=str(record["package_file"]),
            installed_at=float(record["installed_at"]),
            last_used_at=float(record.get("last_used_at", record["installed_at"])),
            size_bytes=int(record.get("size_bytes", 0)),
        )
