"""
Pydantic models for application configuration and the culling retention policy.
Provides robust validation for all settings.
"""

import platform
from datetime import timedelta

from pydantic import BaseModel, Field, field_validator

DEFAULT_MANIFEST_URL = "https://central.spacestation14.io/builds/robust/manifest.json"

# Maps (system, machine) to the runtime identifiers used by build manifests
PLATFORM_MAP = {
    ("windows", "amd64"): "win-x64",
    ("windows", "x86_64"): "win-x64",
    ("windows", "x86"): "win-x86",
    ("windows", "arm64"): "win-arm64",
    ("linux", "x86_64"): "linux-x64",
    ("linux", "amd64"): "linux-x64",
    ("linux", "aarch64"): "linux-arm64",
    ("linux", "arm64"): "linux-arm64",
    ("darwin", "x86_64"): "osx-x64",
    ("darwin", "arm64"): "osx-arm64",
}


def detect_platform() -> str:
    """Returns the runtime identifier for the current machine (e.g. 'linux-x64')."""
    key = (platform.system().lower(), platform.machine().lower())
    return PLATFORM_MAP.get(key, f"{key[0]}-{key[1]}")


class CullPolicy(BaseModel):
    """
    Retention policy applied by the culler. A limit of None disables that limit.
    """

    max_installations: int | None = None
    max_age: timedelta | None = None

    @field_validator("max_installations")
    @classmethod
    def validate_max_installations(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("max_installations cannot be negative.")
        return v

    @field_validator("max_age")
    @classmethod
    def validate_max_age(cls, v: timedelta | None) -> timedelta | None:
        if v is not None and v <= timedelta(0):
            raise ValueError("max_age must be a positive duration.")
        return v

    @property
    def is_unbounded(self) -> bool:
        """True when neither limit is set, so culling never removes anything."""
        return self.max_installations is None and self.max_age is None


class EngineCacheConfig(BaseModel):
    """A validated configuration model for the engine cache."""

    # Remote build repository
    manifest_url: str = DEFAULT_MANIFEST_URL
    platform: str = Field(default_factory=detect_platform)
    manifest_ttl_seconds: int = 300

    # Local store
    engines_dir: str

    # Retention
    max_installations: int | None = 5
    max_age_days: float | None = 30
    cull_interval_minutes: float = 60

    # Transfer
    download_attempts: int = 3
    max_connections: int = 4
    progress_interval_seconds: float = 0.25

    # Internal fields not loaded from INI file
    config_path: str = Field(default="", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("manifest_url")
    @classmethod
    def validate_manifest_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("manifest_url must be an http:// or https:// URL.")
        return v

    @field_validator("engines_dir", "platform")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Value cannot be empty.")
        return v

    @field_validator("manifest_ttl_seconds")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        if v < 0:
            raise ValueError("manifest_ttl_seconds cannot be negative.")
        return v

    @field_validator("download_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("download_attempts must be between 1 and 10.")
        return v

    @field_validator("max_connections")
    @classmethod
    def validate_connections(cls, v: int) -> int:
        """Ensures a reasonable connection pool size."""
        if v < 1 or v > 32:
            raise ValueError("max_connections must be between 1 and 32.")
        return v

    @field_validator("cull_interval_minutes")
    @classmethod
    def validate_cull_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("cull_interval_minutes must be positive.")
        return v

    @field_validator("progress_interval_seconds")
    @classmethod
    def validate_progress_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError("progress_interval_seconds cannot be negative.")
        return v

    @field_validator("max_installations")
    @classmethod
    def validate_max_installations(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("max_installations cannot be negative.")
        return v

    @field_validator("max_age_days")
    @classmethod
    def validate_max_age_days(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("max_age_days must be positive.")
        return v

    def cull_policy(self) -> CullPolicy:
        """Builds the culling policy described by this configuration."""
        max_age = (
            timedelta(days=self.max_age_days) if self.max_age_days is not None else None
        )
        return CullPolicy(max_installations=self.max_installations, max_age=max_age)

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
