"""
Defines custom exceptions for the engine cache to allow for more specific error
handling by callers.
"""


class EngineCacheError(Exception):
    """Base exception for all engine cache errors."""


class NotFoundError(EngineCacheError):
    """
    Raised when a version is absent from the manifest, or when a path or signature
    is requested for a version that is not installed.
    """


class InvalidVersionError(NotFoundError):
    """Raised when a version identifier cannot be used as an installation name."""


class NetworkError(EngineCacheError):
    """Raised when fetching the manifest or an engine package fails in transport."""

    def __init__(self, message: str, url: str = ""):
        self.url = url
        super().__init__(message)


class CorruptError(EngineCacheError):
    """Raised when a downloaded package does not match its expected signature."""

    def __init__(self, message: str, expected: str = "", actual: str = ""):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class EngineIOError(EngineCacheError):
    """Raised when a filesystem operation fails (disk full, permission denied)."""


class DownloadCancelledError(EngineCacheError):
    """Raised by the downloader when its cancellation token fires mid-transfer."""


class EngineInUseError(EngineCacheError):
    """Raised when clearing engines while a session still holds a pin."""


class ConfigurationError(EngineCacheError):
    """Raised for issues related to configuration loading or validation."""
