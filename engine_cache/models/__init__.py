"""
Data Models Layer.

This package contains the Pydantic models and dataclasses that define the core
data structures: configuration, the retention policy, manifest entries,
installations and transfer progress.
"""

from .config import CullPolicy, EngineCacheConfig
from .installation import EngineInstallation
from .manifest import ManifestEntry
from .progress import ProgressCallback, ProgressThrottle, TransferProgress

__all__ = [
    "CullPolicy",
    "EngineCacheConfig",
    "EngineInstallation",
    "ManifestEntry",
    "ProgressCallback",
    "ProgressThrottle",
    "TransferProgress",
]
