"""
Storage Layer.

This package handles all data persistence: the store of installed engines,
the configuration file, and the cached manifest document.
"""

from .cache import DocumentCache
from .config_manager import ConfigManager
from .store import LocalStore

__all__ = ["ConfigManager", "DocumentCache", "LocalStore"]
