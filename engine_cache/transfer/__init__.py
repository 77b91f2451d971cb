"""
Transfer Layer.

This package is responsible for moving engine packages from the network to
disk: streaming downloads and integrity verification.
"""

from .downloader import Downloader
from .integrity import IntegrityVerifier

__all__ = ["Downloader", "IntegrityVerifier"]
