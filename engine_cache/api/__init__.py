"""
Remote Build Repository Layer.

This package handles all communication with the build repository: the HTTP
transport capability and the manifest resolver built on top of it.
"""

from .manifest import ManifestResolver
from .transport import AiohttpTransport, HttpTransport, StreamResponse

__all__ = ["AiohttpTransport", "HttpTransport", "ManifestResolver", "StreamResponse"]
