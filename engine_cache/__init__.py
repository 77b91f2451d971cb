"""
engine-cache: an on-demand, verified, disk-resident cache of engine builds.
"""

__version__ = "1.0.0"

from engine_cache.core.cancellation import CancelToken  # noqa: E402
from engine_cache.core.engine_manager import (  # noqa: E402
    BundledEngineManager,
    CachingEngineManager,
    EngineManager,
    EngineState,
    build_engine_manager,
)

__all__ = [
    "BundledEngineManager",
    "CachingEngineManager",
    "CancelToken",
    "EngineManager",
    "EngineState",
    "__version__",
    "build_engine_manager",
]
