"""Server-side apply, garbage collection and health checks of owned resources."""

from .engine import ApplyEngine, ApplyResult
from .manager import Owner, ResourceManager
from .normalize import normalize_resources, set_common_metadata

__all__ = [
    "ApplyEngine",
    "ApplyResult",
    "Owner",
    "ResourceManager",
    "normalize_resources",
    "set_common_metadata",
]
