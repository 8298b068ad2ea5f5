"""Version stores with dulwich (no git binary required)."""

from .exclude import ExcludeService
from .locks import StoreLocks
from .mirror import (
    CONTENT_ENTRY,
    exclusion_paths,
    mirror_to_deployment,
    mirror_to_store,
    overlay_deployment,
)
from .store import VersionStore

__all__ = [
    "CONTENT_ENTRY",
    "ExcludeService",
    "StoreLocks",
    "VersionStore",
    "exclusion_paths",
    "mirror_to_deployment",
    "mirror_to_store",
    "overlay_deployment",
]
