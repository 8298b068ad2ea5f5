"""aiosincro: async deployment of privately versioned files into git working trees."""

from ._version import __version__
from .api import SincroAPI
from .app import Sincro
from .config import SincroSettings, load_settings
from .exceptions import (
    ConflictError,
    FileError,
    MissingDeployedContentError,
    NoChangesError,
    NotAGitRepoError,
    NotFoundError,
    PathSecurityError,
    SincroError,
    StoreError,
    StoreUnavailableError,
)
from .files import FileService
from .git import ExcludeService, StoreLocks, VersionStore
from .metadata import MetadataStore
from .models import (
    CommitLogEntry,
    DeployedFile,
    Deployment,
    DeploymentStats,
    DriftEvent,
    FileKind,
    ManagedFile,
    PendingChangesCount,
    SincroResponse,
    Tag,
    WatchEvent,
)
from .services import CommitService, DeploymentService
from .watcher import WatcherService

__all__ = [
    "CommitLogEntry",
    "CommitService",
    "ConflictError",
    "DeployedFile",
    "Deployment",
    "DeploymentService",
    "DeploymentStats",
    "DriftEvent",
    "ExcludeService",
    "FileError",
    "FileKind",
    "FileService",
    "ManagedFile",
    "MetadataStore",
    "MissingDeployedContentError",
    "NoChangesError",
    "NotAGitRepoError",
    "NotFoundError",
    "PathSecurityError",
    "PendingChangesCount",
    "SincroAPI",
    "Sincro",
    "SincroError",
    "SincroResponse",
    "SincroSettings",
    "StoreError",
    "StoreLocks",
    "StoreUnavailableError",
    "Tag",
    "VersionStore",
    "WatchEvent",
    "WatcherService",
    "__version__",
    "load_settings",
]
