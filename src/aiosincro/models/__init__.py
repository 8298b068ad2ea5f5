"""Pydantic models for aiosincro."""

from .common import SincroResponse
from .deployments import (
    Deployment,
    DeploymentStats,
    DriftEvent,
    PendingChangesCount,
    WatchEvent,
)
from .files import DeployedFile, FileKind, ManagedFile, Tag
from .git import CommitLogEntry

__all__ = [
    "CommitLogEntry",
    "DeployedFile",
    "Deployment",
    "DeploymentStats",
    "DriftEvent",
    "FileKind",
    "ManagedFile",
    "PendingChangesCount",
    "SincroResponse",
    "Tag",
    "WatchEvent",
]
