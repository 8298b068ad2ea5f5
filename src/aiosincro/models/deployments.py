"""Deployment models."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from .files import Tag, utcnow


class Deployment(BaseModel):
    """One materialised placement of a managed file inside an external repo."""

    id: str
    file_id: str
    repo_path: str
    file_relative_path: str
    branch_name: str
    is_active: bool = True
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    current_commit_hash: str | None = None
    description: str | None = None
    suspended_exclusions: list[str] = Field(default_factory=list)
    tags: list[Tag] = Field(default_factory=list)

    @property
    def target_path(self) -> Path:
        """Absolute location the managed content is materialised at."""
        return Path(self.repo_path) / self.file_relative_path


class PendingChangesCount(BaseModel):
    """Aggregate drift across all active deployments."""

    count: int = 0
    file_ids: list[str] = Field(default_factory=list)


class DeploymentStats(BaseModel):
    """Dashboard counters."""

    active_deployments: int = 0
    total_deployments: int = 0
    pending_changes: int = 0
    file_ids_with_changes: list[str] = Field(default_factory=list)


class WatchEvent(BaseModel):
    """Filesystem notification for a watched deployment."""

    deployment_id: str
    kind: Literal["changed", "deleted"]


class DriftEvent(WatchEvent):
    """A watch event after it has been run through the drift probe."""

    has_changes: bool = False
