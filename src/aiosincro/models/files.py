"""Managed-file and tag models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class FileKind(StrEnum):
    """Shape of a managed file's version store."""

    SINGLE = "file"
    BUNDLE = "bundle"


class Tag(BaseModel):
    """A named, coloured label attached to files and deployments."""

    id: str
    name: str
    color: str
    created_at: datetime = Field(default_factory=utcnow)
    file_count: int | None = None


class ManagedFile(BaseModel):
    """A single file or multi-file bundle with its own version store."""

    id: str
    name: str
    alias: str
    kind: FileKind = FileKind.SINGLE
    use_auto_icon: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    tags: list[Tag] = Field(default_factory=list)

    @property
    def is_bundle(self) -> bool:
        return self.kind is FileKind.BUNDLE


class DeployedFile(BaseModel):
    """Path and decoded text of one file, as deployed or at a revision."""

    path: str
    content: str
