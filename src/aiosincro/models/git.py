"""Version-store models."""

from __future__ import annotations

from pydantic import BaseModel


class CommitLogEntry(BaseModel):
    """A single commit in a deployment branch's history."""

    hash: str
    message: str
    date: str
    tag: str | None = None
