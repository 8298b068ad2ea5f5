"""Row store for managed files, deployments and tags.

Rows are pydantic models kept in one JSON document.  Every mutation rewrites
the document atomically (temp file + ``os.replace``), so a crash never leaves
a half-written file behind.  ``MetadataStore(None)`` keeps everything in
memory, which is what the tests use.

Tag links are stored separately from the rows and attached on read; returned
models are copies, so mutating them never changes the store.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConflictError, FileError, NotFoundError
from .models.deployments import Deployment
from .models.files import ManagedFile, Tag, utcnow

logger = logging.getLogger(__name__)


class _Document(BaseModel):
    files: dict[str, ManagedFile] = Field(default_factory=dict)
    deployments: dict[str, Deployment] = Field(default_factory=dict)
    tags: dict[str, Tag] = Field(default_factory=dict)
    file_tags: dict[str, list[str]] = Field(default_factory=dict)
    deployment_tags: dict[str, list[str]] = Field(default_factory=dict)


def new_id() -> str:
    return str(uuid.uuid4())


class MetadataStore:
    """Thread-safe CRUD over the metadata document."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._doc = _Document()
        if path is not None and path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        assert self.path is not None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._doc = _Document.model_validate(data)
        except (OSError, ValueError, ValidationError) as exc:
            raise FileError(f"Invalid metadata file {self.path}: {exc}") from exc
        logger.debug(
            "Loaded metadata: %d file(s), %d deployment(s)",
            len(self._doc.files),
            len(self._doc.deployments),
        )

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(self._doc.model_dump(mode="json"), indent=2),
            encoding="utf-8",
        )
        os.replace(tmp_path, self.path)

    def _tags_for(self, tag_ids: list[str]) -> list[Tag]:
        return [self._doc.tags[t].model_copy() for t in tag_ids if t in self._doc.tags]

    @staticmethod
    def _updated(model: Any, changes: dict[str, Any]) -> Any:
        return type(model).model_validate({**model.model_dump(), **changes})

    # ------------------------------------------------------------------
    # Managed files
    # ------------------------------------------------------------------

    def _file_view(self, row: ManagedFile) -> ManagedFile:
        view = row.model_copy(deep=True)
        view.tags = self._tags_for(self._doc.file_tags.get(row.id, []))
        return view

    def insert_file(self, file: ManagedFile) -> ManagedFile:
        with self._lock:
            if file.id in self._doc.files:
                raise ConflictError(f"File already exists: {file.id}")
            self._doc.files[file.id] = file.model_copy(update={"tags": []}, deep=True)
            self._save()
            return self._file_view(self._doc.files[file.id])

    def get_file(self, file_id: str) -> ManagedFile:
        with self._lock:
            row = self._doc.files.get(file_id)
            if row is None:
                raise NotFoundError(f"File not found: {file_id}")
            return self._file_view(row)

    def list_files(self) -> list[ManagedFile]:
        """All managed files, most recently updated first."""
        with self._lock:
            rows = sorted(self._doc.files.values(), key=lambda f: f.updated_at, reverse=True)
            return [self._file_view(row) for row in rows]

    def update_file(self, file_id: str, **changes: Any) -> ManagedFile:
        with self._lock:
            row = self._doc.files.get(file_id)
            if row is None:
                raise NotFoundError(f"File not found: {file_id}")
            changes.setdefault("updated_at", utcnow())
            self._doc.files[file_id] = self._updated(row, changes)
            self._save()
            return self._file_view(self._doc.files[file_id])

    def delete_file(self, file_id: str) -> list[Deployment]:
        """Delete a file row and cascade to its deployments and tag links.

        Returns the deployments that were removed.
        """
        with self._lock:
            if file_id not in self._doc.files:
                raise NotFoundError(f"File not found: {file_id}")
            removed = [d for d in self._doc.deployments.values() if d.file_id == file_id]
            for deployment in removed:
                del self._doc.deployments[deployment.id]
                self._doc.deployment_tags.pop(deployment.id, None)
            del self._doc.files[file_id]
            self._doc.file_tags.pop(file_id, None)
            self._save()
            return removed

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def _deployment_view(self, row: Deployment) -> Deployment:
        view = row.model_copy(deep=True)
        view.tags = self._tags_for(self._doc.deployment_tags.get(row.id, []))
        return view

    def insert_deployment(self, deployment: Deployment) -> Deployment:
        with self._lock:
            if deployment.file_id not in self._doc.files:
                raise NotFoundError(f"File not found: {deployment.file_id}")
            if deployment.id in self._doc.deployments:
                raise ConflictError(f"Deployment already exists: {deployment.id}")
            self._doc.deployments[deployment.id] = deployment.model_copy(
                update={"tags": []}, deep=True
            )
            self._save()
            return self._deployment_view(self._doc.deployments[deployment.id])

    def get_deployment(self, deployment_id: str) -> Deployment:
        with self._lock:
            row = self._doc.deployments.get(deployment_id)
            if row is None:
                raise NotFoundError(f"Deployment not found: {deployment_id}")
            return self._deployment_view(row)

    def list_deployments(
        self,
        *,
        file_id: str | None = None,
        active: bool | None = None,
    ) -> list[Deployment]:
        """Deployments, newest first, optionally filtered by file and state."""
        with self._lock:
            rows = [
                d
                for d in self._doc.deployments.values()
                if (file_id is None or d.file_id == file_id)
                and (active is None or d.is_active == active)
            ]
            rows.sort(key=lambda d: d.created_at, reverse=True)
            return [self._deployment_view(row) for row in rows]

    def update_deployment(self, deployment_id: str, **changes: Any) -> Deployment:
        with self._lock:
            row = self._doc.deployments.get(deployment_id)
            if row is None:
                raise NotFoundError(f"Deployment not found: {deployment_id}")
            self._doc.deployments[deployment_id] = self._updated(row, changes)
            self._save()
            return self._deployment_view(self._doc.deployments[deployment_id])

    def delete_deployment(self, deployment_id: str) -> None:
        with self._lock:
            if self._doc.deployments.pop(deployment_id, None) is None:
                raise NotFoundError(f"Deployment not found: {deployment_id}")
            self._doc.deployment_tags.pop(deployment_id, None)
            self._save()

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def list_tags(self) -> list[Tag]:
        """All tags by name, each with the number of files carrying it."""
        with self._lock:
            counts: dict[str, int] = {}
            for tag_ids in self._doc.file_tags.values():
                for tag_id in tag_ids:
                    counts[tag_id] = counts.get(tag_id, 0) + 1
            return [
                tag.model_copy(update={"file_count": counts.get(tag.id, 0)})
                for tag in sorted(self._doc.tags.values(), key=lambda t: t.name.lower())
            ]

    def create_tag(self, name: str, color: str) -> Tag:
        with self._lock:
            if any(t.name == name for t in self._doc.tags.values()):
                raise ConflictError(f"Tag already exists: {name}")
            tag = Tag(id=new_id(), name=name, color=color)
            self._doc.tags[tag.id] = tag
            self._save()
            return tag.model_copy()

    def delete_tag(self, tag_id: str) -> None:
        with self._lock:
            if self._doc.tags.pop(tag_id, None) is None:
                raise NotFoundError(f"Tag not found: {tag_id}")
            for links in (self._doc.file_tags, self._doc.deployment_tags):
                for owner, tag_ids in links.items():
                    links[owner] = [t for t in tag_ids if t != tag_id]
            self._save()

    def _check_tags(self, tag_ids: list[str]) -> list[str]:
        unknown = [t for t in tag_ids if t not in self._doc.tags]
        if unknown:
            raise NotFoundError(f"Tag not found: {', '.join(unknown)}")
        return list(dict.fromkeys(tag_ids))

    def get_file_tags(self, file_id: str) -> list[Tag]:
        return self.get_file(file_id).tags

    def set_file_tags(self, file_id: str, tag_ids: list[str]) -> list[Tag]:
        with self._lock:
            if file_id not in self._doc.files:
                raise NotFoundError(f"File not found: {file_id}")
            self._doc.file_tags[file_id] = self._check_tags(tag_ids)
            self._save()
            return self._tags_for(self._doc.file_tags[file_id])

    def get_deployment_tags(self, deployment_id: str) -> list[Tag]:
        return self.get_deployment(deployment_id).tags

    def set_deployment_tags(self, deployment_id: str, tag_ids: list[str]) -> list[Tag]:
        with self._lock:
            if deployment_id not in self._doc.deployments:
                raise NotFoundError(f"Deployment not found: {deployment_id}")
            self._doc.deployment_tags[deployment_id] = self._check_tags(tag_ids)
            self._save()
            return self._tags_for(self._doc.deployment_tags[deployment_id])
