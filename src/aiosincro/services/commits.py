"""Commits, history and diffs scoped to one deployment's branch."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiofiles

from ..exceptions import ConflictError, StoreError
from ..files.manager import FileService
from ..git.mirror import (
    CONTENT_ENTRY,
    mirror_to_store,
    overlay_deployment,
    store_entries,
    write_entry,
)
from ..git.store import VersionStore, check_tag_name
from ..metadata import MetadataStore
from ..models.deployments import Deployment
from ..models.files import DeployedFile, FileKind, ManagedFile, utcnow
from ..models.git import CommitLogEntry

logger = logging.getLogger(__name__)

UNREADABLE = "[Could not read file]"
NOT_FOUND = "[File not found]"


class CommitService:
    """Record and inspect history of deployments."""

    def __init__(self, files: FileService) -> None:
        self.files = files

    @property
    def store(self) -> VersionStore:
        return self.files.store

    @property
    def metadata(self) -> MetadataStore:
        return self.files.metadata

    def _context(self, deployment_id: str) -> tuple[Deployment, ManagedFile, Path]:
        deployment = self.metadata.get_deployment(deployment_id)
        file = self.metadata.get_file(deployment.file_id)
        return deployment, file, self.files.store_path(file.id)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit_sync(
        self,
        store_path: Path,
        branch: str,
        kind: FileKind,
        target: Path,
        message: str,
        tag_name: str | None,
    ) -> str:
        if tag_name is not None:
            check_tag_name(tag_name)
            if self.store.tag_exists(store_path, tag_name):
                raise ConflictError(f"Tag already exists: {tag_name}")

        self.store.checkout(store_path, branch)
        tracked = self.store.list_tracked_paths(store_path)
        mirror_to_store(store_path, target, kind, tracked)
        sha = self.store.commit_all(store_path, message)
        if tag_name is not None:
            self.store.tag(store_path, tag_name)
        return sha

    async def create_commit(
        self,
        deployment_id: str,
        message: str,
        tag: str | None = None,
    ) -> Deployment:
        """Capture the deployed content as a new commit on the deployment's branch.

        Raises :class:`NoChangesError` when nothing differs from the last
        commit; the deployment row is left untouched in that case.  *tag* is
        stored as ``<branch>/<tag>``.
        """
        message = message.strip()
        if not message:
            raise StoreError("Commit message must not be empty")

        deployment, file, store_path = self._context(deployment_id)
        tag_name = f"{deployment.branch_name}/{tag.strip()}" if tag and tag.strip() else None

        sha = await self.store.run_exclusive(
            store_path,
            self._commit_sync,
            store_path,
            deployment.branch_name,
            file.kind,
            deployment.target_path,
            message,
            tag_name,
        )
        await asyncio.to_thread(self.metadata.update_file, file.id)
        return await asyncio.to_thread(
            self.metadata.update_deployment,
            deployment_id,
            current_commit_hash=sha,
            last_synced_at=utcnow(),
        )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _restore_sync(
        self,
        store_path: Path,
        branch: str,
        kind: FileKind,
        target: Path,
        commit_hash: str,
    ) -> str:
        self.store.checkout(store_path, branch)
        sha = self.store.rev_parse(store_path, commit_hash)
        paths = store_entries(kind, self.store.list_tracked_paths(store_path, sha))
        for rel_path in paths:
            data = self.store.read_blob(store_path, sha, rel_path)
            write_entry(store_path, rel_path, data)
            if kind == FileKind.SINGLE:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
            else:
                write_entry(target, rel_path, data)
        return sha

    async def checkout_to_commit(self, deployment_id: str, commit_hash: str) -> Deployment:
        """Restore the deployed content as of *commit_hash*.

        The branch does not move; only the deployed copy and the store
        working copy are overwritten.
        """
        deployment, file, store_path = self._context(deployment_id)
        sha = await self.store.run_exclusive(
            store_path,
            self._restore_sync,
            store_path,
            deployment.branch_name,
            file.kind,
            deployment.target_path,
            commit_hash,
        )
        logger.info("Restored deployment %s to %s", deployment_id, sha[:8])
        return await asyncio.to_thread(
            self.metadata.update_deployment, deployment_id, current_commit_hash=sha
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def list_commits(self, deployment_id: str) -> list[CommitLogEntry]:
        deployment, _file, store_path = self._context(deployment_id)
        return await self.store.run_exclusive(
            store_path, self.store.log, store_path, deployment.branch_name
        )

    async def get_diff(
        self,
        deployment_id: str,
        hash1: str,
        hash2: str | None = None,
    ) -> str:
        """Diff between two commits, or between *hash1* and its parent."""
        _deployment, file, store_path = self._context(deployment_id)
        path_filter = [CONTENT_ENTRY] if file.kind == FileKind.SINGLE else None
        return await self.store.run_exclusive(
            store_path, self.store.diff, store_path, hash1, hash2, path_filter
        )

    def _diff_working_sync(
        self,
        store_path: Path,
        branch: str,
        kind: FileKind,
        target: Path,
    ) -> str:
        path_filter = [CONTENT_ENTRY] if kind == FileKind.SINGLE else None
        with self.store.on_branch(store_path, branch):
            tracked = self.store.list_tracked_paths(store_path)
            with overlay_deployment(store_path, target, kind, tracked):
                return self.store.diff_working_tree(store_path, path_filter)

    async def get_diff_working(self, deployment_id: str) -> str:
        """Diff from the branch's last commit to what is deployed right now.

        The store is left exactly as it was found.  A missing deployed file
        (or bundle directory) gives an empty diff.
        """
        deployment, file, store_path = self._context(deployment_id)
        target = deployment.target_path
        if file.kind == FileKind.SINGLE and not target.is_file():
            return ""
        if file.kind == FileKind.BUNDLE and not target.is_dir():
            return ""

        return await self.store.run_exclusive(
            store_path,
            self._diff_working_sync,
            store_path,
            deployment.branch_name,
            file.kind,
            deployment.target_path,
        )

    def _files_at_sync(
        self,
        store_path: Path,
        kind: FileKind,
        revision: str,
        relative_path: str,
    ) -> list[DeployedFile]:
        if kind == FileKind.SINGLE:
            data = self.store.read_blob(store_path, revision, CONTENT_ENTRY)
            content = data.decode("utf-8", errors="replace")
            return [DeployedFile(path=relative_path, content=content)]

        files: list[DeployedFile] = []
        for rel_path in self.store.list_tracked_paths(store_path, revision):
            try:
                data = self.store.read_blob(store_path, revision, rel_path)
                content = data.decode("utf-8", errors="replace")
            except StoreError:
                content = UNREADABLE
            files.append(DeployedFile(path=rel_path, content=content))
        return files

    async def get_files_at_commit(self, deployment_id: str, commit_hash: str) -> list[DeployedFile]:
        """Every file of the deployment as of *commit_hash*."""
        deployment, file, store_path = self._context(deployment_id)
        return await self.store.run_exclusive(
            store_path,
            self._files_at_sync,
            store_path,
            file.kind,
            commit_hash,
            deployment.file_relative_path,
        )

    async def get_file_at_commit(self, deployment_id: str, commit_hash: str) -> str:
        """Content at *commit_hash*; bundles render one ``=== path ===`` block per file."""
        _deployment, file, _store_path = self._context(deployment_id)
        files = await self.get_files_at_commit(deployment_id, commit_hash)
        if file.kind == FileKind.SINGLE:
            return files[0].content
        return "\n\n".join(f"=== {f.path} ===\n{f.content}" for f in files)

    async def get_current_files(self, deployment_id: str) -> list[DeployedFile]:
        """What is deployed right now, read from the external location."""
        deployment, file, store_path = self._context(deployment_id)
        target = deployment.target_path
        if file.kind == FileKind.SINGLE:
            content = await _read_text(target)
            return [DeployedFile(path=deployment.file_relative_path, content=content)]

        tracked = await self.store.run_exclusive(
            store_path,
            self.store.list_tracked_paths,
            store_path,
            deployment.branch_name,
        )
        return [
            DeployedFile(path=rel_path, content=await _read_text(target / rel_path))
            for rel_path in tracked
        ]


async def _read_text(path: Path) -> str:
    if not path.is_file():
        return NOT_FOUND
    try:
        async with aiofiles.open(path, encoding="utf-8", errors="replace") as fh:
            return await fh.read()
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return UNREADABLE
