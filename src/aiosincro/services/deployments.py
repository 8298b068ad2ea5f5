"""Deployment lifecycle: create, probe, sync, (de)activate, delete.

A deployment is one placement of a managed file inside an external git
working tree.  It owns a branch in the file's version store, named from the
deployment id, and moves between two states::

    active  <->  inactive  ->  deleted

Only active deployments are watched, excluded and probed for drift.  Every
store access runs as one synchronous unit under the store's lock; the
metadata row is written only after the store-side work succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from ..exceptions import (
    ConflictError,
    FileError,
    NoChangesError,
    NotAGitRepoError,
    SincroError,
)
from ..files.manager import FileService
from ..git.exclude import ExcludeService
from ..git.mirror import (
    CONTENT_ENTRY,
    exclusion_paths,
    mirror_to_deployment,
    mirror_to_store,
    overlay_deployment,
    resolve_target,
    write_entry,
)
from ..git.store import VersionStore
from ..metadata import MetadataStore, new_id
from ..models.deployments import Deployment, DeploymentStats, PendingChangesCount
from ..models.files import FileKind, ManagedFile, utcnow
from ..watcher import WatcherService

logger = logging.getLogger(__name__)

IMPORT_MESSAGE = "Import existing file content"


class DeploymentService:
    """Orchestrates deployments across version stores and host repositories."""

    def __init__(
        self,
        files: FileService,
        excludes: ExcludeService,
        watcher: WatcherService | None = None,
        *,
        branch_prefix: str = "deploy-",
    ) -> None:
        self.files = files
        self.excludes = excludes
        self.watcher = watcher
        self.branch_prefix = branch_prefix

    @property
    def store(self) -> VersionStore:
        return self.files.store

    @property
    def metadata(self) -> MetadataStore:
        return self.files.metadata

    def branch_name_for(self, deployment_id: str) -> str:
        return f"{self.branch_prefix}{deployment_id[:8]}"

    def _context(self, deployment_id: str) -> tuple[Deployment, ManagedFile, Path]:
        deployment = self.metadata.get_deployment(deployment_id)
        file = self.metadata.get_file(deployment.file_id)
        return deployment, file, self.files.store_path(file.id)

    def _check_unique(self, file_id: str, repo_path: str, relative_path: str, skip: str) -> None:
        for other in self.metadata.list_deployments(file_id=file_id, active=True):
            if other.id == skip:
                continue
            if other.repo_path == repo_path and other.file_relative_path == relative_path:
                raise ConflictError(
                    f"File is already deployed to {relative_path} in {repo_path}"
                )

    def _watch(self, deployment: Deployment) -> None:
        if self.watcher is not None and self.watcher.running:
            self.watcher.watch(deployment.id, deployment.target_path)

    def _unwatch(self, deployment_id: str) -> None:
        if self.watcher is not None:
            self.watcher.unwatch(deployment_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _create_sync(
        self,
        store_path: Path,
        branch: str,
        start_point: str | None,
        kind: FileKind,
        target: Path,
    ) -> tuple[str | None, bool, list[str]]:
        """Branch, then import or export content; returns (hash, imported, tracked)."""
        self.store.create_branch(store_path, branch, start_point)
        tracked = self.store.list_tracked_paths(store_path)
        imported = False

        if kind == FileKind.SINGLE:
            if target.is_file():
                mirror_to_store(store_path, target, kind, tracked)
                imported = True
            elif CONTENT_ENTRY in tracked:
                mirror_to_deployment(store_path, target, kind, tracked)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(b"")
                write_entry(store_path, CONTENT_ENTRY, b"")
                return None, False, tracked
        else:
            target.mkdir(parents=True, exist_ok=True)
            for rel_path in tracked:
                external = target / rel_path
                if external.is_file():
                    write_entry(store_path, rel_path, external.read_bytes())
                    imported = True
                else:
                    write_entry(target, rel_path, (store_path / rel_path).read_bytes())

        if imported:
            try:
                self.store.commit_all(store_path, IMPORT_MESSAGE)
            except NoChangesError:
                logger.debug("Existing content at %s matches the store", target)
        return self.store.rev_parse(store_path), imported, tracked

    async def create_deployment(
        self,
        file_id: str,
        repo_path: str | Path,
        file_relative_path: str,
        *,
        source_branch: str | None = None,
        source_commit: str | None = None,
        auto_exclude: bool = True,
        description: str | None = None,
    ) -> Deployment:
        """Deploy a managed file into *repo_path* at *file_relative_path*.

        Content already present at the target is imported and committed on
        the new branch; otherwise the store's content is written out.  Passing
        *source_commit* or *source_branch* forks the new branch from another
        deployment's history.
        """
        file = self.metadata.get_file(file_id)
        if not self.excludes.is_git_repo(repo_path):
            raise NotAGitRepoError(f"Not a git repository: {repo_path}")

        root = Path(repo_path).resolve()
        target = resolve_target(root, file_relative_path)
        if file.kind == FileKind.SINGLE and target == root:
            raise FileError("A single file needs a path inside the repository")
        relative = target.relative_to(root).as_posix()

        deployment_id = new_id()
        branch = self.branch_name_for(deployment_id)
        store_path = self.files.store_path(file.id)

        # Uniqueness check and insert happen under one hold of the store lock.
        async with self.store.exclusive(store_path):
            self._check_unique(file.id, str(root), relative, skip="")
            commit_hash, imported, tracked = await self.store.run_blocking(
                self._create_sync,
                store_path,
                branch,
                source_commit or source_branch,
                file.kind,
                target,
            )
            deployment = await asyncio.to_thread(
                self.metadata.insert_deployment,
                Deployment(
                    id=deployment_id,
                    file_id=file.id,
                    repo_path=str(root),
                    file_relative_path=relative,
                    branch_name=branch,
                    last_synced_at=utcnow() if imported else None,
                    current_commit_hash=commit_hash,
                    description=description,
                ),
            )
        await asyncio.to_thread(self.metadata.update_file, file.id)
        logger.info(
            "Created deployment %s of %s at %s (%s)",
            deployment.id,
            file.name,
            target,
            "imported" if imported else "exported",
        )

        if auto_exclude:
            try:
                await self.excludes.add_exclusions(
                    deployment.repo_path,
                    exclusion_paths(file.kind, relative, tracked),
                    deployment.id,
                )
            except SincroError as exc:
                logger.warning("Could not exclude deployment %s: %s", deployment.id, exc)

        self._watch(deployment)
        return deployment

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_deployment(self, deployment_id: str) -> Deployment:
        return self.metadata.get_deployment(deployment_id)

    async def list_deployments(self, file_id: str | None = None) -> list[Deployment]:
        if file_id is not None:
            self.metadata.get_file(file_id)
        return self.metadata.list_deployments(file_id=file_id)

    async def update_description(self, deployment_id: str, description: str | None) -> Deployment:
        return await asyncio.to_thread(
            self.metadata.update_deployment, deployment_id, description=description or None
        )

    async def path_exists(self, deployment_id: str) -> bool:
        deployment = self.metadata.get_deployment(deployment_id)
        return deployment.target_path.exists()

    async def _exclusion_paths(
        self,
        deployment: Deployment,
        file: ManagedFile,
        store_path: Path,
    ) -> list[str]:
        tracked: list[str] = []
        if file.kind == FileKind.BUNDLE:
            tracked = await self.store.run_exclusive(
                store_path,
                self.store.list_tracked_paths,
                store_path,
                deployment.branch_name,
            )
        return exclusion_paths(file.kind, deployment.file_relative_path, tracked)

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    def _probe_sync(self, store_path: Path, branch: str, kind: FileKind, target: Path) -> bool:
        with self.store.on_branch(store_path, branch):
            tracked = self.store.list_tracked_paths(store_path)
            with overlay_deployment(store_path, target, kind, tracked) as missing:
                return bool(missing) or self.store.has_uncommitted_changes(store_path)

    async def check_for_changes(self, deployment_id: str) -> bool:
        """``True`` if the deployed content differs from its branch's last commit.

        The store is left exactly as it was found.  A missing deployed file
        (or bundle directory) reports no changes.
        """
        deployment, file, store_path = self._context(deployment_id)
        target = deployment.target_path
        if file.kind == FileKind.SINGLE and not target.is_file():
            return False
        if file.kind == FileKind.BUNDLE and not target.is_dir():
            return False

        return await self.store.run_exclusive(
            store_path,
            self._probe_sync,
            store_path,
            deployment.branch_name,
            file.kind,
            target,
        )

    async def count_pending_changes(self) -> PendingChangesCount:
        """Probe every active deployment; failing probes are logged and skipped."""
        count = 0
        file_ids: list[str] = []
        for deployment in self.metadata.list_deployments(active=True):
            try:
                changed = await self.check_for_changes(deployment.id)
            except Exception as exc:
                logger.warning("Drift check failed for deployment %s: %s", deployment.id, exc)
                continue
            if changed:
                count += 1
                if deployment.file_id not in file_ids:
                    file_ids.append(deployment.file_id)
        return PendingChangesCount(count=count, file_ids=file_ids)

    async def get_stats(self) -> DeploymentStats:
        deployments = self.metadata.list_deployments()
        pending = await self.count_pending_changes()
        return DeploymentStats(
            active_deployments=sum(1 for d in deployments if d.is_active),
            total_deployments=len(deployments),
            pending_changes=pending.count,
            file_ids_with_changes=pending.file_ids,
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _mirror_in_sync(self, store_path: Path, branch: str, kind: FileKind, target: Path) -> None:
        self.store.checkout(store_path, branch)
        tracked = self.store.list_tracked_paths(store_path)
        mirror_to_store(store_path, target, kind, tracked)

    async def sync_deployment(self, deployment_id: str) -> Deployment:
        """Copy deployed content into the store working copy without committing."""
        deployment, file, store_path = self._context(deployment_id)
        await self.store.run_exclusive(
            store_path,
            self._mirror_in_sync,
            store_path,
            deployment.branch_name,
            file.kind,
            deployment.target_path,
        )
        return await asyncio.to_thread(
            self.metadata.update_deployment, deployment_id, last_synced_at=utcnow()
        )

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def deactivate_deployment(self, deployment_id: str) -> Deployment:
        """Stop watching and un-exclude; history and the row are kept.

        The exclusion entries removed here are remembered so reactivation can
        put back exactly the same set.
        """
        deployment = self.metadata.get_deployment(deployment_id)
        if not deployment.is_active:
            return deployment

        self._unwatch(deployment_id)
        removed: list[str] = []
        try:
            patterns = await self.excludes.list_exclusions(deployment.repo_path, deployment_id)
            removed = await self.excludes.remove_exclusions(
                deployment.repo_path, patterns, deployment_id
            )
        except SincroError as exc:
            logger.warning("Could not remove exclusions of %s: %s", deployment_id, exc)

        updated = await asyncio.to_thread(
            self.metadata.update_deployment,
            deployment_id,
            is_active=False,
            suspended_exclusions=removed,
        )
        logger.info("Deactivated deployment %s", deployment_id)
        return updated

    async def reactivate_deployment(self, deployment_id: str) -> Deployment:
        deployment = self.metadata.get_deployment(deployment_id)
        if deployment.is_active:
            return deployment

        store_path = self.files.store_path(deployment.file_id)
        async with self.store.exclusive(store_path):
            self._check_unique(
                deployment.file_id,
                deployment.repo_path,
                deployment.file_relative_path,
                skip=deployment_id,
            )
            if deployment.suspended_exclusions:
                try:
                    await self.excludes.add_exclusions(
                        deployment.repo_path,
                        deployment.suspended_exclusions,
                        deployment_id,
                    )
                except SincroError as exc:
                    logger.warning("Could not restore exclusions of %s: %s", deployment_id, exc)

            updated = await asyncio.to_thread(
                self.metadata.update_deployment,
                deployment_id,
                is_active=True,
                suspended_exclusions=[],
            )
        self._watch(updated)
        logger.info("Reactivated deployment %s", deployment_id)
        return updated

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def _delete_from_disk_sync(self, target: Path, kind: FileKind, tracked: list[str]) -> None:
        paths = [target] if kind == FileKind.SINGLE else [target / p for p in tracked]
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to delete deployed file %s: %s", path, exc)
                continue
            parent = path.parent
            while parent != target and target in parent.parents and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent

    async def delete_deployment(self, deployment_id: str, *, delete_from_disk: bool = False) -> None:
        """Remove a deployment row; its branch stays behind in the store.

        Exclusion cleanup is best effort: the host repository may be gone.
        """
        deployment, file, store_path = self._context(deployment_id)
        self._unwatch(deployment_id)

        try:
            patterns = await self.excludes.list_exclusions(deployment.repo_path, deployment_id)
            await self.excludes.remove_exclusions(deployment.repo_path, patterns, deployment_id)
        except SincroError as exc:
            logger.warning("Could not remove exclusions of %s: %s", deployment_id, exc)

        if delete_from_disk:
            tracked: list[str] = []
            if file.kind == FileKind.BUNDLE:
                try:
                    tracked = await self.store.run_exclusive(
                        store_path,
                        self.store.list_tracked_paths,
                        store_path,
                        deployment.branch_name,
                    )
                except SincroError as exc:
                    logger.warning("Could not list files of %s: %s", deployment_id, exc)
            await asyncio.to_thread(
                self._delete_from_disk_sync,
                deployment.target_path,
                file.kind,
                tracked,
            )

        await asyncio.to_thread(self.metadata.delete_deployment, deployment_id)
        logger.info("Deleted deployment %s", deployment_id)

    # ------------------------------------------------------------------
    # Exclusions on demand
    # ------------------------------------------------------------------

    async def check_exclusion(self, deployment_id: str) -> bool:
        """``True`` if every path of the deployment is excluded in its repository."""
        deployment, file, store_path = self._context(deployment_id)
        paths = await self._exclusion_paths(deployment, file, store_path)
        for path in paths:
            if not await self.excludes.is_excluded(deployment.repo_path, path):
                return False
        return bool(paths)

    async def check_global_exclusion(self, deployment_id: str) -> bool:
        """``True`` if the user's global excludes file covers every path."""
        deployment, file, store_path = self._context(deployment_id)
        paths = await self._exclusion_paths(deployment, file, store_path)
        for path in paths:
            if not await self.excludes.is_globally_excluded(path):
                return False
        return bool(paths)

    async def add_exclusion(self, deployment_id: str) -> list[str]:
        deployment, file, store_path = self._context(deployment_id)
        paths = await self._exclusion_paths(deployment, file, store_path)
        return await self.excludes.add_exclusions(deployment.repo_path, paths, deployment_id)

    async def remove_exclusion(self, deployment_id: str) -> list[str]:
        deployment = self.metadata.get_deployment(deployment_id)
        patterns = await self.excludes.list_exclusions(deployment.repo_path, deployment_id)
        return await self.excludes.remove_exclusions(deployment.repo_path, patterns, deployment_id)
