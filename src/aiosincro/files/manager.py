"""Managed files, bundles and tags.

Each managed file's version store lives at ``<files_dir>/<file_id>``; the
location depends only on the id, so renames never move data.  Store-side
work always happens before the metadata row is written.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from ..exceptions import FileError, PathSecurityError
from ..git.store import VersionStore
from ..metadata import MetadataStore, new_id
from ..models.files import FileKind, ManagedFile, Tag
from ..watcher import WatcherService

logger = logging.getLogger(__name__)

BUNDLE_IMPORT_MESSAGE = "Initial bundle import"
DEFAULT_TAG_COLOR = "#6b7280"


class FileService:
    """Create, inspect and delete managed files."""

    def __init__(
        self,
        files_dir: Path,
        store: VersionStore,
        metadata: MetadataStore,
        watcher: WatcherService | None = None,
    ) -> None:
        self.files_dir = files_dir
        self.store = store
        self.metadata = metadata
        self.watcher = watcher

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------

    def store_path(self, file_id: str) -> Path:
        return self.files_dir / file_id

    def _bundle_relative_paths(self, base_path: Path, file_paths: list[str]) -> list[str]:
        """Validate bundle members and return their paths relative to *base_path*."""
        base = base_path.resolve()
        if not base.is_dir():
            raise FileError(f"Bundle base directory does not exist: {base_path}")

        relative: list[str] = []
        for raw in file_paths:
            full_path = Path(raw).resolve()
            if base not in full_path.parents:
                raise PathSecurityError(f"Path outside bundle base directory: {raw}")
            if not full_path.is_file():
                raise FileError(f"File not found: {raw}")
            relative.append(full_path.relative_to(base).as_posix())

        if not relative:
            raise FileError("A bundle needs at least one file")
        return sorted(set(relative))

    # ------------------------------------------------------------------
    # Managed files
    # ------------------------------------------------------------------

    async def create_file(
        self,
        name: str,
        alias: str | None = None,
        *,
        use_auto_icon: bool = True,
    ) -> ManagedFile:
        """Create a single managed file with an empty version store."""
        file = ManagedFile(
            id=new_id(),
            name=name,
            alias=alias or name,
            kind=FileKind.SINGLE,
            use_auto_icon=use_auto_icon,
        )
        store_path = self.store_path(file.id)
        await self.store.run_exclusive(store_path, self.store.init, store_path)

        created = await asyncio.to_thread(self.metadata.insert_file, file)
        logger.info("Created managed file %s (%s)", created.name, created.id)
        return created

    def _import_bundle_sync(self, store_path: Path, base: Path, relative: list[str]) -> None:
        self.store.init(store_path)
        for rel in relative:
            dst = store_path / rel
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(base / rel, dst)
        self.store.commit_all(store_path, BUNDLE_IMPORT_MESSAGE)

    async def create_bundle(
        self,
        name: str,
        base_path: Path,
        file_paths: list[str],
        alias: str | None = None,
        *,
        use_auto_icon: bool = True,
    ) -> ManagedFile:
        """Create a bundle from files under *base_path*.

        Relative structure below *base_path* is kept; the resulting set of
        paths is the bundle's fixed shape.
        """
        relative = self._bundle_relative_paths(base_path, file_paths)
        file = ManagedFile(
            id=new_id(),
            name=name,
            alias=alias or name,
            kind=FileKind.BUNDLE,
            use_auto_icon=use_auto_icon,
        )
        store_path = self.store_path(file.id)
        try:
            await self.store.run_exclusive(
                store_path,
                self._import_bundle_sync,
                store_path,
                base_path.resolve(),
                relative,
            )
        except Exception:
            await asyncio.to_thread(shutil.rmtree, store_path, True)
            raise

        created = await asyncio.to_thread(self.metadata.insert_file, file)
        logger.info(
            "Created bundle %s (%s) with %d file(s)",
            created.name,
            created.id,
            len(relative),
        )
        return created

    async def get_file(self, file_id: str) -> ManagedFile:
        return self.metadata.get_file(file_id)

    async def list_files(self) -> list[ManagedFile]:
        return self.metadata.list_files()

    async def update_file(
        self,
        file_id: str,
        *,
        name: str | None = None,
        alias: str | None = None,
        use_auto_icon: bool | None = None,
    ) -> ManagedFile:
        changes: dict[str, object] = {}
        if name is not None:
            changes["name"] = name
        if alias is not None:
            changes["alias"] = alias
        if use_auto_icon is not None:
            changes["use_auto_icon"] = use_auto_icon
        return await asyncio.to_thread(self.metadata.update_file, file_id, **changes)

    async def delete_file(self, file_id: str) -> None:
        """Delete a managed file, its deployments' rows and its version store.

        Deployed content and exclusions in external repositories are left
        untouched.
        """
        removed = await asyncio.to_thread(self.metadata.delete_file, file_id)
        if self.watcher is not None:
            for deployment in removed:
                self.watcher.unwatch(deployment.id)

        store_path = self.store_path(file_id)
        async with self.store.exclusive(store_path):
            try:
                await asyncio.to_thread(shutil.rmtree, store_path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to remove version store %s: %s", store_path, exc)
        logger.info("Deleted managed file %s (%d deployment(s))", file_id, len(removed))

    async def list_bundle_files(self, file_id: str) -> list[str]:
        """Tracked relative paths of a bundle (one entry for single files)."""
        self.metadata.get_file(file_id)
        store_path = self.store_path(file_id)
        return await self.store.run_exclusive(
            store_path, self.store.list_tracked_paths, store_path
        )

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def list_tags(self) -> list[Tag]:
        return self.metadata.list_tags()

    async def create_tag(self, name: str, color: str = DEFAULT_TAG_COLOR) -> Tag:
        name = name.strip()
        if not name:
            raise FileError("Tag name must not be empty")
        return await asyncio.to_thread(self.metadata.create_tag, name, color)

    async def delete_tag(self, tag_id: str) -> None:
        await asyncio.to_thread(self.metadata.delete_tag, tag_id)

    async def get_file_tags(self, file_id: str) -> list[Tag]:
        return self.metadata.get_file_tags(file_id)

    async def set_file_tags(self, file_id: str, tag_ids: list[str]) -> list[Tag]:
        return await asyncio.to_thread(self.metadata.set_file_tags, file_id, tag_ids)

    async def get_deployment_tags(self, deployment_id: str) -> list[Tag]:
        return self.metadata.get_deployment_tags(deployment_id)

    async def set_deployment_tags(self, deployment_id: str, tag_ids: list[str]) -> list[Tag]:
        return await asyncio.to_thread(
            self.metadata.set_deployment_tags, deployment_id, tag_ids
        )
