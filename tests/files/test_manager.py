"""Tests for FileService."""

from __future__ import annotations

import shutil
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from aiosincro.exceptions import FileError, NotFoundError, PathSecurityError, StoreError
from aiosincro.files import FileService
from aiosincro.models import Deployment, FileKind
from aiosincro.watcher import WatcherService


@pytest.fixture
def bundle_source(tmp_path: Path) -> Path:
    base = tmp_path / "source"
    (base / "nested").mkdir(parents=True)
    (base / "app.yaml").write_text("name: app\n")
    (base / "nested" / "db.env").write_text("DB=1\n")
    return base


# -- Single files ---------------------------------------------------------------


class TestCreateFile:
    async def test_creates_store_with_seed(self, file_service: FileService) -> None:
        file = await file_service.create_file(".env", "Backend env")

        store_path = file_service.store_path(file.id)
        assert (store_path / ".git").is_dir()
        assert file.kind is FileKind.SINGLE
        assert file.alias == "Backend env"
        assert file_service.store.list_tracked_paths(store_path) == []
        assert file_service.store.log(store_path) == []

    async def test_alias_defaults_to_name(self, file_service: FileService) -> None:
        file = await file_service.create_file(".env")
        assert file.alias == ".env"

    async def test_store_failure_writes_no_row(self, file_service: FileService) -> None:
        with patch.object(file_service.store, "init", side_effect=StoreError("disk full")):
            with pytest.raises(StoreError):
                await file_service.create_file(".env")
        assert await file_service.list_files() == []

    async def test_update(self, file_service: FileService) -> None:
        file = await file_service.create_file(".env")
        updated = await file_service.update_file(file.id, alias="Prod env", use_auto_icon=False)
        assert updated.alias == "Prod env"
        assert updated.name == ".env"
        assert updated.use_auto_icon is False


# -- Bundles --------------------------------------------------------------------


class TestCreateBundle:
    async def test_imports_files(self, file_service: FileService, bundle_source: Path) -> None:
        bundle = await file_service.create_bundle(
            "config",
            bundle_source,
            [str(bundle_source / "app.yaml"), str(bundle_source / "nested" / "db.env")],
        )

        store_path = file_service.store_path(bundle.id)
        assert bundle.is_bundle
        assert await file_service.list_bundle_files(bundle.id) == ["app.yaml", "nested/db.env"]
        assert (store_path / "nested" / "db.env").read_text() == "DB=1\n"

        log = file_service.store.log(store_path)
        assert [entry.message for entry in log] == ["Initial bundle import"]

    async def test_rejects_paths_outside_base(
        self, file_service: FileService, bundle_source: Path, tmp_path: Path
    ) -> None:
        outside = tmp_path / "outside.txt"
        outside.write_text("x\n")
        with pytest.raises(PathSecurityError):
            await file_service.create_bundle("config", bundle_source, [str(outside)])

    async def test_rejects_missing_file(self, file_service: FileService, bundle_source: Path) -> None:
        with pytest.raises(FileError, match="File not found"):
            await file_service.create_bundle("config", bundle_source, [str(bundle_source / "nope")])

    async def test_rejects_empty_bundle(self, file_service: FileService, bundle_source: Path) -> None:
        with pytest.raises(FileError, match="at least one file"):
            await file_service.create_bundle("config", bundle_source, [])

    async def test_store_is_removed_on_failure(
        self, file_service: FileService, bundle_source: Path
    ) -> None:
        with patch.object(file_service.store, "commit_all", side_effect=StoreError("boom")):
            with pytest.raises(StoreError):
                await file_service.create_bundle(
                    "config", bundle_source, [str(bundle_source / "app.yaml")]
                )
        assert await file_service.list_files() == []
        assert not any(file_service.files_dir.iterdir())


# -- Delete ---------------------------------------------------------------------


class TestDeleteFile:
    async def test_removes_store_and_rows(self, file_service: FileService) -> None:
        file = await file_service.create_file(".env")
        file_service.metadata.insert_deployment(
            Deployment(
                id="dep-1",
                file_id=file.id,
                repo_path="/repo",
                file_relative_path=".env",
                branch_name="deploy-dep-1",
            )
        )

        await file_service.delete_file(file.id)

        assert not file_service.store_path(file.id).exists()
        assert file_service.metadata.list_deployments() == []
        with pytest.raises(NotFoundError):
            await file_service.get_file(file.id)

    async def test_unwatches_deployments(self, file_service: FileService) -> None:
        watcher = MagicMock(spec=WatcherService)
        file_service.watcher = watcher
        file = await file_service.create_file(".env")
        file_service.metadata.insert_deployment(
            Deployment(
                id="dep-1",
                file_id=file.id,
                repo_path="/repo",
                file_relative_path=".env",
                branch_name="deploy-dep-1",
            )
        )

        await file_service.delete_file(file.id)
        watcher.unwatch.assert_called_once_with("dep-1")

    async def test_missing_store_is_tolerated(self, file_service: FileService) -> None:
        file = await file_service.create_file(".env")
        store_path = file_service.store_path(file.id)
        shutil.rmtree(store_path)

        await file_service.delete_file(file.id)
        assert await file_service.list_files() == []


# -- Tags -----------------------------------------------------------------------


class TestTags:
    async def test_create_and_assign(self, file_service: FileService) -> None:
        file = await file_service.create_file(".env")
        tag = await file_service.create_tag("  production ")
        assert tag.name == "production"
        assert tag.color == "#6b7280"

        await file_service.set_file_tags(file.id, [tag.id])
        assert [t.name for t in await file_service.get_file_tags(file.id)] == ["production"]
        assert (await file_service.list_tags())[0].file_count == 1

        await file_service.delete_tag(tag.id)
        assert await file_service.get_file_tags(file.id) == []

    async def test_empty_name(self, file_service: FileService) -> None:
        with pytest.raises(FileError):
            await file_service.create_tag("   ")
