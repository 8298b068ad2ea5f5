"""Tests for CommitService."""

from __future__ import annotations

from pathlib import Path

import pytest

from aiosincro.exceptions import ConflictError, NoChangesError, StoreError
from aiosincro.files import FileService
from aiosincro.git.mirror import snapshot_tree
from aiosincro.models import Deployment, ManagedFile
from aiosincro.services import CommitService, DeploymentService
from aiosincro.services.commits import NOT_FOUND


@pytest.fixture
async def env_file(file_service: FileService) -> ManagedFile:
    return await file_service.create_file("db.env")


@pytest.fixture
async def deployed(
    deployment_service: DeploymentService, env_file: ManagedFile, host_repo: Path
) -> Deployment:
    """A single-file deployment whose content ``A=1`` was imported."""
    (host_repo / "db.env").write_text("A=1\n")
    return await deployment_service.create_deployment(env_file.id, host_repo, "db.env")


class TestCreateCommit:
    async def test_first_commit_of_empty_deployment(
        self,
        deployment_service: DeploymentService,
        commit_service: CommitService,
        env_file: ManagedFile,
        host_repo: Path,
    ) -> None:
        deployment = await deployment_service.create_deployment(env_file.id, host_repo, "config")

        updated = await commit_service.create_commit(deployment.id, "init")

        commits = await commit_service.list_commits(deployment.id)
        assert [c.message for c in commits] == ["init"]
        assert updated.current_commit_hash == commits[0].hash
        assert updated.last_synced_at is not None

    async def test_commit_clears_drift(
        self,
        deployment_service: DeploymentService,
        commit_service: CommitService,
        deployed: Deployment,
        host_repo: Path,
    ) -> None:
        (host_repo / "db.env").write_text("A=2\n")
        assert await deployment_service.check_for_changes(deployed.id) is True

        await commit_service.create_commit(deployed.id, "update")

        assert await deployment_service.check_for_changes(deployed.id) is False
        assert [c.message for c in await commit_service.list_commits(deployed.id)] == [
            "update",
            "Import existing file content",
        ]

    async def test_unchanged_content(
        self, commit_service: CommitService, deployed: Deployment
    ) -> None:
        with pytest.raises(NoChangesError):
            await commit_service.create_commit(deployed.id, "again")

        row = commit_service.metadata.get_deployment(deployed.id)
        assert row.current_commit_hash == deployed.current_commit_hash
        assert row.last_synced_at == deployed.last_synced_at

    async def test_empty_message(self, commit_service: CommitService, deployed: Deployment) -> None:
        with pytest.raises(StoreError, match="message"):
            await commit_service.create_commit(deployed.id, "   ")

    async def test_branches_are_isolated(
        self,
        deployment_service: DeploymentService,
        commit_service: CommitService,
        env_file: ManagedFile,
        deployed: Deployment,
        host_repo: Path,
        other_repo: Path,
    ) -> None:
        sibling = await deployment_service.create_deployment(
            env_file.id, other_repo, "db.env", source_branch=deployed.branch_name
        )
        (host_repo / "db.env").write_text("A=2\n")

        committed = await commit_service.create_commit(deployed.id, "update")

        assert await commit_service.get_file_at_commit(deployed.id, committed.current_commit_hash) == "A=2\n"
        assert await commit_service.get_file_at_commit(sibling.id, sibling.branch_name) == "A=1\n"
        assert len(await commit_service.list_commits(sibling.id)) == 1
        assert await deployment_service.check_for_changes(sibling.id) is False


class TestTags:
    async def test_tags_are_namespaced_by_branch(
        self,
        deployment_service: DeploymentService,
        commit_service: CommitService,
        env_file: ManagedFile,
        deployed: Deployment,
        host_repo: Path,
        other_repo: Path,
    ) -> None:
        sibling = await deployment_service.create_deployment(
            env_file.id, other_repo, "db.env", source_branch=deployed.branch_name
        )
        (host_repo / "db.env").write_text("A=2\n")
        (other_repo / "db.env").write_text("A=3\n")

        await commit_service.create_commit(deployed.id, "release", tag="v1")
        await commit_service.create_commit(sibling.id, "release", tag="v1")

        first = (await commit_service.list_commits(deployed.id))[0]
        second = (await commit_service.list_commits(sibling.id))[0]
        assert first.tag == f"{deployed.branch_name}/v1"
        assert second.tag == f"{sibling.branch_name}/v1"

    async def test_duplicate_tag(
        self, commit_service: CommitService, deployed: Deployment, host_repo: Path
    ) -> None:
        (host_repo / "db.env").write_text("A=2\n")
        await commit_service.create_commit(deployed.id, "release", tag="v1")
        (host_repo / "db.env").write_text("A=3\n")

        with pytest.raises(ConflictError):
            await commit_service.create_commit(deployed.id, "release again", tag="v1")
        assert len(await commit_service.list_commits(deployed.id)) == 2

    async def test_invalid_tag(
        self, commit_service: CommitService, deployed: Deployment, host_repo: Path
    ) -> None:
        (host_repo / "db.env").write_text("A=2\n")
        with pytest.raises(StoreError, match="Invalid tag name"):
            await commit_service.create_commit(deployed.id, "release", tag="bad..tag")


class TestCheckout:
    async def test_restores_old_content_without_moving_branch(
        self, commit_service: CommitService, deployed: Deployment, host_repo: Path
    ) -> None:
        (host_repo / "db.env").write_text("A=2\n")
        await commit_service.create_commit(deployed.id, "update")

        restored = await commit_service.checkout_to_commit(deployed.id, deployed.current_commit_hash)

        assert (host_repo / "db.env").read_text() == "A=1\n"
        assert restored.current_commit_hash == deployed.current_commit_hash
        assert (await commit_service.list_commits(deployed.id))[0].message == "update"

    async def test_unknown_commit(self, commit_service: CommitService, deployed: Deployment) -> None:
        with pytest.raises(StoreError, match="Unknown revision"):
            await commit_service.checkout_to_commit(deployed.id, "0" * 40)


class TestHistoryViews:
    async def test_diff_between_commits(
        self, commit_service: CommitService, deployed: Deployment, host_repo: Path
    ) -> None:
        (host_repo / "db.env").write_text("A=2\n")
        updated = await commit_service.create_commit(deployed.id, "update")

        diff = await commit_service.get_diff(deployed.id, updated.current_commit_hash)
        assert "-A=1" in diff
        assert "+A=2" in diff

        first = await commit_service.get_diff(deployed.id, deployed.current_commit_hash)
        assert "+A=1" in first

    async def test_working_diff_leaves_store_untouched(
        self,
        commit_service: CommitService,
        deployed: Deployment,
        host_repo: Path,
    ) -> None:
        store_path = commit_service.files.store_path(deployed.file_id)
        before = snapshot_tree(store_path)
        (host_repo / "db.env").write_text("A=9\n")

        diff = await commit_service.get_diff_working(deployed.id)

        assert "+A=9" in diff
        assert snapshot_tree(store_path) == before

    async def test_fork_from_historical_commit(
        self,
        deployment_service: DeploymentService,
        commit_service: CommitService,
        env_file: ManagedFile,
        deployed: Deployment,
        host_repo: Path,
        other_repo: Path,
    ) -> None:
        (host_repo / "db.env").write_text("A=2\n")
        await commit_service.create_commit(deployed.id, "update")

        fork = await deployment_service.create_deployment(
            env_file.id, other_repo, "db.env", source_commit=deployed.current_commit_hash
        )

        assert fork.current_commit_hash == deployed.current_commit_hash
        assert await commit_service.get_file_at_commit(fork.id, fork.current_commit_hash) == "A=1\n"
        assert (other_repo / "db.env").read_text() == "A=1\n"

    async def test_current_files(
        self, commit_service: CommitService, deployed: Deployment, host_repo: Path
    ) -> None:
        files = await commit_service.get_current_files(deployed.id)
        assert [(f.path, f.content) for f in files] == [("db.env", "A=1\n")]

        (host_repo / "db.env").unlink()
        assert (await commit_service.get_current_files(deployed.id))[0].content == NOT_FOUND

    async def test_nested_file_keeps_relative_path(
        self,
        deployment_service: DeploymentService,
        commit_service: CommitService,
        env_file: ManagedFile,
        host_repo: Path,
    ) -> None:
        (host_repo / "config").mkdir()
        (host_repo / "config" / "app.env").write_text("A=1\n")
        deployment = await deployment_service.create_deployment(
            env_file.id, host_repo, "config/app.env"
        )

        current = await commit_service.get_current_files(deployment.id)
        at_commit = await commit_service.get_files_at_commit(
            deployment.id, deployment.current_commit_hash
        )

        assert [(f.path, f.content) for f in current] == [("config/app.env", "A=1\n")]
        assert [(f.path, f.content) for f in at_commit] == [("config/app.env", "A=1\n")]

    async def test_working_diff_of_missing_file(
        self, commit_service: CommitService, deployed: Deployment, host_repo: Path
    ) -> None:
        (host_repo / "db.env").unlink()
        assert await commit_service.get_diff_working(deployed.id) == ""


class TestBundles:
    @pytest.fixture
    async def bundle_deployment(
        self,
        file_service: FileService,
        deployment_service: DeploymentService,
        host_repo: Path,
        tmp_path: Path,
    ) -> Deployment:
        base = tmp_path / "bundle-source"
        (base / "sub").mkdir(parents=True)
        (base / "app.yaml").write_text("name: app\n")
        (base / "sub" / "db.env").write_text("DB=1\n")
        bundle = await file_service.create_bundle(
            "config", base, [str(base / "app.yaml"), str(base / "sub" / "db.env")]
        )
        return await deployment_service.create_deployment(bundle.id, host_repo, "conf")

    async def test_file_at_commit_renders_blocks(
        self, commit_service: CommitService, bundle_deployment: Deployment
    ) -> None:
        text = await commit_service.get_file_at_commit(
            bundle_deployment.id, bundle_deployment.current_commit_hash
        )
        assert text == "=== app.yaml ===\nname: app\n\n\n=== sub/db.env ===\nDB=1\n"

    async def test_commit_and_diff(
        self, commit_service: CommitService, bundle_deployment: Deployment, host_repo: Path
    ) -> None:
        (host_repo / "conf" / "sub" / "db.env").write_text("DB=2\n")

        working = await commit_service.get_diff_working(bundle_deployment.id)
        assert "sub/db.env" in working
        assert "app.yaml" not in working

        updated = await commit_service.create_commit(bundle_deployment.id, "bump db")
        files = await commit_service.get_files_at_commit(
            bundle_deployment.id, updated.current_commit_hash
        )
        assert [(f.path, f.content) for f in files] == [
            ("app.yaml", "name: app\n"),
            ("sub/db.env", "DB=2\n"),
        ]

    async def test_current_files_mark_missing(
        self, commit_service: CommitService, bundle_deployment: Deployment, host_repo: Path
    ) -> None:
        (host_repo / "conf" / "app.yaml").unlink()
        files = await commit_service.get_current_files(bundle_deployment.id)
        assert [(f.path, f.content) for f in files] == [
            ("app.yaml", NOT_FOUND),
            ("sub/db.env", "DB=1\n"),
        ]
