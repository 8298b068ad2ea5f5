"""Shared fixtures for aiosincro tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from dulwich import porcelain

from aiosincro.app import Sincro
from aiosincro.config import SincroSettings
from aiosincro.files import FileService
from aiosincro.git import ExcludeService, VersionStore
from aiosincro.metadata import MetadataStore
from aiosincro.services import CommitService, DeploymentService


def make_git_repo(path: Path) -> Path:
    """Create an empty host repository at *path*."""
    path.mkdir(parents=True, exist_ok=True)
    porcelain.init(str(path)).close()
    return path


@pytest.fixture
def host_repo(tmp_path: Path) -> Path:
    """An external git working tree deployments are placed into."""
    return make_git_repo(tmp_path / "host")


@pytest.fixture
def other_repo(tmp_path: Path) -> Path:
    """A second host repository."""
    return make_git_repo(tmp_path / "other")


@pytest.fixture
def version_store() -> VersionStore:
    return VersionStore(committer_name="Test", committer_email="test@example.com")


@pytest.fixture
def metadata() -> MetadataStore:
    return MetadataStore(None)


@pytest.fixture
def file_service(tmp_path: Path, version_store: VersionStore, metadata: MetadataStore) -> FileService:
    return FileService(tmp_path / "data" / "files", version_store, metadata)


@pytest.fixture
def excludes(tmp_path: Path) -> ExcludeService:
    """Exclusion oracle that never sees the developer's real global excludes."""
    return ExcludeService(global_excludes_file=tmp_path / "global-ignore")


@pytest.fixture
def deployment_service(file_service: FileService, excludes: ExcludeService) -> DeploymentService:
    return DeploymentService(file_service, excludes)


@pytest.fixture
def commit_service(file_service: FileService) -> CommitService:
    return CommitService(file_service)


@pytest.fixture
def sincro(tmp_path: Path, metadata: MetadataStore, excludes: ExcludeService) -> Sincro:
    """A fully wired, not yet started application."""
    settings = SincroSettings(
        data_dir=tmp_path / "data",
        committer_name="Test",
        committer_email="test@example.com",
        watch_debounce=0.05,
    )
    return Sincro(settings, metadata=metadata, excludes=excludes)
