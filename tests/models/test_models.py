"""Tests for Pydantic models."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from aiosincro.models import (
    CommitLogEntry,
    Deployment,
    DeploymentStats,
    DriftEvent,
    FileKind,
    ManagedFile,
    PendingChangesCount,
    SincroResponse,
    Tag,
    WatchEvent,
)


class TestSincroResponse:
    def test_success(self) -> None:
        r = SincroResponse(success=True, data={"count": 5})
        assert r.data == {"count": 5}
        assert r.code is None

    def test_failure(self) -> None:
        r = SincroResponse(success=False, error="nope", code="not_found")
        assert r.data is None
        assert r.code == "not_found"


class TestManagedFile:
    def test_defaults(self) -> None:
        f = ManagedFile(id="f1", name=".env", alias="Backend")
        assert f.kind is FileKind.SINGLE
        assert f.is_bundle is False
        assert f.use_auto_icon is True
        assert f.tags == []
        assert f.created_at.tzinfo is not None

    def test_kind_from_string(self) -> None:
        f = ManagedFile.model_validate({"id": "f1", "name": "cfg", "alias": "cfg", "kind": "bundle"})
        assert f.is_bundle

    def test_rejects_unknown_kind(self) -> None:
        with pytest.raises(ValidationError):
            ManagedFile(id="f1", name="cfg", alias="cfg", kind="folder")


class TestDeployment:
    def test_target_path(self) -> None:
        d = Deployment(
            id="d1",
            file_id="f1",
            repo_path="/srv/app",
            file_relative_path="config/db.env",
            branch_name="deploy-d1",
        )
        assert d.target_path == Path("/srv/app/config/db.env")
        assert d.is_active is True
        assert d.suspended_exclusions == []

    def test_json_round_trip(self) -> None:
        tag = Tag(id="t1", name="prod", color="#f00")
        d = Deployment(
            id="d1",
            file_id="f1",
            repo_path="/srv/app",
            file_relative_path="db.env",
            branch_name="deploy-d1",
            tags=[tag],
        )
        restored = Deployment.model_validate_json(d.model_dump_json())
        assert restored == d


class TestEvents:
    def test_drift_event_extends_watch_event(self) -> None:
        e = DriftEvent(deployment_id="d1", kind="changed", has_changes=True)
        assert isinstance(e, WatchEvent)

    def test_rejects_unknown_kind(self) -> None:
        with pytest.raises(ValidationError):
            WatchEvent(deployment_id="d1", kind="renamed")


class TestCounters:
    def test_defaults(self) -> None:
        assert PendingChangesCount().count == 0
        stats = DeploymentStats()
        assert stats.total_deployments == 0
        assert stats.file_ids_with_changes == []

    def test_commit_log_entry(self) -> None:
        entry = CommitLogEntry(hash="abc", message="init", date="2024-01-01T00:00:00+00:00")
        assert entry.tag is None
