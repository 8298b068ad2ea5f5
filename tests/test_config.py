"""Tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from aiosincro.config import SincroSettings, load_settings
from aiosincro.exceptions import FileError


class TestSincroSettings:
    def test_defaults(self) -> None:
        settings = SincroSettings()
        assert settings.committer_name == "Sincro"
        assert settings.branch_prefix == "deploy-"
        assert settings.watch_debounce == 0.5

    def test_derived_paths(self, tmp_path: Path) -> None:
        settings = SincroSettings(data_dir=tmp_path)
        assert settings.files_dir == tmp_path / "files"
        assert settings.metadata_path == tmp_path / "sincro.json"

    def test_expands_user(self) -> None:
        settings = SincroSettings(data_dir=Path("~/sincro"))
        assert settings.data_dir == Path.home() / "sincro"


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        assert load_settings(tmp_path / "missing.yaml") == SincroSettings()

    def test_reads_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "sincro.yaml"
        path.write_text(f"data_dir: {tmp_path}\ncommitter_name: Ops\nwatch_debounce: 0.1\n")
        settings = load_settings(path)
        assert settings.data_dir == tmp_path
        assert settings.committer_name == "Ops"
        assert settings.watch_debounce == 0.1

    def test_overrides_win(self, tmp_path: Path) -> None:
        path = tmp_path / "sincro.yaml"
        path.write_text("committer_name: Ops\n")
        assert load_settings(path, committer_name="CI").committer_name == "CI"

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "sincro.yaml"
        path.write_text("")
        assert load_settings(path) == SincroSettings()

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "sincro.yaml"
        path.write_text("key: [unclosed\n")
        with pytest.raises(FileError, match="Invalid settings file"):
            load_settings(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "sincro.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(FileError, match="expected a mapping"):
            load_settings(path)

    def test_invalid_value(self, tmp_path: Path) -> None:
        path = tmp_path / "sincro.yaml"
        path.write_text("watch_debounce: -1\n")
        with pytest.raises(FileError, match="Invalid settings"):
            load_settings(path)
