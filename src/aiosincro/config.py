"""Runtime settings.

Settings are built from plain values; no environment variables are read.  A
YAML file with the same keys can be loaded with :func:`load_settings`::

    data_dir: ~/.local/share/sincro
    committer_name: Sincro
    watch_debounce: 0.5
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import FileError

logger = logging.getLogger(__name__)


class SincroSettings(BaseModel):
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".sincro")
    committer_name: str = "Sincro"
    committer_email: str = "sincro@local"
    branch_prefix: str = "deploy-"
    watch_debounce: float = Field(default=0.5, ge=0)

    @field_validator("data_dir")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def files_dir(self) -> Path:
        """Parent directory of every version store (``<files_dir>/<file_id>``)."""
        return self.data_dir / "files"

    @property
    def metadata_path(self) -> Path:
        return self.data_dir / "sincro.json"


def load_settings(path: Path | None = None, **overrides: object) -> SincroSettings:
    """Read settings from a YAML file; a missing file yields the defaults."""
    data: dict[str, object] = {}
    if path is not None and path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise FileError(f"Invalid settings file {path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise FileError(f"Invalid settings file {path}: expected a mapping")
        data = loaded or {}
        logger.debug("Loaded settings from %s", path)

    try:
        return SincroSettings.model_validate({**data, **overrides})
    except ValidationError as exc:
        raise FileError(f"Invalid settings: {exc}") from exc
