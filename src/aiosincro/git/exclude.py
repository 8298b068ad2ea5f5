"""Scoped entries in a host repository's ``.git/info/exclude``.

Every entry this module writes is a pair of lines, a marker naming the scope
(a deployment id) followed by the pattern::

    # aiosincro [3f2a...]
    config/db.env

Removal only touches pairs carrying the same scope, so two deployments that
exclude the same path never clobber each other.  Lines written by anyone else
are left alone.
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiofiles
import pathspec
from dulwich.config import StackedConfig
from dulwich.errors import NotGitRepository
from dulwich.repo import Repo

from ..exceptions import FileError, NotAGitRepoError
from .locks import StoreLocks

logger = logging.getLogger(__name__)

MARKER_PREFIX = "# aiosincro"


def _marker(scope_id: str) -> str:
    return f"{MARKER_PREFIX} [{scope_id}]"


def _normalize(path: str) -> str:
    return path.replace("\\", "/").strip().lstrip("/")


def _same_pattern(line: str, path: str) -> bool:
    stripped = line.strip()
    return stripped == path or stripped == "/" + path


def _build_spec(lines: list[str]) -> pathspec.PathSpec:
    patterns = [line.strip() for line in lines if line.strip() and not line.lstrip().startswith("#")]
    return pathspec.PathSpec.from_lines("gitwildmatch", patterns)


class ExcludeService:
    """Read and edit repository-local and global git exclusion lists."""

    def __init__(
        self,
        *,
        global_excludes_file: Path | None = None,
        locks: StoreLocks | None = None,
    ) -> None:
        self._global_excludes_file = global_excludes_file
        self._locks = locks or StoreLocks()

    # ------------------------------------------------------------------
    # Repository discovery
    # ------------------------------------------------------------------

    def is_git_repo(self, repo_path: str | Path) -> bool:
        try:
            with Repo(str(repo_path)):
                return True
        except NotGitRepository:
            return False

    def exclude_file(self, repo_path: str | Path) -> Path:
        """Location of *repo_path*'s ``info/exclude`` file."""
        try:
            with Repo(str(repo_path)) as repo:
                return Path(repo.controldir()) / "info" / "exclude"
        except NotGitRepository as exc:
            raise NotAGitRepoError(f"Not a git repository: {repo_path}") from exc

    async def _read_lines(self, path: Path) -> list[str]:
        if not path.exists():
            return []
        try:
            async with aiofiles.open(path, encoding="utf-8") as fh:
                content = await fh.read()
        except OSError as exc:
            raise FileError(f"Could not read {path}: {exc}") from exc
        return content.splitlines()

    async def _write_lines(self, path: Path, lines: list[str]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as fh:
                await fh.write("\n".join(lines) + "\n" if lines else "")
        except OSError as exc:
            raise FileError(f"Could not write {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def is_excluded(self, repo_path: str | Path, relative_path: str) -> bool:
        """``True`` if any pattern in the repository's exclude file matches."""
        path = self.exclude_file(repo_path)
        lines = await self._read_lines(path)
        return _build_spec(lines).match_file(_normalize(relative_path))

    async def list_exclusions(self, repo_path: str | Path, scope_id: str) -> list[str]:
        """Patterns currently recorded under *scope_id*."""
        lines = await self._read_lines(self.exclude_file(repo_path))
        marker = _marker(scope_id)
        return [
            lines[i + 1].strip()
            for i in range(len(lines) - 1)
            if lines[i].strip() == marker
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_exclusions(
        self,
        repo_path: str | Path,
        relative_paths: list[str],
        scope_id: str,
    ) -> list[str]:
        """Add a scoped entry per path; returns the paths actually added."""
        path = self.exclude_file(repo_path)
        marker = _marker(scope_id)
        added: list[str] = []

        async with self._locks.hold(path):
            lines = await self._read_lines(path)
            for rel in relative_paths:
                normalized = _normalize(rel)
                already = any(
                    lines[i].strip() == marker and _same_pattern(lines[i + 1], normalized)
                    for i in range(len(lines) - 1)
                )
                if already:
                    continue
                lines.extend([marker, normalized])
                added.append(normalized)
            if added:
                await self._write_lines(path, lines)

        for rel in added:
            logger.info("Added exclusion for %s in %s", rel, repo_path)
        return added

    async def remove_exclusions(
        self,
        repo_path: str | Path,
        relative_paths: list[str],
        scope_id: str,
    ) -> list[str]:
        """Remove this scope's entries for the given paths.

        Returns the paths whose entries were found and removed.
        """
        path = self.exclude_file(repo_path)
        marker = _marker(scope_id)
        wanted = {_normalize(rel) for rel in relative_paths}
        removed: list[str] = []

        async with self._locks.hold(path):
            lines = await self._read_lines(path)
            kept: list[str] = []
            i = 0
            while i < len(lines):
                if (
                    lines[i].strip() == marker
                    and i + 1 < len(lines)
                    and _normalize(lines[i + 1]) in wanted
                ):
                    removed.append(_normalize(lines[i + 1]))
                    i += 2
                    continue
                kept.append(lines[i])
                i += 1
            if removed:
                await self._write_lines(path, kept)

        for rel in removed:
            logger.info("Removed exclusion for %s from %s", rel, repo_path)
        return removed

    async def add_exclusion(self, repo_path: str | Path, relative_path: str, scope_id: str) -> bool:
        return bool(await self.add_exclusions(repo_path, [relative_path], scope_id))

    async def remove_exclusion(
        self,
        repo_path: str | Path,
        relative_path: str,
        scope_id: str,
    ) -> bool:
        return bool(await self.remove_exclusions(repo_path, [relative_path], scope_id))

    # ------------------------------------------------------------------
    # Global excludes
    # ------------------------------------------------------------------

    def global_excludes_file(self) -> Path | None:
        """The user's global excludes file (``core.excludesFile``), if any.

        Falls back to ``~/.config/git/ignore``.
        """
        if self._global_excludes_file is not None:
            return self._global_excludes_file if self._global_excludes_file.exists() else None

        try:
            configured = StackedConfig.default().get((b"core",), b"excludesFile")
        except KeyError:
            configured = None
        if configured:
            candidate = Path(configured.decode("utf-8")).expanduser()
            if candidate.exists():
                return candidate

        fallback = Path.home() / ".config" / "git" / "ignore"
        return fallback if fallback.exists() else None

    async def is_globally_excluded(self, relative_path: str) -> bool:
        """``True`` if the global excludes file matches the path or its file name."""
        path = self.global_excludes_file()
        if path is None:
            return False
        try:
            lines = await self._read_lines(path)
        except FileError as exc:
            logger.warning("Could not read global exclude file: %s", exc)
            return False

        spec = _build_spec(lines)
        normalized = _normalize(relative_path)
        return spec.match_file(normalized) or spec.match_file(Path(normalized).name)
