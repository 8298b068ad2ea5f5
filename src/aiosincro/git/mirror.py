"""Store <-> deployment content mirroring.

Filesystem-only, no git operations.  A single managed file lives in its
store as one entry named :data:`CONTENT_ENTRY` and maps onto the exact
deployment target; a bundle maps its tracked relative paths one-to-one onto
the deployment's base directory.  The tracked-path list is authoritative:
untracked files at a deployment are never picked up.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..exceptions import MissingDeployedContentError, PathSecurityError, StoreError
from ..models.files import FileKind

logger = logging.getLogger(__name__)

CONTENT_ENTRY = "content"


def resolve_target(repo_path: str | Path, relative_path: str) -> Path:
    """Return ``repo_path / relative_path``, ensuring it stays inside *repo_path*."""
    root = Path(repo_path).resolve()
    relative_path = relative_path.strip()
    if relative_path in ("", ".", "/"):
        return root
    if relative_path.startswith("/"):
        relative_path = relative_path[1:]

    full_path = (root / relative_path).resolve()
    if full_path != root and root not in full_path.parents:
        raise PathSecurityError(f"Path outside repository: {relative_path}")
    return full_path


def store_entries(kind: FileKind, tracked: list[str]) -> list[str]:
    """Store-relative paths that make up the managed content."""
    if kind == FileKind.SINGLE:
        return [CONTENT_ENTRY]
    return list(tracked)


def exclusion_paths(kind: FileKind, relative_path: str, tracked: list[str]) -> list[str]:
    """Repository-relative paths a deployment adds to the exclude list."""
    base = relative_path.strip().strip("/")
    if kind == FileKind.SINGLE:
        return [base]
    if base in ("", "."):
        return list(tracked)
    return [f"{base}/{path}" for path in tracked]


def _copy(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dst)


def mirror_to_store(
    store_root: Path,
    target: Path,
    kind: FileKind,
    tracked: list[str],
) -> list[str]:
    """Copy deployed content into the store working copy.

    Returns the tracked paths that were missing at the deployment (always
    empty for single files, which raise instead).
    """
    if kind == FileKind.SINGLE:
        if not target.is_file():
            raise MissingDeployedContentError(f"Deployed file does not exist: {target}")
        _copy(target, store_root / CONTENT_ENTRY)
        return []

    if not target.is_dir():
        raise MissingDeployedContentError(f"Deployed directory does not exist: {target}")

    missing: list[str] = []
    for rel_path in tracked:
        src = target / rel_path
        if not src.is_file():
            missing.append(rel_path)
            continue
        _copy(src, store_root / rel_path)

    if missing:
        logger.debug("Skipped %d missing bundle file(s) at %s", len(missing), target)
    return missing


def mirror_to_deployment(
    store_root: Path,
    target: Path,
    kind: FileKind,
    tracked: list[str],
) -> None:
    """Copy the store working copy out to the deployment."""
    if kind == FileKind.SINGLE:
        src = store_root / CONTENT_ENTRY
        if not src.is_file():
            raise StoreError(f"Version store has no content: {store_root}")
        _copy(src, target)
        return

    target.mkdir(parents=True, exist_ok=True)
    for rel_path in tracked:
        src = store_root / rel_path
        if src.is_file():
            _copy(src, target / rel_path)


def write_entry(root: Path, rel_path: str, data: bytes) -> None:
    """Write *data* to ``root / rel_path``, creating parent directories."""
    dst = root / rel_path
    dst.parent.mkdir(parents=True, exist_ok=True)
    dst.write_bytes(data)


def snapshot_paths(store_root: Path, paths: list[str]) -> dict[str, bytes | None]:
    """Capture working-copy bytes for *paths*; ``None`` marks an absent file."""
    snapshot: dict[str, bytes | None] = {}
    for rel_path in paths:
        full = store_root / rel_path
        snapshot[rel_path] = full.read_bytes() if full.is_file() else None
    return snapshot


def restore_snapshot(store_root: Path, snapshot: dict[str, bytes | None]) -> None:
    """Put the working copy back exactly as :func:`snapshot_paths` saw it."""
    for rel_path, data in snapshot.items():
        full = store_root / rel_path
        if data is None:
            if full.exists():
                os.remove(full)
        else:
            write_entry(store_root, rel_path, data)


def _working_files(store_root: Path) -> list[str]:
    paths: list[str] = []
    for root, dirs, files in os.walk(store_root):
        if ".git" in dirs:
            dirs.remove(".git")
        for filename in files:
            paths.append((Path(root) / filename).relative_to(store_root).as_posix())
    return paths


def snapshot_tree(store_root: Path) -> dict[str, bytes | None]:
    """Capture the whole working copy (everything outside ``.git``)."""
    return snapshot_paths(store_root, _working_files(store_root))


def restore_tree(store_root: Path, snapshot: dict[str, bytes | None]) -> None:
    """Make the working copy equal to *snapshot*, deleting files it lacks."""
    extra = {path: None for path in _working_files(store_root) if path not in snapshot}
    restore_snapshot(store_root, {**extra, **snapshot})


@contextmanager
def overlay_deployment(
    store_root: Path,
    target: Path,
    kind: FileKind,
    tracked: list[str],
) -> Iterator[list[str]]:
    """Temporarily replace the store working copy with the deployed content.

    Bundle files missing at the deployment are removed from the working copy
    too, so the overlay shows them as deletions.  The original working copy
    is restored on exit, including when the body raises.  Yields the missing
    paths.
    """
    snapshot = snapshot_paths(store_root, store_entries(kind, tracked))
    try:
        missing = mirror_to_store(store_root, target, kind, tracked)
        for rel_path in missing:
            stale = store_root / rel_path
            if stale.exists():
                os.remove(stale)
        yield missing
    finally:
        restore_snapshot(store_root, snapshot)
