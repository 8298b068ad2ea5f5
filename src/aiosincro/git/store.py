"""Version stores using dulwich (no git binary required).

Each managed file owns one store: a non-bare repository holding one branch per
deployment.  The synchronous methods of :class:`VersionStore` are the adapter
primitives.  They assume the caller already holds the store's lock and runs
off the event loop, which is exactly what :meth:`VersionStore.run_exclusive`
provides::

    await store.run_exclusive(path, store.commit_all, path, "message")

Flows that compose several primitives (checkout, mirror, commit) pass a single
synchronous function to ``run_exclusive`` instead of taking the lock once per
primitive, because the lock is not re-entrant.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import logging
import os
import stat
import time
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from dulwich import porcelain
from dulwich.diff_tree import tree_changes
from dulwich.errors import NotGitRepository, NotTreeError
from dulwich.index import build_index_from_tree, commit_tree
from dulwich.object_store import tree_lookup_path
from dulwich.objects import Blob, Commit, Tree
from dulwich.objects import Tag as TagObject
from dulwich.objectspec import parse_commit
from dulwich.patch import write_object_diff
from dulwich.refs import check_ref_format
from dulwich.repo import Repo

from ..exceptions import ConflictError, NoChangesError, StoreError, StoreUnavailableError
from ..models.git import CommitLogEntry
from .locks import StoreLocks
from .mirror import restore_tree, snapshot_tree

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCAL_BRANCH_PREFIX = b"refs/heads/"
TAG_PREFIX = b"refs/tags/"
EMPTY_TREE_ID = Tree().id
SEED_MESSAGE = "Initialize version store"
MAIN_BRANCH = "master"

_FILE_MODE = 0o100644
_NULL_ENTRY = (None, None, None)


def check_tag_name(tag_name: str) -> None:
    """Raise :class:`StoreError` if *tag_name* is not a valid git ref name."""
    if not tag_name or not check_ref_format(TAG_PREFIX + tag_name.encode("utf-8")):
        raise StoreError(f"Invalid tag name: {tag_name!r}")


class VersionStore:
    """Serialised facade over per-file dulwich repositories.

    The constructor accepts plain values; committer identity is fixed for
    every store this instance creates or commits to.
    """

    def __init__(
        self,
        *,
        committer_name: str = "Sincro",
        committer_email: str = "sincro@local",
        locks: StoreLocks | None = None,
    ) -> None:
        self.committer_name = committer_name
        self.committer_email = committer_email
        self._identity = f"{committer_name} <{committer_email}>".encode()
        self.locks = locks or StoreLocks()

    # ------------------------------------------------------------------
    # Exclusive access
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def exclusive(self, store_path: Path) -> AsyncIterator[None]:
        """Hold the FIFO lock for *store_path* for the duration of the block."""
        async with self.locks.hold(store_path):
            yield

    async def run_exclusive(self, store_path: Path, fn: Callable[..., T], *args: Any) -> T:
        """Run the blocking ``fn(*args)`` in a worker thread under the store lock.

        Failures propagate to the caller; the lock is released either way, but
        never before the worker thread has finished.
        """
        async with self.locks.hold(store_path):
            return await self.run_blocking(fn, *args)

    async def run_blocking(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(*args)`` in a worker thread for a caller that holds the lock.

        Cancelling the caller does not return control until the thread is
        done, so the lock held around this call stays held while the store
        is being changed.
        """
        worker = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            while not worker.done():
                with contextlib.suppress(asyncio.CancelledError):
                    await asyncio.wait([worker])
            if not worker.cancelled() and worker.exception() is not None:
                logger.warning("Cancelled store operation failed: %s", worker.exception())
            raise

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, store_path: Path) -> str:
        """Create a new store with a seed commit; returns the seed hash.

        Fails if a repository already exists at *store_path*.
        """
        store_path = Path(store_path)
        if (store_path / ".git").exists():
            raise StoreError(f"Version store already exists: {store_path}")
        store_path.mkdir(parents=True, exist_ok=True)

        with Repo.init(str(store_path)) as repo:
            repo.refs.set_symbolic_ref(b"HEAD", LOCAL_BRANCH_PREFIX + MAIN_BRANCH.encode())
            config = repo.get_config()
            config.set((b"user",), b"name", self.committer_name.encode())
            config.set((b"user",), b"email", self.committer_email.encode())
            config.set((b"core",), b"longpaths", b"true")
            config.write_to_path()

            empty = Tree()
            repo.object_store.add_object(empty)
            sha = self._write_commit(repo, empty.id, SEED_MESSAGE, parents=[])

        logger.info("Version store initialised in %s", store_path)
        return sha

    def _open(self, store_path: Path) -> Repo:
        store_path = Path(store_path)
        if not (store_path / ".git").exists():
            raise StoreUnavailableError(f"Version store not found: {store_path}")
        try:
            return Repo(str(store_path))
        except NotGitRepository as exc:
            raise StoreUnavailableError(f"Version store is corrupt: {store_path}") from exc

    # ------------------------------------------------------------------
    # Refs
    # ------------------------------------------------------------------

    def _resolve(self, repo: Repo, revision: str) -> Commit:
        try:
            obj = parse_commit(repo, revision.encode("utf-8"))
        except (KeyError, ValueError, TypeError) as exc:
            raise StoreError(f"Unknown revision: {revision}") from exc
        if not isinstance(obj, Commit):
            raise StoreError(f"Not a commit: {revision}")
        return obj

    def _head_commit(self, repo: Repo) -> Commit | None:
        try:
            return repo[repo.head()]
        except KeyError:
            return None

    def _head_ref(self, repo: Repo) -> bytes | None:
        names, _sha = repo.refs.follow(b"HEAD")
        if len(names) > 1:
            return names[-1]
        return None

    def rev_parse(self, store_path: Path, revision: str = "HEAD") -> str:
        """Full commit hash for *revision*."""
        with self._open(store_path) as repo:
            return self._resolve(repo, revision).id.decode("ascii")

    def current_branch(self, store_path: Path) -> str:
        """Name of the checked-out branch, or the HEAD hash when detached."""
        with self._open(store_path) as repo:
            ref = self._head_ref(repo)
            if ref is not None and ref.startswith(LOCAL_BRANCH_PREFIX):
                return ref[len(LOCAL_BRANCH_PREFIX) :].decode("utf-8")
            return repo.head().decode("ascii")

    def list_local_branches(self, store_path: Path) -> list[str]:
        with self._open(store_path) as repo:
            return sorted(
                name.decode("utf-8") for name in repo.refs.keys(base=LOCAL_BRANCH_PREFIX)
            )

    def create_branch(
        self,
        store_path: Path,
        name: str,
        start_point: str | None = None,
    ) -> None:
        """Create branch *name* at *start_point* (default: HEAD) and check it out."""
        ref = LOCAL_BRANCH_PREFIX + name.encode("utf-8")
        if not check_ref_format(ref):
            raise StoreError(f"Invalid branch name: {name!r}")

        with self._open(store_path) as repo:
            if ref in repo.refs:
                raise ConflictError(f"Branch already exists: {name}")
            if start_point:
                start = self._resolve(repo, start_point)
            else:
                start = self._head_commit(repo)
                if start is None:
                    raise StoreError(f"Version store has no commits: {store_path}")
            repo.refs[ref] = start.id
            self._checkout(repo, name)

        logger.info(
            "Created branch %s at %s in %s",
            name,
            start.id.decode("ascii")[:8],
            store_path,
        )

    def checkout(self, store_path: Path, target: str) -> None:
        """Switch the working tree to a branch, or detach HEAD at a revision.

        Checking out the branch that is already current is a no-op, so
        uncommitted working-tree content survives it.  Switching away
        discards all uncommitted content.
        """
        with self._open(store_path) as repo:
            self._checkout(repo, target)

    def _checkout(self, repo: Repo, target: str) -> None:
        ref = LOCAL_BRANCH_PREFIX + target.encode("utf-8")
        if ref in repo.refs:
            if self._head_ref(repo) == ref:
                return
            commit = repo[repo.refs[ref]]
            self._reset_worktree(repo, commit.tree)
            repo.refs.set_symbolic_ref(b"HEAD", ref)
        else:
            commit = self._resolve(repo, target)
            self._reset_worktree(repo, commit.tree)
            repo.refs.remove_if_equals(b"HEAD", None)
            repo.refs[b"HEAD"] = commit.id
        logger.debug("Checked out %s in %s", target, repo.path)

    @contextmanager
    def on_branch(self, store_path: Path, branch: str) -> Iterator[None]:
        """Check out *branch* for the block, then return to where HEAD was.

        The previous working copy, uncommitted content included, is restored
        byte for byte on the way out, even when the block raises.
        """
        previous = self.current_branch(store_path)
        if previous == branch:
            yield
            return

        saved = snapshot_tree(Path(store_path))
        self.checkout(store_path, branch)
        try:
            yield
        finally:
            self.checkout(store_path, previous)
            restore_tree(Path(store_path), saved)

    def _reset_worktree(self, repo: Repo, tree_id: bytes) -> None:
        # Stores are private, so the working copy is made to match the target
        # tree exactly, untracked files included.
        root = Path(repo.path)
        wanted = {path for path, _mode, _sha in self._walk_tree(repo, tree_id)}
        for path, full in list(self._worktree_files(repo)):
            if path not in wanted:
                full.unlink()
                _prune_empty_dirs(root, full.parent)
        index_path = repo.index_path()
        if os.path.exists(index_path):
            os.remove(index_path)
        build_index_from_tree(repo.path, repo.index_path(), repo.object_store, tree_id)

    # ------------------------------------------------------------------
    # Trees and blobs
    # ------------------------------------------------------------------

    def _walk_tree(
        self,
        repo: Repo,
        tree_id: bytes,
        prefix: bytes = b"",
    ) -> Iterator[tuple[bytes, int, bytes]]:
        for entry in repo[tree_id].items():
            path = prefix + b"/" + entry.path if prefix else entry.path
            if stat.S_ISDIR(entry.mode):
                yield from self._walk_tree(repo, entry.sha, path)
            else:
                yield path, entry.mode, entry.sha

    def list_tracked_paths(self, store_path: Path, revision: str | None = None) -> list[str]:
        """Relative paths tracked at HEAD or at *revision*, sorted."""
        with self._open(store_path) as repo:
            commit = self._resolve(repo, revision) if revision else self._head_commit(repo)
            if commit is None:
                return []
            return sorted(
                path.decode("utf-8") for path, _mode, _sha in self._walk_tree(repo, commit.tree)
            )

    def read_blob(self, store_path: Path, revision: str, path: str) -> bytes:
        """Return the content of *path* as of *revision*."""
        with self._open(store_path) as repo:
            commit = self._resolve(repo, revision)
            try:
                _mode, sha = tree_lookup_path(repo.__getitem__, commit.tree, path.encode("utf-8"))
            except (KeyError, NotTreeError) as exc:
                raise StoreError(f"{path} does not exist at {revision}") from exc
            blob = repo[sha]
            if not isinstance(blob, Blob):
                raise StoreError(f"{path} is not a file at {revision}")
            return blob.data

    def _worktree_files(self, repo: Repo) -> Iterator[tuple[bytes, Path]]:
        root = Path(repo.path)
        for dirpath, dirnames, filenames in os.walk(root):
            if ".git" in dirnames:
                dirnames.remove(".git")
            for filename in filenames:
                full = Path(dirpath) / filename
                rel = full.relative_to(root).as_posix()
                yield rel.encode("utf-8"), full

    def has_uncommitted_changes(self, store_path: Path) -> bool:
        """``True`` if the working tree differs from HEAD.

        Modified, deleted and untracked files all count.
        """
        with self._open(store_path) as repo:
            head = self._head_commit(repo)
            committed: dict[bytes, bytes] = {}
            if head is not None:
                committed = {
                    path: sha for path, _mode, sha in self._walk_tree(repo, head.tree)
                }

            seen: set[bytes] = set()
            for path, full in self._worktree_files(repo):
                seen.add(path)
                if committed.get(path) != Blob.from_string(full.read_bytes()).id:
                    return True
            return bool(committed.keys() - seen)

    # ------------------------------------------------------------------
    # Commit and tag
    # ------------------------------------------------------------------

    def _write_commit(
        self,
        repo: Repo,
        tree_id: bytes,
        message: str,
        parents: list[bytes],
    ) -> str:
        commit = Commit()
        commit.tree = tree_id
        commit.parents = parents
        commit.author = commit.committer = self._identity
        commit.author_time = commit.commit_time = int(time.time())
        commit.author_timezone = commit.commit_timezone = 0
        commit.encoding = b"UTF-8"
        commit.message = message.encode("utf-8")
        repo.object_store.add_object(commit)
        repo.refs[b"HEAD"] = commit.id
        return commit.id.decode("ascii")

    def _commit_staged(self, repo: Repo, message: str) -> str:
        tree_id = repo.open_index().commit(repo.object_store)
        head = self._head_commit(repo)
        if head is not None and head.tree == tree_id:
            raise NoChangesError("No changes to commit")

        sha = self._write_commit(repo, tree_id, message, [head.id] if head else [])
        logger.info("Committed %s in %s: %s", sha[:8], repo.path, message)
        return sha

    def commit(self, store_path: Path, path: str, message: str) -> str:
        """Stage *path* and commit it; raises :class:`NoChangesError` if unchanged."""
        with self._open(store_path) as repo:
            full = Path(repo.path) / path
            if full.exists():
                porcelain.add(repo, paths=[str(full)])
            return self._commit_staged(repo, message)

    def commit_all(self, store_path: Path, message: str) -> str:
        """Stage every working-tree file and commit.

        Raises :class:`NoChangesError` if the result equals HEAD.
        """
        with self._open(store_path) as repo:
            paths = [str(full) for _path, full in self._worktree_files(repo)]
            if paths:
                porcelain.add(repo, paths=paths)
            return self._commit_staged(repo, message)

    def tag_exists(self, store_path: Path, tag_name: str) -> bool:
        with self._open(store_path) as repo:
            return TAG_PREFIX + tag_name.encode("utf-8") in repo.refs

    def tag(self, store_path: Path, tag_name: str) -> None:
        """Create lightweight tag *tag_name* at HEAD."""
        check_tag_name(tag_name)
        ref = TAG_PREFIX + tag_name.encode("utf-8")
        with self._open(store_path) as repo:
            if ref in repo.refs:
                raise ConflictError(f"Tag already exists: {tag_name}")
            repo.refs[ref] = repo.head()
        logger.info("Created tag %s in %s", tag_name, store_path)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _tag_map(self, repo: Repo, branch: str | None) -> dict[bytes, str]:
        """Map commit ids to tag names, preferring tags in *branch*'s namespace."""
        prefix = f"{branch}/" if branch else None
        mapping: dict[bytes, str] = {}
        for name, sha in repo.refs.as_dict(TAG_PREFIX).items():
            obj = repo[sha]
            if isinstance(obj, TagObject):
                sha = obj.object[1]
            tag_name = name.decode("utf-8")
            current = mapping.get(sha)
            if current is None or (
                prefix and tag_name.startswith(prefix) and not current.startswith(prefix)
            ):
                mapping[sha] = tag_name
        return mapping

    def log(self, store_path: Path, branch: str | None = None) -> list[CommitLogEntry]:
        """First-parent history of *branch* (default: HEAD), newest first.

        Empty-tree commits carry no content and are left out.
        """
        with self._open(store_path) as repo:
            commit = self._resolve(repo, branch) if branch else self._head_commit(repo)
            tags = self._tag_map(repo, branch)

            entries: list[CommitLogEntry] = []
            while commit is not None:
                if commit.tree != EMPTY_TREE_ID:
                    entries.append(
                        CommitLogEntry(
                            hash=commit.id.decode("ascii"),
                            message=commit.message.decode("utf-8", errors="replace").strip(),
                            date=datetime.fromtimestamp(commit.commit_time, tz=UTC).isoformat(),
                            tag=tags.get(commit.id),
                        )
                    )
                commit = repo[commit.parents[0]] if commit.parents else None
            return entries

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    def _render_diff(
        self,
        repo: Repo,
        old_tree: bytes,
        new_tree: bytes,
        path_filter: list[str] | None,
    ) -> str:
        wanted = [p.encode("utf-8") for p in path_filter] if path_filter else None
        buf = io.BytesIO()
        for change in tree_changes(repo.object_store, old_tree, new_tree):
            old = _entry(change.old)
            new = _entry(change.new)
            path = new[0] or old[0]
            if wanted is not None and not any(
                path == p or path.startswith(p + b"/") for p in wanted
            ):
                continue
            write_object_diff(buf, repo.object_store, old, new)
        return buf.getvalue().decode("utf-8", errors="replace")

    def _ensure_empty_tree(self, repo: Repo) -> bytes:
        if EMPTY_TREE_ID not in repo.object_store:
            repo.object_store.add_object(Tree())
        return EMPTY_TREE_ID

    def diff(
        self,
        store_path: Path,
        rev1: str,
        rev2: str | None = None,
        path_filter: list[str] | None = None,
    ) -> str:
        """Unified diff from *rev1* to *rev2*, or from *rev1*'s parent to *rev1*.

        A root commit is compared against the empty tree, so its whole
        content shows up as an addition.
        """
        with self._open(store_path) as repo:
            if rev2 is None:
                new = self._resolve(repo, rev1)
                if new.parents:
                    old_tree = repo[new.parents[0]].tree
                else:
                    old_tree = self._ensure_empty_tree(repo)
            else:
                old_tree = self._resolve(repo, rev1).tree
                new = self._resolve(repo, rev2)
            return self._render_diff(repo, old_tree, new.tree, path_filter)

    def diff_working_tree(self, store_path: Path, path_filter: list[str] | None = None) -> str:
        """Unified diff from HEAD to the current working tree."""
        with self._open(store_path) as repo:
            head = self._head_commit(repo)
            old_tree = head.tree if head is not None else self._ensure_empty_tree(repo)
            modes = {path: mode for path, mode, _sha in self._walk_tree(repo, old_tree)}

            blobs: list[tuple[bytes, bytes, int]] = []
            for path, full in self._worktree_files(repo):
                blob = Blob.from_string(full.read_bytes())
                repo.object_store.add_object(blob)
                blobs.append((path, blob.id, modes.get(path, _FILE_MODE)))
            work_tree = commit_tree(repo.object_store, blobs)

            return self._render_diff(repo, old_tree, work_tree, path_filter)


def _entry(entry: Any) -> tuple[Any, Any, Any]:
    if entry is None:
        return _NULL_ENTRY
    return (entry.path, entry.mode, entry.sha)


def _prune_empty_dirs(root: Path, directory: Path) -> None:
    while directory != root and directory.is_dir() and not any(directory.iterdir()):
        directory.rmdir()
        directory = directory.parent
