"""Filesystem notifications for deployments, using watchdog.

watchdog delivers events on its own thread; they are handed to the event loop
with ``call_soon_threadsafe`` and debounced per scope, so a burst of writes
to one deployment yields a single :class:`WatchEvent`.

A single-file deployment is watched through its parent directory (watching a
file directly is not portable) and events are filtered down to the target.
A bundle deployment watches its base directory recursively.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Literal

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models.deployments import WatchEvent

logger = logging.getLogger(__name__)

EventKind = Literal["changed", "deleted"]
WatchListener = Callable[[WatchEvent], Awaitable[None] | None]


class _DeploymentHandler(FileSystemEventHandler):
    def __init__(self, service: WatcherService, scope_id: str, target: Path) -> None:
        self.service = service
        self.scope_id = scope_id
        self.target = target
        self.is_dir = target.is_dir()

    def _matches(self, raw_path: Any) -> bool:
        path = Path(os.fsdecode(raw_path)).resolve()
        if self.is_dir:
            return path == self.target or self.target in path.parents
        return path == self.target

    def _handle(self, event: FileSystemEvent, kind: EventKind) -> None:
        if event.is_directory and not self.is_dir:
            return
        if self._matches(event.src_path):
            self.service.notify_threadsafe(self.scope_id, kind)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event, "changed")

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event, "changed")

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event, "deleted")

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._matches(event.dest_path):
            self.service.notify_threadsafe(self.scope_id, "changed")
        elif self._matches(event.src_path):
            self.service.notify_threadsafe(self.scope_id, "deleted")


class WatcherService:
    """Install and remove per-deployment watches; fan events out to listeners."""

    def __init__(
        self,
        *,
        debounce: float = 0.5,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.debounce = debounce
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._watches: dict[str, tuple[Path, Any]] = {}
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._listeners: list[WatchListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def running(self) -> bool:
        return self._observer is not None

    async def start(self) -> None:
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._observer = self._observer_factory()
        self._observer.start()
        logger.info("Watcher started")

    async def stop(self) -> None:
        self.unwatch_all()
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        await asyncio.to_thread(observer.join, 2.0)
        logger.info("Watcher stopped")

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def watch(self, scope_id: str, path: str | Path) -> bool:
        """Watch *path* for *scope_id*; returns ``False`` if nothing to watch.

        Re-watching the same path is a no-op; a different path replaces the
        previous watch.
        """
        if self._observer is None:
            raise RuntimeError("Watcher is not running")

        target = Path(path).resolve()
        current = self._watches.get(scope_id)
        if current is not None:
            if current[0] == target:
                logger.debug("Already watching %s for %s", target, scope_id)
                return True
            self.unwatch(scope_id)

        watch_dir = target if target.is_dir() else target.parent
        if not watch_dir.is_dir():
            logger.debug("Not watching %s: %s does not exist", scope_id, watch_dir)
            return False

        handler = _DeploymentHandler(self, scope_id, target)
        observed = self._observer.schedule(handler, str(watch_dir), recursive=handler.is_dir)
        self._watches[scope_id] = (target, observed)
        logger.debug("Watching %s for %s", target, scope_id)
        return True

    def unwatch(self, scope_id: str) -> None:
        pending = self._pending.pop(scope_id, None)
        if pending is not None:
            pending.cancel()
        entry = self._watches.pop(scope_id, None)
        if entry is None or self._observer is None:
            return
        try:
            self._observer.unschedule(entry[1])
        except (KeyError, ValueError):
            logger.debug("Watch for %s was already gone", scope_id)

    def unwatch_all(self) -> None:
        for scope_id in list(self._watches):
            self.unwatch(scope_id)

    def is_watching(self, scope_id: str) -> bool:
        return scope_id in self._watches

    def watched_scopes(self) -> list[str]:
        return sorted(self._watches)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_listener(self, listener: WatchListener) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it again."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def notify_threadsafe(self, scope_id: str, kind: EventKind) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.notify, scope_id, kind)

    def notify(self, scope_id: str, kind: EventKind) -> None:
        """Queue an event for *scope_id*; the latest kind wins within the debounce window."""
        if scope_id not in self._watches:
            return
        loop = self._loop or asyncio.get_running_loop()
        pending = self._pending.pop(scope_id, None)
        if pending is not None:
            pending.cancel()
        self._pending[scope_id] = loop.call_later(self.debounce, self._fire, scope_id, kind)

    def _fire(self, scope_id: str, kind: EventKind) -> None:
        self._pending.pop(scope_id, None)
        if scope_id not in self._watches:
            return
        event = WatchEvent(deployment_id=scope_id, kind=kind)
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception:
                logger.exception("Watch listener failed for %s", scope_id)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Watch listener failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for listener coroutines that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
