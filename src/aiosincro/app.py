"""Composition root.

:class:`Sincro` builds every service from one :class:`SincroSettings` and
owns their lifecycle; nothing in the library is a global singleton::

    sincro = Sincro(load_settings(Path("sincro.yaml")))
    await sincro.start()
    ...
    await sincro.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from .config import SincroSettings
from .exceptions import NotFoundError
from .files.manager import FileService
from .git.exclude import ExcludeService
from .git.store import VersionStore
from .metadata import MetadataStore
from .models.deployments import DriftEvent, WatchEvent
from .services.commits import CommitService
from .services.deployments import DeploymentService
from .watcher import WatcherService

logger = logging.getLogger(__name__)

DriftListener = Callable[[DriftEvent], Awaitable[None] | None]


class Sincro:
    """Wires the services together and routes watch events into drift checks."""

    def __init__(
        self,
        settings: SincroSettings | None = None,
        *,
        metadata: MetadataStore | None = None,
        excludes: ExcludeService | None = None,
        watcher: WatcherService | None = None,
    ) -> None:
        self.settings = settings or SincroSettings()
        self.metadata = metadata or MetadataStore(self.settings.metadata_path)
        self.store = VersionStore(
            committer_name=self.settings.committer_name,
            committer_email=self.settings.committer_email,
        )
        self.excludes = excludes or ExcludeService()
        self.watcher = watcher or WatcherService(debounce=self.settings.watch_debounce)
        self.files = FileService(self.settings.files_dir, self.store, self.metadata, self.watcher)
        self.deployments = DeploymentService(
            self.files,
            self.excludes,
            self.watcher,
            branch_prefix=self.settings.branch_prefix,
        )
        self.commits = CommitService(self.files)
        self._drift_listeners: list[DriftListener] = []
        self._remove_watch_listener: Callable[[], None] | None = None

    async def start(self) -> None:
        """Create data directories, start the watcher and watch active deployments."""
        await asyncio.to_thread(self.settings.files_dir.mkdir, parents=True, exist_ok=True)
        await self.watcher.start()
        if self._remove_watch_listener is None:
            self._remove_watch_listener = self.watcher.add_listener(self.handle_watch_event)

        for deployment in self.metadata.list_deployments(active=True):
            self.watcher.watch(deployment.id, deployment.target_path)
        logger.info("Sincro started with data in %s", self.settings.data_dir)

    async def stop(self) -> None:
        if self._remove_watch_listener is not None:
            self._remove_watch_listener()
            self._remove_watch_listener = None
        await self.watcher.stop()
        logger.info("Sincro stopped")

    def add_drift_listener(self, listener: DriftListener) -> Callable[[], None]:
        self._drift_listeners.append(listener)

        def remove() -> None:
            if listener in self._drift_listeners:
                self._drift_listeners.remove(listener)

        return remove

    async def handle_watch_event(self, event: WatchEvent) -> DriftEvent | None:
        """Run a watch event through the drift probe and publish the result.

        Probes go through the same per-store lock as every other operation.
        """
        try:
            has_changes = await self.deployments.check_for_changes(event.deployment_id)
        except NotFoundError:
            self.watcher.unwatch(event.deployment_id)
            return None
        except Exception as exc:
            logger.warning("Drift check failed for %s: %s", event.deployment_id, exc)
            return None

        drift = DriftEvent(
            deployment_id=event.deployment_id,
            kind=event.kind,
            has_changes=has_changes,
        )
        for listener in list(self._drift_listeners):
            try:
                result = listener(drift)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Drift listener failed for %s", event.deployment_id)
        return drift
