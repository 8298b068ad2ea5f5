"""Request/response boundary.

Every method returns a :class:`SincroResponse`; nothing raises across this
seam.  Library errors keep their ``code`` so callers can tell an expected
``no_changes`` apart from a real failure.  Any transport (IPC, HTTP, CLI) can
sit in front of :class:`SincroAPI`.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, ParamSpec

from pydantic import BaseModel

from .app import Sincro
from .exceptions import NoChangesError, SincroError
from .models.common import SincroResponse

logger = logging.getLogger(__name__)

P = ParamSpec("P")


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


def _envelope(
    func: Callable[P, Awaitable[Any]],
) -> Callable[P, Awaitable[SincroResponse]]:
    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> SincroResponse:
        try:
            data = await func(*args, **kwargs)
        except NoChangesError as exc:
            logger.debug("%s: %s", func.__name__, exc)
            return SincroResponse(success=False, error=str(exc), code=exc.code)
        except SincroError as exc:
            logger.error("%s failed: %s", func.__name__, exc)
            return SincroResponse(success=False, error=str(exc), code=exc.code)
        except Exception as exc:
            logger.exception("Unexpected error in %s", func.__name__)
            return SincroResponse(success=False, error=str(exc), code="internal_error")
        return SincroResponse(success=True, data=_dump(data))

    return wrapper


class SincroAPI:
    """Uniform success/error envelopes over the :class:`Sincro` services."""

    def __init__(self, sincro: Sincro) -> None:
        self.sincro = sincro

    # ------------------------------------------------------------------
    # Managed files
    # ------------------------------------------------------------------

    @_envelope
    async def list_files(self) -> Any:
        return await self.sincro.files.list_files()

    @_envelope
    async def get_file(self, file_id: str) -> Any:
        return await self.sincro.files.get_file(file_id)

    @_envelope
    async def create_file(self, name: str, alias: str | None = None) -> Any:
        return await self.sincro.files.create_file(name, alias)

    @_envelope
    async def create_bundle(
        self,
        name: str,
        base_path: str,
        file_paths: list[str],
        alias: str | None = None,
    ) -> Any:
        return await self.sincro.files.create_bundle(name, Path(base_path), file_paths, alias)

    @_envelope
    async def update_file(self, file_id: str, **changes: Any) -> Any:
        return await self.sincro.files.update_file(file_id, **changes)

    @_envelope
    async def delete_file(self, file_id: str) -> Any:
        await self.sincro.files.delete_file(file_id)

    @_envelope
    async def list_bundle_files(self, file_id: str) -> Any:
        return await self.sincro.files.list_bundle_files(file_id)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    @_envelope
    async def list_tags(self) -> Any:
        return await self.sincro.files.list_tags()

    @_envelope
    async def create_tag(self, name: str, color: str | None = None) -> Any:
        if color is None:
            return await self.sincro.files.create_tag(name)
        return await self.sincro.files.create_tag(name, color)

    @_envelope
    async def delete_tag(self, tag_id: str) -> Any:
        await self.sincro.files.delete_tag(tag_id)

    @_envelope
    async def get_file_tags(self, file_id: str) -> Any:
        return await self.sincro.files.get_file_tags(file_id)

    @_envelope
    async def set_file_tags(self, file_id: str, tag_ids: list[str]) -> Any:
        return await self.sincro.files.set_file_tags(file_id, tag_ids)

    @_envelope
    async def get_deployment_tags(self, deployment_id: str) -> Any:
        return await self.sincro.files.get_deployment_tags(deployment_id)

    @_envelope
    async def set_deployment_tags(self, deployment_id: str, tag_ids: list[str]) -> Any:
        return await self.sincro.files.set_deployment_tags(deployment_id, tag_ids)

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    @_envelope
    async def is_git_repo(self, repo_path: str) -> Any:
        return self.sincro.excludes.is_git_repo(repo_path)

    @_envelope
    async def list_deployments(self, file_id: str | None = None) -> Any:
        return await self.sincro.deployments.list_deployments(file_id)

    @_envelope
    async def get_deployment(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.get_deployment(deployment_id)

    @_envelope
    async def create_deployment(
        self,
        file_id: str,
        repo_path: str,
        file_relative_path: str,
        *,
        source_branch: str | None = None,
        source_commit: str | None = None,
        auto_exclude: bool = True,
        description: str | None = None,
    ) -> Any:
        return await self.sincro.deployments.create_deployment(
            file_id,
            repo_path,
            file_relative_path,
            source_branch=source_branch,
            source_commit=source_commit,
            auto_exclude=auto_exclude,
            description=description,
        )

    @_envelope
    async def update_description(self, deployment_id: str, description: str | None) -> Any:
        return await self.sincro.deployments.update_description(deployment_id, description)

    @_envelope
    async def deactivate_deployment(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.deactivate_deployment(deployment_id)

    @_envelope
    async def reactivate_deployment(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.reactivate_deployment(deployment_id)

    @_envelope
    async def delete_deployment(self, deployment_id: str, delete_from_disk: bool = False) -> Any:
        await self.sincro.deployments.delete_deployment(
            deployment_id, delete_from_disk=delete_from_disk
        )

    @_envelope
    async def sync_deployment(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.sync_deployment(deployment_id)

    @_envelope
    async def check_for_changes(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.check_for_changes(deployment_id)

    @_envelope
    async def count_pending_changes(self) -> Any:
        return await self.sincro.deployments.count_pending_changes()

    @_envelope
    async def get_stats(self) -> Any:
        return await self.sincro.deployments.get_stats()

    @_envelope
    async def path_exists(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.path_exists(deployment_id)

    @_envelope
    async def check_exclusion(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.check_exclusion(deployment_id)

    @_envelope
    async def check_global_exclusion(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.check_global_exclusion(deployment_id)

    @_envelope
    async def add_exclusion(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.add_exclusion(deployment_id)

    @_envelope
    async def remove_exclusion(self, deployment_id: str) -> Any:
        return await self.sincro.deployments.remove_exclusion(deployment_id)

    # ------------------------------------------------------------------
    # Commits and history
    # ------------------------------------------------------------------

    @_envelope
    async def create_commit(self, deployment_id: str, message: str, tag: str | None = None) -> Any:
        return await self.sincro.commits.create_commit(deployment_id, message, tag)

    @_envelope
    async def checkout_to_commit(self, deployment_id: str, commit_hash: str) -> Any:
        return await self.sincro.commits.checkout_to_commit(deployment_id, commit_hash)

    @_envelope
    async def list_commits(self, deployment_id: str) -> Any:
        return await self.sincro.commits.list_commits(deployment_id)

    @_envelope
    async def get_diff(self, deployment_id: str, hash1: str, hash2: str | None = None) -> Any:
        return await self.sincro.commits.get_diff(deployment_id, hash1, hash2)

    @_envelope
    async def get_diff_working(self, deployment_id: str) -> Any:
        return await self.sincro.commits.get_diff_working(deployment_id)

    @_envelope
    async def get_file_at_commit(self, deployment_id: str, commit_hash: str) -> Any:
        return await self.sincro.commits.get_file_at_commit(deployment_id, commit_hash)

    @_envelope
    async def get_files_at_commit(self, deployment_id: str, commit_hash: str) -> Any:
        return await self.sincro.commits.get_files_at_commit(deployment_id, commit_hash)

    @_envelope
    async def get_current_files(self, deployment_id: str) -> Any:
        return await self.sincro.commits.get_current_files(deployment_id)
