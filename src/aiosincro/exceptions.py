"""Exception hierarchy for aiosincro.

Every class carries a stable ``code`` so the request/response boundary can
report failures without callers matching on message text.
"""


class SincroError(Exception):
    """Base exception for all aiosincro errors."""

    code = "error"


class NotFoundError(SincroError):
    """A managed file, deployment or tag row does not exist."""

    code = "not_found"


class ConflictError(SincroError):
    """The requested change collides with an existing row or ref."""

    code = "conflict"


class NotAGitRepoError(SincroError):
    """A deployment target is not inside a git working tree."""

    code = "not_a_git_repo"


class StoreError(SincroError):
    """Error during a version-store operation."""

    code = "store_error"


class StoreUnavailableError(StoreError):
    """The version store directory is missing or corrupt."""

    code = "store_unavailable"


class NoChangesError(StoreError):
    """A commit was requested but nothing differs from HEAD."""

    code = "no_changes"


class FileError(SincroError):
    """Error during a file operation."""

    code = "file_error"


class MissingDeployedContentError(FileError):
    """The deployed file or directory a mirror reads from is absent."""

    code = "missing_deployed_content"


class PathSecurityError(FileError):
    """A requested path resolved outside its allowed base directory."""

    code = "path_security"
