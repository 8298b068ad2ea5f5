"""Common response model."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class SincroResponse(BaseModel):
    """Standard request/response envelope.

    ``code`` mirrors :attr:`aiosincro.exceptions.SincroError.code` on failure
    so callers can special-case expected outcomes such as ``no_changes``.
    """

    success: bool
    data: Any | None = None
    error: str | None = None
    code: str | None = None
