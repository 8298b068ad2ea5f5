"""Managed-file management."""

from .manager import FileService

__all__ = ["FileService"]
