"""Data access layer."""

from .content_repo import ContentRepository

__all__ = ["ContentRepository"]
