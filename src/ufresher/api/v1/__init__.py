# src/ufresher/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import (
    auth_router,
    clubs_router,
    communities_router,
    moderation_router,
    rooms_router,
    stream_router,
)

__all__ = [
    "auth_router",
    "clubs_router",
    "communities_router",
    "moderation_router",
    "rooms_router",
    "stream_router",
]
