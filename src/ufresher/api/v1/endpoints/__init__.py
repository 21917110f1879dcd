# src/ufresher/api/v1/endpoints/__init__.py
"""API endpoint routers."""

from .auth import router as auth_router
from .clubs import router as clubs_router
from .communities import router as communities_router
from .moderation import router as moderation_router
from .rooms import router as rooms_router
from .stream import router as stream_router

__all__ = [
    "auth_router",
    "clubs_router",
    "communities_router",
    "moderation_router",
    "rooms_router",
    "stream_router",
]
