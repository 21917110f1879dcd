"""Pydantic schemas for request and response bodies."""

from .content import ContentCreate, ContentItemOut, PublishResponse
from .membership import (
    ClubCreate,
    ClubCreateResponse,
    ClubResponse,
    CommunityResponse,
    MembershipResponse,
    RoomCreate,
    RoomResponse,
)
from .moderation import ModerationDecisionResponse, ReconcileResponse, ReconcileSummary
from .session import ProfileResponse, SessionRequest, SessionResponse

__all__ = [
    "ContentCreate", "ContentItemOut", "PublishResponse",
    "ClubCreate", "ClubCreateResponse", "ClubResponse", "CommunityResponse",
    "MembershipResponse", "RoomCreate", "RoomResponse",
    "ModerationDecisionResponse", "ReconcileResponse", "ReconcileSummary",
    "ProfileResponse", "SessionRequest", "SessionResponse",
]
