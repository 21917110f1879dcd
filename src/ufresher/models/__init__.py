"""SQLAlchemy models for the U-Fresher coordinator."""

from .chat import ChatRoom, Mentorship, RoomMembership
from .club import Club, ClubMembership, MembershipRepair
from .community import Community, CommunityMembership
from .content import ContainerCursor, ContainerRef, ContentItem, ContentKey
from .moderation import ModerationDecision
from .user import Profile

__all__ = [
    "ChatRoom", "Mentorship", "RoomMembership",
    "Club", "ClubMembership", "MembershipRepair",
    "Community", "CommunityMembership",
    "ContainerCursor", "ContainerRef", "ContentItem", "ContentKey",
    "ModerationDecision",
    "Profile",
]
