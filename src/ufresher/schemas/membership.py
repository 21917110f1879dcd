# src/ufresher/schemas/membership.py
"""Community, club and chat room schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CommunityResponse(BaseModel):
    """Schema for community information."""

    id: int
    name: str
    description: str | None
    college_name: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ClubCreate(BaseModel):
    """Schema for creating a club."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(None, max_length=1000)
    community_id: int


class ClubResponse(BaseModel):
    """Schema for club information."""

    id: int
    name: str
    description: str | None
    community_id: int
    club_head: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ClubCreateResponse(BaseModel):
    """Schema returned after creating a club."""

    club: ClubResponse
    creator_joined: bool
    warnings: list[str] = Field(default_factory=list)


class RoomCreate(BaseModel):
    """Schema for creating a chat room."""

    name: str = Field(..., min_length=1, max_length=100)
    mentorship_id: int | None = Field(None, description="Bind the room to a mentorship")


class RoomResponse(BaseModel):
    """Schema for chat room information."""

    id: int
    name: str
    mentorship_id: int | None
    created_by: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MembershipResponse(BaseModel):
    """Schema describing the outcome of a membership change."""

    status: str
    container_id: int
