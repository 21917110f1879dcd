# src/ufresher/schemas/session.py
"""Session and profile schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SessionRequest(BaseModel):
    """Schema for establishing a session, optionally with the admin code."""

    admin_code: str | None = Field(None, description="Shared secret that grants the admin role")


class ProfileResponse(BaseModel):
    """Schema for a user profile."""

    id: str
    name: str
    email: str
    role: str
    available_for_mentorship: bool

    model_config = ConfigDict(from_attributes=True)


class SessionResponse(BaseModel):
    """Schema for the caller's resolved session."""

    subject_id: str
    issued_at: datetime
    profile: ProfileResponse | None
