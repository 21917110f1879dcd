# src/ufresher/schemas/content.py
"""Content-related Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from ufresher.db.time import as_utc
from ufresher.models.content import ContentKey


class ContentCreate(BaseModel):
    """Schema for publishing a club post or chat message."""

    body: str = Field(..., min_length=1, max_length=5000, description="Text or attachment URL")
    message_type: Literal["text", "image", "file"] = Field(
        "text",
        description="Chat message kind; club posts are always text",
    )
    client_token: str | None = Field(
        None,
        max_length=64,
        description="Optional idempotency token; a retry with the same token returns the first result",
    )

    @field_validator("body")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("body must not be blank")
        return value


class ContentItemOut(BaseModel):
    """Schema for a stored item as delivered to viewers."""

    id: int
    author_id: str
    container_kind: str
    container_id: int
    body: str
    message_type: str
    client_token: str | None = None
    created_at: datetime
    moderation_status: str
    moderation_reason: str | None = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def key(self) -> ContentKey:
        return ContentKey(self.created_at, self.id)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cursor(self) -> str:
        """Resume key for reconnecting after this item."""
        return self.key.encode()


class PublishResponse(BaseModel):
    """Schema returned after publishing."""

    item: ContentItemOut
    created: bool = Field(..., description="False when an idempotent retry returned an existing item")
    flagged: bool
