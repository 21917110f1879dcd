"""Model for the immutable moderation audit trail."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ufresher.db.session import Base
from ufresher.db.time import utcnow

ACTION_PENDING = "pending"


class ModerationDecision(Base):
    """Audit record of a flagged classifier decision.

    At most one row per content item; written only after the item exists.
    """

    __tablename__ = "moderation_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("content_item.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    # 'post' or 'message'
    content_type: Mapped[str] = mapped_column(String(8), nullable=False)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Review queue state for admins; classifier output stays untouched.
    moderator_action: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ACTION_PENDING,
    )
    classifier_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    resolved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
