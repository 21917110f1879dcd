"""SQLAlchemy models for chat rooms and the mentorships that own them."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ufresher.db.session import Base
from ufresher.db.time import utcnow

MENTORSHIP_PENDING = "pending"
MENTORSHIP_ACCEPTED = "accepted"
MENTORSHIP_REJECTED = "rejected"
MENTORSHIP_COMPLETED = "completed"


class Mentorship(Base):
    """Mentor/mentee pairing; scopes who may enter its private chat room."""

    __tablename__ = "mentorship"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    mentee_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MENTORSHIP_PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def is_party(self, user_id: str) -> bool:
        """Return True if ``user_id`` is the mentor or the mentee."""
        return user_id in (self.mentor_id, self.mentee_id)


class ChatRoom(Base):
    """Chat room; private when bound to a mentorship, open otherwise."""

    __tablename__ = "chat_room"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    mentorship_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("mentorship.id", ondelete="CASCADE"),
        nullable=True,
    )
    created_by: Mapped[str | None] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class RoomMembership(Base):
    """Join table mapping users into chat rooms."""

    __tablename__ = "room_membership"
    __table_args__ = (UniqueConstraint("user_id", "room_id", name="uq_room_membership_user_room"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    room_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chat_room.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
