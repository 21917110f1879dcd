"""SQLAlchemy models for clubs, club members and membership repairs."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, SmallInteger, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ufresher.db.session import Base
from ufresher.db.time import utcnow

REPAIR_PENDING = "pending"
REPAIR_DONE = "done"
REPAIR_FAILED = "failed"


class Club(Base):
    """Sub-group inside a community; a user may belong to many."""

    __tablename__ = "club"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    community_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("community.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    club_head: Mapped[str | None] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ClubMembership(Base):
    """Join table mapping users into clubs; unique per (user, club) pair."""

    __tablename__ = "club_membership"
    __table_args__ = (UniqueConstraint("user_id", "club_id", name="uq_club_membership_user_club"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    club_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("club.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class MembershipRepair(Base):
    """Reconciliation task for a creator auto-join that failed at club creation."""

    __tablename__ = "membership_repair"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    club_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("club.id", ondelete="CASCADE"),
        nullable=False,
    )
    # 'pending', 'done', 'failed'
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=REPAIR_PENDING)
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
