"""SQLAlchemy models for posts/messages and their per-container append cursor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ufresher.db.session import Base
from ufresher.db.time import as_utc, utcnow

CONTAINER_CLUB = "club"
CONTAINER_ROOM = "room"
CONTAINER_KINDS = frozenset({CONTAINER_CLUB, CONTAINER_ROOM})

# Moderation status codes. Content is append-only; only the status may move,
# and only from pending to approved/flagged.
STATUS_APPROVED = "approved"
STATUS_FLAGGED = "flagged"
STATUS_PENDING = "pending"

MESSAGE_TEXT = "text"
MESSAGE_IMAGE = "image"
MESSAGE_FILE = "file"
MESSAGE_TYPES = frozenset({MESSAGE_TEXT, MESSAGE_IMAGE, MESSAGE_FILE})


@dataclass(frozen=True, order=True)
class ContainerRef:
    """Identifies a club feed or a chat room."""

    kind: str
    id: int

    def __post_init__(self) -> None:
        if self.kind not in CONTAINER_KINDS:
            raise ValueError(f"Unknown container kind: {self.kind!r}")

    @property
    def content_type(self) -> str:
        """Return the audit content type for items of this container."""
        return "post" if self.kind == CONTAINER_CLUB else "message"

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(frozen=True, order=True)
class ContentKey:
    """Ordering key of an item inside its container: (created_at, id)."""

    created_at: datetime
    id: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "created_at", as_utc(self.created_at))

    def encode(self) -> str:
        """Return the wire form ``<ISO timestamp>|<id>``."""
        return f"{self.created_at.isoformat()}|{self.id}"

    @classmethod
    def decode(cls, raw: str) -> ContentKey:
        """Parse the wire form produced by :meth:`encode`.

        Raises:
            ValueError: If ``raw`` is not a valid key.
        """
        stamp, sep, ident = raw.rpartition("|")
        if not sep or not stamp:
            raise ValueError(f"Malformed content key: {raw!r}")
        return cls(created_at=datetime.fromisoformat(stamp), id=int(ident))


class ContentItem(Base):
    """Club post or chat message.

    Ordering inside a container is (created_at, id); created_at alone is not
    unique under concurrent writers, so id breaks ties.
    """

    __tablename__ = "content_item"
    __table_args__ = (
        Index("ix_content_item_order", "container_kind", "container_id", "created_at", "id"),
        # NULL tokens never collide, so only token-carrying retries are deduplicated.
        Index(
            "ix_content_item_client_token",
            "author_id",
            "container_kind",
            "container_id",
            "client_token",
            unique=True,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    author_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    container_kind: Mapped[str] = mapped_column(String(8), nullable=False)
    container_id: Mapped[int] = mapped_column(Integer, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(8), nullable=False, default=MESSAGE_TEXT)
    # Optional caller-supplied idempotency token for publish retries.
    client_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    moderation_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=STATUS_APPROVED,
    )
    moderation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def container(self) -> ContainerRef:
        """Return the container this item belongs to."""
        return ContainerRef(self.container_kind, self.container_id)

    @property
    def key(self) -> ContentKey:
        """Return the ordering key of this item."""
        return ContentKey(self.created_at, self.id)

    def visible_to(self, viewer_id: str, *, is_admin: bool = False) -> bool:
        """Flagged and pending items are restricted to their author and admins."""
        if self.moderation_status == STATUS_APPROVED:
            return True
        return is_admin or self.author_id == viewer_id


class ContainerCursor(Base):
    """Append cursor of one container.

    Publishers update this row inside the insert transaction, which makes it
    the lock that serializes appends to a container and keeps ``created_at``
    non-decreasing in commit order.
    """

    __tablename__ = "container_cursor"
    __table_args__ = (
        UniqueConstraint("container_kind", "container_id", name="uq_container_cursor"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    container_kind: Mapped[str] = mapped_column(String(8), nullable=False)
    container_id: Mapped[int] = mapped_column(Integer, nullable=False)
    last_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
