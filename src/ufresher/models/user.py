"""SQLAlchemy model for account profiles."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ufresher.db.session import Base
from ufresher.db.time import utcnow

ROLE_ADMIN = "admin"
ROLE_MENTOR = "mentor"
ROLE_JUNIOR = "junior"
ROLES = frozenset({ROLE_ADMIN, ROLE_MENTOR, ROLE_JUNIOR})


class Profile(Base):
    """Profile row keyed by the identity provider's subject id.

    Created lazily on the first successful session; read-mostly afterwards.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=ROLE_JUNIOR)
    available_for_mentorship: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def is_admin(self) -> bool:
        """Return True if the profile carries the admin role."""
        return self.role == ROLE_ADMIN
