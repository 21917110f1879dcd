"""Community, club and chat-room membership with store-enforced invariants.

Uniqueness rules are enforced by unique constraints in the store, never by
read-then-insert: a join inserts and translates a constraint violation into
:class:`AlreadyMemberError`. Leaves are idempotent deletes.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ufresher.core.errors import (
    AlreadyMemberError,
    NotFoundError,
    NotMemberError,
    PermanentStoreError,
    StoreError,
    TransientStoreError,
)
from ufresher.models.chat import MENTORSHIP_ACCEPTED, ChatRoom, Mentorship, RoomMembership
from ufresher.models.club import Club, ClubMembership, MembershipRepair
from ufresher.models.community import Community, CommunityMembership
from ufresher.models.content import CONTAINER_CLUB, ContainerRef
from ufresher.services.session_manager import AuthSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _retry_transient(operation: Callable[..., T]) -> Callable[..., T]:
    """Retry an idempotent store operation once after a transient failure."""

    @functools.wraps(operation)
    def wrapper(self: MembershipLedger, db: Session, *args: Any, **kwargs: Any) -> T:
        try:
            return operation(self, db, *args, **kwargs)
        except OperationalError as exc:
            db.rollback()
            logger.warning("Retrying %s after transient store error: %s", operation.__name__, exc)
        try:
            return operation(self, db, *args, **kwargs)
        except OperationalError as exc:
            db.rollback()
            raise TransientStoreError(str(exc)) from exc

    return wrapper


def _commit(db: Session) -> None:
    try:
        db.commit()
    except OperationalError as exc:
        db.rollback()
        raise TransientStoreError(str(exc)) from exc


@dataclass
class ClubCreation:
    """Result of creating a club; warnings carry non-fatal follow-up failures."""

    club: Club
    creator_joined: bool
    warnings: list[str] = field(default_factory=list)


class MembershipLedger:
    """Membership operations over an injected SQLAlchemy session."""

    # Communities

    def join_community(self, db: Session, user_id: str, community_id: int) -> CommunityMembership:
        """Join the single community a user may belong to.

        Raises:
            NotFoundError: If the community does not exist.
            AlreadyMemberError: If the user already belongs to any community.
        """
        if db.get(Community, community_id) is None:
            raise NotFoundError(f"Community {community_id} not found")

        membership = CommunityMembership(user_id=user_id, community_id=community_id)
        db.add(membership)
        try:
            db.commit()
        except IntegrityError as err:
            db.rollback()
            existing = db.execute(
                select(CommunityMembership).where(CommunityMembership.user_id == user_id)
            ).scalar_one_or_none()
            if existing is None:
                raise PermanentStoreError(str(err.orig)) from err
            raise AlreadyMemberError("You can only join one college community") from err
        except OperationalError as err:
            db.rollback()
            raise TransientStoreError(str(err)) from err

        logger.info("User %s joined community %s", user_id, community_id)
        return membership

    @_retry_transient
    def leave_community(self, db: Session, user_id: str, community_id: int) -> bool:
        """Leave a community; returns False if the user was not a member."""
        result = db.execute(
            delete(CommunityMembership).where(
                CommunityMembership.user_id == user_id,
                CommunityMembership.community_id == community_id,
            )
        )
        db.commit()
        return result.rowcount > 0

    def get_user_community(self, db: Session, user_id: str) -> Community | None:
        return db.execute(
            select(Community)
            .join(CommunityMembership, CommunityMembership.community_id == Community.id)
            .where(CommunityMembership.user_id == user_id)
        ).scalar_one_or_none()

    # Clubs

    def join_club(self, db: Session, user_id: str, club_id: int) -> ClubMembership:
        """Join a club.

        Raises:
            NotFoundError: If the club does not exist.
            AlreadyMemberError: If the user is already a member.
            PermanentStoreError: If the insert violates any other constraint.
        """
        if db.get(Club, club_id) is None:
            raise NotFoundError(f"Club {club_id} not found")

        membership = ClubMembership(user_id=user_id, club_id=club_id)
        db.add(membership)
        try:
            db.commit()
        except IntegrityError as err:
            db.rollback()
            existing = db.execute(
                select(ClubMembership.id).where(
                    ClubMembership.user_id == user_id,
                    ClubMembership.club_id == club_id,
                )
            ).first()
            if existing is None:
                raise PermanentStoreError(str(err.orig)) from err
            raise AlreadyMemberError("Already a member of this club") from err
        except OperationalError as err:
            db.rollback()
            raise TransientStoreError(str(err)) from err

        logger.info("User %s joined club %s", user_id, club_id)
        return membership

    @_retry_transient
    def leave_club(self, db: Session, user_id: str, club_id: int) -> bool:
        result = db.execute(
            delete(ClubMembership).where(
                ClubMembership.user_id == user_id,
                ClubMembership.club_id == club_id,
            )
        )
        db.commit()
        return result.rowcount > 0

    def create_club(
        self,
        db: Session,
        *,
        name: str,
        community_id: int,
        creator_id: str,
        description: str | None = None,
    ) -> ClubCreation:
        """Create a club, then make its creator a member.

        The club is committed first. If the follow-up join fails the club
        stays, a repair task is queued for the reconciler and the failure is
        reported as a warning rather than an error.
        """
        if db.get(Community, community_id) is None:
            raise NotFoundError(f"Community {community_id} not found")

        club = Club(
            name=name,
            description=description,
            community_id=community_id,
            club_head=creator_id,
            created_by=creator_id,
        )
        db.add(club)
        _commit(db)
        logger.info("User %s created club %s", creator_id, club.id)

        creation = ClubCreation(club=club, creator_joined=False)
        try:
            self.join_club(db, creator_id, club.id)
        except AlreadyMemberError:
            creation.creator_joined = True
        except (StoreError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("Auto-join of creator %s to club %s failed: %s", creator_id, club.id, exc)
            creation.warnings.append(
                "Club created, but joining it failed; membership will be retried."
            )
            self._queue_repair(db, creator_id, club.id, str(exc))
        else:
            creation.creator_joined = True
        return creation

    def _queue_repair(self, db: Session, user_id: str, club_id: int, error: str) -> None:
        db.add(MembershipRepair(user_id=user_id, club_id=club_id, last_error=error[:500]))
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not queue membership repair for %s in club %s", user_id, club_id)

    # Chat rooms

    def create_room(
        self,
        db: Session,
        *,
        name: str,
        creator_id: str,
        mentorship_id: int | None = None,
    ) -> ChatRoom:
        """Create a chat room and its initial memberships in one transaction.

        A room bound to a mentorship is private to the mentor and the mentee;
        at most one such room exists per mentorship.
        """
        members = {creator_id}
        if mentorship_id is not None:
            mentorship = db.get(Mentorship, mentorship_id)
            if mentorship is None:
                raise NotFoundError(f"Mentorship {mentorship_id} not found")
            if not mentorship.is_party(creator_id):
                raise NotMemberError("Only the mentor or mentee can open this room")
            if mentorship.status != MENTORSHIP_ACCEPTED:
                raise NotMemberError("Mentorship has not been accepted")
            existing = db.execute(
                select(ChatRoom).where(ChatRoom.mentorship_id == mentorship_id)
            ).scalars().first()
            if existing is not None:
                return existing
            members = {mentorship.mentor_id, mentorship.mentee_id}

        room = ChatRoom(name=name, mentorship_id=mentorship_id, created_by=creator_id)
        db.add(room)
        db.flush()
        for member_id in sorted(members):
            db.add(RoomMembership(user_id=member_id, room_id=room.id))
        _commit(db)
        logger.info("User %s created room %s", creator_id, room.id)
        return room

    def join_room(self, db: Session, user_id: str, room_id: int) -> bool:
        """Join a chat room; returns False if the user already was a member.

        Raises:
            NotFoundError: If the room does not exist.
            NotMemberError: If the room is a mentorship room the user is not part of,
                or whose mentorship is not accepted.
        """
        room = db.get(ChatRoom, room_id)
        if room is None:
            raise NotFoundError(f"Chat room {room_id} not found")
        if room.mentorship_id is not None:
            mentorship = db.get(Mentorship, room.mentorship_id)
            if mentorship is None or not mentorship.is_party(user_id):
                raise NotMemberError("This chat room is private")
            if mentorship.status != MENTORSHIP_ACCEPTED:
                raise NotMemberError("This mentorship is no longer active")

        db.add(RoomMembership(user_id=user_id, room_id=room_id))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
        except OperationalError as err:
            db.rollback()
            raise TransientStoreError(str(err)) from err
        return True

    @_retry_transient
    def leave_room(self, db: Session, user_id: str, room_id: int) -> bool:
        result = db.execute(
            delete(RoomMembership).where(
                RoomMembership.user_id == user_id,
                RoomMembership.room_id == room_id,
            )
        )
        db.commit()
        return result.rowcount > 0

    # Access checks

    def is_member(self, db: Session, user_id: str, container: ContainerRef) -> bool:
        if container.kind == CONTAINER_CLUB:
            stmt = select(ClubMembership.id).where(
                ClubMembership.user_id == user_id,
                ClubMembership.club_id == container.id,
            )
        else:
            stmt = select(RoomMembership.id).where(
                RoomMembership.user_id == user_id,
                RoomMembership.room_id == container.id,
            )
        return db.execute(stmt.limit(1)).first() is not None

    def require_container_access(
        self,
        db: Session,
        session: AuthSession,
        container: ContainerRef,
        *,
        for_posting: bool,
    ) -> None:
        """Check that ``session`` may read from or post to ``container``.

        Posting to a club needs club membership. Opening a chat room joins it
        (rooms are open unless bound to a mentorship). Admins may read any
        container without joining.

        Raises:
            NotFoundError: If the container does not exist.
            NotMemberError: If the caller may not use the container.
        """
        if container.kind == CONTAINER_CLUB:
            if db.get(Club, container.id) is None:
                raise NotFoundError(f"Club {container.id} not found")
            if self.is_member(db, session.subject_id, container):
                return
            if not for_posting and session.is_admin:
                return
            raise NotMemberError("You must join this club first")

        if not for_posting and session.is_admin:
            if db.get(ChatRoom, container.id) is None:
                raise NotFoundError(f"Chat room {container.id} not found")
            return
        self.join_room(db, session.subject_id, container.id)
