# src/ufresher/api/v1/endpoints/rooms.py
"""Chat room and message endpoints for the U-Fresher API."""

from __future__ import annotations

from fastapi import APIRouter, Query, Response, status

from ufresher.models import ChatRoom
from ufresher.models.content import CONTAINER_ROOM, ContainerRef
from ufresher.schemas.content import ContentCreate, ContentItemOut, PublishResponse
from ufresher.schemas.membership import MembershipResponse, RoomCreate, RoomResponse

from ..dependencies import CurrentSessionDep, LedgerDep, PublisherDep, SessionDep
from .content import list_items, publish_to

router = APIRouter(prefix="/rooms", tags=["rooms"])


@router.post("/", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    room_data: RoomCreate,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> ChatRoom:
    """Create a chat room, or open the private room of a mentorship."""
    return ledger.create_room(
        db,
        name=room_data.name,
        creator_id=session.subject_id,
        mentorship_id=room_data.mentorship_id,
    )


@router.post("/{room_id}/join", response_model=MembershipResponse)
async def join_room(
    room_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> MembershipResponse:
    """Join a chat room. Joining twice is not an error."""
    joined = ledger.join_room(db, session.subject_id, room_id)
    return MembershipResponse(status="joined" if joined else "already_member", container_id=room_id)


@router.delete("/{room_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_room(
    room_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> Response:
    """Leave a chat room."""
    ledger.leave_room(db, session.subject_id, room_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{room_id}/messages",
    response_model=PublishResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    room_id: int,
    payload: ContentCreate,
    session: CurrentSessionDep,
    publisher: PublisherDep,
    db: SessionDep,
) -> PublishResponse:
    """Send a message; only text messages go through moderation."""
    return await publish_to(ContainerRef(CONTAINER_ROOM, room_id), payload, session, publisher, db)


@router.get("/{room_id}/messages", response_model=list[ContentItemOut])
async def list_messages(
    room_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
    after: str | None = Query(None, description="Return messages after this cursor"),
    limit: int = Query(50, ge=1, le=200),
) -> list[ContentItemOut]:
    """List messages oldest first."""
    return list_items(ContainerRef(CONTAINER_ROOM, room_id), after, limit, session, ledger, db)
