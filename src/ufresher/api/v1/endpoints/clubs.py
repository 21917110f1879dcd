# src/ufresher/api/v1/endpoints/clubs.py
"""Club and club post endpoints for the U-Fresher API."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Response, status

from ufresher.models import Club
from ufresher.models.content import CONTAINER_CLUB, ContainerRef
from ufresher.schemas.content import ContentCreate, ContentItemOut, PublishResponse
from ufresher.schemas.membership import (
    ClubCreate,
    ClubCreateResponse,
    ClubResponse,
    MembershipResponse,
)

from ..dependencies import CurrentSessionDep, LedgerDep, PublisherDep, SessionDep
from .content import list_items, publish_to

router = APIRouter(prefix="/clubs", tags=["clubs"])


@router.get("/", response_model=list[ClubResponse])
async def list_clubs(
    db: SessionDep,
    community_id: int | None = Query(None, description="Only clubs of this community"),
) -> list[Club]:
    """List clubs, optionally filtered by community."""
    query = db.query(Club)
    if community_id is not None:
        query = query.filter(Club.community_id == community_id)
    return query.order_by(Club.name).all()


@router.get("/{club_id}", response_model=ClubResponse)
async def get_club(club_id: int, db: SessionDep) -> Club:
    """Get a specific club by ID."""
    club = db.get(Club, club_id)
    if club is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Club not found",
        )
    return club


@router.post("/", response_model=ClubCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_club(
    club_data: ClubCreate,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> ClubCreateResponse:
    """Create a club and join it as its head.

    If joining fails the club still exists; the response carries a warning.
    """
    creation = ledger.create_club(
        db,
        name=club_data.name,
        community_id=club_data.community_id,
        creator_id=session.subject_id,
        description=club_data.description,
    )
    return ClubCreateResponse(
        club=ClubResponse.model_validate(creation.club),
        creator_joined=creation.creator_joined,
        warnings=creation.warnings,
    )


@router.post(
    "/{club_id}/join",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
)
async def join_club(
    club_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> MembershipResponse:
    """Join a club."""
    ledger.join_club(db, session.subject_id, club_id)
    return MembershipResponse(status="joined", container_id=club_id)


@router.delete("/{club_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_club(
    club_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> Response:
    """Leave a club. Leaving twice is not an error."""
    ledger.leave_club(db, session.subject_id, club_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{club_id}/posts",
    response_model=PublishResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_post(
    club_id: int,
    payload: ContentCreate,
    session: CurrentSessionDep,
    publisher: PublisherDep,
    db: SessionDep,
) -> PublishResponse:
    """Publish a post to a club the caller belongs to."""
    return await publish_to(ContainerRef(CONTAINER_CLUB, club_id), payload, session, publisher, db)


@router.get("/{club_id}/posts", response_model=list[ContentItemOut])
async def list_posts(
    club_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
    after: str | None = Query(None, description="Return posts after this cursor"),
    limit: int = Query(50, ge=1, le=200),
) -> list[ContentItemOut]:
    """List club posts in (created_at, id) order."""
    return list_items(ContainerRef(CONTAINER_CLUB, club_id), after, limit, session, ledger, db)
