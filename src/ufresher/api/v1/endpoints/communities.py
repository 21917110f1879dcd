# src/ufresher/api/v1/endpoints/communities.py
"""Community membership endpoints for the U-Fresher API."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Response, status

from ufresher.models import Community
from ufresher.schemas.membership import CommunityResponse, MembershipResponse

from ..dependencies import CurrentSessionDep, LedgerDep, SessionDep

router = APIRouter(prefix="/communities", tags=["communities"])


@router.get("/", response_model=list[CommunityResponse])
async def list_communities(db: SessionDep) -> list[Community]:
    """List all communities."""
    return db.query(Community).order_by(Community.name).all()


@router.get("/mine", response_model=CommunityResponse)
async def get_my_community(
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> Community:
    """Return the community the caller belongs to."""
    community = ledger.get_user_community(db, session.subject_id)
    if community is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="You have not joined a community",
        )
    return community


@router.post(
    "/{community_id}/join",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
)
async def join_community(
    community_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> MembershipResponse:
    """Join a community. Each user can belong to one community only."""
    ledger.join_community(db, session.subject_id, community_id)
    return MembershipResponse(status="joined", container_id=community_id)


@router.delete("/{community_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_community(
    community_id: int,
    session: CurrentSessionDep,
    ledger: LedgerDep,
    db: SessionDep,
) -> Response:
    """Leave a community. Leaving twice is not an error."""
    ledger.leave_community(db, session.subject_id, community_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
