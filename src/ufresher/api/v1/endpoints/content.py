# src/ufresher/api/v1/endpoints/content.py
"""Helpers shared by the club post and chat message endpoints."""

from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from ufresher.models.content import ContainerRef, ContentKey
from ufresher.repositories.content_repo import ContentRepository
from ufresher.schemas.content import ContentCreate, ContentItemOut, PublishResponse
from ufresher.services.membership import MembershipLedger
from ufresher.services.publisher import ContentPublisher
from ufresher.services.session_manager import AuthSession

MAX_PAGE_SIZE = 200


def parse_key(after: str | None) -> ContentKey | None:
    """Parse an ``after`` query parameter into a content key."""
    if after is None:
        return None
    try:
        return ContentKey.decode(after)
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="Malformed cursor",
        ) from err


async def publish_to(
    container: ContainerRef,
    payload: ContentCreate,
    session: AuthSession,
    publisher: ContentPublisher,
    db: Session,
) -> PublishResponse:
    try:
        result = await publisher.publish(
            db,
            session,
            container,
            payload.body,
            message_type=payload.message_type,
            client_token=payload.client_token,
        )
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=str(err),
        ) from err
    return PublishResponse(
        item=ContentItemOut.model_validate(result.item),
        created=result.created,
        flagged=result.decision.flagged,
    )


def list_items(
    container: ContainerRef,
    after: str | None,
    limit: int,
    session: AuthSession,
    ledger: MembershipLedger,
    db: Session,
) -> list[ContentItemOut]:
    ledger.require_container_access(db, session, container, for_posting=False)
    repo = ContentRepository(db)
    key = parse_key(after)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    if key is None:
        items = repo.list_recent(
            container,
            viewer_id=session.subject_id,
            include_restricted=session.is_admin,
            limit=limit,
        )
    else:
        items = repo.list_after(
            container,
            key,
            viewer_id=session.subject_id,
            include_restricted=session.is_admin,
            limit=limit,
        )
    return [ContentItemOut.model_validate(item) for item in items]
