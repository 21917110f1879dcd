"""Data access helpers for working with content items."""
from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from ufresher.db.time import as_utc, utcnow
from ufresher.models.content import (
    STATUS_APPROVED,
    STATUS_FLAGGED,
    ContainerCursor,
    ContainerRef,
    ContentItem,
    ContentKey,
)
from ufresher.models.moderation import ModerationDecision

__all__ = ["ContentRepository"]


def _in_container(container: ContainerRef) -> ColumnElement[bool]:
    return and_(
        ContentItem.container_kind == container.kind,
        ContentItem.container_id == container.id,
    )


def _after(key: ContentKey) -> ColumnElement[bool]:
    return or_(
        ContentItem.created_at > key.created_at,
        and_(ContentItem.created_at == key.created_at, ContentItem.id > key.id),
    )


def _visible(viewer_id: str) -> ColumnElement[bool]:
    return or_(
        ContentItem.moderation_status == STATUS_APPROVED,
        ContentItem.author_id == viewer_id,
    )


class ContentRepository:
    """Thin wrapper around database access for content items."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a SQLAlchemy session."""
        self.session = session

    def get_by_id(self, item_id: int) -> ContentItem | None:
        """Return an item by identifier."""
        return self.session.get(ContentItem, item_id)

    def find_by_client_token(
        self,
        *,
        author_id: str,
        container: ContainerRef,
        client_token: str,
    ) -> ContentItem | None:
        """Return the item an author already published with ``client_token``."""
        result = self.session.execute(
            select(ContentItem)
            .where(
                _in_container(container),
                ContentItem.author_id == author_id,
                ContentItem.client_token == client_token,
            )
            .order_by(ContentItem.id)
            .limit(1)
        )
        return result.scalars().first()

    def list_after(
        self,
        container: ContainerRef,
        after: ContentKey | None,
        *,
        viewer_id: str,
        include_restricted: bool = False,
        limit: int = 200,
    ) -> list[ContentItem]:
        """Return visible items newer than ``after`` in ascending key order."""
        stmt = select(ContentItem).where(_in_container(container))
        if after is not None:
            stmt = stmt.where(_after(after))
        if not include_restricted:
            stmt = stmt.where(_visible(viewer_id))
        stmt = stmt.order_by(ContentItem.created_at, ContentItem.id).limit(limit)
        return list(self.session.execute(stmt).scalars())

    def list_recent(
        self,
        container: ContainerRef,
        *,
        viewer_id: str,
        include_restricted: bool = False,
        limit: int = 50,
    ) -> list[ContentItem]:
        """Return the newest ``limit`` visible items, oldest first."""
        stmt = select(ContentItem).where(_in_container(container))
        if not include_restricted:
            stmt = stmt.where(_visible(viewer_id))
        stmt = stmt.order_by(ContentItem.created_at.desc(), ContentItem.id.desc()).limit(limit)
        items = list(self.session.execute(stmt).scalars())
        items.reverse()
        return items

    def append(
        self,
        *,
        author_id: str,
        container: ContainerRef,
        body: str,
        message_type: str,
        moderation_status: str,
        moderation_reason: str | None,
        client_token: str | None = None,
    ) -> ContentItem:
        """Insert a new item at the end of its container and flush it.

        The container cursor is advanced first so the row lock it takes is
        held until the caller commits; ``created_at`` is stamped from the
        cursor and never goes backwards inside a container.
        """
        created_at = self._advance_cursor(container)
        item = ContentItem(
            author_id=author_id,
            container_kind=container.kind,
            container_id=container.id,
            body=body,
            message_type=message_type,
            client_token=client_token,
            created_at=created_at,
            moderation_status=moderation_status,
            moderation_reason=moderation_reason,
        )
        self.session.add(item)
        self.session.flush()
        return item

    def _advance_cursor(self, container: ContainerRef) -> datetime:
        bump = (
            update(ContainerCursor)
            .where(
                ContainerCursor.container_kind == container.kind,
                ContainerCursor.container_id == container.id,
            )
            .values(item_count=ContainerCursor.item_count + 1)
        )
        if self.session.execute(bump).rowcount == 0:
            try:
                with self.session.begin_nested():
                    self.session.add(
                        ContainerCursor(
                            container_kind=container.kind,
                            container_id=container.id,
                            last_created_at=utcnow(),
                            item_count=1,
                        )
                    )
            except IntegrityError:
                # Another writer created the cursor first; take its lock instead.
                self.session.execute(bump)

        cursor = self.session.execute(
            select(ContainerCursor)
            .where(
                ContainerCursor.container_kind == container.kind,
                ContainerCursor.container_id == container.id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        created_at = max(utcnow(), as_utc(cursor.last_created_at))
        cursor.last_created_at = created_at
        return created_at

    def flagged_without_decision(self, limit: int = 500) -> Sequence[ContentItem]:
        """Return flagged items whose audit decision row is missing."""
        stmt = (
            select(ContentItem)
            .outerjoin(ModerationDecision, ModerationDecision.content_id == ContentItem.id)
            .where(
                ContentItem.moderation_status == STATUS_FLAGGED,
                ModerationDecision.id.is_(None),
            )
            .order_by(ContentItem.id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())
