"""Publishing club posts and chat messages through the moderation gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ufresher.core.errors import PermanentStoreError, TransientStoreError, UnauthenticatedError
from ufresher.models.content import (
    CONTAINER_CLUB,
    MESSAGE_TEXT,
    MESSAGE_TYPES,
    STATUS_APPROVED,
    STATUS_FLAGGED,
    ContainerRef,
    ContentItem,
)
from ufresher.repositories.content_repo import ContentRepository
from ufresher.services.membership import MembershipLedger
from ufresher.services.moderation import SOURCE_SKIPPED, Decision, ModerationGate
from ufresher.services.session_manager import AuthSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    item: ContentItem
    decision: Decision
    created: bool = True


class ContentPublisher:
    """Validate, moderate and append content to a club or chat room.

    A publish either stores exactly one item (plus, when flagged, its audit
    row) or stores nothing.
    """

    def __init__(self, ledger: MembershipLedger, gate: ModerationGate) -> None:
        self.ledger = ledger
        self.gate = gate

    async def publish(
        self,
        db: Session,
        session: AuthSession | None,
        container: ContainerRef,
        body: str,
        *,
        message_type: str = MESSAGE_TEXT,
        client_token: str | None = None,
    ) -> PublishResult:
        """Publish ``body`` as the session's subject.

        Raises:
            UnauthenticatedError: If there is no session.
            NotFoundError: If the container does not exist.
            NotMemberError: If the author may not post to the container.
            TransientStoreError / PermanentStoreError: If the insert failed.
        """
        if session is None:
            raise UnauthenticatedError("Sign in to publish")
        if not body.strip():
            raise ValueError("Content body must not be empty")
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown message type: {message_type!r}")
        if container.kind == CONTAINER_CLUB and message_type != MESSAGE_TEXT:
            raise ValueError("Club posts are text only")

        self.ledger.require_container_access(db, session, container, for_posting=True)

        repo = ContentRepository(db)
        if client_token is not None:
            existing = repo.find_by_client_token(
                author_id=session.subject_id,
                container=container,
                client_token=client_token,
            )
            if existing is not None:
                logger.info("Publish retry %s matched item %s", client_token, existing.id)
                return PublishResult(existing, _decision_of(existing), created=False)

        # Release the connection before waiting on the classifier.
        db.commit()

        if message_type == MESSAGE_TEXT:
            decision = await self.gate.evaluate(body)
        else:
            decision = Decision.not_flagged(SOURCE_SKIPPED)

        try:
            item = repo.append(
                author_id=session.subject_id,
                container=container,
                body=body,
                message_type=message_type,
                moderation_status=STATUS_FLAGGED if decision.flagged else STATUS_APPROVED,
                moderation_reason=decision.reason if decision.flagged else None,
                client_token=client_token,
            )
            db.commit()
        except OperationalError as exc:
            db.rollback()
            raise TransientStoreError(str(exc)) from exc
        except IntegrityError as exc:
            db.rollback()
            existing = None
            if client_token is not None:
                existing = repo.find_by_client_token(
                    author_id=session.subject_id,
                    container=container,
                    client_token=client_token,
                )
            if existing is None:
                raise PermanentStoreError(str(exc)) from exc
            logger.info("Concurrent publish retry %s matched item %s", client_token, existing.id)
            return PublishResult(existing, _decision_of(existing), created=False)
        except SQLAlchemyError as exc:
            db.rollback()
            raise PermanentStoreError(str(exc)) from exc

        if decision.flagged:
            try:
                self.gate.record(db, item, decision)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Audit row for flagged item %s not written: %s", item.id, exc)

        logger.info(
            "Published %s %s to %s (%s)",
            container.content_type,
            item.id,
            container,
            item.moderation_status,
        )
        return PublishResult(item, decision)


def _decision_of(item: ContentItem) -> Decision:
    return Decision(
        flagged=item.moderation_status == STATUS_FLAGGED,
        reason=item.moderation_reason,
        source="stored",
    )
