"""Tests for publishing content through the moderation gate."""

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from ufresher.core.errors import NotMemberError, TransientStoreError, UnauthenticatedError
from ufresher.models import ContentItem, ModerationDecision
from ufresher.models.content import (
    CONTAINER_CLUB,
    CONTAINER_ROOM,
    STATUS_APPROVED,
    STATUS_FLAGGED,
    ContainerRef,
)
from ufresher.repositories.content_repo import ContentRepository
from ufresher.services.publisher import ContentPublisher


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture
def publisher(ledger, gate):
    return ContentPublisher(ledger, gate)


@pytest.mark.asyncio
async def test_publish_approved_post(publisher, db_session, alice_session, club) -> None:
    result = await publisher.publish(
        db_session, alice_session, ContainerRef(CONTAINER_CLUB, club.id), "Meetup at 5pm"
    )

    assert result.created is True
    assert result.item.id is not None
    assert result.item.moderation_status == STATUS_APPROVED
    assert _count(db_session, ModerationDecision) == 0


@pytest.mark.asyncio
async def test_flagged_post_is_stored_with_audit_row(
    publisher, classifier, db_session, alice_session, club
) -> None:
    classifier.answer = '{"flagged": true, "reason": "spam", "confidence": 0.95}'

    result = await publisher.publish(
        db_session, alice_session, ContainerRef(CONTAINER_CLUB, club.id), "BUY NOW!!!"
    )

    assert result.item.moderation_status == STATUS_FLAGGED
    assert result.item.moderation_reason == "spam"
    audit = db_session.execute(select(ModerationDecision)).scalar_one()
    assert audit.content_id == result.item.id
    assert audit.content_type == "post"
    assert audit.confidence == 0.95


@pytest.mark.asyncio
async def test_classifier_timeout_publishes_approved_without_audit(
    publisher, classifier, db_session, alice_session, club
) -> None:
    classifier.delay = 5.0

    result = await publisher.publish(
        db_session, alice_session, ContainerRef(CONTAINER_CLUB, club.id), "hello"
    )

    assert result.item.moderation_status == STATUS_APPROVED
    assert _count(db_session, ModerationDecision) == 0


@pytest.mark.asyncio
async def test_non_member_cannot_post(publisher, db_session, bob_session, club) -> None:
    with pytest.raises(NotMemberError):
        await publisher.publish(
            db_session, bob_session, ContainerRef(CONTAINER_CLUB, club.id), "let me in"
        )
    assert _count(db_session, ContentItem) == 0


@pytest.mark.asyncio
async def test_publish_requires_session(publisher, db_session, club) -> None:
    with pytest.raises(UnauthenticatedError):
        await publisher.publish(db_session, None, ContainerRef(CONTAINER_CLUB, club.id), "hi")


@pytest.mark.asyncio
async def test_only_text_messages_are_classified(
    publisher, classifier, db_session, bob_session, room
) -> None:
    classifier.answer = '{"flagged": true, "reason": "explicit"}'

    result = await publisher.publish(
        db_session,
        bob_session,
        ContainerRef(CONTAINER_ROOM, room.id),
        "https://cdn.example/photo.png",
        message_type="image",
    )

    assert result.item.moderation_status == STATUS_APPROVED
    assert classifier.prompts == []


@pytest.mark.asyncio
async def test_club_posts_are_text_only(publisher, db_session, alice_session, club) -> None:
    with pytest.raises(ValueError):
        await publisher.publish(
            db_session,
            alice_session,
            ContainerRef(CONTAINER_CLUB, club.id),
            "https://cdn.example/photo.png",
            message_type="image",
        )


@pytest.mark.asyncio
async def test_retry_with_client_token_returns_first_item(
    publisher, db_session, alice_session, club
) -> None:
    container = ContainerRef(CONTAINER_CLUB, club.id)

    first = await publisher.publish(db_session, alice_session, container, "once", client_token="t-1")
    again = await publisher.publish(db_session, alice_session, container, "once", client_token="t-1")

    assert again.created is False
    assert again.item.id == first.item.id
    assert _count(db_session, ContentItem) == 1


@pytest.mark.asyncio
async def test_concurrent_retry_with_client_token_stores_one_item(
    publisher, db_session, alice_session, club, mocker
) -> None:
    container = ContainerRef(CONTAINER_CLUB, club.id)
    first = await publisher.publish(db_session, alice_session, container, "once", client_token="t-2")
    lookup = ContentRepository.find_by_client_token
    calls = []

    def racing_lookup(self, **kwargs):
        # The first lookup misses, as if the other retry had not committed yet.
        calls.append(kwargs)
        return None if len(calls) == 1 else lookup(self, **kwargs)

    mocker.patch.object(ContentRepository, "find_by_client_token", racing_lookup)

    again = await publisher.publish(db_session, alice_session, container, "once", client_token="t-2")

    assert again.created is False
    assert again.item.id == first.item.id
    assert _count(db_session, ContentItem) == 1


@pytest.mark.asyncio
async def test_without_client_token_each_publish_is_new(
    publisher, db_session, alice_session, club
) -> None:
    container = ContainerRef(CONTAINER_CLUB, club.id)

    await publisher.publish(db_session, alice_session, container, "twice")
    await publisher.publish(db_session, alice_session, container, "twice")

    assert _count(db_session, ContentItem) == 2


@pytest.mark.asyncio
async def test_store_failure_leaves_nothing_behind(
    publisher, db_session, alice_session, club, mocker
) -> None:
    mocker.patch(
        "ufresher.services.publisher.ContentRepository.append",
        side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
    )

    with pytest.raises(TransientStoreError):
        await publisher.publish(
            db_session, alice_session, ContainerRef(CONTAINER_CLUB, club.id), "lost"
        )
    assert _count(db_session, ContentItem) == 0


@pytest.mark.asyncio
async def test_cancelled_publish_writes_nothing(
    publisher, classifier, db_session, alice_session, club
) -> None:
    classifier.delay = 0.3
    task = asyncio.create_task(
        publisher.publish(
            db_session, alice_session, ContainerRef(CONTAINER_CLUB, club.id), "never mind"
        )
    )
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert _count(db_session, ContentItem) == 0


@pytest.mark.asyncio
async def test_items_in_a_container_have_increasing_keys(
    publisher, db_session, alice_session, club
) -> None:
    container = ContainerRef(CONTAINER_CLUB, club.id)

    keys = []
    for n in range(5):
        result = await publisher.publish(db_session, alice_session, container, f"post {n}")
        keys.append(result.item.key)

    assert keys == sorted(keys)
    assert len(set(keys)) == 5
