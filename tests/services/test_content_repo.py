"""Tests for content ordering keys and the content repository."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from ufresher.models import ContainerCursor
from ufresher.models.content import (
    CONTAINER_CLUB,
    CONTAINER_ROOM,
    STATUS_APPROVED,
    STATUS_FLAGGED,
    ContainerRef,
    ContentKey,
)
from ufresher.repositories.content_repo import ContentRepository


def test_content_key_wire_form() -> None:
    key = ContentKey(datetime(2026, 9, 1, 12, 30, tzinfo=UTC), 42)

    assert key.encode() == "2026-09-01T12:30:00+00:00|42"
    assert ContentKey.decode(key.encode()) == key


def test_content_key_normalises_to_utc() -> None:
    local = datetime(2026, 9, 1, 18, 0, tzinfo=timezone(timedelta(hours=5, minutes=30)))

    assert ContentKey(local, 1) == ContentKey(datetime(2026, 9, 1, 12, 30, tzinfo=UTC), 1)
    assert ContentKey(datetime(2026, 9, 1, 12, 30), 1).created_at.tzinfo is UTC


def test_content_key_orders_by_time_then_id() -> None:
    stamp = datetime(2026, 9, 1, tzinfo=UTC)
    keys = [ContentKey(stamp, 9), ContentKey(stamp - timedelta(seconds=1), 10), ContentKey(stamp, 3)]

    assert [k.id for k in sorted(keys)] == [10, 3, 9]


@pytest.mark.parametrize("raw", ["", "42", "|42", "yesterday|1", "2026-09-01T00:00:00+00:00|x"])
def test_content_key_rejects_malformed(raw: str) -> None:
    with pytest.raises(ValueError):
        ContentKey.decode(raw)


def test_container_ref_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        ContainerRef("forum", 1)
    assert str(ContainerRef(CONTAINER_ROOM, 3)) == "room:3"


def _append(repo: ContentRepository, container: ContainerRef, author: str, body: str, status: str = STATUS_APPROVED):
    return repo.append(
        author_id=author,
        container=container,
        body=body,
        message_type="text",
        moderation_status=status,
        moderation_reason=None,
    )


def test_append_advances_container_cursor(db_session, alice, club) -> None:
    repo = ContentRepository(db_session)
    container = ContainerRef(CONTAINER_CLUB, club.id)

    first = _append(repo, container, alice.id, "one")
    second = _append(repo, container, alice.id, "two")
    db_session.commit()

    assert first.key < second.key
    cursor = db_session.execute(select(ContainerCursor)).scalar_one()
    assert cursor.item_count == 2


def test_list_after_returns_ascending_keys(db_session, alice, bob, club) -> None:
    repo = ContentRepository(db_session)
    container = ContainerRef(CONTAINER_CLUB, club.id)
    items = [_append(repo, container, alice.id, f"p{n}") for n in range(4)]
    db_session.commit()

    everything = repo.list_after(container, None, viewer_id=bob.id)
    tail = repo.list_after(container, items[1].key, viewer_id=bob.id)

    assert [i.id for i in everything] == [i.id for i in items]
    assert [i.id for i in tail] == [items[2].id, items[3].id]


def test_list_after_hides_restricted_items_from_other_viewers(db_session, alice, bob, club) -> None:
    repo = ContentRepository(db_session)
    container = ContainerRef(CONTAINER_CLUB, club.id)
    flagged = _append(repo, container, alice.id, "rude", STATUS_FLAGGED)
    clean = _append(repo, container, alice.id, "nice")
    db_session.commit()

    assert [i.id for i in repo.list_after(container, None, viewer_id=bob.id)] == [clean.id]
    assert [i.id for i in repo.list_after(container, None, viewer_id=alice.id)] == [flagged.id, clean.id]
    assert len(repo.list_after(container, None, viewer_id=bob.id, include_restricted=True)) == 2


def test_list_recent_returns_newest_oldest_first(db_session, alice, club) -> None:
    repo = ContentRepository(db_session)
    container = ContainerRef(CONTAINER_CLUB, club.id)
    items = [_append(repo, container, alice.id, f"p{n}") for n in range(5)]
    db_session.commit()

    recent = repo.list_recent(container, viewer_id=alice.id, limit=2)

    assert [i.id for i in recent] == [items[3].id, items[4].id]


def test_containers_are_isolated(db_session, alice, club, room) -> None:
    repo = ContentRepository(db_session)
    _append(repo, ContainerRef(CONTAINER_CLUB, club.id), alice.id, "post")
    message = _append(repo, ContainerRef(CONTAINER_ROOM, room.id), alice.id, "message")
    db_session.commit()

    listed = repo.list_after(ContainerRef(CONTAINER_ROOM, room.id), None, viewer_id=alice.id)

    assert [i.id for i in listed] == [message.id]


def test_find_by_client_token(db_session, alice, club) -> None:
    repo = ContentRepository(db_session)
    container = ContainerRef(CONTAINER_CLUB, club.id)
    item = repo.append(
        author_id=alice.id,
        container=container,
        body="hello",
        message_type="text",
        moderation_status=STATUS_APPROVED,
        moderation_reason=None,
        client_token="abc",
    )
    db_session.commit()

    assert repo.find_by_client_token(author_id=alice.id, container=container, client_token="abc").id == item.id
    assert repo.find_by_client_token(author_id="bob", container=container, client_token="abc") is None
