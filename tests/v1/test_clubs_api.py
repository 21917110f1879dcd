# mypy: ignore-errors
# tests/v1/test_clubs_api.py
"""Tests for club and club post endpoints."""

from fastapi import status

from ufresher.core.errors import TransientStoreError


def test_create_club_joins_creator(client, bob, auth_headers, community) -> None:
    """Test creating a club makes the creator its head and a member."""
    response = client.post(
        "/api/v1/clubs/",
        json={"name": "Drama", "community_id": community.id, "description": "Stage and screen"},
        headers=auth_headers(bob.id),
    )

    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert data["club"]["club_head"] == bob.id
    assert data["creator_joined"] is True
    assert data["warnings"] == []

    posted = client.post(
        f"/api/v1/clubs/{data['club']['id']}/posts",
        json={"body": "Auditions on Friday"},
        headers=auth_headers(bob.id),
    )
    assert posted.status_code == status.HTTP_201_CREATED


def test_create_club_reports_failed_auto_join(app, client, bob, auth_headers, community, mocker) -> None:
    """Test that a failed auto-join keeps the club and returns a warning."""
    ledger = app.state.coordinator.ledger
    mocker.patch.object(ledger, "join_club", side_effect=TransientStoreError("database is locked"))

    response = client.post(
        "/api/v1/clubs/",
        json={"name": "Drama", "community_id": community.id},
        headers=auth_headers(bob.id),
    )

    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert data["creator_joined"] is False
    assert len(data["warnings"]) == 1
    assert client.get(f"/api/v1/clubs/{data['club']['id']}").status_code == status.HTTP_200_OK


def test_list_and_get_clubs(client, club, community) -> None:
    """Test listing clubs by community and fetching one."""
    listed = client.get("/api/v1/clubs/", params={"community_id": community.id})
    assert [c["id"] for c in listed.json()] == [club.id]

    assert client.get(f"/api/v1/clubs/{club.id}").json()["name"] == club.name
    assert client.get("/api/v1/clubs/99999").status_code == status.HTTP_404_NOT_FOUND


def test_join_and_leave_club(client, bob, auth_headers, club) -> None:
    """Test joining a club twice conflicts and leaving twice does not."""
    first = client.post(f"/api/v1/clubs/{club.id}/join", headers=auth_headers(bob.id))
    second = client.post(f"/api/v1/clubs/{club.id}/join", headers=auth_headers(bob.id))

    assert first.status_code == status.HTTP_201_CREATED
    assert second.status_code == status.HTTP_409_CONFLICT

    for _ in range(2):
        left = client.delete(f"/api/v1/clubs/{club.id}/leave", headers=auth_headers(bob.id))
        assert left.status_code == status.HTTP_204_NO_CONTENT


def test_publish_and_list_posts(client, alice, auth_headers, club) -> None:
    """Test that posts come back in publish order with resumable cursors."""
    ids = []
    for n in range(3):
        response = client.post(
            f"/api/v1/clubs/{club.id}/posts",
            json={"body": f"post {n}"},
            headers=auth_headers(alice.id),
        )
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["flagged"] is False
        ids.append(response.json()["item"]["id"])

    listed = client.get(f"/api/v1/clubs/{club.id}/posts", headers=auth_headers(alice.id)).json()
    assert [p["id"] for p in listed] == ids

    tail = client.get(
        f"/api/v1/clubs/{club.id}/posts",
        params={"after": listed[0]["cursor"]},
        headers=auth_headers(alice.id),
    ).json()
    assert [p["id"] for p in tail] == ids[1:]


def test_flagged_post_is_hidden_from_other_members(
    client, classifier, alice, bob, auth_headers, club
) -> None:
    """Test that flagged posts are visible to their author only."""
    client.post(f"/api/v1/clubs/{club.id}/join", headers=auth_headers(bob.id))
    classifier.answer = '{"flagged": true, "reason": "harassment"}'

    response = client.post(
        f"/api/v1/clubs/{club.id}/posts",
        json={"body": "mean words"},
        headers=auth_headers(alice.id),
    )

    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["flagged"] is True
    own = client.get(f"/api/v1/clubs/{club.id}/posts", headers=auth_headers(alice.id)).json()
    other = client.get(f"/api/v1/clubs/{club.id}/posts", headers=auth_headers(bob.id)).json()
    assert len(own) == 1
    assert other == []


def test_non_member_cannot_post(client, bob, auth_headers, club) -> None:
    """Test that posting requires club membership."""
    response = client.post(
        f"/api/v1/clubs/{club.id}/posts",
        json={"body": "hello?"},
        headers=auth_headers(bob.id),
    )

    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_post_validation(client, alice, auth_headers, club) -> None:
    """Test blank bodies, attachments and bad cursors are rejected."""
    headers = auth_headers(alice.id)

    blank = client.post(f"/api/v1/clubs/{club.id}/posts", json={"body": "   "}, headers=headers)
    image = client.post(
        f"/api/v1/clubs/{club.id}/posts",
        json={"body": "https://cdn.example/a.png", "message_type": "image"},
        headers=headers,
    )
    cursor = client.get(f"/api/v1/clubs/{club.id}/posts", params={"after": "garbage"}, headers=headers)

    assert blank.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
    assert image.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
    assert cursor.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


def test_client_token_retry(client, alice, auth_headers, club) -> None:
    """Test that retrying with the same client token does not duplicate a post."""
    payload = {"body": "once only", "client_token": "c-1"}

    first = client.post(f"/api/v1/clubs/{club.id}/posts", json=payload, headers=auth_headers(alice.id))
    again = client.post(f"/api/v1/clubs/{club.id}/posts", json=payload, headers=auth_headers(alice.id))

    assert first.json()["created"] is True
    assert again.json()["created"] is False
    assert again.json()["item"]["id"] == first.json()["item"]["id"]
