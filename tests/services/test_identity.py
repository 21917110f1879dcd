"""Tests for token verification, provider frames and profile creation."""

import time

import pytest
from jose import jwt

from conftest import ADMIN_CODE, JWT_SECRET, make_token
from ufresher.core.errors import AdminCodeError, IdentityProviderError, UnauthenticatedError
from ufresher.db.time import utcnow
from ufresher.models import Profile
from ufresher.models.user import ROLE_ADMIN, ROLE_JUNIOR
from ufresher.services.identity import (
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    ProviderEvent,
    ProviderIdentity,
    TokenIdentityProvider,
    TokenVerifier,
)
from ufresher.services.profiles import ProfileDirectory, display_name


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier(JWT_SECRET)


def test_verify_reads_claims(verifier) -> None:
    identity = verifier.verify(make_token("u-1", email="asha@college.edu", name="Asha"))

    assert identity.subject_id == "u-1"
    assert identity.email == "asha@college.edu"
    assert identity.name == "Asha"
    assert identity.token is not None


@pytest.mark.parametrize(
    "token",
    [
        jwt.encode({"sub": "u-1"}, "some-other-secret", algorithm="HS256"),
        jwt.encode({"sub": "u-1", "exp": int(time.time()) - 60}, JWT_SECRET, algorithm="HS256"),
        jwt.encode({"email": "nobody@college.edu"}, JWT_SECRET, algorithm="HS256"),
        "not-a-jwt",
    ],
)
def test_verify_rejects_bad_tokens(verifier, token: str) -> None:
    with pytest.raises(UnauthenticatedError):
        verifier.verify(token)


def test_provider_event_requires_identity_unless_signed_out() -> None:
    assert ProviderEvent(SIGNED_OUT, 3).identity is None
    with pytest.raises(ValueError):
        ProviderEvent(SIGNED_IN, 1)
    with pytest.raises(ValueError):
        ProviderEvent("PASSWORD_RECOVERY", 1)


@pytest.mark.asyncio
async def test_token_provider_current_session(verifier) -> None:
    provider = TokenIdentityProvider(verifier, make_token("u-1"), initial_sequence=4)

    event = await provider.current_session()

    assert event.kind == SIGNED_IN
    assert event.sequence == 4
    assert event.identity.subject_id == "u-1"
    assert await TokenIdentityProvider(verifier).current_session() is None


def test_token_provider_pushes_verified_events(verifier) -> None:
    provider = TokenIdentityProvider(verifier)
    events: list[ProviderEvent] = []
    errors: list[Exception] = []
    unlisten = provider.listen(events.append, errors.append)

    provider.push(TOKEN_REFRESHED, 2, make_token("u-1"))
    provider.push(SIGNED_OUT, 3)
    provider.push(TOKEN_REFRESHED, 4, "garbage")
    unlisten()
    provider.push(SIGNED_OUT, 5)

    assert [(e.kind, e.sequence) for e in events] == [(TOKEN_REFRESHED, 2), (SIGNED_OUT, 3)]
    assert len(errors) == 1
    assert isinstance(errors[0], IdentityProviderError)


def _identity(subject: str, name: str | None = None, email: str = "") -> ProviderIdentity:
    return ProviderIdentity(subject_id=subject, email=email, name=name, issued_at=utcnow())


def test_display_name_falls_back_to_email() -> None:
    assert display_name(_identity("a", name="Asha")) == "Asha"
    assert display_name(_identity("a", email="asha.k@college.edu")) == "asha.k"
    assert display_name(_identity("a")) == "User"


def test_ensure_creates_profile_once(db_session) -> None:
    directory = ProfileDirectory(ADMIN_CODE)
    identity = _identity("new-user", name="New", email="new@college.edu")

    first = directory.ensure(db_session, identity)
    second = directory.ensure(db_session, identity)

    assert first.id == second.id == "new-user"
    assert first.role == ROLE_JUNIOR
    assert db_session.query(Profile).count() == 1


def test_admin_code_elevates_role(db_session) -> None:
    directory = ProfileDirectory(ADMIN_CODE)
    identity = _identity("boss", email="boss@college.edu")
    directory.ensure(db_session, identity)

    profile = directory.ensure(db_session, identity, admin_code=ADMIN_CODE)

    assert profile.role == ROLE_ADMIN


def test_wrong_admin_code_writes_nothing(db_session) -> None:
    directory = ProfileDirectory(ADMIN_CODE)

    with pytest.raises(AdminCodeError):
        directory.ensure(db_session, _identity("intruder"), admin_code="guess")
    assert directory.fetch(db_session, "intruder") is None


def test_admin_code_unset_rejects_everything() -> None:
    with pytest.raises(AdminCodeError):
        ProfileDirectory(None).check_admin_code("")
