# tests/conftest.py
from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Generator, Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("IDENTITY_JWT_SECRET", "test-identity-secret")
os.environ.setdefault("ADMIN_CODE", "open-sesame")
os.environ.setdefault("RECONCILE_ENABLED", "false")
os.environ.setdefault("MODERATION_ENABLED", "false")

from ufresher.core.settings import Settings
from ufresher.db.session import Base, build_engine
from ufresher.main import create_app
from ufresher.models import ChatRoom, Club, ClubMembership, Community, Mentorship, Profile
from ufresher.models.chat import MENTORSHIP_ACCEPTED
from ufresher.models.user import ROLE_ADMIN, ROLE_MENTOR
from ufresher.services.identity import ProviderIdentity
from ufresher.services.membership import MembershipLedger
from ufresher.services.moderation import ModerationGate
from ufresher.services.session_manager import AuthSession, ProfileSnapshot

JWT_SECRET = "test-identity-secret"
ADMIN_CODE = "open-sesame"


class FakeClassifier:
    """Classifier double returning canned answers, raising, or hanging."""

    def __init__(self, answer: str = '{"flagged": false}') -> None:
        self.answer = answer
        self.error: Exception | None = None
        self.delay = 0.0
        self.prompts: list[str] = []
        self.closed = False

    async def classify(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.answer

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        IDENTITY_JWT_SECRET=JWT_SECRET,
        ADMIN_CODE=ADMIN_CODE,
        MODERATION_ENABLED=False,
        RECONCILE_ENABLED=False,
        REALTIME_BACKFILL_WINDOW=50,
    )


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    # A file database, so sessions on different threads really contend.
    engine = build_engine(f"sqlite:///{tmp_path / 'ufresher-test.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def ledger() -> MembershipLedger:
    return MembershipLedger()


@pytest.fixture()
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture()
def gate(classifier: FakeClassifier) -> ModerationGate:
    return ModerationGate(classifier, enabled=True, timeout_seconds=0.5)


def _add_profile(db: Session, user_id: str, name: str, role: str = "junior") -> Profile:
    profile = Profile(id=user_id, name=name, email=f"{user_id}@college.edu", role=role)
    db.add(profile)
    db.commit()
    return profile


@pytest.fixture()
def alice(db_session: Session) -> Profile:
    return _add_profile(db_session, "alice", "Alice")


@pytest.fixture()
def bob(db_session: Session) -> Profile:
    return _add_profile(db_session, "bob", "Bob", ROLE_MENTOR)


@pytest.fixture()
def admin(db_session: Session) -> Profile:
    return _add_profile(db_session, "root", "Admin", ROLE_ADMIN)


@pytest.fixture()
def community(db_session: Session) -> Community:
    community = Community(name="Freshers 2026", college_name="State College")
    db_session.add(community)
    db_session.commit()
    return community


@pytest.fixture()
def other_community(db_session: Session) -> Community:
    community = Community(name="Hill Campus", college_name="Hill College")
    db_session.add(community)
    db_session.commit()
    return community


@pytest.fixture()
def club(db_session: Session, community: Community, alice: Profile) -> Club:
    """A club with alice as its only member."""
    club = Club(name="Robotics", community_id=community.id, club_head=alice.id, created_by=alice.id)
    db_session.add(club)
    db_session.flush()
    db_session.add(ClubMembership(user_id=alice.id, club_id=club.id))
    db_session.commit()
    return club


@pytest.fixture()
def room(db_session: Session, alice: Profile) -> ChatRoom:
    room = ChatRoom(name="General", created_by=alice.id)
    db_session.add(room)
    db_session.commit()
    return room


@pytest.fixture()
def mentorship(db_session: Session, alice: Profile, bob: Profile) -> Mentorship:
    mentorship = Mentorship(mentor_id=bob.id, mentee_id=alice.id, status=MENTORSHIP_ACCEPTED)
    db_session.add(mentorship)
    db_session.commit()
    return mentorship


def session_for(profile: Profile) -> AuthSession:
    identity = ProviderIdentity(
        subject_id=profile.id,
        email=profile.email,
        name=profile.name,
        issued_at=profile.created_at,
    )
    return AuthSession.from_identity(identity, ProfileSnapshot.from_profile(profile))


@pytest.fixture()
def alice_session(alice: Profile) -> AuthSession:
    return session_for(alice)


@pytest.fixture()
def bob_session(bob: Profile) -> AuthSession:
    return session_for(bob)


@pytest.fixture()
def admin_session(admin: Profile) -> AuthSession:
    return session_for(admin)


def make_token(subject: str, *, email: str | None = None, name: str | None = None, **claims: Any) -> str:
    now = int(time.time())
    payload: dict[str, Any] = {
        "sub": subject,
        "email": email if email is not None else f"{subject}@college.edu",
        "iat": now,
        "exp": now + 3600,
    }
    if name is not None:
        payload["user_metadata"] = {"name": name}
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


@pytest.fixture()
def token_factory() -> Callable[..., str]:
    return make_token


@pytest.fixture()
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _headers(subject: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(subject)}"}

    return _headers


@pytest.fixture()
def app(
    test_settings: Settings,
    session_factory: sessionmaker[Session],
    gate: ModerationGate,
) -> FastAPI:
    return create_app(test_settings, session_factory, gate=gate)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client
