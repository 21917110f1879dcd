"""Shared API dependencies for authentication and the coordinator components."""

import logging
from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ufresher.coordinator import Coordinator
from ufresher.services.membership import MembershipLedger
from ufresher.services.publisher import ContentPublisher
from ufresher.services.session_manager import AuthSession

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for provider-issued JWTs
bearer_scheme = HTTPBearer()


def get_coordinator(request: Request) -> Coordinator:
    """Return the coordinator wired at application startup."""
    return request.app.state.coordinator


CoordinatorDep = Annotated[Coordinator, Depends(get_coordinator)]


def get_db(coordinator: CoordinatorDep) -> Generator[Session, None, None]:
    """Yield a session from the coordinator's factory.

    Using the same factory as the realtime layer is what makes commits made
    through the API wake subscribers.
    """
    db = coordinator.session_factory()
    try:
        yield db
    finally:
        db.close()


# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_current_session(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
    coordinator: CoordinatorDep,
) -> AuthSession:
    """Resolve the caller's session from the bearer token.

    The profile is created lazily on the first authenticated request; if that
    fails the session is still valid and simply carries no profile.

    Raises:
        UnauthenticatedError: If the token is invalid (mapped to 401).
    """
    identity = coordinator.verifier.verify(credentials.credentials)
    try:
        profile = coordinator.profiles.ensure(db, identity)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Profile lookup for %s failed: %s", identity.subject_id, exc)
        profile = None
    return AuthSession.from_identity(identity, profile)


# Type alias for current session dependency
CurrentSessionDep = Annotated[AuthSession, Depends(get_current_session)]


def require_admin(session: CurrentSessionDep) -> AuthSession:
    """Allow only sessions whose profile carries the admin role."""
    if not session.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return session


AdminSessionDep = Annotated[AuthSession, Depends(require_admin)]


def get_ledger(coordinator: CoordinatorDep) -> MembershipLedger:
    return coordinator.ledger


def get_publisher(coordinator: CoordinatorDep) -> ContentPublisher:
    return coordinator.publisher


LedgerDep = Annotated[MembershipLedger, Depends(get_ledger)]
PublisherDep = Annotated[ContentPublisher, Depends(get_publisher)]
