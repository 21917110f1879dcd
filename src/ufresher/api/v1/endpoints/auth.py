# src/ufresher/api/v1/endpoints/auth.py
"""Session endpoints for the U-Fresher API."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials

from ufresher.schemas.session import ProfileResponse, SessionRequest, SessionResponse
from ufresher.services.session_manager import AuthSession

from ..dependencies import CoordinatorDep, CurrentSessionDep, SessionDep, bearer_scheme

router = APIRouter(prefix="/auth", tags=["auth"])


def _to_response(session: AuthSession) -> SessionResponse:
    profile = None
    if session.profile is not None:
        profile = ProfileResponse.model_validate(session.profile, from_attributes=True)
    return SessionResponse(
        subject_id=session.subject_id,
        issued_at=session.issued_at,
        profile=profile,
    )


@router.post("/session", response_model=SessionResponse)
async def establish_session(
    payload: SessionRequest,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    coordinator: CoordinatorDep,
    db: SessionDep,
) -> SessionResponse:
    """Resolve the caller's session, creating the profile on first sign-in.

    Supplying ``admin_code`` elevates the account to admin; a wrong code
    fails the whole request with 401.
    """
    identity = coordinator.verifier.verify(credentials.credentials)
    profile = coordinator.profiles.ensure(db, identity, admin_code=payload.admin_code)
    return _to_response(AuthSession.from_identity(identity, profile))


@router.get("/session", response_model=SessionResponse)
async def current_session(session: CurrentSessionDep) -> SessionResponse:
    """Return the caller's session."""
    return _to_response(session)
