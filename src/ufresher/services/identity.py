"""Identity provider contract, provider events and token verification.

The identity provider is an external collaborator: it issues tokens and
reports session lifecycle events. This module defines the shapes the
coordinator consumes, a python-jose verifier for provider-issued JWTs, and an
adapter that turns frames received from a client connection into ordered
provider events.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from jose import JWTError, jwt

from ufresher.core.errors import IdentityProviderError, UnauthenticatedError
from ufresher.core.settings import Settings

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"
EVENT_KINDS = frozenset({SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED, USER_UPDATED})


@dataclass(frozen=True)
class ProviderIdentity:
    """Verified identity claims carried by a provider token."""

    subject_id: str
    email: str
    issued_at: datetime
    name: str | None = None
    token: str | None = None
    claims: dict[str, Any] | None = None


@dataclass(frozen=True)
class ProviderEvent:
    """Session lifecycle event ordered by the provider-assigned sequence."""

    kind: str
    sequence: int
    identity: ProviderIdentity | None = None

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown provider event kind: {self.kind!r}")
        if self.kind != SIGNED_OUT and self.identity is None:
            raise ValueError(f"{self.kind} events must carry an identity")


EventHandler = Callable[[ProviderEvent], None]
ErrorHandler = Callable[[Exception], None]


class IdentityProvider(Protocol):
    """What the session manager needs from an identity provider."""

    async def current_session(self) -> ProviderEvent | None:
        """Return the provider's current session as a SIGNED_IN event, or None."""

    async def validate(self, identity: ProviderIdentity) -> ProviderIdentity:
        """Re-validate credentials; raise UnauthenticatedError if they are invalid."""

    def listen(self, on_event: EventHandler, on_error: ErrorHandler) -> Callable[[], None]:
        """Register for pushed events; return a callable that unregisters."""


class TokenVerifier:
    """Verify provider-issued JWTs with python-jose."""

    def __init__(self, secret: str, algorithm: str = "HS256", audience: str | None = None) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenVerifier:
        return cls(settings.identity_jwt_secret, settings.jwt_algorithm, settings.jwt_audience)

    def verify(self, token: str) -> ProviderIdentity:
        """Decode ``token`` and return its identity.

        Raises:
            UnauthenticatedError: If the token is invalid, expired, or has no subject.
        """
        options = {"verify_aud": self._audience is not None}
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                options=options,
            )
        except JWTError as err:
            raise UnauthenticatedError("Could not validate credentials") from err

        subject = payload.get("sub")
        if not subject:
            raise UnauthenticatedError("Token has no subject")

        metadata = payload.get("user_metadata") or {}
        issued = payload.get("iat")
        issued_at = datetime.fromtimestamp(issued, UTC) if issued else datetime.now(UTC)
        return ProviderIdentity(
            subject_id=str(subject),
            email=str(payload.get("email") or ""),
            name=metadata.get("name") or payload.get("name"),
            issued_at=issued_at,
            token=token,
            claims=payload,
        )


class TokenIdentityProvider:
    """Identity provider adapter fed by frames from one client connection.

    The client forwards its provider's lifecycle events (with the provider's
    sequence numbers) over the connection; this adapter verifies the tokens
    they carry and pushes :class:`ProviderEvent` values to the listener.
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        initial_token: str | None = None,
        initial_sequence: int = 0,
    ) -> None:
        self._verifier = verifier
        self._initial_token = initial_token
        self._initial_sequence = initial_sequence
        self._on_event: EventHandler | None = None
        self._on_error: ErrorHandler | None = None

    async def current_session(self) -> ProviderEvent | None:
        if not self._initial_token:
            return None
        identity = self._verifier.verify(self._initial_token)
        return ProviderEvent(SIGNED_IN, self._initial_sequence, identity)

    async def validate(self, identity: ProviderIdentity) -> ProviderIdentity:
        if not identity.token:
            raise UnauthenticatedError("No credentials to validate")
        return self._verifier.verify(identity.token)

    def listen(self, on_event: EventHandler, on_error: ErrorHandler) -> Callable[[], None]:
        self._on_event = on_event
        self._on_error = on_error

        def _unlisten() -> None:
            self._on_event = None
            self._on_error = None

        return _unlisten

    def push(self, kind: str, sequence: int, token: str | None = None) -> None:
        """Forward one lifecycle frame received from the client."""
        if self._on_event is None:
            logger.debug("Dropping %s #%d: nobody is listening", kind, sequence)
            return
        try:
            identity = self._verifier.verify(token) if token else None
            event = ProviderEvent(kind, sequence, identity)
        except (UnauthenticatedError, ValueError) as exc:
            if self._on_error is not None:
                self._on_error(IdentityProviderError(f"Rejected {kind} #{sequence}: {exc}"))
            return
        self._on_event(event)
