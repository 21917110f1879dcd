"""Single-owner authentication session state machine.

Provider callbacks, the startup lookup and profile fetch results are all
funnelled through one queue and applied by one consumer task, so state
transitions happen in a single order. Events carry the provider's sequence
number and are applied only when newer than the last applied one; that is
what lets a sign-out beat a stale sign-in that arrives late.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ufresher.core.errors import IdentityProviderError, UnauthenticatedError
from ufresher.models.user import ROLE_ADMIN, Profile
from ufresher.services.identity import (
    SIGNED_IN,
    SIGNED_OUT,
    IdentityProvider,
    ProviderEvent,
    ProviderIdentity,
)
from ufresher.services.profiles import ProfileDirectory

logger = logging.getLogger(__name__)

STATE_UNKNOWN = "unknown"
STATE_AUTHENTICATED = "authenticated"
STATE_UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True)
class ProfileSnapshot:
    """Detached copy of the profile fields a session carries."""

    id: str
    name: str
    email: str
    role: str
    available_for_mentorship: bool = False

    @classmethod
    def from_profile(cls, profile: Profile) -> ProfileSnapshot:
        return cls(
            id=profile.id,
            name=profile.name,
            email=profile.email,
            role=profile.role,
            available_for_mentorship=profile.available_for_mentorship,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True)
class AuthSession:
    """Authenticated session passed explicitly to every component that acts for a user.

    ``profile`` is None while the profile is unknown (fetch pending or failed).
    """

    subject_id: str
    issued_at: datetime
    profile: ProfileSnapshot | None = None
    identity: ProviderIdentity | None = None

    @classmethod
    def from_identity(
        cls,
        identity: ProviderIdentity,
        profile: Profile | ProfileSnapshot | None = None,
    ) -> AuthSession:
        if isinstance(profile, Profile):
            profile = ProfileSnapshot.from_profile(profile)
        return cls(
            subject_id=identity.subject_id,
            issued_at=identity.issued_at,
            profile=profile,
            identity=identity,
        )

    @property
    def is_admin(self) -> bool:
        return self.profile is not None and self.profile.is_admin


ProfileLoader = Callable[[ProviderIdentity], Awaitable[ProfileSnapshot | None]]
SessionListener = Callable[[AuthSession | None], None]


def directory_profile_loader(
    session_factory: sessionmaker[Session],
    directory: ProfileDirectory,
) -> ProfileLoader:
    """Build a loader that fetches (or lazily creates) profiles off the event loop."""

    def _load(identity: ProviderIdentity) -> ProfileSnapshot:
        with session_factory() as db:
            return ProfileSnapshot.from_profile(directory.ensure(db, identity))

    async def loader(identity: ProviderIdentity) -> ProfileSnapshot | None:
        return await asyncio.to_thread(_load, identity)

    return loader


@dataclass(frozen=True)
class _LookupResult:
    event: ProviderEvent | None


@dataclass(frozen=True)
class _ProviderFailure:
    error: Exception


@dataclass(frozen=True)
class _ProfileLoaded:
    generation: int
    snapshot: ProfileSnapshot
    done: asyncio.Future[None] | None = None


@dataclass(frozen=True)
class _Revoke:
    reason: str
    done: asyncio.Future[None] | None = None


class SessionManager:
    """Owns the authentication state for one client context.

    States: ``unknown`` (before the startup lookup completes),
    ``authenticated`` and ``unauthenticated``. ``unauthenticated`` becomes
    ``authenticated`` only through a validated SIGNED_IN event.
    """

    def __init__(self, provider: IdentityProvider, profile_loader: ProfileLoader) -> None:
        self._provider = provider
        self._load_profile = profile_loader
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._unlisten: Callable[[], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready = asyncio.Event()
        self._listeners: list[SessionListener] = []
        self._profile_tasks: set[asyncio.Task[None]] = set()

        self.state = STATE_UNKNOWN
        self._session: AuthSession | None = None
        self._last_sequence: int | None = None
        # Revoked tokens, and per subject the issue time of the newest revoked session.
        self._revoked_tokens: set[str] = set()
        self._revoked_before: dict[str, datetime] = {}
        # Bumped whenever the subject changes or the session ends; profile
        # results tagged with an older generation are discarded.
        self._generation = 0

    @property
    def session(self) -> AuthSession | None:
        return self._session

    async def start(self) -> None:
        """Subscribe to provider events, then run the startup lookup."""
        if self._task is not None and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._run())
        self._unlisten = self._provider.listen(self._enqueue_event, self._enqueue_error)
        try:
            event = await self._provider.current_session()
        except (IdentityProviderError, UnauthenticatedError) as exc:
            logger.warning("Startup session lookup failed: %s", exc)
            self._queue.put_nowait(_ProviderFailure(exc))
        else:
            self._queue.put_nowait(_LookupResult(event))

    async def stop(self) -> None:
        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None
        for task in list(self._profile_tasks):
            task.cancel()
        if self._task is None:
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None

    def on_change(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener`` for every session transition; return an unregister callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def resolve_session(self) -> AuthSession | None:
        """Return the current session, or None when unauthenticated.

        Waits for the startup lookup. A session whose profile is missing gets
        one more fetch attempt here.
        """
        await self._ready.wait()
        session = self._session
        if session is None or session.profile is not None or session.identity is None:
            return session

        generation = self._generation
        snapshot = await self._try_load_profile(session.identity)
        if snapshot is not None and self._task is not None and not self._task.done():
            done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._queue.put_nowait(_ProfileLoaded(generation, snapshot, done))
            await done
        return self._session

    async def drain(self, *, include_profiles: bool = True) -> None:
        """Wait until every queued update (and, optionally, profile fetch) is applied."""
        while True:
            await self._queue.join()
            if not include_profiles or not self._profile_tasks:
                return
            await asyncio.gather(*list(self._profile_tasks), return_exceptions=True)

    async def require_session(self) -> AuthSession:
        session = await self.resolve_session()
        if session is None:
            raise UnauthenticatedError("No authenticated session")
        return session

    async def revoke(self, reason: str = "revoked") -> None:
        """End the current session; nothing survives an explicit revoke.

        The revoked token, and any token for the same subject issued at or
        before the revoked one, can no longer sign in.
        """
        if self._task is None or self._task.done():
            self._record_revocation()
            self._end_session(f"revoked: {reason}")
            return
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Revoke(reason, done))
        await done

    # Provider callbacks may fire from any thread.

    def _enqueue_event(self, event: ProviderEvent) -> None:
        self._post(event)

    def _enqueue_error(self, error: Exception) -> None:
        self._post(_ProviderFailure(error))

    def _post(self, item: object) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Dropping %r: session manager not running", item)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._queue.put_nowait(item)
        else:
            loop.call_soon_threadsafe(self._queue.put_nowait, item)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                await self._apply(item)
            except Exception:
                logger.exception("Failed to apply session update %r", item)
            finally:
                self._queue.task_done()

    async def _apply(self, item: object) -> None:
        if isinstance(item, _LookupResult):
            await self._apply_lookup(item.event)
        elif isinstance(item, ProviderEvent):
            await self._apply_event(item)
        elif isinstance(item, _ProviderFailure):
            self._apply_failure(item.error)
        elif isinstance(item, _ProfileLoaded):
            self._apply_profile(item)
        elif isinstance(item, _Revoke):
            self._record_revocation()
            self._end_session(f"revoked: {item.reason}")
            if item.done is not None and not item.done.done():
                item.done.set_result(None)

    async def _apply_lookup(self, event: ProviderEvent | None) -> None:
        if event is None:
            if self.state == STATE_UNKNOWN:
                self._set_state(STATE_UNAUTHENTICATED, None)
            self._ready.set()
            return
        await self._apply_event(event)
        if self.state == STATE_UNKNOWN:
            self._set_state(STATE_UNAUTHENTICATED, None)
        self._ready.set()

    async def _apply_event(self, event: ProviderEvent) -> None:
        if self._last_sequence is not None and event.sequence <= self._last_sequence:
            logger.debug(
                "Ignoring stale %s #%d (last applied #%d)",
                event.kind,
                event.sequence,
                self._last_sequence,
            )
            return

        if event.kind == SIGNED_OUT:
            self._last_sequence = event.sequence
            self._end_session("signed out")
            return

        assert event.identity is not None
        current = self._session
        if event.kind != SIGNED_IN:
            # Refreshes and user updates never authenticate on their own.
            if current is None or current.subject_id != event.identity.subject_id:
                logger.info("Ignoring %s #%d without a matching session", event.kind, event.sequence)
                return
        self._last_sequence = event.sequence

        try:
            identity = await self._provider.validate(event.identity)
        except (IdentityProviderError, UnauthenticatedError) as exc:
            logger.warning("Rejected %s #%d: %s", event.kind, event.sequence, exc)
            if self.state == STATE_UNKNOWN:
                self._set_state(STATE_UNAUTHENTICATED, None)
            return

        if self._is_revoked(identity):
            logger.warning(
                "Rejected %s #%d: identity for %s was revoked",
                event.kind,
                event.sequence,
                identity.subject_id,
            )
            if self.state == STATE_UNKNOWN:
                self._set_state(STATE_UNAUTHENTICATED, None)
            return

        if current is not None and current.subject_id == identity.subject_id:
            # Same account: keep the profile we already have and refresh it.
            session = replace(current, issued_at=identity.issued_at, identity=identity)
        else:
            if current is not None:
                logger.info("Account switch from %s to %s", current.subject_id, identity.subject_id)
            self._generation += 1
            session = AuthSession.from_identity(identity)
        self._set_state(STATE_AUTHENTICATED, session)
        self._schedule_profile(identity, self._generation)

    def _apply_failure(self, error: Exception) -> None:
        logger.warning("Identity provider error: %s", error)
        if self.state == STATE_UNKNOWN:
            self._set_state(STATE_UNAUTHENTICATED, None)
        self._ready.set()

    def _apply_profile(self, loaded: _ProfileLoaded) -> None:
        try:
            session = self._session
            if loaded.generation != self._generation or session is None:
                logger.debug("Discarding profile for a superseded session")
                return
            if loaded.snapshot.id != session.subject_id:
                return
            self._set_state(STATE_AUTHENTICATED, replace(session, profile=loaded.snapshot))
        finally:
            if loaded.done is not None and not loaded.done.done():
                loaded.done.set_result(None)

    def _record_revocation(self) -> None:
        session = self._session
        if session is None:
            return
        issued_at = session.issued_at
        previous = self._revoked_before.get(session.subject_id)
        if previous is None or issued_at > previous:
            self._revoked_before[session.subject_id] = issued_at
        if session.identity is not None and session.identity.token:
            self._revoked_tokens.add(session.identity.token)

    def _is_revoked(self, identity: ProviderIdentity) -> bool:
        """True if ``identity`` was issued no later than a revoked session of its subject."""
        if identity.token and identity.token in self._revoked_tokens:
            return True
        cutoff = self._revoked_before.get(identity.subject_id)
        return cutoff is not None and identity.issued_at <= cutoff

    def _end_session(self, reason: str) -> None:
        previous = self._session
        self._generation += 1
        if previous is not None:
            logger.info("Session for %s ended (%s)", previous.subject_id, reason)
        self._set_state(STATE_UNAUTHENTICATED, None)
        self._ready.set()

    def _schedule_profile(self, identity: ProviderIdentity, generation: int) -> None:
        async def fetch() -> None:
            snapshot = await self._try_load_profile(identity)
            if snapshot is not None:
                self._queue.put_nowait(_ProfileLoaded(generation, snapshot))

        task = asyncio.create_task(fetch())
        self._profile_tasks.add(task)
        task.add_done_callback(self._profile_tasks.discard)

    async def _try_load_profile(self, identity: ProviderIdentity) -> ProfileSnapshot | None:
        try:
            return await self._load_profile(identity)
        except (SQLAlchemyError, OSError, IdentityProviderError) as exc:
            logger.warning("Profile fetch for %s failed: %s", identity.subject_id, exc)
            return None

    def _set_state(self, state: str, session: AuthSession | None) -> None:
        changed = state != self.state or session != self._session
        self.state = state
        self._session = session
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Session listener %r failed", listener)
