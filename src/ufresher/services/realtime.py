"""Ordered, gap-free delivery of new content to subscribed viewers.

Commits never push rows to subscribers. A commit that added content only
wakes the subscriptions watching the affected containers; each subscription
then reads the store for items after the last key it has seen. Backfill on
(re)connect and live delivery therefore run through the same query, so an
item is delivered once, in (created_at, id) order, whether it was written
before or after the subscription opened.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import threading
import weakref
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from ufresher.core.errors import UnauthenticatedError
from ufresher.models.content import ContainerRef, ContentItem, ContentKey
from ufresher.repositories.content_repo import ContentRepository
from ufresher.schemas.content import ContentItemOut
from ufresher.services.membership import MembershipLedger
from ufresher.services.session_manager import AuthSession

logger = logging.getLogger(__name__)

_CHANGES_KEY = "ufresher.realtime.changed"
_SEEN_LIMIT = 2048

Relay = Callable[[frozenset[ContainerRef]], None]


class _Waker:
    """Thread-safe wake-up signal bound to the loop of one subscription."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self.event = asyncio.Event()

    def notify(self) -> None:
        if self.loop.is_closed():
            return
        try:
            self.loop.call_soon_threadsafe(self.event.set)
        except RuntimeError:
            # Loop closed between the check and the call.
            pass


class ChangeFeed:
    """Fan-out of "container changed" notices to local watchers and relays."""

    def __init__(self) -> None:
        self._watchers: dict[ContainerRef, set[_Waker]] = {}
        self._relays: list[Relay] = []
        self._lock = threading.Lock()

    def watch(self, container: ContainerRef, waker: _Waker) -> None:
        with self._lock:
            self._watchers.setdefault(container, set()).add(waker)

    def unwatch(self, container: ContainerRef, waker: _Waker) -> None:
        with self._lock:
            watchers = self._watchers.get(container)
            if watchers is None:
                return
            watchers.discard(waker)
            if not watchers:
                del self._watchers[container]

    def add_relay(self, relay: Relay) -> None:
        with self._lock:
            self._relays.append(relay)

    def remove_relay(self, relay: Relay) -> None:
        with self._lock:
            if relay in self._relays:
                self._relays.remove(relay)

    def publish(self, containers: Iterable[ContainerRef], *, local: bool = True) -> None:
        """Wake every watcher of ``containers``; safe to call from any thread.

        Only notices that originate in this process are passed to relays.
        """
        changed = frozenset(containers)
        if not changed:
            return
        with self._lock:
            wakers = [w for c in changed for w in self._watchers.get(c, ())]
            relays = list(self._relays) if local else []
        for waker in wakers:
            waker.notify()
        for relay in relays:
            try:
                relay(changed)
            except Exception:
                logger.exception("Change relay %r failed", relay)


_captured: weakref.WeakKeyDictionary[sessionmaker[Session], ChangeFeed] = (
    weakref.WeakKeyDictionary()
)


def capture_commits(session_factory: sessionmaker[Session], feed: ChangeFeed) -> ChangeFeed:
    """Publish to ``feed`` after any session from ``session_factory`` commits new content.

    Returns the feed already attached to the factory if there is one.
    """
    existing = _captured.get(session_factory)
    if existing is not None:
        return existing

    @event.listens_for(session_factory, "after_flush")
    def _collect(session: Session, flush_context: object) -> None:
        for obj in session.new:
            if isinstance(obj, ContentItem):
                session.info.setdefault(_CHANGES_KEY, set()).add(obj.container)

    @event.listens_for(session_factory, "after_commit")
    def _notify(session: Session) -> None:
        # Releasing a savepoint also fires after_commit; wait for the real commit.
        if session.in_nested_transaction():
            return
        changed = session.info.pop(_CHANGES_KEY, None)
        if changed:
            feed.publish(changed)

    @event.listens_for(session_factory, "after_rollback")
    def _discard(session: Session) -> None:
        if session.in_nested_transaction():
            return
        session.info.pop(_CHANGES_KEY, None)

    _captured[session_factory] = feed
    return feed


class Subscription:
    """Async iterator over the items of one container, in key order.

    ``last_delivered_key`` is the key of the last item returned; pass it to
    :meth:`RealtimeSync.subscribe` to resume after a reconnect.
    """

    def __init__(
        self,
        sync: RealtimeSync,
        container: ContainerRef,
        viewer: AuthSession,
        last_key: ContentKey | None,
    ) -> None:
        self.container = container
        self.viewer = viewer
        self.last_delivered_key = last_key
        self._sync = sync
        self._cursor = last_key
        self._primed = last_key is not None
        self._buffer: deque[ContentItemOut] = deque()
        self._seen: set[int] = set()
        self._seen_order: deque[int] = deque()
        self._closed = False
        self._waker = _Waker(asyncio.get_running_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ContentItemOut:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._buffer:
                item = self._buffer.popleft()
                self.last_delivered_key = item.key
                return item

            # Clear before reading: a commit landing during the read sets it again.
            self._waker.event.clear()
            batch = await self._fetch()
            if batch:
                self._cursor = batch[-1].key
                for item in batch:
                    if self._remember(item.id):
                        self._buffer.append(item)
                continue
            await self._waker.event.wait()

    async def _fetch(self) -> list[ContentItemOut]:
        if not self._primed:
            batch = await asyncio.to_thread(
                self._sync.read_recent, self.container, self.viewer
            )
            self._primed = True
            return batch
        return await asyncio.to_thread(
            self._sync.read_after, self.container, self._cursor, self.viewer
        )

    def _remember(self, item_id: int) -> bool:
        if item_id in self._seen:
            return False
        self._seen.add(item_id)
        self._seen_order.append(item_id)
        if len(self._seen_order) > _SEEN_LIMIT:
            self._seen.discard(self._seen_order.popleft())
        return True

    def close(self) -> None:
        """Stop delivery; a pending ``__anext__`` ends with StopAsyncIteration."""
        if self._closed:
            return
        self._closed = True
        self._sync.feed.unwatch(self.container, self._waker)
        self._waker.notify()


class RealtimeSync:
    """Open subscriptions to container content for authenticated viewers."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ledger: MembershipLedger,
        *,
        feed: ChangeFeed | None = None,
        backfill_window: int = 50,
        batch_size: int = 200,
    ) -> None:
        self._session_factory = session_factory
        self.ledger = ledger
        self.feed = capture_commits(session_factory, feed or ChangeFeed())
        self.backfill_window = backfill_window
        self.batch_size = batch_size
        self._subscriptions: set[Subscription] = set()

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    async def subscribe(
        self,
        container: ContainerRef,
        viewer: AuthSession | None,
        last_delivered_key: ContentKey | None = None,
    ) -> Subscription:
        """Open a subscription to ``container``.

        Without ``last_delivered_key`` the most recent items (bounded by the
        backfill window) are delivered first; with it, everything after that
        key is delivered.

        Raises:
            UnauthenticatedError: If ``viewer`` is None.
            NotFoundError / NotMemberError: If the viewer may not read the container.
        """
        if viewer is None:
            raise UnauthenticatedError("Sign in to subscribe")
        await asyncio.to_thread(self._check_access, container, viewer)

        subscription = Subscription(self, container, viewer, last_delivered_key)
        self.feed.watch(container, subscription._waker)
        self._subscriptions.add(subscription)
        logger.debug("Viewer %s subscribed to %s", viewer.subject_id, container)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        self._subscriptions.discard(subscription)

    def close_all(self) -> None:
        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)

    def _check_access(self, container: ContainerRef, viewer: AuthSession) -> None:
        with self._session_factory() as db:
            self.ledger.require_container_access(db, viewer, container, for_posting=False)

    def read_recent(self, container: ContainerRef, viewer: AuthSession) -> list[ContentItemOut]:
        with self._session_factory() as db:
            items = ContentRepository(db).list_recent(
                container,
                viewer_id=viewer.subject_id,
                include_restricted=viewer.is_admin,
                limit=self.backfill_window,
            )
            return [ContentItemOut.model_validate(item) for item in items]

    def read_after(
        self,
        container: ContainerRef,
        after: ContentKey | None,
        viewer: AuthSession,
    ) -> list[ContentItemOut]:
        with self._session_factory() as db:
            items = ContentRepository(db).list_after(
                container,
                after,
                viewer_id=viewer.subject_id,
                include_restricted=viewer.is_admin,
                limit=self.batch_size,
            )
            return [ContentItemOut.model_validate(item) for item in items]


@dataclass
class TimelineEntry:
    """One line of a client timeline; speculative until the store confirms it."""

    body: str
    author_id: str
    client_token: str | None = None
    item: ContentItemOut | None = None
    confirmed_id: int | None = None

    @property
    def speculative(self) -> bool:
        return self.item is None


@dataclass
class Timeline:
    """Client-side view merging optimistic entries with confirmed items.

    Confirmed items are kept in key order. A speculative entry is replaced
    by the confirmed item with the same client token or the same id, so a
    publish echoed back through a subscription is never shown twice.
    """

    _keys: list[ContentKey] = field(default_factory=list)
    _items: dict[int, ContentItemOut] = field(default_factory=dict)
    _pending: list[TimelineEntry] = field(default_factory=list)

    def add_speculative(self, body: str, author_id: str, client_token: str | None = None) -> TimelineEntry:
        entry = TimelineEntry(body=body, author_id=author_id, client_token=client_token)
        self._pending.append(entry)
        return entry

    def confirm(self, entry: TimelineEntry, item_id: int) -> None:
        """Record the id the store assigned to a speculative entry."""
        if item_id in self._items:
            self._drop(entry)
        else:
            entry.confirmed_id = item_id

    def discard(self, entry: TimelineEntry) -> None:
        """Remove a speculative entry whose publish failed."""
        self._drop(entry)

    def apply(self, item: ContentItemOut) -> bool:
        """Merge a delivered item; returns False if it was already present."""
        if item.id in self._items:
            return False
        for entry in list(self._pending):
            if entry.confirmed_id == item.id or (
                entry.client_token is not None and entry.client_token == item.client_token
            ):
                self._drop(entry)
        key = item.key
        bisect.insort(self._keys, key)
        self._items[item.id] = item
        return True

    def entries(self) -> list[TimelineEntry]:
        confirmed = [
            TimelineEntry(
                body=self._items[key.id].body,
                author_id=self._items[key.id].author_id,
                client_token=self._items[key.id].client_token,
                item=self._items[key.id],
                confirmed_id=key.id,
            )
            for key in self._keys
        ]
        return confirmed + list(self._pending)

    def ids(self) -> list[int]:
        return [key.id for key in self._keys]

    def _drop(self, entry: TimelineEntry) -> None:
        self._pending = [e for e in self._pending if e is not entry]
