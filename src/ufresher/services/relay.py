"""Redis pub/sub relay sharing change notices between coordinator processes.

Only "container changed" notices cross the wire. Subscribers in every
process still read items from the store, so a lost or duplicated notice can
delay delivery but never reorder it or drop an item.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import secrets

import redis.asyncio as redis
from redis.exceptions import RedisError

from ufresher.models.content import ContainerRef
from ufresher.services.realtime import ChangeFeed

logger = logging.getLogger(__name__)


def parse_container(raw: str) -> ContainerRef:
    """Parse the ``kind:id`` form produced by ``str(ContainerRef)``."""
    kind, sep, ident = raw.partition(":")
    if not sep:
        raise ValueError(f"Malformed container reference: {raw!r}")
    return ContainerRef(kind, int(ident))


class RedisChangeRelay:
    """Forward local change notices to Redis and replay remote ones locally."""

    def __init__(
        self,
        feed: ChangeFeed,
        url: str,
        channel: str,
        *,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ) -> None:
        self.feed = feed
        self.url = url
        self.channel = channel
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.instance_id = secrets.token_hex(8)
        self._redis: redis.Redis | None = None
        self._pubsub: redis.client.PubSub | None = None
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._redis = redis.from_url(self.url)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._run())
        self.feed.add_relay(self._forward)
        logger.info("Relaying change notices on %s as %s", self.channel, self.instance_id)

    async def stop(self) -> None:
        self.feed.remove_relay(self._forward)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Change relay listener had failed")
            self._task = None
        await self._close_pubsub()
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except (RedisError, OSError) as exc:
                logger.warning("Error closing Redis client: %s", exc)
            self._redis = None

    async def _close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Error closing change relay subscription: %s", exc)

    async def _resubscribe(self) -> None:
        await self._close_pubsub()
        assert self._redis is not None
        # Owned before subscribing so a failed attempt is still closed later.
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)

    def _forward(self, containers: frozenset[ContainerRef]) -> None:
        # Called from whichever thread committed; hop onto the relay's loop.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        payload = json.dumps(
            {"origin": self.instance_id, "containers": sorted(str(c) for c in containers)}
        )
        future = asyncio.run_coroutine_threadsafe(self._publish(payload), loop)
        future.add_done_callback(self._log_failure)

    async def _publish(self, payload: str) -> None:
        if self._redis is None:
            return
        await self._redis.publish(self.channel, payload)

    @staticmethod
    def _log_failure(future: concurrent.futures.Future[None]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Failed to publish change notice: %s", exc)

    async def _run(self) -> None:
        """Listen until stopped, resubscribing with backoff whenever Redis drops."""
        delay = self.reconnect_delay
        while True:
            if self._pubsub is not None:
                try:
                    await self._listen()
                except (RedisError, OSError) as exc:
                    logger.warning("Change relay lost Redis: %s; resubscribing in %.1fs", exc, delay)
                else:
                    logger.warning("Change relay subscription ended; resubscribing in %.1fs", delay)
            await asyncio.sleep(delay)
            try:
                await self._resubscribe()
            except (RedisError, OSError) as exc:
                logger.warning("Change relay resubscribe failed: %s", exc)
                delay = min(delay * 2, self.max_reconnect_delay)
            else:
                logger.info("Change relay resubscribed to %s", self.channel)
                delay = self.reconnect_delay

    async def _listen(self) -> None:
        assert self._pubsub is not None
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                payload = json.loads(message["data"])
                if payload.get("origin") == self.instance_id:
                    continue
                containers = [parse_container(raw) for raw in payload.get("containers", [])]
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("Ignoring malformed change notice: %s", exc)
                continue
            self.feed.publish(containers, local=False)
