# src/ufresher/api/v1/endpoints/stream.py
"""Websocket stream delivering new club posts and chat messages in order."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from ufresher.coordinator import Coordinator
from ufresher.core.errors import InvariantViolationError, NotFoundError
from ufresher.models.content import ContainerRef, ContentKey
from ufresher.services.identity import TokenIdentityProvider
from ufresher.services.realtime import Subscription
from ufresher.services.session_manager import (
    AuthSession,
    SessionManager,
    directory_profile_loader,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    async for item in subscription:
        await websocket.send_json({"type": "item", "item": item.model_dump(mode="json")})


async def _receive(websocket: WebSocket, provider: TokenIdentityProvider) -> None:
    """Read client frames: provider lifecycle events and heartbeats."""
    while True:
        data = await websocket.receive_text()
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON frame: %s", data[:100])
            continue
        if not isinstance(frame, dict):
            continue
        if frame.get("type") == "ping":
            await websocket.send_json({"type": "pong"})
        elif frame.get("type") == "auth":
            try:
                sequence = int(frame["sequence"])
                kind = str(frame["event"])
            except (KeyError, TypeError, ValueError):
                logger.debug("Ignoring malformed auth frame: %s", data[:100])
                continue
            provider.push(kind, sequence, frame.get("token"))


@router.websocket("/stream/{kind}/{container_id}")
async def stream_container(
    websocket: WebSocket,
    kind: str,
    container_id: int,
    token: str | None = Query(None),
    sequence: int = Query(0, description="Provider sequence number of the initial token"),
    after: str | None = Query(None, description="Resume after this cursor"),
) -> None:
    """Stream a container to an authenticated viewer.

    Clients forward their identity provider's lifecycle events as
    ``{"type": "auth", "event": ..., "sequence": ..., "token": ...}`` frames.
    The stream ends when the session ends or switches account; reconnect
    with ``after`` set to the last received cursor to resume without gaps.
    """
    coordinator: Coordinator = websocket.app.state.coordinator
    await websocket.accept()

    try:
        container = ContainerRef(kind, container_id)
        last_key = ContentKey.decode(after) if after else None
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid stream target")
        return

    provider = TokenIdentityProvider(coordinator.verifier, token, sequence)
    manager = SessionManager(
        provider,
        directory_profile_loader(coordinator.session_factory, coordinator.profiles),
    )
    await manager.start()
    subscription: Subscription | None = None
    try:
        session = await manager.resolve_session()
        if session is None:
            await websocket.close(
                code=status.WS_1008_POLICY_VIOLATION,
                reason="Could not validate credentials",
            )
            return

        try:
            subscription = await coordinator.realtime.subscribe(container, session, last_key)
        except (NotFoundError, InvariantViolationError) as exc:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
            return

        subject_id = session.subject_id
        active = subscription

        def _on_session(current: AuthSession | None) -> None:
            if current is None or current.subject_id != subject_id:
                coordinator.realtime.unsubscribe(active)

        manager.on_change(_on_session)

        pump = asyncio.create_task(_pump(websocket, subscription))
        receive = asyncio.create_task(_receive(websocket, provider))
        done, pending = await asyncio.wait({pump, receive}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Stream for %s ended with error: %s", container, exc)

        if pump in done and subscription.closed:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Session ended")
    finally:
        if subscription is not None:
            coordinator.realtime.unsubscribe(subscription)
        await manager.stop()
