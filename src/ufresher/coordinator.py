"""Construction and lifecycle of the coordinator's long-lived components."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from ufresher.core.settings import Settings
from ufresher.services.identity import TokenVerifier
from ufresher.services.membership import MembershipLedger
from ufresher.services.moderation import ModerationGate
from ufresher.services.profiles import ProfileDirectory
from ufresher.services.publisher import ContentPublisher
from ufresher.services.realtime import RealtimeSync
from ufresher.services.reconciliation import ReconciliationWorker, Reconciler
from ufresher.services.relay import RedisChangeRelay

logger = logging.getLogger(__name__)


@dataclass
class Coordinator:
    """Every component wired once from the frozen settings."""

    settings: Settings
    session_factory: sessionmaker[Session]
    verifier: TokenVerifier
    profiles: ProfileDirectory
    ledger: MembershipLedger
    gate: ModerationGate
    publisher: ContentPublisher
    realtime: RealtimeSync
    reconciler: Reconciler
    relay: RedisChangeRelay | None = None
    worker: ReconciliationWorker | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        gate: ModerationGate | None = None,
    ) -> Coordinator:
        ledger = MembershipLedger()
        gate = gate or ModerationGate.from_settings(settings)
        realtime = RealtimeSync(
            session_factory,
            ledger,
            backfill_window=settings.realtime_backfill_window,
            batch_size=settings.realtime_batch_size,
        )
        reconciler = Reconciler(gate, ledger, max_attempts=settings.reconcile_max_attempts)
        relay = (
            RedisChangeRelay(realtime.feed, settings.redis_url, settings.redis_channel)
            if settings.redis_url
            else None
        )
        worker = (
            ReconciliationWorker(reconciler, session_factory, settings.reconcile_interval_seconds)
            if settings.reconcile_enabled
            else None
        )
        return cls(
            settings=settings,
            session_factory=session_factory,
            verifier=TokenVerifier.from_settings(settings),
            profiles=ProfileDirectory(settings.admin_code),
            ledger=ledger,
            gate=gate,
            publisher=ContentPublisher(ledger, gate),
            realtime=realtime,
            reconciler=reconciler,
            relay=relay,
            worker=worker,
        )

    async def start(self) -> None:
        if not self.gate.enabled:
            logger.info("Content moderation is disabled; all content is approved")
        if self.relay is not None:
            await self.relay.start()
        if self.worker is not None:
            await self.worker.start()

    async def stop(self) -> None:
        self.realtime.close_all()
        try:
            if self.worker is not None:
                await self.worker.stop()
            if self.relay is not None:
                await self.relay.stop()
        finally:
            await self.gate.close()
