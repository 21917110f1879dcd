"""Reconciliation of best-effort follow-up writes.

Two writes happen after their primary write has already committed and may
fail independently of it:

- the audit row for flagged content, and
- the creator's auto-join after club creation.

Both leave a durable trace (the flagged item, a pending ``MembershipRepair``)
so a periodic pass can finish them. Each pass returns
``{"checked": N, "corrected": M, "corrections": [...]}``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ufresher.core.errors import AlreadyMemberError, NotFoundError, StoreError
from ufresher.models.club import REPAIR_DONE, REPAIR_FAILED, REPAIR_PENDING, MembershipRepair
from ufresher.repositories.content_repo import ContentRepository
from ufresher.services.membership import MembershipLedger
from ufresher.services.moderation import SOURCE_RECONCILED, Decision, ModerationGate

logger = logging.getLogger(__name__)


class Reconciler:
    """Finish follow-up writes that failed after their primary write committed."""

    def __init__(self, gate: ModerationGate, ledger: MembershipLedger, *, max_attempts: int = 5) -> None:
        self.gate = gate
        self.ledger = ledger
        self.max_attempts = max_attempts

    def backfill_moderation_audit(self, db: Session, limit: int = 500) -> dict[str, Any]:
        """Write missing audit rows for flagged content."""
        corrections: list[dict[str, Any]] = []
        items = ContentRepository(db).flagged_without_decision(limit)
        for item in items:
            decision = Decision(
                flagged=True,
                reason=item.moderation_reason,
                source=SOURCE_RECONCILED,
            )
            try:
                self.gate.record(db, item, decision)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.warning("Audit backfill for item %s failed: %s", item.id, exc)
                continue
            corrections.append({"content_id": item.id, "content_type": item.container.content_type})

        if corrections:
            logger.info("Backfilled %d moderation audit rows", len(corrections))
        return {"checked": len(items), "corrected": len(corrections), "corrections": corrections}

    def retry_membership_repairs(self, db: Session, limit: int = 500) -> dict[str, Any]:
        """Retry failed creator auto-joins."""
        corrections: list[dict[str, Any]] = []
        repairs = list(
            db.execute(
                select(MembershipRepair)
                .where(MembershipRepair.status == REPAIR_PENDING)
                .order_by(MembershipRepair.id)
                .limit(limit)
            ).scalars()
        )
        for repair in repairs:
            outcome = self._retry_join(db, repair)
            if outcome == REPAIR_DONE:
                corrections.append({"user_id": repair.user_id, "club_id": repair.club_id})

        if corrections:
            logger.info("Repaired %d club memberships", len(corrections))
        return {"checked": len(repairs), "corrected": len(corrections), "corrections": corrections}

    def _retry_join(self, db: Session, repair: MembershipRepair) -> str:
        repair_id, user_id, club_id = repair.id, repair.user_id, repair.club_id
        error: str | None = None
        give_up = False
        try:
            self.ledger.join_club(db, user_id, club_id)
        except AlreadyMemberError:
            pass
        except NotFoundError as exc:
            # Club is gone; nothing left to repair.
            error = str(exc)
            give_up = True
        except (StoreError, SQLAlchemyError) as exc:
            db.rollback()
            error = str(exc)

        current = db.get(MembershipRepair, repair_id)
        if current is None:
            return REPAIR_FAILED
        current.attempts += 1
        if error is None:
            current.status = REPAIR_DONE
            current.last_error = None
        else:
            current.last_error = error[:500]
            if give_up or current.attempts >= self.max_attempts:
                current.status = REPAIR_FAILED
                logger.error("Giving up on membership repair %s: %s", repair_id, error)
        db.commit()
        return current.status

    def run_once(self, db: Session) -> dict[str, dict[str, Any]]:
        return {
            "audit": self.backfill_moderation_audit(db),
            "memberships": self.retry_membership_repairs(db),
        }


class ReconciliationWorker:
    """Periodically runs a reconciliation pass in a worker thread."""

    def __init__(
        self,
        reconciler: Reconciler,
        session_factory: sessionmaker[Session],
        interval_seconds: float = 300.0,
    ) -> None:
        self.reconciler = reconciler
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the background reconciliation loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background reconciliation loop."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        except Exception:
            logger.exception("ReconciliationWorker had failed")
        self._task = None

    def _run_pass(self) -> dict[str, dict[str, Any]]:
        with self._session_factory() as db:
            return self.reconciler.run_once(db)

    async def _run(self) -> None:
        interval = max(0.1, float(self.interval_seconds))
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self._run_pass)
            except SQLAlchemyError as e:
                logger.warning("ReconciliationWorker encountered store error: %s", e)
            except Exception:
                logger.exception("ReconciliationWorker pass failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                continue
