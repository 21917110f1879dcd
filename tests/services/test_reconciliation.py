"""Tests for reconciliation of follow-up writes."""

import asyncio

import pytest
from sqlalchemy import select

from ufresher.core.errors import TransientStoreError
from ufresher.db.time import utcnow
from ufresher.models import ClubMembership, ContentItem, MembershipRepair, ModerationDecision
from ufresher.models.club import REPAIR_DONE, REPAIR_FAILED, REPAIR_PENDING
from ufresher.models.content import STATUS_APPROVED, STATUS_FLAGGED
from ufresher.services.reconciliation import Reconciler, ReconciliationWorker


@pytest.fixture
def reconciler(gate, ledger):
    return Reconciler(gate, ledger, max_attempts=2)


def _content(db, author_id: str, club_id: int, status: str, reason: str | None = None) -> ContentItem:
    item = ContentItem(
        author_id=author_id,
        container_kind="club",
        container_id=club_id,
        body="text",
        message_type="text",
        created_at=utcnow(),
        moderation_status=status,
        moderation_reason=reason,
    )
    db.add(item)
    db.commit()
    return item


def test_backfill_writes_missing_audit_rows(reconciler, db_session, alice, club) -> None:
    flagged = _content(db_session, alice.id, club.id, STATUS_FLAGGED, "spam")
    _content(db_session, alice.id, club.id, STATUS_APPROVED)

    summary = reconciler.backfill_moderation_audit(db_session)

    assert summary["checked"] == 1
    assert summary["corrected"] == 1
    assert summary["corrections"] == [{"content_id": flagged.id, "content_type": "post"}]
    row = db_session.execute(select(ModerationDecision)).scalar_one()
    assert row.content_id == flagged.id
    assert row.reason == "spam"


def test_backfill_is_a_no_op_when_consistent(reconciler, db_session, alice, club) -> None:
    _content(db_session, alice.id, club.id, STATUS_FLAGGED, "spam")
    reconciler.backfill_moderation_audit(db_session)

    summary = reconciler.backfill_moderation_audit(db_session)

    assert summary == {"checked": 0, "corrected": 0, "corrections": []}


def _repair(db, user_id: str, club_id: int) -> MembershipRepair:
    repair = MembershipRepair(user_id=user_id, club_id=club_id, status=REPAIR_PENDING)
    db.add(repair)
    db.commit()
    return repair


def test_pending_repair_joins_creator(reconciler, db_session, bob, club) -> None:
    repair = _repair(db_session, bob.id, club.id)

    summary = reconciler.retry_membership_repairs(db_session)

    assert summary["corrected"] == 1
    assert summary["corrections"] == [{"user_id": bob.id, "club_id": club.id}]
    db_session.refresh(repair)
    assert repair.status == REPAIR_DONE
    membership = db_session.execute(
        select(ClubMembership).filter_by(user_id=bob.id, club_id=club.id)
    ).scalar_one()
    assert membership is not None


def test_repair_for_existing_member_is_done(reconciler, db_session, alice, club) -> None:
    repair = _repair(db_session, alice.id, club.id)

    reconciler.retry_membership_repairs(db_session)

    db_session.refresh(repair)
    assert repair.status == REPAIR_DONE


def test_repair_for_missing_club_fails(reconciler, db_session, bob) -> None:
    repair = _repair(db_session, bob.id, 4040)

    summary = reconciler.retry_membership_repairs(db_session)

    assert summary["corrected"] == 0
    db_session.refresh(repair)
    assert repair.status == REPAIR_FAILED
    assert repair.last_error


def test_repair_gives_up_after_max_attempts(reconciler, ledger, db_session, bob, club, mocker) -> None:
    repair = _repair(db_session, bob.id, club.id)
    mocker.patch.object(ledger, "join_club", side_effect=TransientStoreError("database is locked"))

    reconciler.retry_membership_repairs(db_session)
    db_session.refresh(repair)
    assert repair.status == REPAIR_PENDING
    assert repair.attempts == 1

    reconciler.retry_membership_repairs(db_session)
    db_session.refresh(repair)
    assert repair.status == REPAIR_FAILED
    assert repair.attempts == 2


def test_run_once_reports_both_passes(reconciler, db_session) -> None:
    summary = reconciler.run_once(db_session)

    assert set(summary) == {"audit", "memberships"}


@pytest.mark.asyncio
async def test_worker_runs_a_pass_and_stops(reconciler, session_factory, mocker) -> None:
    run_once = mocker.spy(reconciler, "run_once")
    worker = ReconciliationWorker(reconciler, session_factory, interval_seconds=0.1)

    await worker.start()
    await asyncio.sleep(0.3)
    await worker.stop()

    assert run_once.call_count >= 1


@pytest.mark.asyncio
async def test_worker_survives_unexpected_pass_failure(reconciler, session_factory, mocker) -> None:
    run_once = mocker.patch.object(reconciler, "run_once", side_effect=RuntimeError("boom"))
    worker = ReconciliationWorker(reconciler, session_factory, interval_seconds=0.1)

    await worker.start()
    await asyncio.sleep(0.35)
    await worker.stop()

    assert run_once.call_count >= 2
