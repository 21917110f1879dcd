# src/ufresher/api/v1/endpoints/moderation.py
"""Admin moderation endpoints for the U-Fresher API."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from ufresher.models import ModerationDecision
from ufresher.schemas.moderation import ModerationDecisionResponse, ReconcileResponse

from ..dependencies import AdminSessionDep, CoordinatorDep, SessionDep

router = APIRouter(prefix="/moderation", tags=["moderation"])


@router.get("/flagged", response_model=list[ModerationDecisionResponse])
async def list_flagged(
    _admin: AdminSessionDep,
    db: SessionDep,
    action: str | None = Query(None, description="Filter by moderator action"),
    limit: int = Query(50, ge=1, le=200),
) -> list[ModerationDecision]:
    """List audit rows of flagged content, newest first."""
    query = db.query(ModerationDecision)
    if action is not None:
        query = query.filter(ModerationDecision.moderator_action == action)
    return query.order_by(ModerationDecision.id.desc()).limit(limit).all()


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    _admin: AdminSessionDep,
    coordinator: CoordinatorDep,
    db: SessionDep,
) -> dict[str, Any]:
    """Run one reconciliation pass now."""
    return coordinator.reconciler.run_once(db)
