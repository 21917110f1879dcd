# src/ufresher/schemas/moderation.py
"""Moderation audit and reconciliation schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class ModerationDecisionResponse(BaseModel):
    """Schema for an audit row of a flagged item."""

    id: int
    content_id: int
    content_type: str
    reason: str | None
    confidence: float | None
    moderator_action: str
    resolved_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReconcileSummary(BaseModel):
    """Schema for one reconciliation pass."""

    checked: int
    corrected: int
    corrections: list[dict[str, Any]]


class ReconcileResponse(BaseModel):
    """Schema for the admin-triggered reconciliation run."""

    audit: ReconcileSummary
    memberships: ReconcileSummary
