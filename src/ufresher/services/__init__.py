# src/ufresher/services/__init__.py
"""Business logic services for the U-Fresher coordinator."""

from .identity import ProviderEvent, ProviderIdentity, TokenIdentityProvider, TokenVerifier
from .membership import ClubCreation, MembershipLedger
from .moderation import Decision, GeminiClassifierClient, ModerationGate
from .profiles import ProfileDirectory
from .publisher import ContentPublisher, PublishResult
from .realtime import ChangeFeed, RealtimeSync, Subscription, Timeline
from .reconciliation import ReconciliationWorker, Reconciler
from .session_manager import AuthSession, ProfileSnapshot, SessionManager

__all__ = [
    "ProviderEvent", "ProviderIdentity", "TokenIdentityProvider", "TokenVerifier",
    "ClubCreation", "MembershipLedger",
    "Decision", "GeminiClassifierClient", "ModerationGate",
    "ProfileDirectory",
    "ContentPublisher", "PublishResult",
    "ChangeFeed", "RealtimeSync", "Subscription", "Timeline",
    "ReconciliationWorker", "Reconciler",
    "AuthSession", "ProfileSnapshot", "SessionManager",
]
