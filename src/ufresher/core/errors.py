"""Error taxonomy shared by every coordinator component.

Services raise these; only the API edge translates them into HTTP responses.
"""


class CoordinatorError(RuntimeError):
    """Base exception for coordinator failures."""


class UnauthenticatedError(CoordinatorError):
    """Raised when an operation needs a resolved session and none exists."""


class AdminCodeError(UnauthenticatedError):
    """Raised when a supplied admin code does not match the configured secret.

    This is a hard authentication failure, never a silent downgrade.
    """


class IdentityProviderError(CoordinatorError):
    """Raised when the identity provider fails or reports a transient error."""


class InvariantViolationError(CoordinatorError):
    """Raised when a state change would break a membership uniqueness rule."""


class AlreadyMemberError(InvariantViolationError):
    """Raised when a join would violate a membership invariant."""


class NotMemberError(InvariantViolationError):
    """Raised when the caller lacks the membership an operation requires."""


class ClassifierUnavailableError(CoordinatorError):
    """Raised internally when the moderation classifier cannot decide.

    Absorbed by the moderation gate (fail open); never reaches callers.
    """


class NotFoundError(CoordinatorError):
    """Raised when a referenced container or content row is missing."""


class StoreError(CoordinatorError):
    """Base class for persistent store failures."""


class TransientStoreError(StoreError):
    """Store failure that is safe to retry."""


class PermanentStoreError(StoreError):
    """Store failure surfaced to the caller as is."""
