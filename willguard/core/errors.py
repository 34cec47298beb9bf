from __future__ import annotations


class WillGuardError(Exception):
    """Base error for WillGuard."""


class ConfigurationError(WillGuardError):
    """Principal configuration does not allow the requested operation."""


class NotEnabledError(ConfigurationError):
    """Check-ins are disabled for the principal."""


class NoUnlockMechanismError(ConfigurationError):
    """The principal has no unlock mechanism enabled."""


class NotFoundError(WillGuardError):
    """Requested record does not exist."""


class InvalidTokenError(WillGuardError):
    """Verification token is unknown, expired, or no longer actionable."""


class InvariantViolationError(WillGuardError):
    """A state change was rejected at the atomic transition boundary."""


class IllegalTransitionError(InvariantViolationError):
    """The lifecycle has no transition for this state and event."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"no transition from {state} on {event}")
        self.state = state
        self.event = event


class ConcurrentUpdateError(InvariantViolationError):
    """A compare-and-set lost against a concurrent writer."""


class UnlockError(WillGuardError):
    """Base error for unlock attempts."""


class WrongCredentialError(UnlockError):
    """A submitted credential does not match or was already used."""

    def __init__(self, message: str, *, person_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.person_ids = person_ids or []


class PolicyNotSatisfiedError(UnlockError):
    """Submitted credentials do not satisfy any enabled unlock rule."""


class AlreadyUnlockedError(UnlockError):
    """The payload was already released; carries the original reference."""

    def __init__(self, payload_ref: str | None) -> None:
        super().__init__("payload already released")
        self.payload_ref = payload_ref


class IntegrationError(WillGuardError):
    """External collaborator failure."""


class NotificationDeliveryError(IntegrationError):
    """Notification channel rejected or failed a send."""


class PayloadStoreError(IntegrationError):
    """Payload store failed to release the package."""
