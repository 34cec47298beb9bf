"""Verification lifecycle state machine.

Every stage change in the engine goes through :func:`transition`; the persisted
``VerificationRequest.stage`` is then moved with a compare-and-set from the
expected source stage, so an illegal or lost transition never reaches storage.
"""
from __future__ import annotations

from enum import Enum

from willguard.core.errors import IllegalTransitionError


class LifecycleState(str, Enum):
    ALIVE = "alive"
    OVERDUE_UNCONFIRMED = "overdue_unconfirmed"
    VERIFICATION_PENDING = "verification_pending"
    RESOLVED_ALIVE = "verification_resolved_alive"
    RESOLVED_DECEASED = "verification_resolved_deceased"
    PINS_ISSUED = "pins_issued"
    UNLOCKED = "unlocked"
    EXPIRED_UNRESOLVED = "expired_unresolved"
    FAILSAFE_ESCALATED = "failsafe_escalated"
    CANCELLED = "cancelled"


class LifecycleEvent(str, Enum):
    GRACE_ELAPSED = "grace_elapsed"
    REQUEST_OPENED = "request_opened"
    ALIVE_REPORTED = "alive_reported"
    DECEASED_REPORTED = "deceased_reported"
    CHECKIN_RECORDED = "checkin_recorded"
    WINDOW_EXPIRED = "window_expired"
    CREDENTIALS_ISSUED = "credentials_issued"
    UNLOCK_SUCCEEDED = "unlock_succeeded"
    FAILSAFE_TRIGGERED = "failsafe_triggered"
    ADMIN_CONFIRMED_DECEASED = "admin_confirmed_deceased"
    ADMIN_RESET = "admin_reset"


S = LifecycleState
E = LifecycleEvent

TRANSITIONS: dict[tuple[LifecycleState, LifecycleEvent], LifecycleState] = {
    (S.ALIVE, E.CHECKIN_RECORDED): S.ALIVE,
    (S.ALIVE, E.GRACE_ELAPSED): S.OVERDUE_UNCONFIRMED,
    (S.OVERDUE_UNCONFIRMED, E.CHECKIN_RECORDED): S.ALIVE,
    (S.OVERDUE_UNCONFIRMED, E.REQUEST_OPENED): S.VERIFICATION_PENDING,
    (S.VERIFICATION_PENDING, E.ALIVE_REPORTED): S.RESOLVED_ALIVE,
    # A principal checking in while parties are being asked cancels the request.
    (S.VERIFICATION_PENDING, E.CHECKIN_RECORDED): S.RESOLVED_ALIVE,
    (S.VERIFICATION_PENDING, E.DECEASED_REPORTED): S.RESOLVED_DECEASED,
    (S.VERIFICATION_PENDING, E.WINDOW_EXPIRED): S.EXPIRED_UNRESOLVED,
    (S.VERIFICATION_PENDING, E.ADMIN_RESET): S.CANCELLED,
    (S.RESOLVED_DECEASED, E.CREDENTIALS_ISSUED): S.PINS_ISSUED,
    # Retries credential issue for a deceased report whose PINs never went out.
    (S.RESOLVED_DECEASED, E.ADMIN_CONFIRMED_DECEASED): S.RESOLVED_DECEASED,
    (S.RESOLVED_DECEASED, E.ADMIN_RESET): S.CANCELLED,
    (S.PINS_ISSUED, E.UNLOCK_SUCCEEDED): S.UNLOCKED,
    (S.PINS_ISSUED, E.FAILSAFE_TRIGGERED): S.FAILSAFE_ESCALATED,
    (S.PINS_ISSUED, E.ADMIN_RESET): S.CANCELLED,
    (S.EXPIRED_UNRESOLVED, E.FAILSAFE_TRIGGERED): S.FAILSAFE_ESCALATED,
    (S.EXPIRED_UNRESOLVED, E.ADMIN_CONFIRMED_DECEASED): S.RESOLVED_DECEASED,
    (S.EXPIRED_UNRESOLVED, E.ADMIN_RESET): S.CANCELLED,
    # Failsafe is notification-only: the unlock rules keep applying afterwards.
    (S.FAILSAFE_ESCALATED, E.UNLOCK_SUCCEEDED): S.UNLOCKED,
    (S.FAILSAFE_ESCALATED, E.ADMIN_CONFIRMED_DECEASED): S.RESOLVED_DECEASED,
    (S.FAILSAFE_ESCALATED, E.ADMIN_RESET): S.CANCELLED,
}

# Stages in which death has been confirmed. A failsafe-escalated request only
# counts when it carries credentials (see pins_issued_at).
DECEASED_STAGES = frozenset({S.RESOLVED_DECEASED, S.PINS_ISSUED, S.UNLOCKED})

# Stages from which the unlock gate accepts credentials.
UNLOCKABLE_STAGES = frozenset({S.PINS_ISSUED, S.FAILSAFE_ESCALATED})


def transition(state: LifecycleState | str, event: LifecycleEvent | str) -> LifecycleState:
    current = LifecycleState(state)
    trigger = LifecycleEvent(event)
    target = TRANSITIONS.get((current, trigger))
    if target is None:
        raise IllegalTransitionError(current.value, trigger.value)
    return target


def can_transition(state: LifecycleState | str, event: LifecycleEvent | str) -> bool:
    return (LifecycleState(state), LifecycleEvent(event)) in TRANSITIONS


def is_terminal(state: LifecycleState | str) -> bool:
    current = LifecycleState(state)
    return not any(source == current for source, _event in TRANSITIONS)
