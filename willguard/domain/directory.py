from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class NotificationPrefs:
    email: bool = True
    push: bool = False


@dataclass(frozen=True)
class UnlockMechanisms:
    pin_system: bool = True
    executor_override: bool = False
    trusted_contact_override: bool = False
    failsafe: bool = True

    def any_unlock_rule(self) -> bool:
        # Failsafe only notifies, so it does not count as a way to unlock.
        return self.pin_system or self.executor_override or self.trusted_contact_override


@dataclass(frozen=True)
class PrincipalProfile:
    id: str
    display_name: str
    email: str | None = None
    push_token: str | None = None
    checkin_enabled: bool = False
    checkin_interval_days: int = 14
    grace_period_days: int = 7
    verification_window_hours: int = 48
    notifications: NotificationPrefs = field(default_factory=NotificationPrefs)
    unlock: UnlockMechanisms = field(default_factory=UnlockMechanisms)


@dataclass(frozen=True)
class PartyProfile:
    id: str
    principal_id: str
    role: str
    name: str
    email: str | None = None
    phone: str | None = None
    is_primary_executor: bool = False
    is_executor: bool = False

    @property
    def counts_as_executor(self) -> bool:
        return self.role == "executor" or self.is_executor


class PrincipalDirectory(Protocol):
    async def get_principal(self, principal_id: str) -> PrincipalProfile: ...


class PartyDirectory(Protocol):
    async def list_parties(self, principal_id: str) -> list[PartyProfile]: ...
