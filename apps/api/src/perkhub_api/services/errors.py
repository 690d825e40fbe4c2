"""Engine error taxonomy shared by the voucher and subscription services."""

from __future__ import annotations

from datetime import datetime
from typing import Any


class EngineError(RuntimeError):
    """Base exception for voucher and entitlement engine failures."""


class NotFoundError(EngineError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, identifier: Any) -> None:
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class InvalidStateError(EngineError):
    """Raised when a transition is not allowed from the entity's current state."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class ThrottledError(EngineError):
    """Raised when a voucher is requested inside the cooldown window."""

    def __init__(self, next_available_at: datetime) -> None:
        super().__init__(f"Voucher generation available at {next_available_at.isoformat()}")
        self.next_available_at = next_available_at


class IdentityUnresolvableError(EngineError):
    """Raised when no identifier in a hint maps to a known record."""

    def __init__(self, hint: Any) -> None:
        super().__init__(f"Unable to resolve identity for {hint!r}")
        self.hint = hint


class PartnerUnresolvableError(EngineError):
    """Raised when a payment event cannot be attributed to a partner."""

    def __init__(self, hint: Any) -> None:
        super().__init__(f"Unable to resolve partner for {hint!r}")
        self.hint = hint


class DuplicateEventError(EngineError):
    """Raised when a payment event has already produced a subscription."""

    def __init__(self, subscription_id: Any) -> None:
        super().__init__(f"Event already reconciled into subscription {subscription_id}")
        self.subscription_id = subscription_id


class TransactionConflictError(EngineError):
    """Raised when a multi-write transaction fails to commit."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class MalformedEventError(EngineError):
    """Raised when a provider payload is missing required fields."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


__all__ = [
    "DuplicateEventError",
    "EngineError",
    "IdentityUnresolvableError",
    "InvalidStateError",
    "MalformedEventError",
    "NotFoundError",
    "PartnerUnresolvableError",
    "ThrottledError",
    "TransactionConflictError",
]
