"""Caller-visible failures raised by the box economy engine."""

from __future__ import annotations

from typing import Any
from uuid import UUID


class BoxEngineError(RuntimeError):
    """Base class for box economy failures.

    ``code`` is a stable identifier for clients; ``details()`` carries the
    structured context needed to render a precise message.
    """

    code = "box_engine_error"
    commit_changes = False

    def details(self) -> dict[str, Any]:
        return {}


class InsufficientCreditError(BoxEngineError):
    code = "insufficient_credit"

    def __init__(self, *, balance: int, required: int) -> None:
        super().__init__(f"Insufficient credit: balance is {balance}, {required} required")
        self.balance = balance
        self.required = required

    def details(self) -> dict[str, Any]:
        return {"balance": self.balance, "required": self.required}


class InvalidTierError(BoxEngineError):
    code = "invalid_tier"

    def __init__(self, tier: int, reason: str = "Box tier is not available") -> None:
        super().__init__(f"{reason}: tier {tier}")
        self.tier = tier

    def details(self) -> dict[str, Any]:
        return {"tier": self.tier}


class CatalogMisconfiguredError(BoxEngineError):
    """Active weights cannot be rolled; the validator should have prevented it."""

    code = "catalog_misconfigured"

    def __init__(self, message: str, *, real_sum: int, display_sum: int, scope: dict[str, Any]) -> None:
        super().__init__(message)
        self.real_sum = real_sum
        self.display_sum = display_sum
        self.scope = scope

    def details(self) -> dict[str, Any]:
        return {"real_sum": self.real_sum, "display_sum": self.display_sum, **self.scope}


class BoxNotFoundError(BoxEngineError):
    code = "box_not_found"

    def __init__(self, transaction_id: UUID) -> None:
        super().__init__("Box not found")
        self.transaction_id = transaction_id

    def details(self) -> dict[str, Any]:
        return {"transaction_id": str(self.transaction_id)}


class BoxNotOwnedError(BoxEngineError):
    code = "box_not_owned"

    def __init__(self, transaction_id: UUID) -> None:
        super().__init__("This box belongs to another member")
        self.transaction_id = transaction_id

    def details(self) -> dict[str, Any]:
        return {"transaction_id": str(self.transaction_id)}


class BoxAlreadyOpenedError(BoxEngineError):
    code = "box_already_opened"

    def __init__(self, transaction_id: UUID) -> None:
        super().__init__("This box has already been opened")
        self.transaction_id = transaction_id

    def details(self) -> dict[str, Any]:
        return {"transaction_id": str(self.transaction_id)}


class BoxExpiredError(BoxEngineError):
    code = "box_expired"

    def __init__(self, transaction_id: UUID, *, commit_changes: bool = False) -> None:
        super().__init__("This box has expired")
        self.transaction_id = transaction_id
        self.commit_changes = commit_changes

    def details(self) -> dict[str, Any]:
        return {"transaction_id": str(self.transaction_id)}


class BoxNotProcessableError(BoxEngineError):
    code = "box_not_processable"

    def __init__(self, transaction_id: UUID, status: str) -> None:
        super().__init__(f"Only opened boxes can be marked processed (status {status})")
        self.transaction_id = transaction_id
        self.status = status

    def details(self) -> dict[str, Any]:
        return {"transaction_id": str(self.transaction_id), "status": self.status}


class MemberNotFoundError(BoxEngineError):
    code = "member_not_found"

    def __init__(self, member_id: UUID) -> None:
        super().__init__("Member not found")
        self.member_id = member_id

    def details(self) -> dict[str, Any]:
        return {"member_id": str(self.member_id)}


class RewardNotFoundError(BoxEngineError):
    code = "reward_not_found"

    def __init__(self, reward_id: UUID) -> None:
        super().__init__("Reward not found")
        self.reward_id = reward_id

    def details(self) -> dict[str, Any]:
        return {"reward_id": str(self.reward_id)}


class TransientConflictError(BoxEngineError):
    """Concurrent writers collided; safe to retry."""

    code = "transient_conflict"

    def __init__(self, operation: str, attempts: int | None = None) -> None:
        super().__init__("The request conflicted with another update, please try again")
        self.operation = operation
        self.attempts = attempts

    def details(self) -> dict[str, Any]:
        return {"operation": self.operation, "attempts": self.attempts}


class ValidationFailedError(BoxEngineError):
    """A configuration write was rejected; nothing was persisted."""

    code = "validation_failed"

    def __init__(self, message: str, *, violations: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.violations = violations or []

    def details(self) -> dict[str, Any]:
        return {"violations": self.violations}


__all__ = [
    "BoxAlreadyOpenedError",
    "BoxEngineError",
    "BoxExpiredError",
    "BoxNotFoundError",
    "BoxNotOwnedError",
    "BoxNotProcessableError",
    "CatalogMisconfiguredError",
    "InsufficientCreditError",
    "InvalidTierError",
    "MemberNotFoundError",
    "RewardNotFoundError",
    "TransientConflictError",
    "ValidationFailedError",
]
