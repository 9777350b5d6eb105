"""Box economy services.

Only the dependency-free building blocks are re-exported here; the lifecycle,
admin gateway and sweeper depend on the credit ledger and are imported from
their own modules.
"""

from .catalog import CatalogStore, DropInfoRow, RarityWeight, RewardWeight
from .errors import (
    BoxAlreadyOpenedError,
    BoxEngineError,
    BoxExpiredError,
    BoxNotFoundError,
    BoxNotOwnedError,
    BoxNotProcessableError,
    CatalogMisconfiguredError,
    InsufficientCreditError,
    InvalidTierError,
    MemberNotFoundError,
    RewardNotFoundError,
    TransientConflictError,
    ValidationFailedError,
)
from .selector import RandomSource, WeightedCandidate, WeightedSelector
from .validator import ProbabilitySums, ProbabilityValidator

__all__ = [
    "BoxAlreadyOpenedError",
    "BoxEngineError",
    "BoxExpiredError",
    "BoxNotFoundError",
    "BoxNotOwnedError",
    "BoxNotProcessableError",
    "CatalogMisconfiguredError",
    "CatalogStore",
    "DropInfoRow",
    "InsufficientCreditError",
    "InvalidTierError",
    "MemberNotFoundError",
    "ProbabilitySums",
    "ProbabilityValidator",
    "RandomSource",
    "RarityWeight",
    "RewardNotFoundError",
    "RewardWeight",
    "TransientConflictError",
    "ValidationFailedError",
    "WeightedCandidate",
    "WeightedSelector",
]
