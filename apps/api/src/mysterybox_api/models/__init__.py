"""SQLAlchemy models package."""

from .box import (  # noqa: F401
    BoxRarity,
    BoxRarityCode,
    BoxReward,
    BoxRewardType,
    BoxSweepRun,
    BoxTierRarityWeight,
    BoxTransaction,
    BoxTransactionStatus,
)
from .credit import CreditLedgerEntry, CreditLedgerKind  # noqa: F401
from .member import Member, MemberRole, Tenant  # noqa: F401
