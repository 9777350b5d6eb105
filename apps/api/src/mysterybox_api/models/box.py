"""Box catalog and box transaction models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from mysterybox_api.db.base import Base


class BoxRarityCode(str, Enum):
    """Closed set of rarity tags, rarest first."""

    SPECIAL_LEGENDARY = "SPECIAL_LEGENDARY"
    LEGENDARY = "LEGENDARY"
    SUPREME = "SUPREME"
    EPIC = "EPIC"
    RARE = "RARE"
    COMMON = "COMMON"


class BoxRewardType(str, Enum):
    CASH = "CASH"
    ITEM = "ITEM"


class BoxTransactionStatus(str, Enum):
    PURCHASED = "PURCHASED"
    OPENED = "OPENED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True, slots=True)
class CashPayout:
    amount: int


@dataclass(frozen=True, slots=True)
class ItemPayout:
    label: str


class BoxRarity(Base):
    """Static rarity reference data shared by every tenant."""

    __tablename__ = "box_rarities"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(SqlEnum(BoxRarityCode, name="box_rarity_code"), nullable=False, unique=True)
    name = Column(String, nullable=False)
    color_key = Column(String, nullable=False)
    sort_order = Column(Integer, nullable=False)


class BoxTierRarityWeight(Base):
    """Per-tenant rarity table for one purchase tier."""

    __tablename__ = "box_tier_rarity_weights"
    __table_args__ = (
        UniqueConstraint("tenant_id", "credit_tier", "rarity_id", name="uq_box_tier_rarity_weights_tier_rarity"),
        CheckConstraint("credit_tier > 0", name="ck_box_tier_rarity_weights_tier_positive"),
        CheckConstraint(
            "real_probability BETWEEN 0 AND 100", name="ck_box_tier_rarity_weights_real_range"
        ),
        CheckConstraint(
            "display_probability BETWEEN 0 AND 100", name="ck_box_tier_rarity_weights_display_range"
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    credit_tier = Column(Integer, nullable=False)
    rarity_id = Column(UUID(as_uuid=True), ForeignKey("box_rarities.id"), nullable=False)
    real_probability = Column(Integer, nullable=False, default=0, server_default="0")
    display_probability = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    rarity = relationship("BoxRarity")


class BoxReward(Base):
    """Tenant reward owned by a rarity.

    CASH rewards carry a nominal ``amount``; ITEM rewards never do.
    """

    __tablename__ = "box_rewards"
    __table_args__ = (
        CheckConstraint(
            "(reward_type = 'CASH' AND amount IS NOT NULL AND amount > 0) "
            "OR (reward_type = 'ITEM' AND amount IS NULL)",
            name="ck_box_rewards_amount_matches_type",
        ),
        CheckConstraint("real_probability BETWEEN 0 AND 100", name="ck_box_rewards_real_range"),
        CheckConstraint("display_probability BETWEEN 0 AND 100", name="ck_box_rewards_display_range"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    rarity_id = Column(UUID(as_uuid=True), ForeignKey("box_rarities.id"), nullable=False, index=True)
    label = Column(String, nullable=False)
    reward_type = Column(SqlEnum(BoxRewardType, name="box_reward_type"), nullable=False)
    amount = Column(Integer, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=False, server_default="false")
    real_probability = Column(Integer, nullable=False, default=0, server_default="0")
    display_probability = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    rarity = relationship("BoxRarity")


class BoxTransaction(Base):
    """A purchased box.

    Created PURCHASED with its rarity fixed, then mutated exactly once more:
    to OPENED (reward rolled) or to EXPIRED. The processed columns belong to
    the fulfillment hand-off and never affect status.
    """

    __tablename__ = "box_transactions"
    __table_args__ = (
        CheckConstraint("credit_tier > 0", name="ck_box_transactions_tier_positive"),
        CheckConstraint("credit_spent > 0", name="ck_box_transactions_spent_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    credit_tier = Column(Integer, nullable=False)
    credit_spent = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(BoxTransactionStatus, name="box_transaction_status"),
        nullable=False,
        default=BoxTransactionStatus.PURCHASED,
        server_default=BoxTransactionStatus.PURCHASED.value,
        index=True,
    )
    rarity_id = Column(UUID(as_uuid=True), ForeignKey("box_rarities.id"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("box_rewards.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    processed = Column(Boolean, nullable=False, default=False, server_default="false")
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by_member_id = Column(UUID(as_uuid=True), ForeignKey("members.id"), nullable=True)
    version = Column(Integer, nullable=False, server_default="1")

    rarity = relationship("BoxRarity")
    reward = relationship("BoxReward")

    __mapper_args__ = {"version_id_col": version}


class BoxSweepRun(Base):
    """Audit row for an expiry sweep invocation."""

    __tablename__ = "box_sweep_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    triggered_by = Column(String, nullable=False)
    status = Column(String(length=16), nullable=False, default="running", server_default="running")
    scanned_count = Column(Integer, nullable=False, default=0, server_default="0")
    expired_count = Column(Integer, nullable=False, default=0, server_default="0")
    failed_count = Column(Integer, nullable=False, default=0, server_default="0")
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
