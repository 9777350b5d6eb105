"""Append-only credit ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from mysterybox_api.db.base import Base


class CreditLedgerKind(str, Enum):
    """Balance-affecting event kinds."""

    TOPUP = "TOPUP"
    ADJUSTMENT = "ADJUSTMENT"
    BOX_PURCHASE = "BOX_PURCHASE"
    BOX_REWARD = "BOX_REWARD"


class CreditLedgerEntry(Base):
    """Immutable balance movement; ``balance_after`` is authoritative."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("member_id", "sequence", name="uq_credit_ledger_member_sequence"),
        CheckConstraint("delta <> 0", name="ck_credit_ledger_delta_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_credit_ledger_balance_after_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=True, index=True)
    sequence = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    kind = Column(SqlEnum(CreditLedgerKind, name="credit_ledger_kind"), nullable=False)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_by_member_id = Column(UUID(as_uuid=True), ForeignKey("members.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
