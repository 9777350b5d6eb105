"""Tenants and the members that hold credit balances."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
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
from sqlalchemy.orm import relationship

from mysterybox_api.db.base import Base


class MemberRole(str, Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    CS = "CS"


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    members = relationship("Member", back_populates="tenant")


class Member(Base):
    """Credit holder within a tenant.

    ``credit_balance`` is a write-through cache of the newest ledger entry's
    ``balance_after``; only the credit ledger updates it.
    """

    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_members_tenant_username"),
        CheckConstraint("credit_balance >= 0", name="ck_members_credit_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    username = Column(String, nullable=False)
    role = Column(
        SqlEnum(MemberRole, name="member_role"),
        nullable=False,
        default=MemberRole.MEMBER,
        server_default=MemberRole.MEMBER.value,
    )
    credit_balance = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    tenant = relationship("Tenant", back_populates="members")

    __mapper_args__ = {"version_id_col": version}
