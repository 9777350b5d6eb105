"""Box economy schema: tenants, members, credit ledger, catalog and boxes.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union
from uuid import uuid4

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


RARITIES = (
    ("SPECIAL_LEGENDARY", "Special Legendary", "rainbow", 1),
    ("LEGENDARY", "Legendary", "gold", 2),
    ("SUPREME", "Supreme", "yellow", 3),
    ("EPIC", "Epic", "purple", 4),
    ("RARE", "Rare", "blue", 5),
    ("COMMON", "Common", "green", 6),
)


def upgrade() -> None:
    uuid_type = sa.dialects.postgresql.UUID(as_uuid=True)
    member_role = sa.Enum("MEMBER", "ADMIN", "CS", name="member_role")
    ledger_kind = sa.Enum("TOPUP", "ADJUSTMENT", "BOX_PURCHASE", "BOX_REWARD", name="credit_ledger_kind")
    rarity_code = sa.Enum(*(code for code, *_ in RARITIES), name="box_rarity_code")
    reward_type = sa.Enum("CASH", "ITEM", name="box_reward_type")
    box_status = sa.Enum("PURCHASED", "OPENED", "EXPIRED", name="box_transaction_status")

    op.create_table(
        "tenants",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "members",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("tenant_id", uuid_type, nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("role", member_role, nullable=False, server_default="MEMBER"),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("tenant_id", "username", name="uq_members_tenant_username"),
        sa.CheckConstraint("credit_balance >= 0", name="ck_members_credit_balance_non_negative"),
    )
    op.create_index("ix_members_tenant_id", "members", ["tenant_id"])

    op.create_table(
        "credit_ledger",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("tenant_id", uuid_type, nullable=False),
        sa.Column("member_id", uuid_type, nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("kind", ledger_kind, nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_by_member_id", uuid_type, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_member_id"], ["members.id"]),
        sa.UniqueConstraint("member_id", "sequence", name="uq_credit_ledger_member_sequence"),
        sa.CheckConstraint("delta <> 0", name="ck_credit_ledger_delta_non_zero"),
        sa.CheckConstraint("balance_after >= 0", name="ck_credit_ledger_balance_after_non_negative"),
    )
    op.create_index("ix_credit_ledger_tenant_id", "credit_ledger", ["tenant_id"])
    op.create_index("ix_credit_ledger_member_id", "credit_ledger", ["member_id"])
    op.create_index("ix_credit_ledger_tenant_created", "credit_ledger", ["tenant_id", "created_at"])

    rarities = op.create_table(
        "box_rarities",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("code", rarity_code, nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("color_key", sa.String(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
    )

    op.create_table(
        "box_tier_rarity_weights",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("tenant_id", uuid_type, nullable=False),
        sa.Column("credit_tier", sa.Integer(), nullable=False),
        sa.Column("rarity_id", uuid_type, nullable=False),
        sa.Column("real_probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("display_probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rarity_id"], ["box_rarities.id"]),
        sa.UniqueConstraint(
            "tenant_id", "credit_tier", "rarity_id", name="uq_box_tier_rarity_weights_tier_rarity"
        ),
        sa.CheckConstraint("credit_tier > 0", name="ck_box_tier_rarity_weights_tier_positive"),
        sa.CheckConstraint("real_probability BETWEEN 0 AND 100", name="ck_box_tier_rarity_weights_real_range"),
        sa.CheckConstraint(
            "display_probability BETWEEN 0 AND 100", name="ck_box_tier_rarity_weights_display_range"
        ),
    )
    op.create_index("ix_box_tier_rarity_weights_tenant_id", "box_tier_rarity_weights", ["tenant_id"])

    op.create_table(
        "box_rewards",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("tenant_id", uuid_type, nullable=False),
        sa.Column("rarity_id", uuid_type, nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("reward_type", reward_type, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("real_probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("display_probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rarity_id"], ["box_rarities.id"]),
        sa.CheckConstraint(
            "(reward_type = 'CASH' AND amount IS NOT NULL AND amount > 0) "
            "OR (reward_type = 'ITEM' AND amount IS NULL)",
            name="ck_box_rewards_amount_matches_type",
        ),
        sa.CheckConstraint("real_probability BETWEEN 0 AND 100", name="ck_box_rewards_real_range"),
        sa.CheckConstraint("display_probability BETWEEN 0 AND 100", name="ck_box_rewards_display_range"),
    )
    op.create_index("ix_box_rewards_tenant_id", "box_rewards", ["tenant_id"])
    op.create_index("ix_box_rewards_rarity_id", "box_rewards", ["rarity_id"])

    op.create_table(
        "box_transactions",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("tenant_id", uuid_type, nullable=False),
        sa.Column("member_id", uuid_type, nullable=False),
        sa.Column("credit_tier", sa.Integer(), nullable=False),
        sa.Column("credit_spent", sa.Integer(), nullable=False),
        sa.Column("status", box_status, nullable=False, server_default="PURCHASED"),
        sa.Column("rarity_id", uuid_type, nullable=False),
        sa.Column("reward_id", uuid_type, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by_member_id", uuid_type, nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rarity_id"], ["box_rarities.id"]),
        sa.ForeignKeyConstraint(["reward_id"], ["box_rewards.id"]),
        sa.ForeignKeyConstraint(["processed_by_member_id"], ["members.id"]),
        sa.CheckConstraint("credit_tier > 0", name="ck_box_transactions_tier_positive"),
        sa.CheckConstraint("credit_spent > 0", name="ck_box_transactions_spent_positive"),
    )
    op.create_index("ix_box_transactions_tenant_id", "box_transactions", ["tenant_id"])
    op.create_index("ix_box_transactions_member_id", "box_transactions", ["member_id"])
    op.create_index("ix_box_transactions_status", "box_transactions", ["status"])
    op.create_index("ix_box_transactions_expires_at", "box_transactions", ["expires_at"])

    op.create_table(
        "box_sweep_runs",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("triggered_by", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("scanned_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expired_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.bulk_insert(
        rarities,
        [
            {"id": uuid4(), "code": code, "name": name, "color_key": color_key, "sort_order": sort_order}
            for code, name, color_key, sort_order in RARITIES
        ],
    )


def downgrade() -> None:
    op.drop_table("box_sweep_runs")
    op.drop_index("ix_box_transactions_expires_at", table_name="box_transactions")
    op.drop_index("ix_box_transactions_status", table_name="box_transactions")
    op.drop_index("ix_box_transactions_member_id", table_name="box_transactions")
    op.drop_index("ix_box_transactions_tenant_id", table_name="box_transactions")
    op.drop_table("box_transactions")
    op.drop_index("ix_box_rewards_rarity_id", table_name="box_rewards")
    op.drop_index("ix_box_rewards_tenant_id", table_name="box_rewards")
    op.drop_table("box_rewards")
    op.drop_index("ix_box_tier_rarity_weights_tenant_id", table_name="box_tier_rarity_weights")
    op.drop_table("box_tier_rarity_weights")
    op.drop_table("box_rarities")
    op.drop_index("ix_credit_ledger_tenant_created", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_member_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_tenant_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index("ix_members_tenant_id", table_name="members")
    op.drop_table("members")
    op.drop_index("ix_tenants_slug", table_name="tenants")
    op.drop_table("tenants")

    bind = op.get_bind()
    for enum_name in (
        "box_transaction_status",
        "box_reward_type",
        "box_rarity_code",
        "credit_ledger_kind",
        "member_role",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
