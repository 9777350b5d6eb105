"""Read access to rarities, tier rarity tables and reward tables."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.models.box import (
    BoxRarity,
    BoxRarityCode,
    BoxReward,
    BoxRewardType,
    BoxTierRarityWeight,
    CashPayout,
    ItemPayout,
)


# (code, name, color_key, sort_order); smaller sort_order is rarer.
DEFAULT_RARITIES: tuple[tuple[BoxRarityCode, str, str, int], ...] = (
    (BoxRarityCode.SPECIAL_LEGENDARY, "Special Legendary", "rainbow", 1),
    (BoxRarityCode.LEGENDARY, "Legendary", "gold", 2),
    (BoxRarityCode.SUPREME, "Supreme", "yellow", 3),
    (BoxRarityCode.EPIC, "Epic", "purple", 4),
    (BoxRarityCode.RARE, "Rare", "blue", 5),
    (BoxRarityCode.COMMON, "Common", "green", 6),
)


@dataclass(frozen=True, slots=True)
class RarityWeight:
    """Active row of a tier's rarity table."""

    rarity_id: UUID
    code: BoxRarityCode
    name: str
    color_key: str
    sort_order: int
    real_weight: int
    display_weight: int


@dataclass(frozen=True, slots=True)
class RewardWeight:
    """Active reward with its selection and display weights."""

    reward_id: UUID
    rarity_id: UUID
    label: str
    reward_type: BoxRewardType
    amount: int | None
    real_weight: int
    display_weight: int

    @property
    def payout(self) -> CashPayout | ItemPayout:
        if self.reward_type == BoxRewardType.CASH:
            return CashPayout(amount=int(self.amount))
        return ItemPayout(label=self.label)


@dataclass(frozen=True, slots=True)
class DropInfoRow:
    label: str
    probability: int
    code: BoxRarityCode | None = None
    color_key: str | None = None
    reward_type: BoxRewardType | None = None
    amount: int | None = None


class CatalogStore:
    """Tenant-scoped catalog reads.

    Every list is returned in a deterministic order so that weighted draws
    are reproducible for a given random stream.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def list_rarities(self) -> list[BoxRarity]:
        stmt = select(BoxRarity).order_by(BoxRarity.sort_order.asc(), BoxRarity.id.asc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def ensure_rarities(self) -> dict[BoxRarityCode, BoxRarity]:
        """Insert any missing reference rarities and return all of them by code."""

        existing = {rarity.code: rarity for rarity in await self.list_rarities()}
        for code, name, color_key, sort_order in DEFAULT_RARITIES:
            if code in existing:
                continue
            rarity = BoxRarity(code=code, name=name, color_key=color_key, sort_order=sort_order)
            self._db.add(rarity)
            existing[code] = rarity
        await self._db.flush()
        return existing

    async def get_rarity_by_code(self, code: BoxRarityCode) -> BoxRarity | None:
        result = await self._db.execute(select(BoxRarity).where(BoxRarity.code == code))
        return result.scalar_one_or_none()

    async def get_rarity(self, rarity_id: UUID) -> BoxRarity | None:
        return await self._db.get(BoxRarity, rarity_id)

    async def get_rarity_weights(self, tenant_id: UUID, tier: int) -> list[RarityWeight]:
        """Return the active rarity table for ``tier``, rarest first."""

        stmt = (
            select(BoxTierRarityWeight, BoxRarity)
            .join(BoxRarity, BoxRarity.id == BoxTierRarityWeight.rarity_id)
            .where(
                BoxTierRarityWeight.tenant_id == tenant_id,
                BoxTierRarityWeight.credit_tier == tier,
                BoxTierRarityWeight.is_active.is_(True),
            )
            .order_by(BoxRarity.sort_order.asc(), BoxRarity.id.asc())
        )
        result = await self._db.execute(stmt)
        return [
            RarityWeight(
                rarity_id=rarity.id,
                code=rarity.code,
                name=rarity.name,
                color_key=rarity.color_key,
                sort_order=rarity.sort_order,
                real_weight=int(weight.real_probability or 0),
                display_weight=int(weight.display_probability or 0),
            )
            for weight, rarity in result.all()
        ]

    async def list_active_rewards(self, tenant_id: UUID, rarity_id: UUID) -> list[RewardWeight]:
        """Return active rewards of a rarity in their configured order."""

        stmt = (
            select(BoxReward)
            .where(
                BoxReward.tenant_id == tenant_id,
                BoxReward.rarity_id == rarity_id,
                BoxReward.is_active.is_(True),
            )
            .order_by(BoxReward.sort_order.asc(), BoxReward.created_at.asc(), BoxReward.id.asc())
        )
        result = await self._db.execute(stmt)
        return [_to_reward_weight(reward) for reward in result.scalars().all()]

    async def list_rewards(
        self,
        tenant_id: UUID,
        *,
        rarity_id: UUID | None = None,
        for_update: bool = False,
    ) -> list[BoxReward]:
        """Return every reward of the tenant, active or not."""

        stmt = select(BoxReward).where(BoxReward.tenant_id == tenant_id)
        if rarity_id is not None:
            stmt = stmt.where(BoxReward.rarity_id == rarity_id)
        stmt = stmt.order_by(
            BoxReward.rarity_id.asc(),
            BoxReward.sort_order.asc(),
            BoxReward.created_at.asc(),
            BoxReward.id.asc(),
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_rewards(self, tenant_id: UUID, reward_ids: Sequence[UUID]) -> dict[UUID, BoxReward]:
        if not reward_ids:
            return {}
        stmt = select(BoxReward).where(
            BoxReward.tenant_id == tenant_id,
            BoxReward.id.in_(list(reward_ids)),
        )
        result = await self._db.execute(stmt)
        return {reward.id: reward for reward in result.scalars().all()}

    async def list_tier_weights(
        self,
        tenant_id: UUID,
        *,
        tier: int | None = None,
        for_update: bool = False,
    ) -> list[BoxTierRarityWeight]:
        """Return tier rows (active or not) ordered by tier then rarity id."""

        stmt = select(BoxTierRarityWeight).where(BoxTierRarityWeight.tenant_id == tenant_id)
        if tier is not None:
            stmt = stmt.where(BoxTierRarityWeight.credit_tier == tier)
        stmt = stmt.order_by(BoxTierRarityWeight.credit_tier.asc(), BoxTierRarityWeight.rarity_id.asc())
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_configured_tiers(self, tenant_id: UUID) -> list[int]:
        """Tiers with at least one active rarity row."""

        stmt = (
            select(BoxTierRarityWeight.credit_tier)
            .where(
                BoxTierRarityWeight.tenant_id == tenant_id,
                BoxTierRarityWeight.is_active.is_(True),
            )
            .distinct()
            .order_by(BoxTierRarityWeight.credit_tier.asc())
        )
        result = await self._db.execute(stmt)
        return [int(value) for value in result.scalars().all()]

    async def tiers_reaching_rarity(self, tenant_id: UUID, rarity_id: UUID) -> list[int]:
        """Tiers that can actually roll ``rarity_id`` (active, real weight > 0)."""

        stmt = (
            select(BoxTierRarityWeight.credit_tier)
            .where(
                BoxTierRarityWeight.tenant_id == tenant_id,
                BoxTierRarityWeight.rarity_id == rarity_id,
                BoxTierRarityWeight.is_active.is_(True),
                BoxTierRarityWeight.real_probability > 0,
            )
            .order_by(BoxTierRarityWeight.credit_tier.asc())
        )
        result = await self._db.execute(stmt)
        return [int(value) for value in result.scalars().all()]

    async def tier_drop_table(self, tenant_id: UUID, tier: int) -> list[DropInfoRow]:
        """Display probabilities of a tier, rarest first."""

        weights = await self.get_rarity_weights(tenant_id, tier)
        return [
            DropInfoRow(
                label=weight.name,
                probability=weight.display_weight,
                code=weight.code,
                color_key=weight.color_key,
            )
            for weight in weights
        ]

    async def rarity_drop_table(self, tenant_id: UUID, rarity_id: UUID) -> list[DropInfoRow]:
        """Display probabilities of a rarity's rewards, most likely first."""

        rewards = await self.list_active_rewards(tenant_id, rarity_id)
        rows = [
            DropInfoRow(
                label=reward.label,
                probability=reward.display_weight,
                reward_type=reward.reward_type,
                amount=reward.amount,
            )
            for reward in rewards
        ]
        rows.sort(key=lambda row: row.probability, reverse=True)
        return rows


def _to_reward_weight(reward: BoxReward) -> RewardWeight:
    return RewardWeight(
        reward_id=reward.id,
        rarity_id=reward.rarity_id,
        label=reward.label,
        reward_type=reward.reward_type,
        amount=reward.amount,
        real_weight=int(reward.real_probability or 0),
        display_weight=int(reward.display_probability or 0),
    )


__all__ = ["CatalogStore", "DEFAULT_RARITIES", "DropInfoRow", "RarityWeight", "RewardWeight"]
