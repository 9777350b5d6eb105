"""Validated writes to reward and tier probability tables."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.models.box import BoxReward, BoxRewardType, BoxTierRarityWeight
from mysterybox_api.services.boxes.catalog import CatalogStore
from mysterybox_api.services.boxes.errors import RewardNotFoundError, ValidationFailedError
from mysterybox_api.services.boxes.validator import REQUIRED_TOTAL, ProbabilitySums, ProbabilityValidator


@dataclass(frozen=True, slots=True)
class RewardStateUpdate:
    """Partial update of a reward; ``None`` leaves a field untouched."""

    is_active: bool | None = None
    real_probability: int | None = None
    display_probability: int | None = None


@dataclass(frozen=True, slots=True)
class TierWeightUpdate:
    is_active: bool | None = None
    real_probability: int | None = None
    display_probability: int | None = None


@dataclass(frozen=True, slots=True)
class NewReward:
    rarity_id: UUID
    label: str
    reward_type: BoxRewardType
    amount: int | None = None
    real_probability: int = 0
    display_probability: int = 0
    is_active: bool = False
    sort_order: int = 0


class AdminConfigurationGateway:
    """Apply operator configuration writes, rejecting any that break the sums.

    Writes are flushed, re-validated against the database view and rejected
    with :class:`ValidationFailedError` carrying the offending sums. The
    surrounding atomic unit then rolls back, so rejected writes leave prior
    state untouched.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._catalog = CatalogStore(db_session)
        self._validator = ProbabilityValidator(self._catalog)

    async def set_reward_state(
        self,
        tenant_id: UUID,
        reward_id: UUID,
        update: RewardStateUpdate,
        *,
        actor_id: UUID | None = None,
    ) -> ProbabilitySums:
        results = await self.apply_reward_states(tenant_id, {reward_id: update}, actor_id=actor_id)
        return next(iter(results.values()))

    async def apply_reward_states(
        self,
        tenant_id: UUID,
        updates: Mapping[UUID, RewardStateUpdate],
        *,
        actor_id: UUID | None = None,
    ) -> dict[UUID, ProbabilitySums]:
        """Apply reward updates and validate every affected rarity once."""

        if not updates:
            raise ValidationFailedError("No reward updates supplied", violations=[])

        violations: list[dict[str, Any]] = []
        for reward_id, update in updates.items():
            violations.extend(_probability_violations(update, scope={"reward_id": str(reward_id)}))
        if violations:
            raise ValidationFailedError("Reward probabilities must be integers between 0 and 100", violations=violations)

        targets = await self._catalog.get_rewards(tenant_id, list(updates))
        for reward_id in updates:
            if reward_id not in targets:
                raise RewardNotFoundError(reward_id)

        rarity_ids = sorted({reward.rarity_id for reward in targets.values()}, key=str)
        locked: dict[UUID, BoxReward] = {}
        for rarity_id in rarity_ids:
            for reward in await self._catalog.list_rewards(tenant_id, rarity_id=rarity_id, for_update=True):
                locked[reward.id] = reward

        for reward_id, update in updates.items():
            _apply(locked[reward_id], update)
        await self._db.flush()

        results = await self._validate_rarities(tenant_id, rarity_ids)
        logger.info(
            "Applied reward configuration",
            tenant_id=str(tenant_id),
            reward_count=len(updates),
            rarity_ids=[str(rarity_id) for rarity_id in rarity_ids],
            actor_id=str(actor_id) if actor_id else None,
        )
        return results

    async def create_reward(
        self,
        tenant_id: UUID,
        new_reward: NewReward,
        *,
        actor_id: UUID | None = None,
    ) -> BoxReward:
        """Create a reward; inactive rewards never affect the sums."""

        violations = _probability_violations(new_reward, scope={"label": new_reward.label})
        violations.extend(_amount_violations(new_reward.reward_type, new_reward.amount))
        if not new_reward.label or not new_reward.label.strip():
            violations.append({"field": "label", "message": "Reward label is required"})
        rarity = await self._catalog.get_rarity(new_reward.rarity_id)
        if rarity is None:
            violations.append({"field": "rarity_id", "value": str(new_reward.rarity_id), "message": "Unknown rarity"})
        if violations:
            raise ValidationFailedError("Reward definition is invalid", violations=violations)

        if new_reward.is_active:
            await self._catalog.list_rewards(tenant_id, rarity_id=new_reward.rarity_id, for_update=True)

        reward = BoxReward(
            tenant_id=tenant_id,
            rarity_id=new_reward.rarity_id,
            label=new_reward.label.strip(),
            reward_type=new_reward.reward_type,
            amount=new_reward.amount if new_reward.reward_type == BoxRewardType.CASH else None,
            sort_order=new_reward.sort_order,
            is_active=new_reward.is_active,
            real_probability=new_reward.real_probability,
            display_probability=new_reward.display_probability,
        )
        self._db.add(reward)
        await self._db.flush()

        if new_reward.is_active:
            await self._validate_rarities(tenant_id, [new_reward.rarity_id])

        logger.info(
            "Created box reward",
            tenant_id=str(tenant_id),
            reward_id=str(reward.id),
            rarity=rarity.code.value,
            reward_type=reward.reward_type.value,
            is_active=reward.is_active,
            actor_id=str(actor_id) if actor_id else None,
        )
        return reward

    async def apply_tier_weights(
        self,
        tenant_id: UUID,
        tier: int,
        updates: Mapping[UUID, TierWeightUpdate],
        *,
        actor_id: UUID | None = None,
    ) -> ProbabilitySums:
        """Upsert a tier's rarity rows.

        A tier with any active row must sum to 100 on both columns, and every
        rarity it can roll must have a valid reward table.
        """

        if not isinstance(tier, int) or isinstance(tier, bool) or tier <= 0:
            raise ValidationFailedError(
                "Tier must be a positive integer",
                violations=[{"field": "tier", "value": tier}],
            )
        violations: list[dict[str, Any]] = []
        for rarity_id, update in updates.items():
            violations.extend(_probability_violations(update, scope={"rarity_id": str(rarity_id)}))
            if await self._catalog.get_rarity(rarity_id) is None:
                violations.append({"rarity_id": str(rarity_id), "message": "Unknown rarity"})
        if violations:
            raise ValidationFailedError("Tier weights are invalid", violations=violations)

        existing = {
            row.rarity_id: row
            for row in await self._catalog.list_tier_weights(tenant_id, tier=tier, for_update=True)
        }
        for rarity_id, update in updates.items():
            row = existing.get(rarity_id)
            if row is None:
                row = BoxTierRarityWeight(
                    tenant_id=tenant_id,
                    credit_tier=tier,
                    rarity_id=rarity_id,
                    real_probability=0,
                    display_probability=0,
                    is_active=True,
                )
                self._db.add(row)
                existing[rarity_id] = row
            _apply(row, update)
        await self._db.flush()

        sums = await self._validator.validate_tier(tenant_id, tier)
        if not sums.ok:
            raise ValidationFailedError(
                f"Tier {tier} probabilities must each total {REQUIRED_TOTAL}",
                violations=[{"tier": tier, "required": REQUIRED_TOTAL, **sums.as_dict()}],
            )

        reachable = [
            weight.rarity_id
            for weight in await self._catalog.get_rarity_weights(tenant_id, tier)
            if weight.real_weight > 0
        ]
        await self._validate_rarities(tenant_id, reachable)

        logger.info(
            "Applied tier configuration",
            tenant_id=str(tenant_id),
            tier=tier,
            real_sum=sums.real_sum,
            display_sum=sums.display_sum,
            actor_id=str(actor_id) if actor_id else None,
        )
        return sums

    async def validate_rarity(self, tenant_id: UUID, rarity_id: UUID) -> ProbabilitySums:
        return await self._validator.validate(tenant_id, rarity_id)

    async def validate_tier(self, tenant_id: UUID, tier: int) -> ProbabilitySums:
        return await self._validator.validate_tier(tenant_id, tier)

    async def _validate_rarities(self, tenant_id: UUID, rarity_ids: list[UUID]) -> dict[UUID, ProbabilitySums]:
        results: dict[UUID, ProbabilitySums] = {}
        violations: list[dict[str, Any]] = []
        for rarity_id in rarity_ids:
            sums = await self._validator.validate(tenant_id, rarity_id)
            results[rarity_id] = sums
            if not sums.ok:
                violations.append({"rarity_id": str(rarity_id), "required": REQUIRED_TOTAL, **sums.as_dict()})
        if violations:
            logger.warning(
                "Rejected reward configuration",
                tenant_id=str(tenant_id),
                violations=violations,
            )
            raise ValidationFailedError(
                f"Active reward probabilities must each total {REQUIRED_TOTAL}",
                violations=violations,
            )
        return results


def _probability_violations(update: Any, *, scope: dict[str, Any]) -> list[dict[str, Any]]:
    violations: list[dict[str, Any]] = []
    for field in ("real_probability", "display_probability"):
        value = getattr(update, field)
        if value is None:
            continue
        if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 100:
            violations.append({**scope, "field": field, "value": value})
    is_active = getattr(update, "is_active", None)
    if is_active is not None and not isinstance(is_active, bool):
        violations.append({**scope, "field": "is_active", "value": is_active})
    return violations


def _amount_violations(reward_type: BoxRewardType, amount: int | None) -> list[dict[str, Any]]:
    if reward_type == BoxRewardType.CASH:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            return [{"field": "amount", "value": amount, "message": "CASH rewards need a positive amount"}]
        return []
    if amount is not None:
        return [{"field": "amount", "value": amount, "message": "ITEM rewards carry no amount"}]
    return []


def _apply(row: BoxReward | BoxTierRarityWeight, update: RewardStateUpdate | TierWeightUpdate) -> None:
    if update.is_active is not None:
        row.is_active = update.is_active
    if update.real_probability is not None:
        row.real_probability = update.real_probability
    if update.display_probability is not None:
        row.display_probability = update.display_probability


__all__ = [
    "AdminConfigurationGateway",
    "NewReward",
    "RewardStateUpdate",
    "TierWeightUpdate",
]
