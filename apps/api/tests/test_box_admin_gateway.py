from uuid import uuid4

import pytest
from sqlalchemy import select

from mysterybox_api.models import BoxRarityCode, BoxReward, BoxRewardType, BoxTierRarityWeight
from mysterybox_api.services.atomic import run_atomic
from mysterybox_api.services.boxes.admin import (
    AdminConfigurationGateway,
    NewReward,
    RewardStateUpdate,
    TierWeightUpdate,
)
from mysterybox_api.services.boxes.errors import RewardNotFoundError, ValidationFailedError


async def _admin(world, operation):
    async with world.session_factory() as session:
        return await run_atomic(
            session,
            lambda db: operation(AdminConfigurationGateway(db)),
            label="boxes.admin",
            backoff_seconds=0,
        )


async def _reward(world, reward_id) -> BoxReward:
    async with world.session_factory() as session:
        return await session.get(BoxReward, reward_id)


@pytest.mark.asyncio
async def test_rejected_reward_write_leaves_table_untouched(world) -> None:
    first = await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=60)
    await world.add_reward(BoxRarityCode.COMMON, "Keyring", real=40, sort_order=1)

    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.set_reward_state(
                world.tenant_id, first, RewardStateUpdate(real_probability=50), actor_id=world.admin_id
            ),
        )

    (violation,) = excinfo.value.violations
    assert violation["rarity_id"] == str(world.rarity_ids[BoxRarityCode.COMMON])
    assert violation["required"] == 100
    assert violation["real_sum"] == 90
    assert violation["display_sum"] == 100
    assert violation["ok"] is False

    reward = await _reward(world, first)
    assert (reward.real_probability, reward.display_probability) == (60, 60)


@pytest.mark.asyncio
async def test_batch_update_is_validated_as_a_whole(world) -> None:
    first = await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=60)
    second = await world.add_reward(BoxRarityCode.COMMON, "Keyring", real=40, sort_order=1)

    results = await _admin(
        world,
        lambda gateway: gateway.apply_reward_states(
            world.tenant_id,
            {
                first: RewardStateUpdate(real_probability=40, display_probability=40),
                second: RewardStateUpdate(real_probability=60, display_probability=60),
            },
            actor_id=world.admin_id,
        ),
    )

    sums = results[world.rarity_ids[BoxRarityCode.COMMON]]
    assert (sums.real_sum, sums.display_sum, sums.ok) == (100, 100, True)
    assert (await _reward(world, first)).real_probability == 40
    assert (await _reward(world, second)).real_probability == 60


@pytest.mark.asyncio
async def test_display_weights_may_diverge_from_real_weights(world) -> None:
    first = await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=90, display=50)
    second = await world.add_reward(BoxRarityCode.COMMON, "Golden ticket", real=10, display=50, sort_order=1)

    results = await _admin(
        world,
        lambda gateway: gateway.apply_reward_states(
            world.tenant_id,
            {
                first: RewardStateUpdate(display_probability=30),
                second: RewardStateUpdate(display_probability=70),
            },
        ),
    )

    assert results[world.rarity_ids[BoxRarityCode.COMMON]].ok
    assert (await _reward(world, second)).real_probability == 10


@pytest.mark.asyncio
async def test_unknown_reward_is_reported(world) -> None:
    with pytest.raises(RewardNotFoundError):
        await _admin(
            world,
            lambda gateway: gateway.set_reward_state(world.tenant_id, uuid4(), RewardStateUpdate(is_active=False)),
        )


@pytest.mark.asyncio
async def test_out_of_range_probability_is_rejected_before_lookup(world) -> None:
    reward_id = await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=100)

    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.set_reward_state(
                world.tenant_id, reward_id, RewardStateUpdate(real_probability=101)
            ),
        )

    assert excinfo.value.violations == [
        {"reward_id": str(reward_id), "field": "real_probability", "value": 101}
    ]


@pytest.mark.asyncio
async def test_deactivating_last_reward_of_reachable_rarity_is_rejected(world) -> None:
    reward_id = await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=100)
    await world.set_tier(1, {BoxRarityCode.COMMON: (100, 100)})

    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.set_reward_state(world.tenant_id, reward_id, RewardStateUpdate(is_active=False)),
        )

    assert excinfo.value.violations[0]["active_count"] == 0
    assert (await _reward(world, reward_id)).is_active is True


@pytest.mark.asyncio
async def test_deactivating_rewards_of_unreachable_rarity_is_allowed(world) -> None:
    reward_id = await world.add_reward(BoxRarityCode.EPIC, "Console", real=100)

    results = await _admin(
        world,
        lambda gateway: gateway.set_reward_state(world.tenant_id, reward_id, RewardStateUpdate(is_active=False)),
    )

    assert results.active_count == 0
    assert results.ok


@pytest.mark.asyncio
async def test_create_reward_defaults_to_inactive(world) -> None:
    reward = await _admin(
        world,
        lambda gateway: gateway.create_reward(
            world.tenant_id,
            NewReward(
                rarity_id=world.rarity_ids[BoxRarityCode.RARE],
                label="  Hoodie ",
                reward_type=BoxRewardType.ITEM,
                real_probability=25,
                display_probability=25,
            ),
            actor_id=world.admin_id,
        ),
    )

    stored = await _reward(world, reward.id)
    assert stored.is_active is False
    assert stored.label == "Hoodie"
    assert stored.amount is None


@pytest.mark.asyncio
async def test_create_active_reward_must_keep_table_valid(world) -> None:
    await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=100)

    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.create_reward(
                world.tenant_id,
                NewReward(
                    rarity_id=world.rarity_ids[BoxRarityCode.COMMON],
                    label="Keyring",
                    reward_type=BoxRewardType.ITEM,
                    real_probability=10,
                    display_probability=10,
                    is_active=True,
                ),
            ),
        )

    assert excinfo.value.violations[0]["real_sum"] == 110
    async with world.session_factory() as session:
        labels = (await session.execute(select(BoxReward.label))).scalars().all()
    assert labels == ["Sticker"]


@pytest.mark.parametrize(
    ("reward_type", "amount"),
    [
        (BoxRewardType.CASH, None),
        (BoxRewardType.CASH, 0),
        (BoxRewardType.ITEM, 500),
    ],
)
@pytest.mark.asyncio
async def test_create_reward_checks_amount_against_type(world, reward_type, amount) -> None:
    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.create_reward(
                world.tenant_id,
                NewReward(
                    rarity_id=world.rarity_ids[BoxRarityCode.COMMON],
                    label="Prize",
                    reward_type=reward_type,
                    amount=amount,
                ),
            ),
        )

    assert excinfo.value.violations[0]["field"] == "amount"


@pytest.mark.asyncio
async def test_tier_weights_accepts_valid_table(world) -> None:
    await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=100)
    await world.add_reward(BoxRarityCode.RARE, "Hoodie", real=100)
    common = world.rarity_ids[BoxRarityCode.COMMON]
    rare = world.rarity_ids[BoxRarityCode.RARE]
    legendary = world.rarity_ids[BoxRarityCode.LEGENDARY]

    sums = await _admin(
        world,
        lambda gateway: gateway.apply_tier_weights(
            world.tenant_id,
            1,
            {
                common: TierWeightUpdate(real_probability=80, display_probability=70),
                rare: TierWeightUpdate(real_probability=20, display_probability=20),
                legendary: TierWeightUpdate(real_probability=0, display_probability=10),
            },
            actor_id=world.admin_id,
        ),
    )

    assert (sums.real_sum, sums.display_sum, sums.ok) == (100, 100, True)
    async with world.session_factory() as session:
        rows = (
            await session.execute(select(BoxTierRarityWeight).where(BoxTierRarityWeight.credit_tier == 1))
        ).scalars().all()
    assert len(rows) == 3


@pytest.mark.asyncio
async def test_tier_weights_reject_wrong_totals(world) -> None:
    await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=100)
    common = world.rarity_ids[BoxRarityCode.COMMON]

    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.apply_tier_weights(
                world.tenant_id,
                1,
                {common: TierWeightUpdate(real_probability=90, display_probability=100)},
            ),
        )

    (violation,) = excinfo.value.violations
    assert violation["tier"] == 1
    assert violation["real_sum"] == 90
    async with world.session_factory() as session:
        assert (await session.execute(select(BoxTierRarityWeight))).scalars().all() == []


@pytest.mark.asyncio
async def test_tier_weights_reject_reachable_rarity_without_rewards(world) -> None:
    await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=100)
    common = world.rarity_ids[BoxRarityCode.COMMON]
    epic = world.rarity_ids[BoxRarityCode.EPIC]

    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.apply_tier_weights(
                world.tenant_id,
                2,
                {
                    common: TierWeightUpdate(real_probability=50, display_probability=50),
                    epic: TierWeightUpdate(real_probability=50, display_probability=50),
                },
            ),
        )

    assert [violation["rarity_id"] for violation in excinfo.value.violations] == [str(epic)]


@pytest.mark.asyncio
async def test_disabling_a_tier_is_allowed(world) -> None:
    await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=100)
    await world.set_tier(1, {BoxRarityCode.COMMON: (100, 100)})
    common = world.rarity_ids[BoxRarityCode.COMMON]

    sums = await _admin(
        world,
        lambda gateway: gateway.apply_tier_weights(world.tenant_id, 1, {common: TierWeightUpdate(is_active=False)}),
    )

    assert sums.active_count == 0
    assert sums.ok


@pytest.mark.asyncio
async def test_tier_weights_reject_bad_tier_and_unknown_rarity(world) -> None:
    with pytest.raises(ValidationFailedError):
        await _admin(world, lambda gateway: gateway.apply_tier_weights(world.tenant_id, 0, {}))

    with pytest.raises(ValidationFailedError) as excinfo:
        await _admin(
            world,
            lambda gateway: gateway.apply_tier_weights(
                world.tenant_id, 1, {uuid4(): TierWeightUpdate(real_probability=100, display_probability=100)}
            ),
        )

    assert excinfo.value.violations[0]["message"] == "Unknown rarity"
