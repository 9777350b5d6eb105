import asyncio
import random
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from mysterybox_api.models import (
    BoxRarityCode,
    BoxTransaction,
    BoxTransactionStatus,
    CreditLedgerEntry,
    CreditLedgerKind,
)
from mysterybox_api.services.atomic import run_atomic
from mysterybox_api.services.boxes.errors import BoxEngineError
from mysterybox_api.services.boxes.lifecycle import BoxLifecycleService
from mysterybox_api.services.boxes.selector import WeightedSelector

CONTENDERS = 5


async def _outcome(coro) -> str:
    try:
        await coro
    except BoxEngineError as exc:
        return exc.code
    return "ok"


async def _purchase(world, selector, *, now, tier):
    async with world.session_factory() as session:
        return await run_atomic(
            session,
            lambda db: BoxLifecycleService(db, selector=selector, clock=lambda: now).purchase(
                tenant_id=world.tenant_id, member_id=world.member_id, tier=tier
            ),
            label="boxes.purchase",
            attempts=10,
            backoff_seconds=0.01,
        )


async def _open(world, transaction_id, selector, *, now):
    async with world.session_factory() as session:
        return await run_atomic(
            session,
            lambda db: BoxLifecycleService(db, selector=selector, clock=lambda: now).open(
                tenant_id=world.tenant_id, member_id=world.member_id, transaction_id=transaction_id
            ),
            label="boxes.open",
            attempts=10,
            backoff_seconds=0.01,
        )


async def _count(world, column, *criteria) -> int:
    async with world.session_factory() as session:
        stmt = select(func.count(column)).where(*criteria)
        return (await session.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_concurrent_opens_roll_exactly_once(shared_world, fixed_now) -> None:
    world = shared_world
    await world.add_reward(BoxRarityCode.COMMON, "Sticker", real=60)
    await world.add_reward(BoxRarityCode.COMMON, "Badge", real=40)
    transaction_id = await world.add_box(expires_at=fixed_now + timedelta(days=3))
    selector = WeightedSelector(random.Random(11))

    outcomes = await asyncio.gather(
        *(_outcome(_open(world, transaction_id, selector, now=fixed_now)) for _ in range(CONTENDERS))
    )

    assert sorted(outcomes) == ["box_already_opened"] * (CONTENDERS - 1) + ["ok"]
    box = await world.get_box(transaction_id)
    assert box.status == BoxTransactionStatus.OPENED
    assert box.reward_id is not None
    assert box.opened_at is not None


@pytest.mark.asyncio
async def test_concurrent_purchases_never_overspend(shared_world, fixed_now) -> None:
    world = shared_world
    await world.top_up(world.member_id, 3)
    await world.set_tier(2, {BoxRarityCode.COMMON: (100, 100)})
    selector = WeightedSelector(random.Random(5))

    outcomes = await asyncio.gather(
        *(_outcome(_purchase(world, selector, now=fixed_now, tier=2)) for _ in range(CONTENDERS))
    )

    assert sorted(outcomes) == ["insufficient_credit"] * (CONTENDERS - 1) + ["ok"]
    assert await world.balance() == 1
    assert await world.ledger_balance() == 1
    assert await _count(world, BoxTransaction.id) == 1
    assert (
        await _count(
            world,
            CreditLedgerEntry.id,
            CreditLedgerEntry.kind == CreditLedgerKind.BOX_PURCHASE,
        )
        == 1
    )


@pytest.mark.asyncio
async def test_retried_purchase_rolls_again(world, sequence_random, fixed_now) -> None:
    await world.top_up(world.member_id, 5)
    await world.set_tier(3, {BoxRarityCode.COMMON: (70, 70), BoxRarityCode.RARE: (30, 30)})
    # First attempt lands on RARE, the retry on COMMON.
    random_source = sequence_random([10, 50])
    selector = WeightedSelector(random_source)
    attempts: list[int] = []

    async def operation(db):
        attempts.append(len(attempts) + 1)
        result = await BoxLifecycleService(db, selector=selector, clock=lambda: fixed_now).purchase(
            tenant_id=world.tenant_id, member_id=world.member_id, tier=3
        )
        if len(attempts) == 1:
            raise StaleDataError("member row version changed")
        return result

    async with world.session_factory() as session:
        result = await run_atomic(session, operation, label="boxes.purchase", attempts=3, backoff_seconds=0)

    assert attempts == [1, 2]
    assert random_source.calls == [100, 100]
    assert result.rarity_code == BoxRarityCode.COMMON
    assert (result.credits_before, result.credits_after) == (5, 2)
    assert await world.balance() == 2
    assert await world.ledger_balance() == 2
    assert await _count(world, BoxTransaction.id) == 1
    box = await world.get_box(result.transaction_id)
    assert box.rarity_id == world.rarity_ids[BoxRarityCode.COMMON]
