"""Box purchase, open, expiry and fulfillment hand-off."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Tuple
from uuid import UUID, uuid4

from loguru import logger
from opentelemetry import trace
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.core.settings import settings
from mysterybox_api.models.box import (
    BoxRarity,
    BoxRarityCode,
    BoxReward,
    BoxRewardType,
    BoxTransaction,
    BoxTransactionStatus,
    CashPayout,
)
from mysterybox_api.models.credit import CreditLedgerKind
from mysterybox_api.models.member import Member
from mysterybox_api.observability.boxes import get_box_store
from mysterybox_api.services.boxes.catalog import CatalogStore
from mysterybox_api.services.boxes.errors import (
    BoxAlreadyOpenedError,
    BoxExpiredError,
    BoxNotFoundError,
    BoxNotOwnedError,
    BoxNotProcessableError,
    CatalogMisconfiguredError,
    InvalidTierError,
)
from mysterybox_api.services.boxes.selector import WeightedCandidate, WeightedSelector
from mysterybox_api.services.boxes.validator import summarize
from mysterybox_api.services.credits.ledger import CreditLedger

tracer = trace.get_tracer(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class PurchaseResult:
    transaction_id: UUID
    credit_tier: int
    credit_spent: int
    credits_before: int
    credits_after: int
    rarity_id: UUID
    rarity_code: BoxRarityCode
    rarity_name: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class OpenResult:
    transaction_id: UUID
    rarity_id: UUID
    rarity_code: BoxRarityCode
    rarity_name: str
    reward_id: UUID
    reward_label: str
    reward_type: BoxRewardType
    reward_amount: int | None
    opened_at: datetime
    expires_at: datetime
    credits_after: int


@dataclass(frozen=True, slots=True)
class BoxHistoryRow:
    transaction_id: UUID
    member_id: UUID
    member_username: str | None
    credit_tier: int
    credit_spent: int
    status: BoxTransactionStatus
    rarity_id: UUID
    rarity_code: BoxRarityCode | None
    rarity_name: str | None
    reward_id: UUID | None
    reward_label: str | None
    reward_type: BoxRewardType | None
    reward_amount: int | None
    created_at: datetime
    expires_at: datetime
    opened_at: datetime | None
    processed: bool
    processed_at: datetime | None
    processed_by_member_id: UUID | None


class BoxLifecycleService:
    """Coordinates the box state machine: PURCHASED -> OPENED | EXPIRED.

    Each public mutation expects to run inside one atomic unit
    (``run_atomic``); methods flush but never commit.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        selector: WeightedSelector | None = None,
        clock: Clock | None = None,
        tier_prices: Mapping[int, int] | None = None,
        retention: timedelta | None = None,
        cash_auto_credit: bool | None = None,
    ) -> None:
        self._db = db_session
        self._clock = clock or utcnow
        self._selector = selector or WeightedSelector()
        self._catalog = CatalogStore(db_session)
        self._ledger = CreditLedger(db_session, clock=self._clock)
        self._tier_prices = dict(tier_prices if tier_prices is not None else settings.box_tier_prices)
        self._retention = retention or timedelta(days=settings.box_retention_days)
        self._cash_auto_credit = (
            settings.box_cash_reward_auto_credit if cash_auto_credit is None else cash_auto_credit
        )
        self._store = get_box_store()

    def tier_price(self, tier: int) -> int:
        price = self._tier_prices.get(tier)
        if price is None:
            raise InvalidTierError(tier)
        return price

    async def purchase(self, *, tenant_id: UUID, member_id: UUID, tier: int) -> PurchaseResult:
        """Debit the tier price, roll a rarity and issue a PURCHASED box."""

        with tracer.start_as_current_span("boxes.purchase") as span:
            span.set_attribute("box.tier", tier)
            price = self.tier_price(tier)

            weights = await self._catalog.get_rarity_weights(tenant_id, tier)
            if not weights:
                raise InvalidTierError(tier, reason="Box tier is not configured")
            sums = summarize((weight.real_weight, weight.display_weight) for weight in weights)
            if not sums.ok:
                raise CatalogMisconfiguredError(
                    "Box tier probabilities are misconfigured",
                    real_sum=sums.real_sum,
                    display_sum=sums.display_sum,
                    scope={"tier": tier},
                )

            transaction_id = uuid4()
            debit = await self._ledger.append(
                tenant_id=tenant_id,
                member_id=member_id,
                delta=-price,
                kind=CreditLedgerKind.BOX_PURCHASE,
                description=f"Box tier {tier} purchase",
                actor_id=member_id,
                metadata={"transaction_id": str(transaction_id), "credit_tier": tier},
            )

            rarity_id = self._selector.select(
                [WeightedCandidate(key=weight.rarity_id, weight=weight.real_weight) for weight in weights]
            )
            rarity = next(weight for weight in weights if weight.rarity_id == rarity_id)

            now = self._clock()
            box = BoxTransaction(
                id=transaction_id,
                tenant_id=tenant_id,
                member_id=member_id,
                credit_tier=tier,
                credit_spent=price,
                status=BoxTransactionStatus.PURCHASED,
                rarity_id=rarity_id,
                created_at=now,
                expires_at=now + self._retention,
            )
            self._db.add(box)
            await self._db.flush()

            span.set_attribute("box.rarity", rarity.code.value)
            self._store.record_purchase(tier, rarity.code.value)
            logger.info(
                "Box purchased",
                transaction_id=str(transaction_id),
                member_id=str(member_id),
                tier=tier,
                rarity=rarity.code.value,
                credits_after=debit.balance_after,
            )
            return PurchaseResult(
                transaction_id=transaction_id,
                credit_tier=tier,
                credit_spent=price,
                credits_before=debit.balance_before,
                credits_after=debit.balance_after,
                rarity_id=rarity_id,
                rarity_code=rarity.code,
                rarity_name=rarity.name,
                expires_at=box.expires_at,
            )

    async def open(self, *, tenant_id: UUID, member_id: UUID, transaction_id: UUID) -> OpenResult:
        """Roll a reward for a PURCHASED box owned by the member."""

        with tracer.start_as_current_span("boxes.open") as span:
            span.set_attribute("box.transaction_id", str(transaction_id))
            box = await self._lock_box(tenant_id, transaction_id)
            if box.member_id != member_id:
                raise BoxNotOwnedError(transaction_id)
            if box.status == BoxTransactionStatus.OPENED:
                raise BoxAlreadyOpenedError(transaction_id)
            if box.status == BoxTransactionStatus.EXPIRED:
                raise BoxExpiredError(transaction_id)

            now = self._clock()
            expires_at = as_utc(box.expires_at)
            if now > expires_at:
                box.status = BoxTransactionStatus.EXPIRED
                await self._db.flush()
                logger.info(
                    "Box expired on open attempt",
                    transaction_id=str(transaction_id),
                    member_id=str(member_id),
                )
                raise BoxExpiredError(transaction_id, commit_changes=True)

            rewards = await self._catalog.list_active_rewards(tenant_id, box.rarity_id)
            sums = summarize((reward.real_weight, reward.display_weight) for reward in rewards)
            if not sums.ok:
                raise CatalogMisconfiguredError(
                    "Reward probabilities for this rarity are misconfigured",
                    real_sum=sums.real_sum,
                    display_sum=sums.display_sum,
                    scope={"rarity_id": str(box.rarity_id)},
                )

            reward_id = self._selector.select(
                [WeightedCandidate(key=reward.reward_id, weight=reward.real_weight) for reward in rewards]
            )
            reward = next(item for item in rewards if item.reward_id == reward_id)

            box.status = BoxTransactionStatus.OPENED
            box.reward_id = reward_id
            box.opened_at = now
            await self._db.flush()

            payout = reward.payout
            if self._cash_auto_credit and isinstance(payout, CashPayout):
                credit = await self._ledger.append(
                    tenant_id=tenant_id,
                    member_id=member_id,
                    delta=payout.amount,
                    kind=CreditLedgerKind.BOX_REWARD,
                    description=f"Box reward: {reward.label}",
                    actor_id=member_id,
                    metadata={"transaction_id": str(transaction_id), "reward_id": str(reward_id)},
                )
                credits_after = credit.balance_after
            else:
                credits_after = await self._ledger.ledger_balance(member_id)

            rarity = await self._catalog.get_rarity(box.rarity_id)
            span.set_attribute("box.rarity", rarity.code.value)
            span.set_attribute("box.reward_type", reward.reward_type.value)
            self._store.record_open(rarity.code.value, reward.reward_type.value)
            logger.info(
                "Box opened",
                transaction_id=str(transaction_id),
                member_id=str(member_id),
                rarity=rarity.code.value,
                reward_id=str(reward_id),
                reward_type=reward.reward_type.value,
            )
            return OpenResult(
                transaction_id=transaction_id,
                rarity_id=rarity.id,
                rarity_code=rarity.code,
                rarity_name=rarity.name,
                reward_id=reward_id,
                reward_label=reward.label,
                reward_type=reward.reward_type,
                reward_amount=payout.amount if isinstance(payout, CashPayout) else None,
                opened_at=now,
                expires_at=expires_at,
                credits_after=credits_after,
            )

    async def expire_box(self, transaction_id: UUID, *, now: datetime | None = None) -> bool:
        """Flip one box to EXPIRED if it is still PURCHASED and past due."""

        reference = now or self._clock()
        stmt = (
            select(BoxTransaction)
            .where(BoxTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        box = result.scalar_one_or_none()
        if box is None or box.status != BoxTransactionStatus.PURCHASED:
            return False
        if as_utc(box.expires_at) > reference:
            return False

        box.status = BoxTransactionStatus.EXPIRED
        await self._db.flush()
        logger.info("Box expired", transaction_id=str(transaction_id), member_id=str(box.member_id))
        return True

    async def list_due_expirations(
        self,
        *,
        now: datetime | None = None,
        limit: int = 500,
        after: Tuple[datetime, UUID] | None = None,
    ) -> list[Tuple[UUID, datetime]]:
        """Due PURCHASED boxes ordered by ``(expires_at, id)``, strictly past ``after``."""

        reference = now or self._clock()
        stmt = select(BoxTransaction.id, BoxTransaction.expires_at).where(
            BoxTransaction.status == BoxTransactionStatus.PURCHASED,
            BoxTransaction.expires_at <= reference,
        )
        if after is not None:
            after_expires_at, after_id = after
            stmt = stmt.where(
                or_(
                    BoxTransaction.expires_at > after_expires_at,
                    and_(BoxTransaction.expires_at == after_expires_at, BoxTransaction.id > after_id),
                )
            )
        stmt = stmt.order_by(BoxTransaction.expires_at.asc(), BoxTransaction.id.asc()).limit(limit)
        result = await self._db.execute(stmt)
        return [(row.id, row.expires_at) for row in result.all()]

    async def mark_processed(
        self,
        *,
        tenant_id: UUID,
        transaction_id: UUID,
        actor_id: UUID,
    ) -> BoxTransaction:
        """One-way fulfillment flag for opened boxes; repeat calls are no-ops."""

        box = await self._lock_box(tenant_id, transaction_id)
        if box.processed:
            return box
        if box.status != BoxTransactionStatus.OPENED or box.reward_id is None:
            raise BoxNotProcessableError(transaction_id, box.status.value)

        box.processed = True
        box.processed_at = self._clock()
        box.processed_by_member_id = actor_id
        await self._db.flush()
        logger.info(
            "Box marked processed",
            transaction_id=str(transaction_id),
            processed_by=str(actor_id),
        )
        return box

    async def list_inventory(self, *, tenant_id: UUID, member_id: UUID) -> list[BoxTransaction]:
        """Unopened, unexpired boxes of a member, newest first."""

        stmt = (
            select(BoxTransaction)
            .where(
                BoxTransaction.tenant_id == tenant_id,
                BoxTransaction.member_id == member_id,
                BoxTransaction.status == BoxTransactionStatus.PURCHASED,
                BoxTransaction.expires_at > self._clock(),
            )
            .order_by(BoxTransaction.created_at.desc(), BoxTransaction.id.desc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_history(
        self,
        tenant_id: UUID,
        *,
        status: BoxTransactionStatus | None = None,
        tier: int | None = None,
        member_id: UUID | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[BoxHistoryRow], Tuple[datetime, UUID] | None]:
        """Operator view of a tenant's boxes joined with member, rarity and reward."""

        bounded_limit = max(1, min(limit, 200))
        stmt = (
            select(BoxTransaction, Member.username, BoxRarity, BoxReward)
            .outerjoin(Member, Member.id == BoxTransaction.member_id)
            .outerjoin(BoxRarity, BoxRarity.id == BoxTransaction.rarity_id)
            .outerjoin(BoxReward, BoxReward.id == BoxTransaction.reward_id)
            .where(BoxTransaction.tenant_id == tenant_id)
            .order_by(BoxTransaction.created_at.desc(), BoxTransaction.id.desc())
        )
        if status is not None:
            stmt = stmt.where(BoxTransaction.status == status)
        if tier is not None:
            stmt = stmt.where(BoxTransaction.credit_tier == tier)
        if member_id is not None:
            stmt = stmt.where(BoxTransaction.member_id == member_id)
        if created_from is not None:
            stmt = stmt.where(BoxTransaction.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(BoxTransaction.created_at <= created_to)
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    BoxTransaction.created_at < cursor_time,
                    and_(BoxTransaction.created_at == cursor_time, BoxTransaction.id < cursor_id),
                )
            )
        stmt = stmt.limit(bounded_limit + 1)

        result = await self._db.execute(stmt)
        rows = result.all()
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > bounded_limit:
            last_box = rows[bounded_limit - 1][0]
            next_cursor = (last_box.created_at, last_box.id)
            rows = rows[:bounded_limit]

        return [_history_row(box, username, rarity, reward) for box, username, rarity, reward in rows], next_cursor

    async def _lock_box(self, tenant_id: UUID, transaction_id: UUID) -> BoxTransaction:
        stmt = (
            select(BoxTransaction)
            .where(BoxTransaction.id == transaction_id, BoxTransaction.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        box = result.scalar_one_or_none()
        if box is None:
            raise BoxNotFoundError(transaction_id)
        return box


def _history_row(
    box: BoxTransaction,
    username: str | None,
    rarity: BoxRarity | None,
    reward: BoxReward | None,
) -> BoxHistoryRow:
    return BoxHistoryRow(
        transaction_id=box.id,
        member_id=box.member_id,
        member_username=username,
        credit_tier=box.credit_tier,
        credit_spent=box.credit_spent,
        status=box.status,
        rarity_id=box.rarity_id,
        rarity_code=rarity.code if rarity else None,
        rarity_name=rarity.name if rarity else None,
        reward_id=box.reward_id,
        reward_label=reward.label if reward else None,
        reward_type=reward.reward_type if reward else None,
        reward_amount=reward.amount if reward else None,
        created_at=as_utc(box.created_at),
        expires_at=as_utc(box.expires_at),
        opened_at=as_utc(box.opened_at),
        processed=bool(box.processed),
        processed_at=as_utc(box.processed_at),
        processed_by_member_id=box.processed_by_member_id,
    )


__all__ = [
    "BoxHistoryRow",
    "BoxLifecycleService",
    "OpenResult",
    "PurchaseResult",
    "as_utc",
    "utcnow",
]
