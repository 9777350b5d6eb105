import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from mysterybox_api.app import create_app  # noqa: E402
from mysterybox_api.db.base import Base  # noqa: E402
from mysterybox_api.db.session import get_session  # noqa: E402
from mysterybox_api.models import (  # noqa: E402
    BoxRarityCode,
    BoxReward,
    BoxRewardType,
    BoxTierRarityWeight,
    BoxTransaction,
    BoxTransactionStatus,
    Member,
    MemberRole,
    Tenant,
)
from mysterybox_api.observability.boxes import get_box_store  # noqa: E402
from mysterybox_api.services.boxes.catalog import CatalogStore  # noqa: E402
from mysterybox_api.services.boxes.selector import WeightedSelector  # noqa: E402
from mysterybox_api.services.credits import CreditLedger  # noqa: E402

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class SequenceRandom:
    """Random source replaying scripted draws."""

    def __init__(self, values: Iterable[int]) -> None:
        self._values = list(values)
        self.calls: list[int] = []

    def randrange(self, stop: int) -> int:
        if not self._values:
            raise AssertionError("SequenceRandom exhausted")
        value = self._values.pop(0)
        assert 0 <= value < stop, f"scripted draw {value} outside [0, {stop})"
        self.calls.append(stop)
        return value


def scripted_selector(*values: int) -> WeightedSelector:
    return WeightedSelector(SequenceRandom(values))


@dataclass
class BoxWorld:
    """A tenant with one member of each role and the reference rarities."""

    session_factory: async_sessionmaker
    tenant_id: UUID | None = None
    member_id: UUID | None = None
    admin_id: UUID | None = None
    support_id: UUID | None = None
    rarity_ids: dict[BoxRarityCode, UUID] = field(default_factory=dict)

    async def setup(self) -> "BoxWorld":
        async with self.session_factory() as session:
            rarities = await CatalogStore(session).ensure_rarities()
            tenant = Tenant(slug="acme", name="Acme")
            session.add(tenant)
            await session.flush()
            self.tenant_id = tenant.id
            self.rarity_ids = {code: rarity.id for code, rarity in rarities.items()}
            await session.commit()

        self.member_id = await self.create_member("alice")
        self.admin_id = await self.create_member("root", role=MemberRole.ADMIN)
        self.support_id = await self.create_member("helpdesk", role=MemberRole.CS)
        return self

    async def create_member(self, username: str, *, role: MemberRole = MemberRole.MEMBER) -> UUID:
        async with self.session_factory() as session:
            member = Member(tenant_id=self.tenant_id, username=username, role=role)
            session.add(member)
            await session.commit()
            return member.id

    async def top_up(self, member_id: UUID, amount: int) -> int:
        async with self.session_factory() as session:
            result = await CreditLedger(session).top_up(
                tenant_id=self.tenant_id,
                member_id=member_id,
                amount=amount,
                description="test credits",
            )
            await session.commit()
            return result.balance_after

    async def set_tier(self, tier: int, table: dict[BoxRarityCode, tuple[int, int]]) -> None:
        async with self.session_factory() as session:
            for code, (real, display) in table.items():
                session.add(
                    BoxTierRarityWeight(
                        tenant_id=self.tenant_id,
                        credit_tier=tier,
                        rarity_id=self.rarity_ids[code],
                        real_probability=real,
                        display_probability=display,
                        is_active=True,
                    )
                )
            await session.commit()

    async def add_reward(
        self,
        code: BoxRarityCode,
        label: str,
        *,
        real: int,
        display: int | None = None,
        reward_type: BoxRewardType = BoxRewardType.ITEM,
        amount: int | None = None,
        active: bool = True,
        sort_order: int = 0,
    ) -> UUID:
        async with self.session_factory() as session:
            reward = BoxReward(
                tenant_id=self.tenant_id,
                rarity_id=self.rarity_ids[code],
                label=label,
                reward_type=reward_type,
                amount=amount,
                real_probability=real,
                display_probability=real if display is None else display,
                is_active=active,
                sort_order=sort_order,
            )
            session.add(reward)
            await session.commit()
            return reward.id

    async def add_box(
        self,
        *,
        member_id: UUID | None = None,
        code: BoxRarityCode = BoxRarityCode.COMMON,
        tier: int = 1,
        expires_at: datetime,
        status: BoxTransactionStatus = BoxTransactionStatus.PURCHASED,
    ) -> UUID:
        async with self.session_factory() as session:
            box = BoxTransaction(
                tenant_id=self.tenant_id,
                member_id=member_id or self.member_id,
                credit_tier=tier,
                credit_spent=tier,
                status=status,
                rarity_id=self.rarity_ids[code],
                created_at=expires_at - timedelta(days=7),
                expires_at=expires_at,
            )
            session.add(box)
            await session.commit()
            return box.id

    async def get_box(self, transaction_id: UUID) -> BoxTransaction:
        async with self.session_factory() as session:
            box = await session.get(BoxTransaction, transaction_id)
            assert box is not None
            return box

    async def balance(self, member_id: UUID | None = None) -> int:
        async with self.session_factory() as session:
            member = await session.get(Member, member_id or self.member_id)
            return member.credit_balance

    async def ledger_balance(self, member_id: UUID | None = None) -> int:
        async with self.session_factory() as session:
            return await CreditLedger(session).ledger_balance(member_id or self.member_id)


@pytest.fixture(autouse=True)
def reset_box_store():
    get_box_store().reset()
    yield
    get_box_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on separate connections to one database file."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'boxes.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def world(session_factory) -> BoxWorld:
    return await BoxWorld(session_factory).setup()


@pytest_asyncio.fixture
async def shared_world(file_session_factory) -> BoxWorld:
    return await BoxWorld(file_session_factory).setup()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def sequence_random():
    return SequenceRandom


@pytest.fixture
def selector_factory():
    return scripted_selector


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW
