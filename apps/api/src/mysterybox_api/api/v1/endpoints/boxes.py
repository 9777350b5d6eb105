"""Member and operator endpoints for mystery boxes."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.api.dependencies.security import require_internal_api_key
from mysterybox_api.api.dependencies.session import (
    require_admin_session,
    require_member_session,
    require_operator_session,
)
from mysterybox_api.api.errors import to_http_exception
from mysterybox_api.core.settings import settings
from mysterybox_api.db.session import get_session
from mysterybox_api.models.box import BoxRarityCode, BoxReward, BoxRewardType, BoxTransactionStatus
from mysterybox_api.models.member import Member
from mysterybox_api.services.atomic import run_atomic
from mysterybox_api.services.boxes.admin import (
    AdminConfigurationGateway,
    NewReward,
    RewardStateUpdate,
    TierWeightUpdate,
)
from mysterybox_api.services.boxes.catalog import CatalogStore, DropInfoRow
from mysterybox_api.services.boxes.errors import BoxEngineError
from mysterybox_api.services.boxes.lifecycle import BoxHistoryRow, BoxLifecycleService, as_utc
from mysterybox_api.services.boxes.selector import WeightedSelector
from mysterybox_api.services.boxes.validator import ProbabilitySums
from mysterybox_api.services.credits import decode_time_uuid_cursor, encode_time_uuid_cursor
from mysterybox_api.workers.box_expiry import BoxExpiryWorker


router = APIRouter(prefix="/boxes", tags=["boxes"])

_SELECTOR = WeightedSelector()


def get_box_selector() -> WeightedSelector:
    """Selector used for purchase and open draws; overridable in tests."""

    return _SELECTOR


class PurchaseRequest(BaseModel):
    tier: int = Field(..., description="Credit tier of the box to purchase")


class PurchaseResponse(BaseModel):
    transaction_id: UUID
    credit_tier: int
    credit_spent: int
    credits_before: int
    credits_after: int
    rarity_id: UUID
    rarity_code: BoxRarityCode
    rarity_name: str
    expires_at: datetime


class OpenResponse(BaseModel):
    transaction_id: UUID
    rarity_id: UUID
    rarity_code: BoxRarityCode
    rarity_name: str
    reward_id: UUID
    reward_label: str
    reward_type: BoxRewardType
    reward_amount: Optional[int] = None
    opened_at: datetime
    expires_at: datetime
    credits_after: int


class InventoryBoxResponse(BaseModel):
    transaction_id: UUID
    credit_tier: int
    credit_spent: int
    rarity_id: UUID
    rarity_code: Optional[BoxRarityCode]
    rarity_name: Optional[str]
    color_key: Optional[str]
    created_at: datetime
    expires_at: datetime


class InventoryResponse(BaseModel):
    boxes: List[InventoryBoxResponse]


class DropInfoResponse(BaseModel):
    label: str
    probability: int
    code: Optional[BoxRarityCode] = None
    color_key: Optional[str] = None
    reward_type: Optional[BoxRewardType] = None
    amount: Optional[int] = None


class DropTableResponse(BaseModel):
    drops: List[DropInfoResponse]


class ProbabilitySumsResponse(BaseModel):
    real_sum: int
    display_sum: int
    active_count: int
    ok: bool


class RewardResponse(BaseModel):
    id: UUID
    rarity_id: UUID
    label: str
    reward_type: BoxRewardType
    amount: Optional[int]
    sort_order: int
    is_active: bool
    real_probability: int
    display_probability: int


class RarityCatalogResponse(BaseModel):
    id: UUID
    code: BoxRarityCode
    name: str
    color_key: str
    sort_order: int
    rewards: List[RewardResponse]
    sums: ProbabilitySumsResponse


class TierWeightResponse(BaseModel):
    rarity_id: UUID
    rarity_code: Optional[BoxRarityCode]
    is_active: bool
    real_probability: int
    display_probability: int


class TierResponse(BaseModel):
    tier: int
    price: Optional[int]
    weights: List[TierWeightResponse]
    sums: ProbabilitySumsResponse


class CatalogResponse(BaseModel):
    rarities: List[RarityCatalogResponse]
    tiers: List[TierResponse]


class RewardStatePatch(BaseModel):
    reward_id: UUID
    is_active: Optional[bool] = None
    real_probability: Optional[int] = None
    display_probability: Optional[int] = None


class RewardStateBatchRequest(BaseModel):
    rewards: List[RewardStatePatch] = Field(..., min_length=1)


class RarityValidationResponse(BaseModel):
    rarity_id: UUID
    sums: ProbabilitySumsResponse


class RewardStateBatchResponse(BaseModel):
    rarities: List[RarityValidationResponse]


class RewardCreateRequest(BaseModel):
    rarity_id: UUID
    label: str
    reward_type: BoxRewardType
    amount: Optional[int] = None
    real_probability: int = 0
    display_probability: int = 0
    is_active: bool = False
    sort_order: int = 0


class TierWeightPatch(BaseModel):
    rarity_id: UUID
    is_active: Optional[bool] = None
    real_probability: Optional[int] = None
    display_probability: Optional[int] = None


class TierWeightsRequest(BaseModel):
    weights: List[TierWeightPatch] = Field(..., min_length=1)


class BoxHistoryResponse(BaseModel):
    transaction_id: UUID
    member_id: UUID
    member_username: Optional[str]
    credit_tier: int
    credit_spent: int
    status: BoxTransactionStatus
    rarity_id: UUID
    rarity_code: Optional[BoxRarityCode]
    rarity_name: Optional[str]
    reward_id: Optional[UUID]
    reward_label: Optional[str]
    reward_type: Optional[BoxRewardType]
    reward_amount: Optional[int]
    created_at: datetime
    expires_at: datetime
    opened_at: Optional[datetime]
    processed: bool
    processed_at: Optional[datetime]
    processed_by_member_id: Optional[UUID]


class BoxHistoryWindowResponse(BaseModel):
    transactions: List[BoxHistoryResponse]
    next_cursor: Optional[str]


class ProcessedResponse(BaseModel):
    transaction_id: UUID
    processed: bool
    processed_at: Optional[datetime]
    processed_by_member_id: Optional[UUID]


class SweepResponse(BaseModel):
    status: Literal["completed"]
    scanned: int
    expired: int
    failed: int


@router.post("/purchase", response_model=PurchaseResponse, summary="Purchase a box of a credit tier")
async def purchase_box(
    payload: PurchaseRequest,
    member: Member = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
    selector: WeightedSelector = Depends(get_box_selector),
) -> PurchaseResponse:
    tenant_id, member_id = member.tenant_id, member.id
    try:
        result = await run_atomic(
            session,
            lambda db: BoxLifecycleService(db, selector=selector).purchase(
                tenant_id=tenant_id, member_id=member_id, tier=payload.tier
            ),
            label="boxes.purchase",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc

    return PurchaseResponse(
        transaction_id=result.transaction_id,
        credit_tier=result.credit_tier,
        credit_spent=result.credit_spent,
        credits_before=result.credits_before,
        credits_after=result.credits_after,
        rarity_id=result.rarity_id,
        rarity_code=result.rarity_code,
        rarity_name=result.rarity_name,
        expires_at=as_utc(result.expires_at),
    )


@router.post("/{transaction_id}/open", response_model=OpenResponse, summary="Open a purchased box")
async def open_box(
    transaction_id: UUID,
    member: Member = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
    selector: WeightedSelector = Depends(get_box_selector),
) -> OpenResponse:
    tenant_id, member_id = member.tenant_id, member.id
    try:
        result = await run_atomic(
            session,
            lambda db: BoxLifecycleService(db, selector=selector).open(
                tenant_id=tenant_id, member_id=member_id, transaction_id=transaction_id
            ),
            label="boxes.open",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc

    return OpenResponse(
        transaction_id=result.transaction_id,
        rarity_id=result.rarity_id,
        rarity_code=result.rarity_code,
        rarity_name=result.rarity_name,
        reward_id=result.reward_id,
        reward_label=result.reward_label,
        reward_type=result.reward_type,
        reward_amount=result.reward_amount,
        opened_at=as_utc(result.opened_at),
        expires_at=as_utc(result.expires_at),
        credits_after=result.credits_after,
    )


@router.get("/inventory", response_model=InventoryResponse, summary="Unopened boxes of the member")
async def list_inventory(
    member: Member = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> InventoryResponse:
    boxes = await BoxLifecycleService(session).list_inventory(tenant_id=member.tenant_id, member_id=member.id)
    rarities = {rarity.id: rarity for rarity in await CatalogStore(session).list_rarities()}
    items: list[InventoryBoxResponse] = []
    for box in boxes:
        rarity = rarities.get(box.rarity_id)
        items.append(
            InventoryBoxResponse(
                transaction_id=box.id,
                credit_tier=box.credit_tier,
                credit_spent=box.credit_spent,
                rarity_id=box.rarity_id,
                rarity_code=rarity.code if rarity else None,
                rarity_name=rarity.name if rarity else None,
                color_key=rarity.color_key if rarity else None,
                created_at=as_utc(box.created_at),
                expires_at=as_utc(box.expires_at),
            )
        )
    return InventoryResponse(boxes=items)


@router.get("/tiers/{tier}/drops", response_model=DropTableResponse, summary="Displayed rarity odds of a tier")
async def tier_drops(
    tier: int,
    member: Member = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> DropTableResponse:
    rows = await CatalogStore(session).tier_drop_table(member.tenant_id, tier)
    if not rows:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Box tier is not configured")
    return DropTableResponse(drops=[_serialize_drop(row) for row in rows])


@router.get(
    "/rarities/{rarity_id}/drops",
    response_model=DropTableResponse,
    summary="Displayed reward odds of a rarity",
)
async def rarity_drops(
    rarity_id: UUID,
    member: Member = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> DropTableResponse:
    catalog = CatalogStore(session)
    if await catalog.get_rarity(rarity_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rarity not found")
    rows = await catalog.rarity_drop_table(member.tenant_id, rarity_id)
    return DropTableResponse(drops=[_serialize_drop(row) for row in rows])


@router.get("/admin/catalog", response_model=CatalogResponse, summary="Full reward and tier configuration")
async def get_catalog(
    operator: Member = Depends(require_operator_session),
    session: AsyncSession = Depends(get_session),
) -> CatalogResponse:
    tenant_id = operator.tenant_id
    catalog = CatalogStore(session)
    gateway = AdminConfigurationGateway(session)

    rarities = await catalog.list_rarities()
    rewards = await catalog.list_rewards(tenant_id)
    rarity_rows: list[RarityCatalogResponse] = []
    for rarity in rarities:
        rarity_rows.append(
            RarityCatalogResponse(
                id=rarity.id,
                code=rarity.code,
                name=rarity.name,
                color_key=rarity.color_key,
                sort_order=rarity.sort_order,
                rewards=[_serialize_reward(reward) for reward in rewards if reward.rarity_id == rarity.id],
                sums=_serialize_sums(await gateway.validate_rarity(tenant_id, rarity.id)),
            )
        )

    tiers = sorted(set(settings.box_tier_prices) | set(await catalog.list_configured_tiers(tenant_id)))
    tier_rows = [await _describe_tier(session, tenant_id, tier) for tier in tiers]
    return CatalogResponse(rarities=rarity_rows, tiers=tier_rows)


@router.put("/admin/rewards", response_model=RewardStateBatchResponse, summary="Update reward states")
async def update_reward_states(
    payload: RewardStateBatchRequest,
    operator: Member = Depends(require_admin_session),
    session: AsyncSession = Depends(get_session),
) -> RewardStateBatchResponse:
    tenant_id, actor_id = operator.tenant_id, operator.id
    updates = {
        patch.reward_id: RewardStateUpdate(
            is_active=patch.is_active,
            real_probability=patch.real_probability,
            display_probability=patch.display_probability,
        )
        for patch in payload.rewards
    }
    try:
        results = await run_atomic(
            session,
            lambda db: AdminConfigurationGateway(db).apply_reward_states(tenant_id, updates, actor_id=actor_id),
            label="boxes.admin.rewards",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc

    return RewardStateBatchResponse(
        rarities=[
            RarityValidationResponse(rarity_id=rarity_id, sums=_serialize_sums(sums))
            for rarity_id, sums in results.items()
        ]
    )


@router.post(
    "/admin/rewards",
    response_model=RewardResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a reward",
)
async def create_reward(
    payload: RewardCreateRequest,
    operator: Member = Depends(require_admin_session),
    session: AsyncSession = Depends(get_session),
) -> RewardResponse:
    tenant_id, actor_id = operator.tenant_id, operator.id
    new_reward = NewReward(
        rarity_id=payload.rarity_id,
        label=payload.label,
        reward_type=payload.reward_type,
        amount=payload.amount,
        real_probability=payload.real_probability,
        display_probability=payload.display_probability,
        is_active=payload.is_active,
        sort_order=payload.sort_order,
    )
    try:
        reward = await run_atomic(
            session,
            lambda db: AdminConfigurationGateway(db).create_reward(tenant_id, new_reward, actor_id=actor_id),
            label="boxes.admin.create_reward",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_reward(reward)


@router.get("/admin/tiers/{tier}", response_model=TierResponse, summary="Rarity table of a tier")
async def get_tier(
    tier: int,
    operator: Member = Depends(require_operator_session),
    session: AsyncSession = Depends(get_session),
) -> TierResponse:
    return await _describe_tier(session, operator.tenant_id, tier)


@router.put("/admin/tiers/{tier}", response_model=TierResponse, summary="Update the rarity table of a tier")
async def update_tier(
    tier: int,
    payload: TierWeightsRequest,
    operator: Member = Depends(require_admin_session),
    session: AsyncSession = Depends(get_session),
) -> TierResponse:
    tenant_id, actor_id = operator.tenant_id, operator.id
    updates = {
        patch.rarity_id: TierWeightUpdate(
            is_active=patch.is_active,
            real_probability=patch.real_probability,
            display_probability=patch.display_probability,
        )
        for patch in payload.weights
    }
    try:
        await run_atomic(
            session,
            lambda db: AdminConfigurationGateway(db).apply_tier_weights(tenant_id, tier, updates, actor_id=actor_id),
            label="boxes.admin.tiers",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc
    return await _describe_tier(session, tenant_id, tier)


@router.get(
    "/admin/rarities/{rarity_id}/validation",
    response_model=RarityValidationResponse,
    summary="Current probability sums of a rarity",
)
async def validate_rarity(
    rarity_id: UUID,
    operator: Member = Depends(require_operator_session),
    session: AsyncSession = Depends(get_session),
) -> RarityValidationResponse:
    if await CatalogStore(session).get_rarity(rarity_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rarity not found")
    sums = await AdminConfigurationGateway(session).validate_rarity(operator.tenant_id, rarity_id)
    return RarityValidationResponse(rarity_id=rarity_id, sums=_serialize_sums(sums))


@router.get("/admin/transactions", response_model=BoxHistoryWindowResponse, summary="Box transaction history")
async def list_transactions(
    status_filter: Optional[BoxTransactionStatus] = Query(None, alias="status"),
    tier: Optional[int] = Query(None),
    member_id: Optional[UUID] = Query(None, alias="memberId"),
    created_from: Optional[datetime] = Query(None, alias="createdFrom"),
    created_to: Optional[datetime] = Query(None, alias="createdTo"),
    limit: int = Query(settings.box_default_page_size, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    operator: Member = Depends(require_operator_session),
    session: AsyncSession = Depends(get_session),
) -> BoxHistoryWindowResponse:
    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_time_uuid_cursor(cursor)
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Invalid history cursor") from exc

    rows, next_cursor = await BoxLifecycleService(session).list_history(
        operator.tenant_id,
        status=status_filter,
        tier=tier,
        member_id=member_id,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        cursor=decoded_cursor,
    )
    return BoxHistoryWindowResponse(
        transactions=[_serialize_history(row) for row in rows],
        next_cursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.post(
    "/admin/transactions/{transaction_id}/processed",
    response_model=ProcessedResponse,
    summary="Mark an opened box as fulfilled",
)
async def mark_processed(
    transaction_id: UUID,
    operator: Member = Depends(require_operator_session),
    session: AsyncSession = Depends(get_session),
) -> ProcessedResponse:
    tenant_id, actor_id = operator.tenant_id, operator.id
    try:
        box = await run_atomic(
            session,
            lambda db: BoxLifecycleService(db).mark_processed(
                tenant_id=tenant_id, transaction_id=transaction_id, actor_id=actor_id
            ),
            label="boxes.mark_processed",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc
    return ProcessedResponse(
        transaction_id=box.id,
        processed=box.processed,
        processed_at=as_utc(box.processed_at),
        processed_by_member_id=box.processed_by_member_id,
    )


@router.post(
    "/admin/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(require_internal_api_key)],
    summary="Expire overdue boxes now",
)
async def trigger_sweep(session: AsyncSession = Depends(get_session)) -> SweepResponse:
    worker = BoxExpiryWorker(session_factory=lambda: session)
    summary = await worker.run_once(triggered_by="api")
    return SweepResponse(status="completed", **summary)


async def _describe_tier(session: AsyncSession, tenant_id: UUID, tier: int) -> TierResponse:
    catalog = CatalogStore(session)
    rarities = {rarity.id: rarity for rarity in await catalog.list_rarities()}
    rows = await catalog.list_tier_weights(tenant_id, tier=tier)
    rows.sort(key=lambda row: rarities[row.rarity_id].sort_order if row.rarity_id in rarities else 0)
    sums = await AdminConfigurationGateway(session).validate_tier(tenant_id, tier)
    return TierResponse(
        tier=tier,
        price=settings.box_tier_prices.get(tier),
        weights=[
            TierWeightResponse(
                rarity_id=row.rarity_id,
                rarity_code=rarities[row.rarity_id].code if row.rarity_id in rarities else None,
                is_active=row.is_active,
                real_probability=row.real_probability,
                display_probability=row.display_probability,
            )
            for row in rows
        ],
        sums=_serialize_sums(sums),
    )


def _serialize_sums(sums: ProbabilitySums) -> ProbabilitySumsResponse:
    return ProbabilitySumsResponse(
        real_sum=sums.real_sum,
        display_sum=sums.display_sum,
        active_count=sums.active_count,
        ok=sums.ok,
    )


def _serialize_reward(reward: BoxReward) -> RewardResponse:
    return RewardResponse(
        id=reward.id,
        rarity_id=reward.rarity_id,
        label=reward.label,
        reward_type=reward.reward_type,
        amount=reward.amount,
        sort_order=reward.sort_order,
        is_active=reward.is_active,
        real_probability=reward.real_probability,
        display_probability=reward.display_probability,
    )


def _serialize_drop(row: DropInfoRow) -> DropInfoResponse:
    return DropInfoResponse(
        label=row.label,
        probability=row.probability,
        code=row.code,
        color_key=row.color_key,
        reward_type=row.reward_type,
        amount=row.amount,
    )


def _serialize_history(row: BoxHistoryRow) -> BoxHistoryResponse:
    return BoxHistoryResponse(
        transaction_id=row.transaction_id,
        member_id=row.member_id,
        member_username=row.member_username,
        credit_tier=row.credit_tier,
        credit_spent=row.credit_spent,
        status=row.status,
        rarity_id=row.rarity_id,
        rarity_code=row.rarity_code,
        rarity_name=row.rarity_name,
        reward_id=row.reward_id,
        reward_label=row.reward_label,
        reward_type=row.reward_type,
        reward_amount=row.reward_amount,
        created_at=row.created_at,
        expires_at=row.expires_at,
        opened_at=row.opened_at,
        processed=row.processed,
        processed_at=row.processed_at,
        processed_by_member_id=row.processed_by_member_id,
    )
