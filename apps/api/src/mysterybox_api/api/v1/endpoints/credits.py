"""Credit balance, ledger and operator credit administration."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.api.dependencies.session import (
    require_admin_session,
    require_member_session,
    require_operator_session,
)
from mysterybox_api.api.errors import to_http_exception
from mysterybox_api.core.settings import settings
from mysterybox_api.db.session import get_session
from mysterybox_api.models.credit import CreditLedgerEntry, CreditLedgerKind
from mysterybox_api.models.member import Member, MemberRole
from mysterybox_api.services.atomic import run_atomic
from mysterybox_api.services.boxes.errors import BoxEngineError
from mysterybox_api.services.boxes.lifecycle import as_utc
from mysterybox_api.services.credits import (
    CreditLedger,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)


router = APIRouter(prefix="/credits", tags=["credits"])


class BalanceResponse(BaseModel):
    member_id: UUID
    balance: int


class LedgerEntryResponse(BaseModel):
    id: UUID
    member_id: Optional[UUID]
    sequence: int
    kind: CreditLedgerKind
    delta: int
    balance_after: int
    description: Optional[str]
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by_member_id: Optional[UUID]
    created_at: datetime


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    next_cursor: Optional[str]


class MemberSummaryResponse(BaseModel):
    id: UUID
    username: str
    role: MemberRole
    credit_balance: int


class MemberListResponse(BaseModel):
    members: List[MemberSummaryResponse]


class TopUpRequest(BaseModel):
    amount: int = Field(..., description="Credits to add; must be positive")
    description: Optional[str] = Field(None, description="Reason shown in the ledger")


class AdjustRequest(BaseModel):
    delta: int = Field(..., description="Signed credit change; must be non-zero")
    description: Optional[str] = Field(None, description="Reason shown in the ledger")


class BalanceChangeResponse(BaseModel):
    member_id: UUID
    entry_id: UUID
    sequence: int
    balance_before: int
    balance_after: int


class ReconcileResponse(BaseModel):
    member_id: UUID
    cached_balance: int
    ledger_balance: int
    corrected: bool


@router.get("/balance", response_model=BalanceResponse, summary="Current credit balance")
async def get_balance(
    member: Member = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    balance = await CreditLedger(session).ledger_balance(member.id)
    return BalanceResponse(member_id=member.id, balance=balance)


@router.get("/ledger", response_model=LedgerWindowResponse, summary="Personal ledger entries")
async def get_member_ledger(
    limit: int = Query(settings.box_default_page_size, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    kinds: Optional[List[CreditLedgerKind]] = Query(None, alias="kind"),
    member: Member = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    entries, next_cursor = await CreditLedger(session).list_entries(
        member.tenant_id,
        member_id=member.id,
        kinds=kinds,
        limit=limit,
        cursor=_decode_cursor(cursor),
    )
    return _ledger_window(entries, next_cursor)


@router.get("/admin/members", response_model=MemberListResponse, summary="Search members")
async def list_members(
    username: Optional[str] = Query(None),
    operator: Member = Depends(require_operator_session),
    session: AsyncSession = Depends(get_session),
) -> MemberListResponse:
    members = await CreditLedger(session).list_members(operator.tenant_id, username=username)
    return MemberListResponse(
        members=[
            MemberSummaryResponse(
                id=item.id,
                username=item.username,
                role=item.role,
                credit_balance=item.credit_balance,
            )
            for item in members
        ]
    )


@router.post(
    "/admin/members/{member_id}/topup",
    response_model=BalanceChangeResponse,
    summary="Add credits to a member",
)
async def top_up_member(
    member_id: UUID,
    payload: TopUpRequest,
    operator: Member = Depends(require_admin_session),
    session: AsyncSession = Depends(get_session),
) -> BalanceChangeResponse:
    tenant_id, actor_id = operator.tenant_id, operator.id
    try:
        result = await run_atomic(
            session,
            lambda db: CreditLedger(db).top_up(
                tenant_id=tenant_id,
                member_id=member_id,
                amount=payload.amount,
                description=payload.description,
                actor_id=actor_id,
            ),
            label="credits.topup",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc
    return BalanceChangeResponse(
        member_id=member_id,
        entry_id=result.entry_id,
        sequence=result.sequence,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
    )


@router.post(
    "/admin/members/{member_id}/adjust",
    response_model=BalanceChangeResponse,
    summary="Apply a signed credit adjustment",
)
async def adjust_member(
    member_id: UUID,
    payload: AdjustRequest,
    operator: Member = Depends(require_admin_session),
    session: AsyncSession = Depends(get_session),
) -> BalanceChangeResponse:
    tenant_id, actor_id = operator.tenant_id, operator.id
    try:
        result = await run_atomic(
            session,
            lambda db: CreditLedger(db).adjust(
                tenant_id=tenant_id,
                member_id=member_id,
                delta=payload.delta,
                description=payload.description,
                actor_id=actor_id,
            ),
            label="credits.adjust",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc
    return BalanceChangeResponse(
        member_id=member_id,
        entry_id=result.entry_id,
        sequence=result.sequence,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
    )


@router.post(
    "/admin/members/{member_id}/reconcile",
    response_model=ReconcileResponse,
    summary="Rebuild the cached balance from the ledger",
)
async def reconcile_member(
    member_id: UUID,
    operator: Member = Depends(require_admin_session),
    session: AsyncSession = Depends(get_session),
) -> ReconcileResponse:
    tenant_id = operator.tenant_id
    try:
        result = await run_atomic(
            session,
            lambda db: CreditLedger(db).reconcile(tenant_id, member_id),
            label="credits.reconcile",
        )
    except BoxEngineError as exc:
        raise to_http_exception(exc) from exc
    return ReconcileResponse(
        member_id=result.member_id,
        cached_balance=result.cached_balance,
        ledger_balance=result.ledger_balance,
        corrected=result.corrected,
    )


@router.get("/admin/ledger", response_model=LedgerWindowResponse, summary="Tenant ledger entries")
async def get_tenant_ledger(
    member_id: Optional[UUID] = Query(None, alias="memberId"),
    kinds: Optional[List[CreditLedgerKind]] = Query(None, alias="kind"),
    created_from: Optional[datetime] = Query(None, alias="createdFrom"),
    created_to: Optional[datetime] = Query(None, alias="createdTo"),
    limit: int = Query(settings.box_default_page_size, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    operator: Member = Depends(require_operator_session),
    session: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    entries, next_cursor = await CreditLedger(session).list_entries(
        operator.tenant_id,
        member_id=member_id,
        kinds=kinds,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        cursor=_decode_cursor(cursor),
    )
    return _ledger_window(entries, next_cursor)


def _decode_cursor(cursor: str | None):
    if not cursor:
        return None
    try:
        return decode_time_uuid_cursor(cursor)
    except Exception as exc:
        raise HTTPException(status_code=400, detail="Invalid ledger cursor") from exc


def _ledger_window(entries: list[CreditLedgerEntry], next_cursor) -> LedgerWindowResponse:
    return LedgerWindowResponse(
        entries=[
            LedgerEntryResponse(
                id=entry.id,
                member_id=entry.member_id,
                sequence=entry.sequence,
                kind=entry.kind,
                delta=entry.delta,
                balance_after=entry.balance_after,
                description=entry.description,
                metadata=entry.metadata_json or {},
                created_by_member_id=entry.created_by_member_id,
                created_at=as_utc(entry.created_at),
            )
            for entry in entries
        ],
        next_cursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )
