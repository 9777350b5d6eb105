"""Append-only credit ledger with a write-through cached balance."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.models.credit import CreditLedgerEntry, CreditLedgerKind
from mysterybox_api.models.member import Member, MemberRole
from mysterybox_api.services.boxes.errors import (
    InsufficientCreditError,
    MemberNotFoundError,
    TransientConflictError,
    ValidationFailedError,
)


@dataclass(frozen=True, slots=True)
class LedgerAppendResult:
    entry_id: UUID
    sequence: int
    balance_before: int
    balance_after: int


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    member_id: UUID
    cached_balance: int
    ledger_balance: int

    @property
    def corrected(self) -> bool:
        return self.cached_balance != self.ledger_balance


class CreditLedger:
    """Balance-affecting writes for members.

    Methods flush but never commit; callers run them inside the same atomic
    unit as the state change that motivated the movement.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db_session
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def lock_member(self, tenant_id: UUID, member_id: UUID) -> Member:
        stmt = (
            select(Member)
            .where(Member.id == member_id, Member.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        member = result.scalar_one_or_none()
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    async def latest_entry(self, member_id: UUID) -> CreditLedgerEntry | None:
        stmt = (
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.member_id == member_id)
            .order_by(CreditLedgerEntry.sequence.desc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def ledger_balance(self, member_id: UUID) -> int:
        """Authoritative balance: ``balance_after`` of the newest entry, else 0."""

        entry = await self.latest_entry(member_id)
        return int(entry.balance_after) if entry else 0

    async def append(
        self,
        *,
        tenant_id: UUID,
        member_id: UUID,
        delta: int,
        kind: CreditLedgerKind,
        description: str | None = None,
        actor_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerAppendResult:
        """Apply ``delta`` to the member balance and record the movement."""

        if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
            raise ValidationFailedError(
                "Ledger entries require a non-zero integer delta",
                violations=[{"field": "delta", "value": delta}],
            )

        member = await self.lock_member(tenant_id, member_id)
        latest = await self.latest_entry(member_id)
        balance_before = int(latest.balance_after) if latest else 0
        cached = int(member.credit_balance or 0)
        if cached != balance_before:
            logger.warning(
                "Cached credit balance diverged from ledger; using ledger",
                member_id=str(member_id),
                cached_balance=cached,
                ledger_balance=balance_before,
            )

        balance_after = balance_before + delta
        if balance_after < 0:
            raise InsufficientCreditError(balance=balance_before, required=-delta)

        sequence = (int(latest.sequence) if latest else 0) + 1
        entry = CreditLedgerEntry(
            tenant_id=tenant_id,
            member_id=member_id,
            sequence=sequence,
            delta=delta,
            balance_after=balance_after,
            kind=kind,
            description=description,
            metadata_json=metadata or {},
            created_by_member_id=actor_id,
            created_at=self._clock(),
        )
        self._db.add(entry)
        member.credit_balance = balance_after

        try:
            await self._db.flush()
        except IntegrityError as exc:
            # Another append claimed this sequence number first.
            raise TransientConflictError("credit_ledger.append") from exc

        logger.info(
            "Recorded credit ledger entry",
            member_id=str(member_id),
            kind=kind.value,
            delta=delta,
            balance_after=balance_after,
            sequence=sequence,
        )
        return LedgerAppendResult(
            entry_id=entry.id,
            sequence=sequence,
            balance_before=balance_before,
            balance_after=balance_after,
        )

    async def top_up(
        self,
        *,
        tenant_id: UUID,
        member_id: UUID,
        amount: int,
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerAppendResult:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationFailedError(
                "Top-up amount must be a positive integer",
                violations=[{"field": "amount", "value": amount}],
            )
        return await self.append(
            tenant_id=tenant_id,
            member_id=member_id,
            delta=amount,
            kind=CreditLedgerKind.TOPUP,
            description=description,
            actor_id=actor_id,
        )

    async def adjust(
        self,
        *,
        tenant_id: UUID,
        member_id: UUID,
        delta: int,
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerAppendResult:
        return await self.append(
            tenant_id=tenant_id,
            member_id=member_id,
            delta=delta,
            kind=CreditLedgerKind.ADJUSTMENT,
            description=description,
            actor_id=actor_id,
        )

    async def reconcile(self, tenant_id: UUID, member_id: UUID) -> ReconciliationResult:
        """Rewrite the cached balance from the ledger if it drifted."""

        member = await self.lock_member(tenant_id, member_id)
        cached = int(member.credit_balance or 0)
        ledger_balance = await self.ledger_balance(member_id)
        result = ReconciliationResult(member_id=member_id, cached_balance=cached, ledger_balance=ledger_balance)
        if result.corrected:
            member.credit_balance = ledger_balance
            await self._db.flush()
            logger.warning(
                "Reconciled cached credit balance",
                member_id=str(member_id),
                cached_balance=cached,
                ledger_balance=ledger_balance,
            )
        return result

    async def get_member(self, tenant_id: UUID, member_id: UUID) -> Member:
        stmt = select(Member).where(Member.id == member_id, Member.tenant_id == tenant_id)
        result = await self._db.execute(stmt)
        member = result.scalar_one_or_none()
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    async def list_members(
        self,
        tenant_id: UUID,
        *,
        username: str | None = None,
        role: MemberRole | None = MemberRole.MEMBER,
    ) -> list[Member]:
        stmt = select(Member).where(Member.tenant_id == tenant_id)
        if role is not None:
            stmt = stmt.where(Member.role == role)
        if username:
            stmt = stmt.where(Member.username.ilike(f"%{username}%"))
        stmt = stmt.order_by(Member.username.asc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_entries(
        self,
        tenant_id: UUID,
        *,
        member_id: UUID | None = None,
        kinds: Sequence[CreditLedgerKind] | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[CreditLedgerEntry], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of ledger entries for a tenant."""

        bounded_limit = max(1, min(limit, 200))
        stmt = (
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.tenant_id == tenant_id)
            .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
        )
        if member_id is not None:
            stmt = stmt.where(CreditLedgerEntry.member_id == member_id)
        if kinds:
            stmt = stmt.where(CreditLedgerEntry.kind.in_(list(kinds)))
        if created_from is not None:
            stmt = stmt.where(CreditLedgerEntry.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(CreditLedgerEntry.created_at <= created_to)
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    CreditLedgerEntry.created_at < cursor_time,
                    and_(
                        CreditLedgerEntry.created_at == cursor_time,
                        CreditLedgerEntry.id < cursor_id,
                    ),
                )
            )
        stmt = stmt.limit(bounded_limit + 1)

        result = await self._db.execute(stmt)
        entries = list(result.scalars().all())
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(entries) > bounded_limit:
            last = entries[bounded_limit - 1]
            next_cursor = (last.created_at, last.id)
            entries = entries[:bounded_limit]
        return entries, next_cursor


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)


__all__ = [
    "CreditLedger",
    "LedgerAppendResult",
    "ReconciliationResult",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
