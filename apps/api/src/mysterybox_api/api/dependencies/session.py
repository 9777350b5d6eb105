"""Session-aware dependencies for member and operator APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mysterybox_api.db.session import get_session
from mysterybox_api.models.member import Member, MemberRole

_OPERATOR_ROLES = frozenset({MemberRole.ADMIN, MemberRole.CS})


async def require_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> Member:
    """Resolve the authenticated member from forwarded session headers.

    Tenant and member identity are always taken from this row, never from
    request parameters.
    """

    if not session_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )

    try:
        member_id = UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error

    stmt = select(Member).where(Member.id == member_id)
    result = await db.execute(stmt)
    member = result.scalar_one_or_none()
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session user not found",
        )

    return member


async def require_operator_session(member: Member = Depends(require_member_session)) -> Member:
    """ADMIN or CS: read configuration, history and ledger; mark boxes processed."""

    if member.role not in _OPERATOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator role required",
        )
    return member


async def require_admin_session(member: Member = Depends(require_member_session)) -> Member:
    if member.role != MemberRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return member
