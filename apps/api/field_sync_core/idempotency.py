from __future__ import annotations

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from field_sync_core.models import Issue

IDEMPOTENCY_HEADER = "Idempotency-Key"


def require_matching_key(header_key: str | None, expected: str) -> None:
    """Reject calls whose Idempotency-Key header is missing or names another submission."""
    if not header_key:
        raise HTTPException(status_code=400, detail=f"{IDEMPOTENCY_HEADER} header is required")
    if header_key.strip() != expected:
        raise HTTPException(status_code=400, detail=f"{IDEMPOTENCY_HEADER} does not match local_id")


async def find_issue_by_local_id(session: AsyncSession, local_id: str) -> Issue | None:
    return (await session.execute(select(Issue).where(Issue.local_id == local_id))).scalar_one_or_none()
