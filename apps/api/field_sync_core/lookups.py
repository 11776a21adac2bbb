from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from field_sync_core.db import get_session
from field_sync_core.models import IssueCategory

router = APIRouter(prefix="/lookups", tags=["lookups"])

@router.get("/categories")
async def list_categories(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(IssueCategory)
        .where(IssueCategory.active == True)  # noqa
        .order_by(IssueCategory.name.asc())
    )).scalars().all()
    return [{"id": r.id, "slug": r.slug, "name": r.name, "sla_hours": r.sla_hours} for r in rows]
