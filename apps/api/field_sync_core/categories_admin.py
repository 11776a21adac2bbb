"""Admin maintenance of issue categories and their SLA windows.

An issue's ``sla_target_at`` is fixed when its ticket is allocated. Changing a
category's ``sla_hours`` only affects issues submitted afterwards; deactivating
a category hides it from device lookups and rejects new submissions, while
issues already filed under it keep their category.
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from field_sync_core.db import get_session
from field_sync_core.models import Issue, IssueCategory

router = APIRouter(prefix="/admin/categories", tags=["admin"])

# one week
MAX_SLA_HOURS = 24 * 7

class CategoryCreate(BaseModel):
    slug: str = Field(min_length=2, max_length=64, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(min_length=2, max_length=128)
    sla_hours: int | None = Field(default=None, gt=0, le=MAX_SLA_HOURS)
    active: bool = True

class CategoryUpdate(BaseModel):
    """Omitted fields are left alone; an explicit ``"sla_hours": null`` removes the SLA."""
    name: str | None = Field(default=None, min_length=2, max_length=128)
    sla_hours: int | None = Field(default=None, gt=0, le=MAX_SLA_HOURS)
    active: bool | None = None

def _out(r: IssueCategory, issue_count: int = 0) -> dict:
    return {
        "id": r.id,
        "slug": r.slug,
        "name": r.name,
        "sla_hours": r.sla_hours,
        "active": r.active,
        "issue_count": issue_count,
    }

async def _issue_count(session: AsyncSession, category_id: int) -> int:
    return (await session.execute(
        select(func.count(Issue.id)).where(Issue.category_id == category_id)
    )).scalar_one()

@router.get("")
async def admin_list(session: AsyncSession = Depends(get_session)):
    counts = (
        select(Issue.category_id, func.count(Issue.id).label("n"))
        .group_by(Issue.category_id)
        .subquery()
    )
    rows = (await session.execute(
        select(IssueCategory, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.category_id == IssueCategory.id)
        .order_by(IssueCategory.active.desc(), IssueCategory.name.asc())
    )).all()
    return [_out(cat, n) for cat, n in rows]

@router.post("", status_code=201)
async def admin_create(req: CategoryCreate, session: AsyncSession = Depends(get_session)):
    exists = (await session.execute(select(IssueCategory).where(IssueCategory.slug == req.slug))).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Category slug already exists")

    row = IssueCategory(slug=req.slug, name=req.name.strip(), sla_hours=req.sla_hours, active=req.active)
    session.add(row)
    await session.commit()
    return _out(row)

@router.patch("/{slug}")
async def admin_update(slug: str, req: CategoryUpdate, session: AsyncSession = Depends(get_session)):
    row = (await session.execute(select(IssueCategory).where(IssueCategory.slug == slug))).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Unknown category")

    values = {}
    if req.name is not None: values["name"] = req.name.strip()
    if "sla_hours" in req.model_fields_set: values["sla_hours"] = req.sla_hours
    if req.active is not None: values["active"] = req.active

    if values:
        await session.execute(update(IssueCategory).where(IssueCategory.id == row.id).values(**values))
        await session.commit()
        await session.refresh(row)
    return _out(row, await _issue_count(session, row.id))
