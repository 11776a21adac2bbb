from __future__ import annotations

import hashlib
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import List, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from field_sync_core.db import get_session
from field_sync_core.idempotency import IDEMPOTENCY_HEADER, find_issue_by_local_id, require_matching_key
from field_sync_core.models import Issue, IssueAttachment, IssueCategory
from field_sync_core.ticket_numbers import AllocatorUnavailable, next_ticket_number

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))
MAX_ATTACHMENTS_PER_ISSUE = int(os.getenv("MAX_ATTACHMENTS_PER_ISSUE", "5"))

router = APIRouter(prefix="/issues", tags=["issues"])

Priority = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
IssueStatus = Literal["OPEN", "ASSIGNED", "IN_PROGRESS", "RESOLVED", "VERIFIED", "REOPENED", "REJECTED"]


class IssueSubmitRequest(BaseModel):
    local_id: str = Field(min_length=8, max_length=64)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    category_id: int
    description: str | None = Field(default=None, max_length=5000)
    address: str | None = Field(default=None, max_length=500)
    priority: Priority = "MEDIUM"
    submitted_by: str | None = Field(default=None, max_length=64)


class IssueSubmitResponse(BaseModel):
    issue_id: str
    ticket_number: str
    local_id: str
    replayed: bool = False


class AttachmentUploadResponse(BaseModel):
    attachment_id: int
    issue_id: str
    sha256: str
    file_size: int
    replayed: bool = False


def _submit_response(issue: Issue, replayed: bool) -> IssueSubmitResponse:
    return IssueSubmitResponse(
        issue_id=issue.id,
        ticket_number=issue.ticket_number,
        local_id=issue.local_id,
        replayed=replayed,
    )


async def create_issue_txn(session: AsyncSession, req: IssueSubmitRequest, at: datetime | None = None) -> IssueSubmitResponse:
    """Create the issue and allocate its ticket without committing (caller controls transaction).

    A local_id that already has an issue is answered with that issue's ticket;
    nothing new is allocated.
    """
    existing = await find_issue_by_local_id(session, req.local_id)
    if existing:
        return _submit_response(existing, replayed=True)

    category = (await session.execute(
        select(IssueCategory).where(IssueCategory.id == req.category_id)
    )).scalar_one_or_none()
    if not category or not category.active:
        raise HTTPException(status_code=400, detail="Invalid category_id")

    now = at or datetime.now(timezone.utc)
    sla_target_at = now + timedelta(hours=category.sla_hours) if category.sla_hours else None

    ticket_number = await next_ticket_number(session, at=now)

    issue = Issue(
        ticket_number=ticket_number,
        local_id=req.local_id,
        category_id=category.id,
        description=req.description.strip() if req.description else None,
        latitude=req.latitude,
        longitude=req.longitude,
        address=req.address.strip() if req.address else None,
        priority=req.priority,
        status="OPEN",
        submitted_by=req.submitted_by,
        sla_target_at=sla_target_at,
        created_at=now,
    )
    session.add(issue)
    await session.flush()

    return _submit_response(issue, replayed=False)


@router.post("", response_model=IssueSubmitResponse, status_code=201)
async def submit_issue(
    req: IssueSubmitRequest,
    response: Response,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
    session: AsyncSession = Depends(get_session),
):
    require_matching_key(idempotency_key, req.local_id)
    try:
        resp = await create_issue_txn(session, req)
        await session.commit()
    except IntegrityError:
        # another request with the same local_id committed first
        await session.rollback()
        existing = await find_issue_by_local_id(session, req.local_id)
        if not existing:
            raise HTTPException(status_code=409, detail="Conflicting submission, retry")
        resp = _submit_response(existing, replayed=True)
    except AllocatorUnavailable:
        await session.rollback()
        raise

    if resp.replayed:
        response.status_code = 200
        logger.info("Replayed submission %s -> %s", resp.local_id, resp.ticket_number)
    else:
        logger.info("Accepted submission %s as %s", resp.local_id, resp.ticket_number)
    return resp


@router.get("/by-local-id/{local_id}", response_model=IssueSubmitResponse)
async def get_issue_by_local_id(local_id: str, session: AsyncSession = Depends(get_session)):
    issue = await find_issue_by_local_id(session, local_id)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return _submit_response(issue, replayed=True)


@router.post("/{issue_id}/attachments", response_model=AttachmentUploadResponse, status_code=201)
async def upload_attachment(
    issue_id: str,
    request: Request,
    response: Response,
    filename: str = Query(default="attachment", min_length=1, max_length=255),
    content_type: str | None = Header(default=None),
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
    session: AsyncSession = Depends(get_session),
):
    issue = (await session.execute(select(Issue).where(Issue.id == issue_id))).scalar_one_or_none()
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    require_matching_key(idempotency_key, issue.local_id)

    mime_type = (content_type or "").split(";")[0].strip().lower()
    if not mime_type.startswith("image/"):
        raise HTTPException(status_code=415, detail="Only image attachments are accepted")

    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty attachment")
    if len(body) > MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=413, detail=f"Attachment exceeds {MAX_ATTACHMENT_BYTES} bytes")

    digest = hashlib.sha256(body).hexdigest()

    async def _existing() -> IssueAttachment | None:
        return (await session.execute(
            select(IssueAttachment)
            .where(IssueAttachment.issue_id == issue_id)
            .where(IssueAttachment.sha256 == digest)
        )).scalar_one_or_none()

    found = await _existing()
    if found:
        response.status_code = 200
        return AttachmentUploadResponse(
            attachment_id=found.id, issue_id=issue_id, sha256=digest, file_size=found.file_size, replayed=True,
        )

    count = (await session.execute(
        select(func.count(IssueAttachment.id)).where(IssueAttachment.issue_id == issue_id)
    )).scalar_one()
    if count >= MAX_ATTACHMENTS_PER_ISSUE:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_ATTACHMENTS_PER_ISSUE} attachments per issue")

    row = IssueAttachment(
        issue_id=issue_id,
        filename=filename,
        mime_type=mime_type,
        file_size=len(body),
        sha256=digest,
        content=body,
    )
    session.add(row)
    try:
        await session.flush()
        await session.commit()
    except IntegrityError:
        await session.rollback()
        found = await _existing()
        if not found:
            raise HTTPException(status_code=409, detail="Conflicting attachment upload, retry")
        response.status_code = 200
        return AttachmentUploadResponse(
            attachment_id=found.id, issue_id=issue_id, sha256=digest, file_size=found.file_size, replayed=True,
        )

    logger.info("Stored attachment %s for %s (%d bytes)", row.id, issue.ticket_number, row.file_size)
    return AttachmentUploadResponse(attachment_id=row.id, issue_id=issue_id, sha256=digest, file_size=row.file_size)


@router.get("")
async def list_issues(
    status: IssueStatus | None = None,
    priority: Priority | None = None,
    category_id: int | None = None,
    q: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    filters = []
    if status:
        filters.append(Issue.status == status)
    if priority:
        filters.append(Issue.priority == priority)
    if category_id is not None:
        filters.append(Issue.category_id == category_id)
    if q:
        filters.append(Issue.ticket_number.ilike(f"%{q.strip()}%"))

    total = (await session.execute(select(func.count(Issue.id)).where(*filters))).scalar_one()
    rows = (await session.execute(
        select(Issue)
        .where(*filters)
        .order_by(Issue.created_at.desc(), Issue.ticket_number.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )).scalars().all()

    return {
        "items": [_issue_summary(r) for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/{issue_id}")
async def get_issue(issue_id: str, session: AsyncSession = Depends(get_session)):
    issue = (await session.execute(select(Issue).where(Issue.id == issue_id))).scalar_one_or_none()
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")

    attachments: List[IssueAttachment] = (await session.execute(
        select(IssueAttachment)
        .where(IssueAttachment.issue_id == issue_id)
        .order_by(IssueAttachment.id.asc())
    )).scalars().all()

    out = _issue_summary(issue)
    out["attachments"] = [{
        "id": a.id,
        "filename": a.filename,
        "mime_type": a.mime_type,
        "file_size": a.file_size,
        "sha256": a.sha256,
        "created_at": a.created_at,
    } for a in attachments]
    return out


def _issue_summary(r: Issue) -> dict:
    return {
        "id": r.id,
        "ticket_number": r.ticket_number,
        "local_id": r.local_id,
        "status": r.status,
        "priority": r.priority,
        "category_id": r.category_id,
        "description": r.description,
        "latitude": r.latitude,
        "longitude": r.longitude,
        "address": r.address,
        "submitted_by": r.submitted_by,
        "sla_target_at": r.sla_target_at,
        "created_at": r.created_at,
    }
