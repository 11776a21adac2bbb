from __future__ import annotations

import uuid
from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Float, ForeignKey,
    Integer, LargeBinary, String, Text,
)
from sqlalchemy import UniqueConstraint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass

class IssueCategory(Base):
    __tablename__ = "issue_categories"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

class Issue(Base):
    __tablename__ = "issues"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    ticket_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    # idempotency key from the submitting device; the unique constraint is what
    # makes replayed submissions resolve to the same ticket
    local_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    category_id: Mapped[int] = mapped_column(ForeignKey("issue_categories.id"), index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="MEDIUM")
    status: Mapped[str] = mapped_column(String(32), index=True, nullable=False, default="OPEN")
    submitted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    sla_target_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_issue_latitude"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_issue_longitude"),
        CheckConstraint(
            "priority in ('LOW','MEDIUM','HIGH','CRITICAL')",
            name="ck_issue_priority",
        ),
    )

class IssueAttachment(Base):
    __tablename__ = "issue_attachments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    issue_id: Mapped[str] = mapped_column(ForeignKey("issues.id", ondelete="CASCADE"), index=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("issue_id", "sha256", name="uq_issue_attachment_sha"),
        CheckConstraint("file_size > 0", name="ck_attachment_size_positive"),
    )

class TicketSequence(Base):
    __tablename__ = "ticket_sequences"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("prefix", "year", name="uq_ticket_sequences_prefix_year"),
    )
