"""Offline issue records and their sync state machine.

State machine per record::

    PENDING -> SYNCING -> SYNCED
                  |
                  +----> FAILED -> PENDING   (after backoff)
                  |
                  +----> ABANDONED           (retry budget spent or rejected)

``SYNCING -> SYNCING`` is a lease takeover after the previous holder died
mid-request. ``ABANDONED -> PENDING`` only happens on an explicit user retry.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Boolean, DateTime, Integer, LargeBinary, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from field_sync_client.errors import InvalidTransition


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.SYNCING, SyncStatus.ABANDONED}),
    SyncStatus.SYNCING: frozenset({
        SyncStatus.SYNCING, SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.ABANDONED,
    }),
    SyncStatus.FAILED: frozenset({SyncStatus.PENDING, SyncStatus.ABANDONED}),
    SyncStatus.ABANDONED: frozenset({SyncStatus.PENDING}),
    SyncStatus.SYNCED: frozenset(),
}


def check_transition(current: SyncStatus, target: SyncStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"{current.value} -> {target.value} is not allowed")


def new_local_id() -> str:
    return str(uuid.uuid4())


class IssuePayload(BaseModel):
    """Immutable snapshot of what the field agent submitted."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    category_id: int
    description: str | None = Field(default=None, max_length=5000)
    address: str | None = Field(default=None, max_length=500)
    priority: Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"] = "MEDIUM"
    submitted_by: str | None = Field(default=None, max_length=64)

    def to_submission(self, local_id: str) -> dict:
        return {"local_id": local_id, **self.model_dump(exclude_none=True)}


@dataclass(frozen=True)
class AttachmentBlob:
    content: bytes
    mime_type: str = "image/jpeg"
    filename: str = "photo.jpg"


@dataclass(frozen=True)
class OfflineIssueRecord:
    local_id: str
    payload: IssuePayload
    created_at: datetime
    sync_status: SyncStatus = SyncStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    server_ticket_number: str | None = None
    server_issue_id: str | None = None
    has_attachment: bool = False
    attachment_pending: bool = False
    attachment_attempts: int = 0
    attachment_error: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None

    def __post_init__(self) -> None:
        synced = self.sync_status == SyncStatus.SYNCED
        if synced != (self.server_ticket_number is not None):
            raise ValueError("server_ticket_number must be set exactly when the record is SYNCED")

    @classmethod
    def new(cls, payload: IssuePayload, created_at: datetime, has_attachment: bool = False) -> "OfflineIssueRecord":
        return cls(local_id=new_local_id(), payload=payload, created_at=created_at, has_attachment=has_attachment)

    def evolve(self, **changes) -> "OfflineIssueRecord":
        return replace(self, **changes)


class UtcDateTime(TypeDecorator):
    """Stores UTC without tzinfo (SQLite has none) and hands back aware datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class LocalBase(DeclarativeBase):
    pass


class OfflineIssueRow(LocalBase):
    __tablename__ = "offline_issues"
    local_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    sync_status: Mapped[str] = mapped_column(String(16), index=True, nullable=False, default=SyncStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True, nullable=False)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)

    server_ticket_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    server_issue_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    has_attachment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attachment_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attachment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attachment_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    lease_owner: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class LocalAttachmentRow(LocalBase):
    __tablename__ = "local_attachments"
    local_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
