"""Local durable store for offline issue records.

Every mutation is its own committed SQLite transaction (WAL journal,
``synchronous=FULL``), so a crash between two calls never loses the first
one. Status changes are single conditional ``UPDATE`` statements: the
``WHERE`` clause names the source states the transition table allows and,
while a record is SYNCING, the lease owner. Two tabs or processes sharing
the file therefore cannot both hold SYNCING on the same ``local_id``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy import and_, delete, event, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from field_sync_client.clock import Clock, SystemClock
from field_sync_client.errors import InvalidTransition, StorageCorruption
from field_sync_client.records import (
    ALLOWED_TRANSITIONS,
    AttachmentBlob,
    IssuePayload,
    LocalAttachmentRow,
    LocalBase,
    OfflineIssueRecord,
    OfflineIssueRow,
    SyncStatus,
)

logger = logging.getLogger(__name__)

CORRUPTION_PREFIX = "storage corruption: "


def _sources_for(target: SyncStatus) -> list[str]:
    return [s.value for s, targets in ALLOWED_TRANSITIONS.items() if target in targets and s != target]


def _to_record(row: OfflineIssueRow) -> OfflineIssueRecord:
    try:
        payload = IssuePayload.model_validate_json(row.payload)
        status = SyncStatus(row.sync_status)
        return OfflineIssueRecord(
            local_id=row.local_id,
            payload=payload,
            created_at=row.created_at,
            sync_status=status,
            attempt_count=row.attempt_count,
            last_attempt_at=row.last_attempt_at,
            last_error=row.last_error,
            next_attempt_at=row.next_attempt_at,
            server_ticket_number=row.server_ticket_number,
            server_issue_id=row.server_issue_id,
            has_attachment=row.has_attachment,
            attachment_pending=row.attachment_pending,
            attachment_attempts=row.attachment_attempts,
            attachment_error=row.attachment_error,
            lease_owner=row.lease_owner,
            lease_expires_at=row.lease_expires_at,
        )
    except (PayloadValidationError, ValueError) as e:
        raise StorageCorruption(row.local_id, str(e).splitlines()[0]) from e


def _row_values(record: OfflineIssueRecord) -> dict[str, Any]:
    return {
        "local_id": record.local_id,
        "payload": record.payload.model_dump_json(),
        "sync_status": record.sync_status.value,
        "created_at": record.created_at,
        "attempt_count": record.attempt_count,
        "last_attempt_at": record.last_attempt_at,
        "last_error": record.last_error,
        "next_attempt_at": record.next_attempt_at,
        "server_ticket_number": record.server_ticket_number,
        "server_issue_id": record.server_issue_id,
        "has_attachment": record.has_attachment,
        "attachment_pending": record.attachment_pending,
        "attachment_attempts": record.attachment_attempts,
        "attachment_error": record.attachment_error,
        "lease_owner": record.lease_owner,
        "lease_expires_at": record.lease_expires_at,
    }


class LocalIssueStore:
    """SQLite-backed queue of offline issue records."""

    def __init__(self, path: str | Path, clock: Clock | None = None) -> None:
        self.path = Path(path)
        self.clock = clock or SystemClock()
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> "LocalIssueStore":
        if self._engine is not None:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(f"sqlite+aiosqlite:///{self.path}", future=True)

        @event.listens_for(engine.sync_engine, "connect")
        def _pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA busy_timeout=30000")
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA synchronous=FULL")
            cur.close()

        async with engine.begin() as conn:
            await conn.run_sync(LocalBase.metadata.create_all)

        self._engine = engine
        self._sessions = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        logger.debug("Opened local issue store at %s", self.path)
        return self

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None

    async def __aenter__(self) -> "LocalIssueStore":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("LocalIssueStore is not open")
        return self._sessions()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put(self, record: OfflineIssueRecord, attachment: AttachmentBlob | None = None) -> OfflineIssueRecord:
        """Upsert by ``local_id``; returns after the commit.

        Only a record that is still PENDING may be overwritten. Anything
        further along moves through the ``mark_*`` transitions, so a stale
        snapshot can never roll a delivered record back.
        """
        async with self._session() as s:
            current = (await s.execute(
                select(OfflineIssueRow.sync_status).where(OfflineIssueRow.local_id == record.local_id)
            )).scalar_one_or_none()
            if current is not None and current != SyncStatus.PENDING.value:
                raise InvalidTransition(f"{record.local_id}: cannot overwrite a {current} record")
            await s.merge(OfflineIssueRow(**_row_values(record)))
            if attachment is not None:
                await s.merge(LocalAttachmentRow(
                    local_id=record.local_id,
                    content=attachment.content,
                    mime_type=attachment.mime_type,
                    filename=attachment.filename,
                ))
            await s.commit()
        return record

    async def create(self, payload: IssuePayload, attachment: AttachmentBlob | None = None) -> OfflineIssueRecord:
        record = OfflineIssueRecord.new(payload, self.clock.now(), has_attachment=attachment is not None)
        await self.put(record, attachment)
        logger.info("Queued offline issue %s", record.local_id)
        return record

    async def _transition(
        self,
        local_id: str,
        target: SyncStatus,
        *,
        owner: str | None = None,
        sources: Iterable[SyncStatus] | None = None,
        **values: Any,
    ) -> bool:
        allowed = [s.value for s in sources] if sources is not None else _sources_for(target)
        stmt = (
            update(OfflineIssueRow)
            .where(OfflineIssueRow.local_id == local_id)
            .where(OfflineIssueRow.sync_status.in_(allowed))
        )
        if owner is not None:
            stmt = stmt.where(OfflineIssueRow.lease_owner == owner)
        stmt = stmt.values(sync_status=target.value, **values).execution_options(synchronize_session=False)

        async with self._session() as s:
            res = await s.execute(stmt)
            if res.rowcount == 1:
                await s.commit()
                return True
            current = (await s.execute(
                select(OfflineIssueRow.sync_status).where(OfflineIssueRow.local_id == local_id)
            )).scalar_one_or_none()

        if current is None:
            raise KeyError(local_id)
        if owner is None and current != target.value and current not in allowed:
            raise InvalidTransition(f"{local_id}: {current} -> {target.value} is not allowed")
        # lease lost to another writer, or it already made this transition
        return False

    async def mark_syncing(
        self,
        local_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime | None = None,
        count_attempt: bool = True,
    ) -> bool:
        """Take the single-writer lease and, unless told not to, count an attempt.

        Succeeds for PENDING records and for SYNCING records whose lease has
        expired (the previous holder died before recording an outcome).
        Pass ``count_attempt=False`` when only a lookup will be sent.
        """
        now = now or self.clock.now()
        values = {
            "sync_status": SyncStatus.SYNCING.value,
            "lease_owner": owner,
            "lease_expires_at": now + timedelta(seconds=lease_seconds),
        }
        if count_attempt:
            values["attempt_count"] = OfflineIssueRow.attempt_count + 1
            values["last_attempt_at"] = now
        stmt = (
            update(OfflineIssueRow)
            .where(OfflineIssueRow.local_id == local_id)
            .where(or_(
                OfflineIssueRow.sync_status == SyncStatus.PENDING.value,
                and_(
                    OfflineIssueRow.sync_status == SyncStatus.SYNCING.value,
                    or_(OfflineIssueRow.lease_expires_at.is_(None), OfflineIssueRow.lease_expires_at <= now),
                ),
            ))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as s:
            res = await s.execute(stmt)
            await s.commit()
        return res.rowcount == 1

    async def mark_synced(
        self,
        local_id: str,
        owner: str,
        ticket_number: str,
        issue_id: str | None = None,
        attachment_pending: bool = False,
    ) -> bool:
        return await self._transition(
            local_id, SyncStatus.SYNCED, owner=owner,
            server_ticket_number=ticket_number,
            server_issue_id=issue_id,
            attachment_pending=attachment_pending,
            last_error=None,
            next_attempt_at=None,
            lease_owner=None,
            lease_expires_at=None,
        )

    async def mark_failed(self, local_id: str, owner: str, error: str, next_attempt_at: datetime) -> bool:
        return await self._transition(
            local_id, SyncStatus.FAILED, owner=owner,
            last_error=error,
            next_attempt_at=next_attempt_at,
            lease_owner=None,
            lease_expires_at=None,
        )

    async def mark_abandoned(self, local_id: str, error: str, owner: str | None = None) -> bool:
        return await self._transition(
            local_id, SyncStatus.ABANDONED, owner=owner,
            last_error=error,
            next_attempt_at=None,
            lease_owner=None,
            lease_expires_at=None,
        )

    async def retry_abandoned(self, local_id: str) -> bool:
        """User-initiated second chance for an abandoned record."""
        return await self._transition(
            local_id, SyncStatus.PENDING, sources=[SyncStatus.ABANDONED],
            attempt_count=0,
            last_error=None,
            next_attempt_at=None,
        )

    async def _update_synced(self, local_id: str, **values: Any) -> bool:
        # attachment bookkeeping only; the ticket on a SYNCED record never changes
        async with self._session() as s:
            res = await s.execute(
                update(OfflineIssueRow)
                .where(OfflineIssueRow.local_id == local_id)
                .where(OfflineIssueRow.sync_status == SyncStatus.SYNCED.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await s.commit()
        return res.rowcount == 1

    async def mark_attachment_synced(self, local_id: str) -> bool:
        return await self._update_synced(local_id, attachment_pending=False, attachment_error=None)

    async def mark_attachment_failed(self, local_id: str, error: str) -> bool:
        return await self._update_synced(
            local_id,
            attachment_attempts=OfflineIssueRow.attachment_attempts + 1,
            attachment_error=error,
        )

    async def mark_attachment_rejected(self, local_id: str, error: str) -> bool:
        """Stop retrying an attachment the server will never accept."""
        return await self._update_synced(
            local_id,
            attachment_pending=False,
            attachment_attempts=OfflineIssueRow.attachment_attempts + 1,
            attachment_error=error,
        )

    async def quarantine(self, local_id: str, reason: str) -> bool:
        logger.error("Quarantining unreadable record %s: %s", local_id, reason)
        return await self._transition(
            local_id, SyncStatus.ABANDONED,
            last_error=CORRUPTION_PREFIX + reason,
            next_attempt_at=None,
            lease_owner=None,
            lease_expires_at=None,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, local_id: str) -> OfflineIssueRecord | None:
        async with self._session() as s:
            row = await s.get(OfflineIssueRow, local_id)
        return _to_record(row) if row else None

    async def load_attachment(self, local_id: str) -> AttachmentBlob | None:
        async with self._session() as s:
            row = await s.get(LocalAttachmentRow, local_id)
        if not row:
            return None
        return AttachmentBlob(content=row.content, mime_type=row.mime_type, filename=row.filename)

    async def query_pending(self, now: datetime | None = None) -> list[OfflineIssueRecord]:
        """Records eligible for a delivery attempt, oldest first.

        FAILED records whose backoff window has elapsed are moved back to
        PENDING first. SYNCING records with an expired lease are included so
        an interrupted delivery is re-validated through its idempotency key.
        """
        now = now or self.clock.now()
        async with self._session() as s:
            promoted = await s.execute(
                update(OfflineIssueRow)
                .where(OfflineIssueRow.sync_status == SyncStatus.FAILED.value)
                .where(or_(OfflineIssueRow.next_attempt_at.is_(None), OfflineIssueRow.next_attempt_at <= now))
                .values(sync_status=SyncStatus.PENDING.value, next_attempt_at=None)
                .execution_options(synchronize_session=False)
            )
            await s.commit()
            if promoted.rowcount:
                logger.debug("Backoff elapsed for %d failed record(s)", promoted.rowcount)

            rows = (await s.execute(
                select(OfflineIssueRow)
                .where(or_(
                    OfflineIssueRow.sync_status == SyncStatus.PENDING.value,
                    and_(
                        OfflineIssueRow.sync_status == SyncStatus.SYNCING.value,
                        or_(OfflineIssueRow.lease_expires_at.is_(None), OfflineIssueRow.lease_expires_at <= now),
                    ),
                ))
                .order_by(OfflineIssueRow.created_at.asc(), OfflineIssueRow.local_id.asc())
            )).scalars().all()

        records: list[OfflineIssueRecord] = []
        for row in rows:
            try:
                records.append(_to_record(row))
            except StorageCorruption as e:
                await self.quarantine(e.local_id, e.reason)
        return records

    async def query_attachment_pending(self) -> list[OfflineIssueRecord]:
        async with self._session() as s:
            rows = (await s.execute(
                select(OfflineIssueRow)
                .where(OfflineIssueRow.sync_status == SyncStatus.SYNCED.value)
                .where(OfflineIssueRow.attachment_pending == True)  # noqa
                .order_by(OfflineIssueRow.created_at.asc(), OfflineIssueRow.local_id.asc())
            )).scalars().all()

        records: list[OfflineIssueRecord] = []
        for row in rows:
            try:
                records.append(_to_record(row))
            except StorageCorruption as e:
                # metadata is already on the server; only the local copy is bad
                logger.error("Unreadable synced record %s: %s", e.local_id, e.reason)
        return records

    async def list_records(self, status: SyncStatus | None = None) -> list[OfflineIssueRecord]:
        q = select(OfflineIssueRow).order_by(OfflineIssueRow.created_at.asc(), OfflineIssueRow.local_id.asc())
        if status is not None:
            q = q.where(OfflineIssueRow.sync_status == status.value)
        async with self._session() as s:
            rows = (await s.execute(q)).scalars().all()
        out = []
        for row in rows:
            try:
                out.append(_to_record(row))
            except StorageCorruption as e:
                logger.warning("Skipping unreadable record %s: %s", e.local_id, e.reason)
        return out

    async def status_counts(self) -> dict[SyncStatus, int]:
        async with self._session() as s:
            rows = (await s.execute(
                select(OfflineIssueRow.sync_status, func.count(OfflineIssueRow.local_id))
                .group_by(OfflineIssueRow.sync_status)
            )).all()
        counts = {status: 0 for status in SyncStatus}
        for status, n in rows:
            try:
                counts[SyncStatus(status)] += n
            except ValueError:
                logger.warning("Unknown sync status %r on %d record(s)", status, n)
        return counts

    async def pending_count(self) -> int:
        counts = await self.status_counts()
        return counts[SyncStatus.PENDING] + counts[SyncStatus.FAILED] + counts[SyncStatus.SYNCING]

    async def next_retry_at(self) -> datetime | None:
        """Earliest time a waiting record becomes eligible again.

        That is a FAILED record's backoff deadline or a SYNCING record's lease
        expiry, whichever comes first. None when nothing is waiting.
        """
        async with self._session() as s:
            backoff = (await s.execute(
                select(func.min(OfflineIssueRow.next_attempt_at))
                .where(OfflineIssueRow.sync_status == SyncStatus.FAILED.value)
            )).scalar_one_or_none()
            lease = (await s.execute(
                select(func.min(OfflineIssueRow.lease_expires_at))
                .where(OfflineIssueRow.sync_status == SyncStatus.SYNCING.value)
            )).scalar_one_or_none()
        candidates = [t for t in (backoff, lease) if t is not None]
        return min(candidates) if candidates else None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _delete(self, *criteria) -> int:
        async with self._session() as s:
            ids = (await s.execute(select(OfflineIssueRow.local_id).where(*criteria))).scalars().all()
            if not ids:
                return 0
            await s.execute(delete(LocalAttachmentRow).where(LocalAttachmentRow.local_id.in_(ids)))
            await s.execute(delete(OfflineIssueRow).where(OfflineIssueRow.local_id.in_(ids)))
            await s.commit()
        return len(ids)

    async def acknowledge(self, local_id: str) -> bool:
        """Drop a synced record once the dashboard has shown its ticket."""
        n = await self._delete(
            OfflineIssueRow.local_id == local_id,
            OfflineIssueRow.sync_status == SyncStatus.SYNCED.value,
            OfflineIssueRow.attachment_pending == False,  # noqa
        )
        return n == 1

    async def purge_synced(self, older_than: datetime) -> int:
        return await self._delete(
            OfflineIssueRow.sync_status == SyncStatus.SYNCED.value,
            OfflineIssueRow.attachment_pending == False,  # noqa
            OfflineIssueRow.last_attempt_at <= older_than,
        )

    async def clear_abandoned(self) -> int:
        return await self._delete(OfflineIssueRow.sync_status == SyncStatus.ABANDONED.value)
