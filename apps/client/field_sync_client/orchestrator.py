"""Sync orchestrator: drains the local queue to the server.

One drain cycle walks the eligible records strictly in creation order, one
request in flight at a time. A failing record never blocks the ones behind
it: transient failures are rescheduled with exponential backoff, rejections
are abandoned, and the cycle moves on.

Cancellation (task cancel, shutdown) can land between any two awaits. A
record whose request may already have reached the server stays SYNCING; its
lease runs out and a later cycle resubmits it under the same idempotency key,
which returns the ticket the server already allocated.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from field_sync_client.backoff import RetryPolicy
from field_sync_client.clock import Clock, SystemClock
from field_sync_client.connectivity import ConnectivityEvent, ConnectivityMonitor
from field_sync_client.errors import ConflictError, TransientNetworkError, ValidationError
from field_sync_client.records import OfflineIssueRecord
from field_sync_client.store import LocalIssueStore
from field_sync_client.transport import SubmissionClient, SubmissionReceipt

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class DrainReport:
    ran: bool = True
    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    attachments_uploaded: list[str] = field(default_factory=list)
    attachments_failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ran": self.ran,
            "synced": len(self.synced),
            "failed": len(self.failed),
            "abandoned": len(self.abandoned),
            "skipped": len(self.skipped),
            "attachments_uploaded": len(self.attachments_uploaded),
            "attachments_failed": len(self.attachments_failed),
        }


class SyncOrchestrator:
    def __init__(
        self,
        store: LocalIssueStore,
        client: SubmissionClient,
        monitor: ConnectivityMonitor,
        *,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        owner: str | None = None,
        lease_seconds: float = 120.0,
        interval: float = 300.0,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.monitor = monitor
        self.policy = policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.owner = owner or default_owner()
        self.lease_seconds = lease_seconds
        self.interval = interval
        self._rng = rng
        self._lock = asyncio.Lock()
        self.last_report: DrainReport | None = None
        self.last_drain_at: datetime | None = None

    # ------------------------------------------------------------------
    # Drain cycle
    # ------------------------------------------------------------------

    async def drain(self) -> DrainReport:
        if not self.monitor.online:
            logger.debug("Offline; drain skipped")
            return DrainReport(ran=False)
        if self._lock.locked():
            logger.debug("Drain already running")
            return DrainReport(ran=False)

        async with self._lock:
            report = DrainReport()
            pending = await self.store.query_pending(self.clock.now())
            if pending:
                logger.info("Draining %d pending record(s)", len(pending))

            for record in pending:
                if not self.monitor.online:
                    logger.info("Went offline mid-drain, %s and later records wait", record.local_id)
                    break
                await self._sync_record(record, report)

            if self.monitor.online:
                tried = set(report.attachments_uploaded) | set(report.attachments_failed)
                for record in await self.store.query_attachment_pending():
                    if record.local_id in tried or record.server_issue_id is None:
                        continue
                    if not self.monitor.online:
                        break
                    await self._upload_attachment(record.local_id, record.server_issue_id, report)

            self.last_report = report
            self.last_drain_at = self.clock.now()
            if pending or report.attachments_uploaded or report.attachments_failed:
                logger.info("Drain finished: %s", report.to_dict())
            return report

    async def _submit(self, record: OfflineIssueRecord) -> SubmissionReceipt:
        try:
            return await self.client.submit_issue(record.local_id, record.payload)
        except ConflictError as e:
            logger.info("Submission %s already resolved server-side: %s", record.local_id, e)
            receipt = await self.client.lookup(record.local_id)
            if receipt is None:
                raise TransientNetworkError(f"conflict reported but no issue found for {record.local_id}") from e
            return receipt

    async def _sync_record(self, record: OfflineIssueRecord, report: DrainReport) -> None:
        if self.policy.exhausted(record.attempt_count):
            # the last allowed POST went out under a lease that was never resolved
            await self._resolve_exhausted(record, report)
            return

        local_id = record.local_id
        if not await self.store.mark_syncing(local_id, self.owner, self.lease_seconds, self.clock.now()):
            logger.debug("Lease for %s is held elsewhere", local_id)
            report.skipped.append(local_id)
            return
        attempt = record.attempt_count + 1

        try:
            receipt = await self._submit(record)
        except ValidationError as e:
            logger.warning("Submission %s rejected, abandoning: %s", local_id, e)
            await self.store.mark_abandoned(local_id, f"rejected: {e}", owner=self.owner)
            report.abandoned.append(local_id)
            return
        except TransientNetworkError as e:
            await self._record_transient(local_id, attempt, e, report)
            return

        if not await self.store.mark_synced(
            local_id, self.owner, receipt.ticket_number, receipt.issue_id,
            attachment_pending=record.has_attachment,
        ):
            logger.warning("Lost lease on %s before recording %s", local_id, receipt.ticket_number)
            report.skipped.append(local_id)
            return

        logger.info("Synced %s as %s%s", local_id, receipt.ticket_number, " (replayed)" if receipt.replayed else "")
        report.synced.append(local_id)

        if record.has_attachment:
            await self._upload_attachment(local_id, receipt.issue_id, report)

    async def _resolve_exhausted(self, record: OfflineIssueRecord, report: DrainReport) -> None:
        """Settle a record whose retry budget is spent without submitting it again."""
        local_id = record.local_id
        attempts = record.attempt_count
        if not await self.store.mark_syncing(
            local_id, self.owner, self.lease_seconds, self.clock.now(), count_attempt=False,
        ):
            report.skipped.append(local_id)
            return

        try:
            receipt = await self.client.lookup(local_id)
        except TransientNetworkError as e:
            delay = self.policy.delay_for(attempts, self._rng)
            logger.info("Lookup for exhausted %s failed, retry in %.0fs: %s", local_id, delay, e)
            await self.store.mark_failed(
                local_id, self.owner, f"lookup failed: {e}", self.clock.now() + timedelta(seconds=delay),
            )
            report.failed.append(local_id)
            return
        except ValidationError as e:
            receipt = None
            logger.warning("Lookup for %s rejected: %s", local_id, e)

        if receipt is None:
            logger.warning("Giving up on %s after %d attempts; server has no issue for it", local_id, attempts)
            await self.store.mark_abandoned(local_id, f"gave up after {attempts} attempts", owner=self.owner)
            report.abandoned.append(local_id)
            return

        if not await self.store.mark_synced(
            local_id, self.owner, receipt.ticket_number, receipt.issue_id,
            attachment_pending=record.has_attachment,
        ):
            report.skipped.append(local_id)
            return
        logger.info("Recovered %s as %s from an interrupted final attempt", local_id, receipt.ticket_number)
        report.synced.append(local_id)
        if record.has_attachment:
            await self._upload_attachment(local_id, receipt.issue_id, report)

    async def _record_transient(self, local_id: str, attempt: int, err: Exception, report: DrainReport) -> None:
        if self.policy.exhausted(attempt):
            logger.warning("Giving up on %s after %d attempts: %s", local_id, attempt, err)
            await self.store.mark_abandoned(local_id, f"gave up after {attempt} attempts: {err}", owner=self.owner)
            report.abandoned.append(local_id)
            return

        delay = self.policy.delay_for(attempt, self._rng)
        next_at = self.clock.now() + timedelta(seconds=delay)
        logger.info("Submission %s failed (attempt %d), retry in %.0fs: %s", local_id, attempt, delay, err)
        await self.store.mark_failed(local_id, self.owner, str(err), next_at)
        report.failed.append(local_id)

    async def _upload_attachment(self, local_id: str, issue_id: str, report: DrainReport) -> None:
        blob = await self.store.load_attachment(local_id)
        if blob is None:
            logger.error("Attachment for %s is missing locally", local_id)
            await self.store.mark_attachment_rejected(local_id, "attachment missing locally")
            report.attachments_failed.append(local_id)
            return

        try:
            await self.client.upload_attachment(issue_id, local_id, blob)
        except ValidationError as e:
            logger.warning("Attachment for %s rejected: %s", local_id, e)
            await self.store.mark_attachment_rejected(local_id, f"rejected: {e}")
            report.attachments_failed.append(local_id)
            return
        except (TransientNetworkError, ConflictError) as e:
            # metadata already has its ticket; only the upload is retried later
            logger.info("Attachment upload for %s failed, will retry: %s", local_id, e)
            await self.store.mark_attachment_failed(local_id, str(e))
            report.attachments_failed.append(local_id)
            return

        await self.store.mark_attachment_synced(local_id)
        report.attachments_uploaded.append(local_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _safe_drain(self) -> DrainReport | None:
        try:
            return await self.drain()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Drain cycle failed")
            return None

    async def _seconds_until_retry(self) -> float | None:
        try:
            due = await self.store.next_retry_at()
        except Exception:
            logger.exception("Could not read the retry schedule")
            return None
        if due is None:
            return None
        return max((due - self.clock.now()).total_seconds(), 0.0)

    async def run(self) -> None:
        """Drain on every BECAME_ONLINE, every ``interval`` seconds while online,
        and as soon as a backed-off record or an abandoned lease comes due.
        """
        logger.info("Sync orchestrator %s started (interval=%.0fs)", self.owner, self.interval)
        with self.monitor.events() as events:
            await self._safe_drain()
            next_periodic = self.clock.monotonic() + self.interval
            while True:
                timeout = max(next_periodic - self.clock.monotonic(), 0.0)
                if self.monitor.online:
                    retry_in = await self._seconds_until_retry()
                    if retry_in is not None:
                        # floor keeps a drain that could not run (lock held) from spinning
                        timeout = min(timeout, max(retry_in, 0.01))
                try:
                    ev = await asyncio.wait_for(events.__anext__(), timeout=timeout)
                except asyncio.TimeoutError:
                    ev = None
                if ev is ConnectivityEvent.BECAME_OFFLINE:
                    continue
                if ev is None and self.clock.monotonic() >= next_periodic:
                    next_periodic = self.clock.monotonic() + self.interval
                await self._safe_drain()

    async def status(self) -> dict[str, Any]:
        counts = await self.store.status_counts()
        return {
            "online": self.monitor.online,
            "owner": self.owner,
            "counts": {k.value: v for k, v in counts.items()},
            "last_drain_at": self.last_drain_at.isoformat() if self.last_drain_at else None,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
