from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

TICKET_PREFIX = os.getenv("TICKET_PREFIX", "VMC")

_TICKET_RE = re.compile(r"^(?P<prefix>[A-Z0-9]+)-(?P<year>\d{4})-(?P<seq>\d{6,})$")


class AllocatorUnavailable(Exception):
    """The ticket sequence could not be advanced; the surrounding transaction must roll back."""


def format_ticket_number(prefix: str, year: int, seq: int) -> str:
    return f"{prefix}-{year:04d}-{seq:06d}"


def parse_ticket_number(ticket_number: str) -> tuple[str, int, int]:
    m = _TICKET_RE.match(ticket_number)
    if not m:
        raise ValueError(f"Malformed ticket number: {ticket_number!r}")
    return m.group("prefix"), int(m.group("year")), int(m.group("seq"))


async def next_ticket_number(session: AsyncSession, prefix: str | None = None, at: datetime | None = None) -> str:
    """Allocate the next ticket number for the year of ``at``.

    Runs inside the caller's transaction and never commits. The increment is a
    single ``UPDATE ... RETURNING`` so concurrent callers serialize on the
    sequence row and each one sees a distinct post-increment value. If the
    caller rolls back, the increment rolls back with it.
    """
    if prefix is None:
        prefix = TICKET_PREFIX
    if at is None:
        at = datetime.now(timezone.utc)
    year = at.year

    try:
        await session.execute(
            text("""
            INSERT INTO ticket_sequences(prefix, year, last_value)
            VALUES (:p, :y, 0)
            ON CONFLICT (prefix, year) DO NOTHING
            """),
            {"p": prefix, "y": year},
        )

        row = await session.execute(
            text("""
            UPDATE ticket_sequences
            SET last_value = last_value + 1
            WHERE prefix = :p AND year = :y
            RETURNING last_value
            """),
            {"p": prefix, "y": year},
        )
        r = row.first()
    except (OperationalError, InterfaceError) as e:
        logger.error("Ticket allocation failed for %s/%s: %s", prefix, year, e)
        raise AllocatorUnavailable(str(e)) from e

    if r is None:
        raise AllocatorUnavailable(f"ticket sequence {prefix}/{year} missing after upsert")

    return format_ticket_number(prefix, year, int(r[0]))
