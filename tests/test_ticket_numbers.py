from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from conftest import issue_body
from field_sync_core.models import TicketSequence
from field_sync_core.ticket_numbers import (
    format_ticket_number,
    next_ticket_number,
    parse_ticket_number,
)


def test_format_pads_year_and_sequence():
    assert format_ticket_number("VMC", 2026, 1) == "VMC-2026-000001"
    assert format_ticket_number("VMC", 2026, 123456) == "VMC-2026-123456"


def test_format_grows_past_six_digits():
    assert format_ticket_number("VMC", 2026, 1234567) == "VMC-2026-1234567"


def test_parse_round_trip():
    assert parse_ticket_number("VMC-2026-000042") == ("VMC", 2026, 42)


@pytest.mark.parametrize("bad", ["", "VMC-26-000001", "VMC-2026-01", "vmc-2026-000001", "VMC2026000001"])
def test_parse_rejects_malformed(bad):
    with pytest.raises(ValueError):
        parse_ticket_number(bad)


async def test_allocations_are_sequential(server_sessions):
    at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    async with server_sessions() as s:
        first = await next_ticket_number(s, at=at)
        second = await next_ticket_number(s, at=at)
        await s.commit()
    assert first == "VMC-2026-000001"
    assert second == "VMC-2026-000002"


async def test_rolled_back_allocation_is_reused(server_sessions):
    at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    async with server_sessions() as s:
        await next_ticket_number(s, at=at)
        await s.rollback()
    async with server_sessions() as s:
        ticket = await next_ticket_number(s, at=at)
        await s.commit()
    assert ticket == "VMC-2026-000001"


async def test_year_rollover_restarts_sequence(server_sessions):
    async with server_sessions() as s:
        late = await next_ticket_number(s, at=datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc))
        early = await next_ticket_number(s, at=datetime(2027, 1, 1, 0, 1, tzinfo=timezone.utc))
        again = await next_ticket_number(s, at=datetime(2027, 1, 2, tzinfo=timezone.utc))
        await s.commit()

    assert late == "VMC-2026-000001"
    assert early == "VMC-2027-000001"
    assert again == "VMC-2027-000002"

    async with server_sessions() as s:
        rows = (await s.execute(select(TicketSequence).order_by(TicketSequence.year))).scalars().all()
    assert [(r.year, r.last_value) for r in rows] == [(2026, 1), (2027, 2)]


async def test_prefix_sequences_are_independent(server_sessions):
    at = datetime(2026, 5, 5, tzinfo=timezone.utc)
    async with server_sessions() as s:
        a = await next_ticket_number(s, prefix="VMC", at=at)
        b = await next_ticket_number(s, prefix="JHB", at=at)
        await s.commit()
    assert a == "VMC-2026-000001"
    assert b == "JHB-2026-000001"


async def test_concurrent_submissions_get_distinct_tickets(api, category_id):
    local_ids = [str(uuid.uuid4()) for _ in range(8)]

    async def submit(local_id: str):
        return await api.post(
            "/issues",
            json=issue_body(local_id, category_id),
            headers={"Idempotency-Key": local_id},
        )

    responses = await asyncio.gather(*(submit(lid) for lid in local_ids))
    assert all(r.status_code == 201 for r in responses)

    seqs = sorted(parse_ticket_number(r.json()["ticket_number"])[2] for r in responses)
    assert seqs == list(range(1, 9))
