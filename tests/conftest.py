"""Shared pytest fixtures."""
from __future__ import annotations

import os
from pathlib import Path

# field_sync_core.db builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.field_sync_test.db")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from field_sync_client.clock import ManualClock
from field_sync_client.records import IssuePayload
from field_sync_client.store import LocalIssueStore
from field_sync_core.db import get_session, make_engine
from field_sync_core.models import Base, IssueCategory


def issue_body(local_id: str, category_id: int, **overrides) -> dict:
    body = {
        "local_id": local_id,
        "latitude": -26.2041,
        "longitude": 28.0473,
        "category_id": category_id,
        "description": "Pothole in the left lane",
        "priority": "HIGH",
    }
    body.update(overrides)
    return body


@pytest.fixture
async def server_sessions(tmp_path: Path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'server.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def category_id(server_sessions) -> int:
    async with server_sessions() as s:
        s.add(IssueCategory(slug="retired", name="Retired", active=False))
        cat = IssueCategory(slug="pothole", name="Pothole", sla_hours=48)
        s.add(cat)
        await s.commit()
        return cat.id


@pytest.fixture
def app(server_sessions):
    from main import app as api_app

    async def _session():
        async with server_sessions() as session:
            yield session

    api_app.dependency_overrides[get_session] = _session
    yield api_app
    api_app.dependency_overrides.clear()


@pytest.fixture
async def api(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
async def store(tmp_path: Path, clock: ManualClock):
    async with LocalIssueStore(tmp_path / "device.db", clock=clock) as s:
        yield s


@pytest.fixture
def payload(category_id: int) -> IssuePayload:
    return IssuePayload(
        latitude=-26.2041,
        longitude=28.0473,
        category_id=category_id,
        description="Pothole in the left lane",
        priority="HIGH",
    )
