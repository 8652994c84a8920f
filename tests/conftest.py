"""Fixtures — in-memory Redis, temp-file SQLite, fake engines and resolver."""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from src.config import Settings
from src.db.base import create_engine, create_session_maker, create_tables
from src.db.models import Site
from src.db.repository import ScanRepository
from src.scans.engines import EngineRegistry
from src.scans.lifecycle import build_controller
from src.scans.timeout import TimeoutGuard

from tests.fakes import FakeClock, FakeResolver, page_urls


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, environment="test", scan_rate_limit=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def redis_client():
    """FakeRedis with a private server so tests never share state."""
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'scans.db'}")
    await create_tables(engine)
    yield create_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def repository(session_maker) -> ScanRepository:
    return ScanRepository(session_maker)


@pytest.fixture
def make_site(session_maker):
    async def _make(
        url: str = "https://example.org",
        title: str | None = "Example Org",
        sitemap_url: str | None = "https://example.org/sitemap.xml",
    ) -> Site:
        site = Site(url=url, title=title, sitemap_url=sitemap_url)
        async with session_maker() as session:
            async with session.begin():
                session.add(site)
        return site

    return _make


@pytest_asyncio.fixture
async def make_controller(settings, redis_client, session_maker, clock):
    """Build controllers wired to fakes; stops their tasks on teardown."""
    built = []

    def _make(engines: list, urls: list[str] | None = None, resolver=None, budget_hours: float = 2.0):
        registry = EngineRegistry()
        for engine in engines:
            registry.register(engine)
        controller = build_controller(
            settings,
            redis_client,
            session_maker,
            engines=registry,
            resolver=resolver or FakeResolver(urls if urls is not None else page_urls(3)),
            new_guard=lambda: TimeoutGuard(timedelta(hours=budget_hours), clock=clock),
        )
        built.append(controller)
        return controller

    yield _make
    for controller in built:
        await controller.supervisor.shutdown()
