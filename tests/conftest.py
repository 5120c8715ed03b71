"""Shared pytest fixtures for the MII engine test suite.

Provides:
- db_engine: in-memory SQLite async engine with all tables
- db_session: SAVEPOINT-isolated async session (app commits don't leak)
- client: AsyncClient with dependency overrides for DB-backed testing
- session_factory: file-backed SQLite sessions for concurrent engine runs
- source / world: fake signal source + helpers to build an index world
- engine_client: AsyncClient whose requests and runs share session_factory
"""

import asyncio
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from uuid_extensions import uuid7

from mii_engine.db.session import Base, build_engine, get_async_session
import mii_engine.db.tables  # noqa: F401 - register ORM models on Base.metadata
from mii_engine.db.tables import RunRow, ScoreResultRow, SubjectRow
from mii_engine.engine.errors import DataSourceError
from mii_engine.engine.registry import DimensionRegistry
from mii_engine.engine.scheduler import RunScheduler
from mii_engine.engine.sources import SignalSource
from mii_engine.models.common import AggregationKind
from mii_engine.models.dimension import Dimension, DimensionCreate, Indicator
from mii_engine.repositories.dimensions import DimensionRepository
from mii_engine.repositories.subjects import SubjectRepository

METRICS_SOURCE = "metrics"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# ---------------------------------------------------------------------------
# In-memory database (repositories, API)
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite async engine with all tables."""
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Provide a SAVEPOINT-isolated session.

    The outer transaction is never committed - it rolls back at teardown.
    Application code calling session.commit() releases the SAVEPOINT, which
    is then restarted so later operations stay in the same outer transaction.
    """
    async with db_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        nested = await conn.begin_nested()

        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(sync_session, transaction):  # noqa: ARG001
            nonlocal nested
            if transaction.nested and not transaction._parent.nested:
                nested = conn.sync_connection.begin_nested()

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
async def client(db_session):
    """AsyncClient with get_async_session overridden to use the test session."""
    from mii_engine.api.main import app

    async def _override_session():
        yield db_session

    app.dependency_overrides[get_async_session] = _override_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# File-backed database (engine runs open many sessions concurrently)
# ---------------------------------------------------------------------------


@pytest.fixture
async def file_engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'mii.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(file_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(file_engine, expire_on_commit=False)


class FakeSignalSource(SignalSource):
    """In-memory records per (source, subject), with failure and gate hooks."""

    def __init__(self, declared=(METRICS_SOURCE,)) -> None:
        super().__init__(declared)
        self.records: dict[tuple[str, UUID], list[dict]] = {}
        self.unreachable: set[tuple[str, UUID]] = set()
        self.broken: set[UUID] = set()
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.calls = 0

    async def _fetch(self, source: str, subject_id: UUID) -> list[dict]:
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if subject_id in self.broken:
            raise RuntimeError(f"corrupt record for {subject_id}")
        if (source, subject_id) in self.unreachable:
            raise DataSourceError(source, subject_id, "connection refused")
        return [dict(r) for r in self.records.get((source, subject_id), [])]


class World:
    """Builds dimensions and subjects; one AVERAGE indicator per dimension.

    A subject's values dict maps dimension codes to 0-100 values; they are
    stored as a single metrics record keyed by the lower-cased code.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession],
                 source: FakeSignalSource) -> None:
        self.session_factory = session_factory
        self.source = source

    def scheduler(self, **kwargs) -> RunScheduler:
        return RunScheduler(self.session_factory, self.source, **kwargs)

    async def add_dimension(self, code: str, weight: float, *,
                            is_active: bool = True,
                            source: str = METRICS_SOURCE) -> Dimension:
        payload = DimensionCreate(
            code=code, name_en=code.title(), weight=weight, is_active=is_active,
            indicators=[Indicator(
                code="value", source=source,
                aggregation=AggregationKind.AVERAGE, value_field=code.lower(),
            )],
        )
        async with self.session_factory() as session, session.begin():
            return await DimensionRegistry(DimensionRepository(session)).add(payload)

    async def add_subject(self, values: dict[str, float] | None = None, *,
                          subject_id: UUID | None = None, eligible: bool = True,
                          name: str = "Municipality") -> UUID:
        subject_id = subject_id or uuid7()
        async with self.session_factory() as session, session.begin():
            await SubjectRepository(session).upsert(
                subject_id=subject_id, name_en=name, rank_eligible=eligible,
            )
        if values is not None:
            self.set_values(subject_id, values)
        return subject_id

    def set_values(self, subject_id: UUID, values: dict[str, float]) -> None:
        self.source.records[(METRICS_SOURCE, subject_id)] = [
            {code.lower(): value for code, value in values.items()}
        ]

    async def set_eligible(self, subject_id: UUID, eligible: bool) -> None:
        async with self.session_factory() as session, session.begin():
            repo = SubjectRepository(session)
            row = await repo.get(subject_id)
            await repo.upsert(subject_id=subject_id, name_en=row.name_en,
                              population=row.population, rank_eligible=eligible)

    async def mark_dirty(self, subject_id: UUID) -> None:
        await self.scheduler().tracker.mark_dirty(subject_id)

    async def subject(self, subject_id: UUID) -> SubjectRow:
        async with self.session_factory() as session:
            return await SubjectRepository(session).get(subject_id)

    async def results(self, subject_id: UUID) -> list[ScoreResultRow]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScoreResultRow)
                .where(ScoreResultRow.subject_id == subject_id)
                .order_by(ScoreResultRow.computed_at)
            )
            return list(result.scalars().all())

    async def run_row(self, run_id: UUID) -> RunRow:
        async with self.session_factory() as session:
            return await session.get(RunRow, run_id)


@pytest.fixture
def source() -> FakeSignalSource:
    return FakeSignalSource()


@pytest.fixture
def world(session_factory, source) -> World:
    return World(session_factory, source)


@pytest.fixture
async def engine_client(session_factory, source):
    """AsyncClient where request sessions and scheduler runs share one database."""
    from mii_engine.api.dependencies import get_scheduler, get_session_factory
    from mii_engine.api.main import app

    async def _override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_async_session] = _override_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_scheduler] = lambda: RunScheduler(session_factory, source)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
