"""FastAPI dependency injection factories for repositories and engine services.

Repository factories take AsyncSession via Depends(get_async_session), so
everything an endpoint writes commits in one Unit-of-Work. The run
scheduler opens its own sessions from get_session_factory (override it in
tests to point runs at the test database).
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mii_engine.config.settings import Settings, get_settings
from mii_engine.db.session import async_session_factory, get_async_session
from mii_engine.engine.registry import DimensionRegistry
from mii_engine.engine.scheduler import RunScheduler
from mii_engine.repositories.dimensions import DimensionRepository
from mii_engine.repositories.runs import RunRepository, ScoreResultRepository
from mii_engine.repositories.sources import SourceRecordRepository
from mii_engine.repositories.subjects import SubjectRepository

# ---------------------------------------------------------------------------
# Dimensions
# ---------------------------------------------------------------------------


async def get_dimension_repo(
    session: AsyncSession = Depends(get_async_session),
) -> DimensionRepository:
    return DimensionRepository(session)


async def get_dimension_registry(
    repo: DimensionRepository = Depends(get_dimension_repo),
) -> DimensionRegistry:
    return DimensionRegistry(repo)


# ---------------------------------------------------------------------------
# Subjects / history
# ---------------------------------------------------------------------------


async def get_subject_repo(
    session: AsyncSession = Depends(get_async_session),
) -> SubjectRepository:
    return SubjectRepository(session)


async def get_score_result_repo(
    session: AsyncSession = Depends(get_async_session),
) -> ScoreResultRepository:
    return ScoreResultRepository(session)


# ---------------------------------------------------------------------------
# Source records
# ---------------------------------------------------------------------------


async def get_source_record_repo(
    session: AsyncSession = Depends(get_async_session),
) -> SourceRecordRepository:
    return SourceRecordRepository(session)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def get_run_repo(
    session: AsyncSession = Depends(get_async_session),
) -> RunRepository:
    return RunRepository(session)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_factory


def get_scheduler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> RunScheduler:
    """One scheduler per request; the accepted run executes on the same instance."""
    return RunScheduler.from_settings(session_factory, settings)
