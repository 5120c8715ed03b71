"""Signal sources - where extraction contracts read raw records from.

The engine never polls or owns upstream entities. A source returns the
attribute dicts of one subject's live records; an unreachable or
undeclared source raises DataSourceError scoped to that subject.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mii_engine.engine.errors import DataSourceError
from mii_engine.repositories.sources import SourceRecordRepository


class SignalSource(ABC):
    """Read-only access to upstream records per (source, subject)."""

    def __init__(self, declared_sources: Iterable[str]) -> None:
        self._declared = frozenset(declared_sources)

    @property
    def declared_sources(self) -> frozenset[str]:
        return self._declared

    async def fetch(self, source: str, subject_id: UUID) -> list[dict]:
        if source not in self._declared:
            raise DataSourceError(source, subject_id, "source is not declared")
        return await self._fetch(source, subject_id)

    @abstractmethod
    async def _fetch(self, source: str, subject_id: UUID) -> list[dict]:
        ...


class SqlSignalSource(SignalSource):
    """Reads mii_source_records, one short-lived session per fetch.

    Separate sessions let the scheduler aggregate subjects concurrently.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession],
                 declared_sources: Iterable[str]) -> None:
        super().__init__(declared_sources)
        self._session_factory = session_factory

    async def _fetch(self, source: str, subject_id: UUID) -> list[dict]:
        try:
            async with self._session_factory() as session:
                repo = SourceRecordRepository(session)
                return await repo.list_attributes(source=source, subject_id=subject_id)
        except (SQLAlchemyError, OSError) as exc:
            raise DataSourceError(source, subject_id, str(exc)) from exc
