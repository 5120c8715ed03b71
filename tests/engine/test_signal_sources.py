"""Tests for the database-backed signal source."""

from uuid import UUID

import pytest

from mii_engine.engine.errors import DataSourceError
from mii_engine.engine.sources import SqlSignalSource
from mii_engine.models.common import new_uuid7
from mii_engine.repositories.sources import SourceRecordRepository

SUBJECT = UUID(int=1)


class TestSqlSignalSource:
    @pytest.mark.anyio
    async def test_reads_live_records(self, session_factory) -> None:
        deleted = new_uuid7()
        async with session_factory() as session, session.begin():
            records = SourceRecordRepository(session)
            await records.upsert(record_id=new_uuid7(), source="pilots", subject_id=SUBJECT,
                                 attributes={"stage": "completed"})
            await records.upsert(record_id=deleted, source="pilots", subject_id=SUBJECT,
                                 attributes={"stage": "active"})
            await records.soft_delete(record_id=deleted, source="pilots")

        source = SqlSignalSource(session_factory, ["pilots"])

        assert await source.fetch("pilots", SUBJECT) == [{"stage": "completed"}]
        assert await source.fetch("pilots", UUID(int=2)) == []

    @pytest.mark.anyio
    async def test_undeclared_source_raises(self, session_factory) -> None:
        source = SqlSignalSource(session_factory, ["pilots"])
        with pytest.raises(DataSourceError, match="not declared") as excinfo:
            await source.fetch("surveys", SUBJECT)
        assert excinfo.value.subject_id == SUBJECT
        assert source.declared_sources == frozenset({"pilots"})
