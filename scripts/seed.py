"""Seed script - load the default index configuration and demo municipalities.

Creates:
1. The six default MII dimensions (LEADERSHIP ... IMPACT)
2. Four demo municipalities with profile, challenge, pilot, partnership
   and case-study records
3. Marks every demo municipality dirty so the first subset run scores them

Idempotent: safe to run multiple times - skips subjects that already exist.

Usage:
    python -m scripts.seed          # against DATABASE_URL from .env
"""

import asyncio
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from mii_engine.engine.defaults import seed_default_dimensions
from mii_engine.engine.registry import DimensionRegistry
from mii_engine.models.common import utc_now
from mii_engine.repositories.dimensions import DimensionRepository
from mii_engine.repositories.sources import SourceRecordRepository
from mii_engine.repositories.subjects import SubjectRepository

# Fixed ids keep the seed idempotent across databases.
DEMO_MUNICIPALITIES: list[dict] = [
    {
        "subject_id": UUID("0190a000-0000-7000-8000-000000000001"),
        "name_en": "Riyadh",
        "population": 7_000_000,
        "profile": {
            "contact_person": "Innovation Office",
            "contact_email": "innovation@riyadh.example",
            "website": "https://riyadh.example",
            "strategic_plan_id": "RUH-2030",
        },
        "challenges": [
            {"status": "in_pilot", "strategic_goal": "mobility"},
            {"status": "converted_to_pilot", "strategic_goal": "housing"},
            {"status": "open", "strategic_goal": None},
        ],
        "pilots": [
            {"stage": "completed", "success_probability": 82, "lessons_learned": "yes"},
            {"stage": "active", "success_probability": 60, "lessons_learned": None},
            {"stage": "monitoring", "success_probability": 70, "lessons_learned": "some"},
        ],
        "partnerships": [
            {"status": "active", "partnership_type": "academic", "scope": "cross_municipality"},
            {"status": "active", "partnership_type": "private", "scope": "local"},
        ],
        "case_studies": [{"is_published": True}, {"is_published": False}],
    },
    {
        "subject_id": UUID("0190a000-0000-7000-8000-000000000002"),
        "name_en": "Jeddah",
        "population": 4_700_000,
        "profile": {
            "contact_person": "Smart City Unit",
            "contact_email": "smart@jeddah.example",
            "website": "https://jeddah.example",
            "strategic_plan_id": None,
        },
        "challenges": [
            {"status": "in_pilot", "strategic_goal": "tourism"},
            {"status": "open", "strategic_goal": "waste"},
        ],
        "pilots": [
            {"stage": "completed", "success_probability": 75, "lessons_learned": "yes"},
            {"stage": "completed", "success_probability": 65, "lessons_learned": "yes"},
        ],
        "partnerships": [
            {"status": "active", "partnership_type": "private", "scope": "local"},
        ],
        "case_studies": [{"is_published": True}],
    },
    {
        "subject_id": UUID("0190a000-0000-7000-8000-000000000003"),
        "name_en": "Al-Ula",
        "population": 50_000,
        "profile": {
            "contact_person": "Heritage Innovation",
            "contact_email": None,
            "website": "https://alula.example",
            "strategic_plan_id": "ULA-VISION",
        },
        "challenges": [{"status": "converted_to_pilot", "strategic_goal": "heritage"}],
        "pilots": [{"stage": "active", "success_probability": 55, "lessons_learned": None}],
        "partnerships": [],
        "case_studies": [],
    },
    {
        "subject_id": UUID("0190a000-0000-7000-8000-000000000004"),
        "name_en": "Tabuk",
        "population": None,
        "profile": {
            "contact_person": None,
            "contact_email": None,
            "website": None,
            "strategic_plan_id": None,
        },
        "challenges": [],
        "pilots": [],
        "partnerships": [],
        "case_studies": [],
    },
]

RECORD_SOURCES = ["profile", "challenges", "pilots", "partnerships", "case_studies"]


def _record_id(subject_id: UUID, source: str, index: int) -> UUID:
    """Deterministic record id: subject id with the low 12 hex digits replaced."""
    source_no = RECORD_SOURCES.index(source) + 1
    return UUID(f"{str(subject_id)[:24]}{source_no:02d}{index:010d}")


async def seed_municipality(session: AsyncSession, municipality: dict) -> bool:
    """Create one demo municipality with its records. False if it exists."""
    subjects = SubjectRepository(session)
    if await subjects.get(municipality["subject_id"]) is not None:
        return False

    await subjects.upsert(
        subject_id=municipality["subject_id"],
        name_en=municipality["name_en"],
        population=municipality["population"],
    )
    records = SourceRecordRepository(session)
    for source in RECORD_SOURCES:
        entries = [municipality[source]] if source == "profile" else municipality[source]
        for index, attributes in enumerate(entries):
            await records.upsert(
                record_id=_record_id(municipality["subject_id"], source, index),
                source=source,
                subject_id=municipality["subject_id"],
                attributes=attributes,
            )
    await subjects.mark_dirty(municipality["subject_id"], utc_now())
    return True


async def seed_demo(session: AsyncSession) -> dict:
    """Idempotent demo seed: default dimensions + demo municipalities.

    Returns dict with keys: dimensions_added, subjects_added.
    """
    added = await seed_default_dimensions(DimensionRegistry(DimensionRepository(session)))
    subjects_added = 0
    for municipality in DEMO_MUNICIPALITIES:
        if await seed_municipality(session, municipality):
            subjects_added += 1
    return {
        "dimensions_added": [d.code for d in added],
        "subjects_added": subjects_added,
    }


async def _run_seed() -> None:
    """Run seed against the configured database."""
    from mii_engine.db.session import async_session_factory

    async with async_session_factory() as session:
        result = await seed_demo(session)
        await session.commit()

    print("Seed complete.")
    print(f"  Dimensions added: {', '.join(result['dimensions_added']) or 'none'}")
    print(f"  Subjects added:   {result['subjects_added']}")


if __name__ == "__main__":
    asyncio.run(_run_seed())
