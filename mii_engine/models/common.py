"""Shared types, enums, and base models used across MII engine domain models."""

from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, Field
from uuid_extensions import uuid7


def utc_now() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_uuid7() -> UUID:
    """Generate a new time-sortable UUID v7."""
    return uuid7()


# --- Reusable annotated types ---

UUIDv7 = Annotated[UUID, Field(description="Time-sortable UUID v7.")]
UTCTimestamp = Annotated[
    datetime, Field(description="UTC timezone-aware timestamp.")
]
Weight = Annotated[float, Field(ge=0.0, le=1.0, description="Weight in [0, 1].")]


# --- Shared enums ---


class TriggerKind(StrEnum):
    """What started a run. Closed set; see engine.scheduler triggers."""

    PERIODIC = "PERIODIC"
    ON_DEMAND_ALL = "ON_DEMAND_ALL"
    ON_DEMAND_SUBSET = "ON_DEMAND_SUBSET"


class RunStatus(StrEnum):
    """Run lifecycle: RUNNING transitions exactly once to a terminal state."""

    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


class AggregationKind(StrEnum):
    """How an indicator reduces source records to a 0-100 value."""

    AVERAGE = "AVERAGE"
    RATIO = "RATIO"
    COUNT_RATE = "COUNT_RATE"
    FIELD_COVERAGE = "FIELD_COVERAGE"


class Trend(StrEnum):
    """Movement of the overall score versus the previous cached score."""

    UP = "UP"
    DOWN = "DOWN"
    STABLE = "STABLE"


class FailureStage(StrEnum):
    """Where a subject dropped out of a run."""

    COMPUTE = "COMPUTE"
    PUBLISH = "PUBLISH"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED}
)


# --- Base model ---


class MIIBase(BaseModel):
    """Base model with common configuration for all MII Pydantic models."""

    model_config = {
        "populate_by_name": True,
        "ser_json_timedelta": "iso8601",
        "protected_namespaces": (),
    }
