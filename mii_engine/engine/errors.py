"""Engine error taxonomy.

MIIEngineError (base)
├── ConfigurationError - no active dimensions / un-normalizable weights; fails the run
├── DataSourceError    - one subject's dimension unreachable; dimension defaulted
├── ConcurrencyError   - a run is already in progress; trigger rejected
├── PersistenceError   - one subject's publish transaction failed; subject rolled back
└── RunSupersededError - the run lost the run lock to a takeover; publishing stops

None of these escape a run: the scheduler converts them into the run's
status and report.
"""

from uuid import UUID


class MIIEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(MIIEngineError):
    pass


class DataSourceError(MIIEngineError):
    def __init__(self, source: str, subject_id: UUID, message: str) -> None:
        self.source = source
        self.subject_id = subject_id
        super().__init__(f"Source '{source}' unavailable for subject {subject_id}: {message}")


class ConcurrencyError(MIIEngineError):
    def __init__(self, active_run_id: UUID | None) -> None:
        self.active_run_id = active_run_id
        super().__init__(f"Run already in progress: {active_run_id}")


class PersistenceError(MIIEngineError):
    def __init__(self, subject_id: UUID, message: str) -> None:
        self.subject_id = subject_id
        super().__init__(f"Publish failed for subject {subject_id}: {message}")


class RunSupersededError(MIIEngineError):
    def __init__(self, run_id: UUID) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id} no longer holds the run lock")
