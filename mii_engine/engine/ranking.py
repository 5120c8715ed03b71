"""Rank assigner - cross-subject ordering, run only after the barrier.

Eligible subjects are sorted by score descending, ties broken by subject id
ascending, and numbered 1..N with no gaps and no shared ranks. Ineligible
subjects keep rank None.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class RankEntry:
    subject_id: UUID
    score: int
    eligible: bool = True


def assign_ranks(entries: Iterable[RankEntry]) -> dict[UUID, int | None]:
    entries = list(entries)
    ids = [e.subject_id for e in entries]
    if len(ids) != len(set(ids)):
        raise ValueError("Each subject may appear only once in a ranking.")

    ranks: dict[UUID, int | None] = {e.subject_id: None for e in entries}
    eligible = sorted(
        (e for e in entries if e.eligible),
        key=lambda e: (-e.score, e.subject_id),
    )
    for position, entry in enumerate(eligible, start=1):
        ranks[entry.subject_id] = position
    return ranks
