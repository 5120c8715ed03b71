"""Tests for rank assignment after the barrier."""

from uuid import UUID

import pytest

from mii_engine.engine.ranking import RankEntry, assign_ranks

ID_1 = UUID(int=1)
ID_2 = UUID(int=2)
ID_3 = UUID(int=3)
ID_4 = UUID(int=4)


class TestAssignRanks:
    def test_sorted_by_score_descending(self) -> None:
        ranks = assign_ranks([
            RankEntry(ID_1, 50), RankEntry(ID_2, 90), RankEntry(ID_3, 70),
        ])
        assert ranks == {ID_2: 1, ID_3: 2, ID_1: 3}

    def test_equal_scores_get_consecutive_distinct_ranks(self) -> None:
        ranks = assign_ranks([RankEntry(ID_2, 66), RankEntry(ID_1, 66)])
        assert ranks == {ID_1: 1, ID_2: 2}

    def test_ranks_contiguous_across_ties(self) -> None:
        ranks = assign_ranks([
            RankEntry(ID_4, 80), RankEntry(ID_3, 80), RankEntry(ID_2, 80), RankEntry(ID_1, 10),
        ])
        assert sorted(ranks.values()) == [1, 2, 3, 4]
        assert ranks[ID_2] == 1
        assert ranks[ID_1] == 4

    def test_ineligible_subjects_unranked(self) -> None:
        ranks = assign_ranks([
            RankEntry(ID_1, 99, eligible=False), RankEntry(ID_2, 50), RankEntry(ID_3, 40),
        ])
        assert ranks == {ID_1: None, ID_2: 1, ID_3: 2}

    def test_rank_non_increasing_with_score(self) -> None:
        entries = [RankEntry(UUID(int=i), (i * 37) % 101) for i in range(1, 30)]
        ranks = assign_ranks(entries)
        ordered = sorted(entries, key=lambda e: ranks[e.subject_id])
        scores = [e.score for e in ordered]
        assert scores == sorted(scores, reverse=True)
        assert sorted(ranks.values()) == list(range(1, 30))

    def test_empty(self) -> None:
        assert assign_ranks([]) == {}

    def test_duplicate_subject_rejected(self) -> None:
        with pytest.raises(ValueError, match="only once"):
            assign_ranks([RankEntry(ID_1, 10), RankEntry(ID_1, 20)])
