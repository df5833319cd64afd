#!/usr/bin/env python3
"""
Tests for rank assembly and trend classification.

These tests cover dense ranking, trend thresholds, days-in-chart accounting
and best-rank tracking across generations.
"""

import pytest
from datetime import datetime, timedelta, timezone

from services.chart_processor.rank_assembler import (
    assemble_chart,
    classify_trend,
    consecutive_days,
)
from shared.models import (
    ChartEntry,
    ChartGeneration,
    ChartScope,
    ScoredCandidate,
    TrackMetadata,
    Trend,
)


NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()
SCOPE = ChartScope.for_region(None)


def candidate(track_id, score, listens=None):
    return ScoredCandidate(
        track_id=track_id,
        score=score,
        total_valid_listens=listens if listens is not None else int(score),
        days_with_listens=1,
    )


def catalog_for(*track_ids):
    return {
        track_id: TrackMetadata(track_id=track_id, name=f"Song {track_id}", owner="artist", duration=180)
        for track_id in track_ids
    }


def previous_generation(ranks, chart_day=TODAY - timedelta(days=1), days_in_chart=1, best=None):
    """Build a prior generation where ``ranks`` lists track ids in rank order."""
    best = best or {}
    generated_at = NOW - timedelta(days=(TODAY - chart_day).days)
    entries = [
        ChartEntry(
            scope=SCOPE,
            rank=rank,
            chart_day=chart_day,
            track_id=track_id,
            score=float(100 - rank),
            trend=Trend.STABLE,
            generated_at=generated_at,
            days_in_chart=days_in_chart,
            best_rank=best.get(track_id, rank),
        )
        for rank, track_id in enumerate(ranks, 1)
    ]
    return ChartGeneration(
        generation_id="prev",
        scope=SCOPE,
        chart_day=chart_day,
        generated_at=generated_at,
        entries=entries,
    )


class TestClassifyTrend:
    """Test the movement thresholds."""

    def test_new_entry(self):
        assert classify_trend(None, 4) == (Trend.NEW, 0)

    def test_small_move_is_stable(self):
        assert classify_trend(3, 1) == (Trend.STABLE, 2)

    def test_threshold_itself_is_stable(self):
        assert classify_trend(11, 6) == (Trend.STABLE, 5)
        assert classify_trend(6, 11) == (Trend.STABLE, -5)

    def test_big_climb_is_up(self):
        assert classify_trend(10, 2) == (Trend.UP, 8)

    def test_big_fall_is_down(self):
        assert classify_trend(2, 12) == (Trend.DOWN, -10)

    def test_custom_threshold(self):
        assert classify_trend(3, 1, threshold=1) == (Trend.UP, 2)


class TestConsecutiveDays:
    """Test days-in-chart accounting."""

    def test_first_appearance(self):
        assert consecutive_days(None, TODAY) == 1

    def test_next_day_increments(self):
        prior = previous_generation(["t1"], days_in_chart=3).entries[0]
        assert consecutive_days(prior, TODAY) == 4

    def test_same_day_refresh_keeps_count(self):
        prior = previous_generation(["t1"], chart_day=TODAY, days_in_chart=3).entries[0]
        assert consecutive_days(prior, TODAY) == 3

    def test_gap_restarts(self):
        prior = previous_generation(["t1"], chart_day=TODAY - timedelta(days=3), days_in_chart=9).entries[0]
        assert consecutive_days(prior, TODAY) == 1


class TestAssembleChart:
    """Test building complete generations."""

    def test_dense_ranks_and_monotonic_scores(self):
        candidates = [candidate("b", 20.0), candidate("a", 30.0), candidate("c", 10.0)]

        generation = assemble_chart(SCOPE, TODAY, candidates, NOW, catalog_for("a", "b", "c"))

        assert [e.rank for e in generation.entries] == [1, 2, 3]
        assert [e.track_id for e in generation.entries] == ["a", "b", "c"]
        scores = [e.score for e in generation.entries]
        assert scores == sorted(scores, reverse=True)
        assert all(e.trend is Trend.NEW for e in generation.entries)

    def test_missing_metadata_omitted_and_ranks_stay_dense(self):
        candidates = [candidate("a", 30.0), candidate("deleted", 25.0), candidate("c", 10.0)]

        generation = assemble_chart(SCOPE, TODAY, candidates, NOW, catalog_for("a", "c"))

        assert [(e.rank, e.track_id) for e in generation.entries] == [(1, "a"), (2, "c")]

    def test_non_positive_scores_omitted(self):
        generation = assemble_chart(
            SCOPE, TODAY, [candidate("a", 0.0), candidate("b", 1.0)], NOW, catalog_for("a", "b"),
        )
        assert [e.track_id for e in generation.entries] == ["b"]

    def test_limit(self):
        ids = [f"t{i:02d}" for i in range(60)]
        candidates = [candidate(track_id, 100.0 - i) for i, track_id in enumerate(ids)]

        generation = assemble_chart(SCOPE, TODAY, candidates, NOW, catalog_for(*ids), limit=50)

        assert len(generation.entries) == 50
        assert generation.entries[-1].track_id == "t49"

    def test_small_climb_is_stable(self):
        previous = previous_generation(["x", "y", "t1"])
        candidates = [candidate("t1", 50.0), candidate("x", 40.0), candidate("y", 30.0)]

        generation = assemble_chart(
            SCOPE, TODAY, candidates, NOW, catalog_for("t1", "x", "y"), previous=previous,
        )

        top = generation.entries[0]
        assert (top.track_id, top.previous_rank, top.rank_delta, top.trend) == ("t1", 3, 2, Trend.STABLE)

    def test_big_climb_and_fall(self):
        ranks = [f"f{i}" for i in range(1, 10)] + ["climber"]
        previous = previous_generation(["faller"] + ranks)
        # climber was 11th, faller was 1st
        candidates = [candidate("climber", 100.0)]
        candidates += [candidate(f"f{i}", 90.0 - i) for i in range(1, 10)]
        candidates += [candidate("faller", 1.0)]

        generation = assemble_chart(
            SCOPE, TODAY, candidates, NOW, catalog_for("climber", "faller", *ranks[:-1]),
            previous=previous,
        )

        by_id = {e.track_id: e for e in generation.entries}
        assert by_id["climber"].rank == 1
        assert by_id["climber"].rank_delta == 10
        assert by_id["climber"].trend is Trend.UP
        assert by_id["faller"].rank == 11
        assert by_id["faller"].rank_delta == -10
        assert by_id["faller"].trend is Trend.DOWN

    def test_best_rank_never_regresses(self):
        previous = previous_generation(["x", "t1"], best={"t1": 1})
        candidates = [candidate("x", 50.0), candidate("y", 40.0), candidate("t1", 30.0)]

        generation = assemble_chart(
            SCOPE, TODAY, candidates, NOW, catalog_for("t1", "x", "y"),
            previous=previous, best_ranks={"y": 7},
        )

        by_id = {e.track_id: e for e in generation.entries}
        assert by_id["t1"].rank == 3
        assert by_id["t1"].best_rank == 1
        assert by_id["y"].best_rank == 2
        assert by_id["x"].best_rank == 1

    def test_stored_best_rank_used_for_returning_track(self):
        generation = assemble_chart(
            SCOPE, TODAY, [candidate("a", 5.0), candidate("t1", 3.0)], NOW, catalog_for("a", "t1"),
            best_ranks={"t1": 1},
        )
        entry = generation.entries[1]
        assert entry.trend is Trend.NEW
        assert entry.best_rank == 1

    def test_days_in_chart_carries_across_generations(self):
        previous = previous_generation(["t1"], days_in_chart=4)

        generation = assemble_chart(
            SCOPE, TODAY, [candidate("t1", 3.0), candidate("t2", 2.0)], NOW, catalog_for("t1", "t2"),
            previous=previous,
        )

        assert [e.days_in_chart for e in generation.entries] == [5, 1]

    def test_snapshot_from_live_metadata(self):
        generation = assemble_chart(SCOPE, TODAY, [candidate("a", 5.0)], NOW, catalog_for("a"))
        assert generation.entries[0].track_snapshot["name"] == "Song a"

    def test_scores_rounded(self):
        generation = assemble_chart(SCOPE, TODAY, [candidate("a", 26.004999)], NOW, catalog_for("a"))
        assert generation.entries[0].score == 26.0

    def test_identical_input_identical_output(self):
        previous = previous_generation(["b", "a"])
        candidates = [candidate("a", 10.0, 5), candidate("b", 10.0, 5), candidate("c", 9.0)]
        metadata = catalog_for("a", "b", "c")

        first = assemble_chart(SCOPE, TODAY, candidates, NOW, metadata, previous=previous, generation_id="g")
        second = assemble_chart(
            SCOPE, TODAY, list(reversed(candidates)), NOW, metadata, previous=previous, generation_id="g",
        )

        assert first.to_dict() == second.to_dict()

    def test_empty_candidates_produce_empty_generation(self):
        generation = assemble_chart(SCOPE, TODAY, [], NOW, {})

        assert generation.entries == []
        assert generation.scope == SCOPE

    def test_entries_carry_scope_and_day(self):
        scope = ChartScope.for_region("br")
        generation = assemble_chart(scope, TODAY, [candidate("a", 1.0)], NOW, catalog_for("a"))

        entry = generation.entries[0]
        assert entry.scope == scope
        assert entry.chart_day == TODAY
        assert entry.generated_at == NOW


class TestChartGenerationValidation:
    """Test generation invariants."""

    def test_gap_in_ranks_rejected(self):
        generation = previous_generation(["a", "b"])
        generation.entries[1].rank = 3

        with pytest.raises(ValueError):
            ChartGeneration(
                generation_id="bad",
                scope=SCOPE,
                chart_day=TODAY,
                generated_at=NOW,
                entries=generation.entries,
            )
