#!/usr/bin/env python3
"""
Chart Score Calculation

This module implements the weighted-decay popularity score. Each day in the
trailing window contributes its valid listens multiplied by a weight chosen
by the day's calendar offset from today, so a missing day contributes nothing
instead of shifting the weights of older days.
"""

import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set

from shared.collaborators import CatalogProvider
from shared.config import DEFAULT_DECAY_WEIGHTS
from shared.models import ChartScope, DailyScopeStats, ScoredCandidate

from services.aggregator.daily_aggregator import DailyStatsStore


logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 5
DEFAULT_CANDIDATE_CEILING = 200


def window_days(today: date, window: int = DEFAULT_WINDOW_DAYS) -> List[date]:
    """Days of the trailing window, today first."""
    return [today - timedelta(days=offset) for offset in range(window)]


def decay_weight(offset: int, weights: Sequence[float] = DEFAULT_DECAY_WEIGHTS) -> float:
    """Weight for a day ``offset`` days before today; 0 outside the table."""
    if 0 <= offset < len(weights):
        return weights[offset]
    return 0.0


def ranking_key(candidate: ScoredCandidate):
    """Score descending, then window valid listens descending, then track id."""
    return (-candidate.score, -candidate.total_valid_listens, candidate.track_id)


def compute_window_scores(
    rows: Iterable[DailyScopeStats],
    today: date,
    weights: Sequence[float] = DEFAULT_DECAY_WEIGHTS,
    eligible_track_ids: Optional[Set[str]] = None,
) -> List[ScoredCandidate]:
    """
    Score every track with rows in the window.

    Args:
        rows: Daily stats rows of a single scope
        today: Reference day, offset 0
        weights: Decay weights keyed by calendar offset
        eligible_track_ids: If given, rows of other tracks are ignored

    Returns:
        Candidates with a positive score, in ranking order
    """
    scores: Dict[str, float] = defaultdict(float)
    valid_totals: Dict[str, int] = defaultdict(int)
    active_days: Dict[str, int] = defaultdict(int)
    latest: Dict[str, DailyScopeStats] = {}

    for row in rows:
        if eligible_track_ids is not None and row.track_id not in eligible_track_ids:
            continue
        try:
            offset = (today - row.day).days
            scores[row.track_id] += row.valid_listen_count * decay_weight(offset, weights)
            valid_totals[row.track_id] += row.valid_listen_count
            if row.valid_listen_count > 0:
                active_days[row.track_id] += 1
            current = latest.get(row.track_id)
            if current is None or row.day > current.day:
                latest[row.track_id] = row
        except (TypeError, AttributeError) as e:
            logger.warning(f"Skipping unscorable stats row for {getattr(row, 'track_id', '?')}: {e}")

    candidates = [
        ScoredCandidate(
            track_id=track_id,
            score=score,
            total_valid_listens=valid_totals[track_id],
            days_with_listens=active_days[track_id],
            track_snapshot=dict(latest[track_id].track_snapshot),
        )
        for track_id, score in scores.items()
        if score > 0
    ]
    candidates.sort(key=ranking_key)
    return candidates


class ScoreCalculator:
    """
    Reads the trailing window of a scope and produces ranked candidates.

    Candidates are capped at ``candidate_ceiling`` as a throughput bound; the
    serving limit is enforced by the rank assembler.
    """

    def __init__(
        self,
        stats_store: DailyStatsStore,
        catalog: CatalogProvider,
        window: int = DEFAULT_WINDOW_DAYS,
        weights: Sequence[float] = DEFAULT_DECAY_WEIGHTS,
        candidate_ceiling: int = DEFAULT_CANDIDATE_CEILING,
    ) -> None:
        self.stats_store = stats_store
        self.catalog = catalog
        self.window = window
        self.weights = tuple(weights)
        self.candidate_ceiling = candidate_ceiling

    async def calculate(self, scope: ChartScope, today: date) -> List[ScoredCandidate]:
        """
        Compute candidates for a scope.

        Args:
            scope: Chart partition to score
            today: Chart day

        Returns:
            Up to ``candidate_ceiling`` candidates in ranking order
        """
        rows = await self.stats_store.get_rows_for_window(scope.region, window_days(today, self.window))
        if not rows:
            logger.info(f"No stats rows in window for {scope.key}")
            return []

        tracks = await self.catalog.get_tracks({row.track_id for row in rows})
        eligible = {track_id for track_id, track in tracks.items() if track.chart_eligible}

        candidates = compute_window_scores(rows, today, self.weights, eligible)
        logger.info(f"Calculated scores for {len(candidates)} tracks in {scope.key}")
        return candidates[:self.candidate_ceiling]
