#!/usr/bin/env python3
"""
Rank Assembly and Trend Classification

This module turns scored candidates into a ranked chart generation: dense
ranks, movement against the previous generation, consecutive days in chart
and best rank seen.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from shared.models import (
    ChartEntry,
    ChartGeneration,
    ChartScope,
    ScoredCandidate,
    TrackMetadata,
    Trend,
)

from .score_calculator import ranking_key


logger = logging.getLogger(__name__)

DEFAULT_CHART_LIMIT = 50
DEFAULT_TREND_THRESHOLD = 5


def classify_trend(
    previous_rank: Optional[int],
    new_rank: int,
    threshold: int = DEFAULT_TREND_THRESHOLD,
) -> Tuple[Trend, int]:
    """
    Classify movement between two ranks.

    Returns:
        Tuple of (trend, rank_delta); rank_delta is positive when moving up
    """
    if previous_rank is None:
        return Trend.NEW, 0

    rank_delta = previous_rank - new_rank
    if rank_delta > threshold:
        return Trend.UP, rank_delta
    if rank_delta < -threshold:
        return Trend.DOWN, rank_delta
    return Trend.STABLE, rank_delta


def consecutive_days(previous: Optional[ChartEntry], chart_day: date) -> int:
    """Days in chart, counting a same-day refresh once and restarting after a gap."""
    if previous is None:
        return 1
    if previous.chart_day == chart_day:
        return previous.days_in_chart
    if previous.chart_day == chart_day - timedelta(days=1):
        return previous.days_in_chart + 1
    return 1


def assemble_chart(
    scope: ChartScope,
    chart_day: date,
    candidates: Sequence[ScoredCandidate],
    generated_at: datetime,
    metadata: Mapping[str, TrackMetadata],
    previous: Optional[ChartGeneration] = None,
    best_ranks: Optional[Mapping[str, int]] = None,
    limit: int = DEFAULT_CHART_LIMIT,
    threshold: int = DEFAULT_TREND_THRESHOLD,
    generation_id: Optional[str] = None,
) -> ChartGeneration:
    """
    Build a new chart generation for a scope.

    Candidates without live catalog metadata are omitted before ranking so the
    published ranks stay dense.

    Args:
        scope: Chart partition
        chart_day: UTC day the chart corresponds to
        candidates: Scored candidates, in any order
        generated_at: Generation timestamp
        metadata: Live catalog metadata keyed by track id
        previous: Currently published generation of the scope, if any
        best_ranks: Stored best rank per track for the scope
        limit: Serving limit
        threshold: Rank movement needed for an up/down trend

    Returns:
        The assembled, validated generation
    """
    best_ranks = best_ranks or {}
    previous_entries: Dict[str, ChartEntry] = {}
    if previous is not None:
        previous_entries = {entry.track_id: entry for entry in previous.entries}

    available = []
    for candidate in candidates:
        if candidate.score <= 0:
            continue
        if candidate.track_id not in metadata:
            logger.warning(f"Omitting {candidate.track_id} from {scope.key}: track metadata unavailable")
            continue
        available.append(candidate)

    ordered = sorted(available, key=ranking_key)[:limit]

    entries: List[ChartEntry] = []
    for rank, candidate in enumerate(ordered, 1):
        prior = previous_entries.get(candidate.track_id)
        previous_rank = prior.rank if prior else None
        trend, rank_delta = classify_trend(previous_rank, rank, threshold)

        known_best = [rank]
        if candidate.track_id in best_ranks:
            known_best.append(int(best_ranks[candidate.track_id]))
        if prior is not None:
            known_best.extend([prior.rank, prior.best_rank])

        entries.append(ChartEntry(
            scope=scope,
            rank=rank,
            chart_day=chart_day,
            track_id=candidate.track_id,
            score=round(candidate.score, 2),
            trend=trend,
            generated_at=generated_at,
            previous_rank=previous_rank,
            rank_delta=rank_delta,
            days_in_chart=consecutive_days(prior, chart_day),
            best_rank=min(known_best),
            track_snapshot=metadata[candidate.track_id].snapshot(),
        ))

    return ChartGeneration(
        generation_id=generation_id or uuid.uuid4().hex,
        scope=scope,
        chart_day=chart_day,
        generated_at=generated_at,
        entries=entries,
    )
