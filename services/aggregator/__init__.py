"""Daily aggregation of play events into per-scope statistics."""

from .daily_aggregator import (
    AggregationResult,
    DailyAggregator,
    DailyStatsStore,
    StatsDelta,
    fold_events,
)

__all__ = [
    "AggregationResult",
    "DailyAggregator",
    "DailyStatsStore",
    "StatsDelta",
    "fold_events",
]
