"""Chart scoring, ranking and refresh orchestration."""

from .chart_engine import (
    AggregationInProgressError,
    ChartEngine,
    ChartRefreshError,
    RefreshInProgressError,
    RefreshResult,
)
from .rank_assembler import assemble_chart, classify_trend
from .score_calculator import ScoreCalculator, compute_window_scores

__all__ = [
    "AggregationInProgressError",
    "ChartEngine",
    "ChartRefreshError",
    "RefreshInProgressError",
    "RefreshResult",
    "ScoreCalculator",
    "assemble_chart",
    "classify_trend",
    "compute_window_scores",
]
