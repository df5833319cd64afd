"""Shared modules for the chart ranking pipeline."""

from .models import (
    GLOBAL_REGION,
    ChartEntry,
    ChartGeneration,
    ChartScope,
    ChartType,
    DailyScopeStats,
    PlayEvent,
    ScoredCandidate,
    TrackMetadata,
    Trend,
    normalize_region,
)

__all__ = [
    "GLOBAL_REGION",
    "ChartEntry",
    "ChartGeneration",
    "ChartScope",
    "ChartType",
    "DailyScopeStats",
    "PlayEvent",
    "ScoredCandidate",
    "TrackMetadata",
    "Trend",
    "normalize_region",
]
