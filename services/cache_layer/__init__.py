"""Redis serving layer for published chart generations."""

from .chart_cache import ChartCache

__all__ = ["ChartCache"]
