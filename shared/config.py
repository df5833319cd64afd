"""Configuration for the chart ranking engine.

Values default to the production cadence and retention tiers and can be
overridden from the environment with ``load_config_from_env``.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


DEFAULT_DECAY_WEIGHTS: Tuple[float, ...] = (1.0, 0.7, 0.5, 0.3, 0.1)


@dataclass
class ChartEngineConfig:
    """Configuration parameters for aggregation, scoring, ranking and caching."""

    # Redis connection
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    max_connections: int = 20
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0

    # Collaborators
    catalog_service_url: str = "http://catalog:8080"
    url_signer_url: str = "http://media-signer:8080"
    collaborator_timeout: float = 5.0

    # Scoring
    score_window_days: int = 5
    decay_weights: Tuple[float, ...] = field(default=DEFAULT_DECAY_WEIGHTS)
    candidate_ceiling: int = 200

    # Ranking
    chart_limit: int = 50
    trend_threshold: int = 5

    # Active country discovery
    active_region_lookback_days: int = 7
    active_region_min_valid_listens: int = 100
    active_region_min_tracks: int = 10
    max_active_regions: int = 20
    rollup_global: bool = True

    # Retention tiers (seconds)
    event_retention_seconds: int = 24 * 60 * 60
    stats_retention_seconds: int = 90 * 24 * 60 * 60
    chart_entry_ttl_seconds: int = 7 * 24 * 60 * 60
    best_rank_ttl_seconds: int = 90 * 24 * 60 * 60

    # Refresh execution
    refresh_timeout_seconds: float = 120.0
    refresh_lock_timeout_seconds: int = 300
    max_parallel_refreshes: int = 4

    # Ingest and aggregation
    dedup_window_seconds: int = 30
    aggregation_batch_size: int = 5000
    aggregation_lock_timeout_seconds: int = 15 * 60

    # Health thresholds
    max_pending_events: int = 10000

    # Scheduler cadence (seconds)
    aggregation_interval_seconds: int = 15 * 60
    refresh_interval_seconds: int = 15 * 60
    cleanup_interval_seconds: int = 60 * 60
    health_check_interval_seconds: int = 60 * 60

    # Service
    log_level: str = "INFO"
    prometheus_port: int = 8000

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.score_window_days < 1:
            raise ValueError("Score window must cover at least one day")
        if not self.decay_weights or any(w < 0 for w in self.decay_weights):
            raise ValueError("Decay weights must be non-empty and non-negative")
        if self.chart_limit < 1:
            raise ValueError("Chart limit must be at least 1")
        if self.candidate_ceiling < self.chart_limit:
            raise ValueError("Candidate ceiling must not be below the chart limit")
        if self.trend_threshold < 0:
            raise ValueError("Trend threshold must be non-negative")
        if self.max_parallel_refreshes < 1:
            raise ValueError("At least one parallel refresh is required")
        if self.refresh_timeout_seconds <= 0:
            raise ValueError("Refresh timeout must be positive")
        if self.refresh_lock_timeout_seconds <= self.refresh_timeout_seconds:
            raise ValueError("Refresh lock timeout must exceed the refresh timeout")
        if self.aggregation_batch_size < 1:
            raise ValueError("Aggregation batch size must be at least 1")
        if self.dedup_window_seconds < 0:
            raise ValueError("Dedup window must be non-negative")
        self.decay_weights = tuple(float(w) for w in self.decay_weights)


def _parse_weights(raw: Optional[str]) -> Tuple[float, ...]:
    if not raw:
        return DEFAULT_DECAY_WEIGHTS
    return tuple(float(part) for part in raw.split(",") if part.strip())


def load_config_from_env() -> ChartEngineConfig:
    """Build the engine configuration from environment variables."""
    return ChartEngineConfig(
        redis_host=os.getenv("REDIS_HOST", "localhost"),
        redis_port=int(os.getenv("REDIS_PORT", "6379")),
        redis_db=int(os.getenv("REDIS_DB", "0")),
        redis_password=os.getenv("REDIS_PASSWORD") or None,
        catalog_service_url=os.getenv("CATALOG_SERVICE_URL", "http://catalog:8080"),
        url_signer_url=os.getenv("URL_SIGNER_URL", "http://media-signer:8080"),
        score_window_days=int(os.getenv("SCORE_WINDOW_DAYS", "5")),
        decay_weights=_parse_weights(os.getenv("DECAY_WEIGHTS")),
        candidate_ceiling=int(os.getenv("CANDIDATE_CEILING", "200")),
        chart_limit=int(os.getenv("CHART_LIMIT", "50")),
        trend_threshold=int(os.getenv("TREND_THRESHOLD", "5")),
        refresh_timeout_seconds=float(os.getenv("REFRESH_TIMEOUT_SECONDS", "120")),
        refresh_lock_timeout_seconds=int(os.getenv("REFRESH_LOCK_TIMEOUT_SECONDS", "300")),
        max_parallel_refreshes=int(os.getenv("MAX_PARALLEL_REFRESHES", "4")),
        dedup_window_seconds=int(os.getenv("DEDUP_WINDOW_SECONDS", "30")),
        aggregation_batch_size=int(os.getenv("AGGREGATION_BATCH_SIZE", "5000")),
        max_pending_events=int(os.getenv("MAX_PENDING_EVENTS", "10000")),
        aggregation_interval_seconds=int(os.getenv("AGGREGATION_INTERVAL_SECONDS", "900")),
        refresh_interval_seconds=int(os.getenv("REFRESH_INTERVAL_SECONDS", "900")),
        cleanup_interval_seconds=int(os.getenv("CLEANUP_INTERVAL_SECONDS", "3600")),
        health_check_interval_seconds=int(os.getenv("HEALTH_CHECK_INTERVAL_SECONDS", "3600")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        prometheus_port=int(os.getenv("PROMETHEUS_PORT", "8000")),
    )
