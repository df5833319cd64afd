#!/usr/bin/env python3
"""
Chart Engine

High-level coordinator of the chart pipeline: aggregation passes, per-scope
refreshes (score, rank, publish) and the read and administrative operations
exposed to the service layer.

Refreshes of different scopes run in parallel. Refreshes of the same scope
are serialized with a Redis lock, and each refresh runs under a time budget;
an abandoned refresh never touches the currently published generation.
Aggregation passes are serialized across processes with a Redis lock of their
own.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
import structlog
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from shared.collaborators import CatalogProvider, UrlSigner
from shared.config import ChartEngineConfig
from shared.models import ChartScope, ChartType, PlayEvent
from services.aggregator.daily_aggregator import (
    AggregationResult,
    DailyAggregator,
    DailyStatsStore,
)
from services.cache_layer.chart_cache import ChartCache
from services.event_log.event_log import EventLog

from .rank_assembler import assemble_chart
from .score_calculator import ScoreCalculator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChartRefreshError(Exception):
    """Raised when an administrative refresh does not publish."""


class RefreshInProgressError(ChartRefreshError):
    """Raised when another refresh of the same scope holds the lock."""


class AggregationInProgressError(Exception):
    """Raised when another aggregation pass holds the lock."""


@dataclass
class RefreshResult:
    """Outcome of one scope refresh."""

    scope: ChartScope
    status: str
    generation_id: Optional[str] = None
    entry_count: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None

    PUBLISHED = "published"
    IN_FLIGHT = "in_flight"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.key,
            "status": self.status,
            "generation_id": self.generation_id,
            "entry_count": self.entry_count,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
        }


class ChartEngine:
    """
    Coordinates aggregation, scoring, ranking and publishing.

    This class provides the library boundary of the chart pipeline; the
    scheduler and the admin endpoints call into it.
    """

    def __init__(
        self,
        redis_client: Redis,
        event_log: EventLog,
        stats_store: DailyStatsStore,
        aggregator: DailyAggregator,
        score_calculator: ScoreCalculator,
        chart_cache: ChartCache,
        catalog: CatalogProvider,
        config: Optional[ChartEngineConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.redis_client = redis_client
        self.event_log = event_log
        self.stats_store = stats_store
        self.aggregator = aggregator
        self.score_calculator = score_calculator
        self.chart_cache = chart_cache
        self.catalog = catalog
        self.config = config or ChartEngineConfig()
        self.clock = clock
        self.logger = structlog.get_logger(__name__)
        self._refresh_slots = asyncio.Semaphore(self.config.max_parallel_refreshes)

    @classmethod
    def from_config(
        cls,
        config: ChartEngineConfig,
        catalog: CatalogProvider,
        url_signer: Optional[UrlSigner] = None,
    ) -> "ChartEngine":
        """Wire every component against one shared Redis client."""
        redis_client = redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
            decode_responses=True,
        )
        event_log = EventLog(
            redis_client,
            retention_seconds=config.event_retention_seconds,
            dedup_window_seconds=config.dedup_window_seconds,
        )
        stats_store = DailyStatsStore(redis_client, retention_seconds=config.stats_retention_seconds)
        aggregator = DailyAggregator(
            event_log,
            stats_store,
            catalog,
            rollup_global=config.rollup_global,
            batch_size=config.aggregation_batch_size,
        )
        score_calculator = ScoreCalculator(
            stats_store,
            catalog,
            window=config.score_window_days,
            weights=config.decay_weights,
            candidate_ceiling=config.candidate_ceiling,
        )
        chart_cache = ChartCache(
            redis_client=redis_client,
            entry_ttl=config.chart_entry_ttl_seconds,
            best_rank_ttl=config.best_rank_ttl_seconds,
            catalog=catalog,
            url_signer=url_signer,
        )
        return cls(
            redis_client=redis_client,
            event_log=event_log,
            stats_store=stats_store,
            aggregator=aggregator,
            score_calculator=score_calculator,
            chart_cache=chart_cache,
            catalog=catalog,
            config=config,
        )

    async def close(self) -> None:
        await self.redis_client.close()

    def lock_key(self, scope: ChartScope) -> str:
        return f"charts:lock:{scope.key}"

    @property
    def aggregation_lock_key(self) -> str:
        return "charts:lock:aggregation"

    async def record_play(
        self,
        track_id: str,
        listen_duration: float,
        session_id: str,
        region: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[PlayEvent]:
        """
        Record a play attempt reported by playback.

        Returns:
            The stored event, or None when the track is not chart eligible or
            the play repeats a recent one from the same session

        Raises:
            ValueError: If the track is unknown or the duration is out of range
        """
        tracks = await self.catalog.get_tracks([track_id])
        track = tracks.get(track_id)
        if track is None:
            raise ValueError(f"Unknown track {track_id}")
        return await self.event_log.record_play(
            track,
            listen_duration,
            session_id,
            region=region,
            user_id=user_id,
            occurred_at=self.clock(),
        )

    async def run_aggregation_pass(self) -> AggregationResult:
        """
        Fold the pending play events into daily statistics.

        Raises:
            AggregationInProgressError: If another pass holds the aggregation lock
        """
        lock = self.redis_client.lock(
            self.aggregation_lock_key, timeout=self.config.aggregation_lock_timeout_seconds
        )
        if not await lock.acquire(blocking=False):
            self.logger.info("Aggregation pass already in flight, skipping")
            raise AggregationInProgressError("Aggregation pass already in progress")

        try:
            return await self.aggregator.run_aggregation_pass(now=self.clock())
        finally:
            try:
                await lock.release()
            except LockError as e:
                self.logger.warning("Failed to release aggregation lock", error=str(e))

    async def refresh_chart(self, scope: ChartScope, raise_errors: bool = False) -> RefreshResult:
        """
        Recompute and publish one scope.

        A refresh waits for a parallel refresh slot before taking the scope lock.

        Args:
            scope: Chart partition to refresh
            raise_errors: Raise instead of returning a non-published result

        Returns:
            Result describing whether a generation was published
        """
        async with self._refresh_slots:
            return await self._refresh_locked(scope, raise_errors)

    async def _refresh_locked(self, scope: ChartScope, raise_errors: bool) -> RefreshResult:
        log = self.logger.bind(scope=scope.key)
        started = time.monotonic()

        lock = self.redis_client.lock(
            self.lock_key(scope), timeout=self.config.refresh_lock_timeout_seconds
        )
        acquired = await lock.acquire(blocking=False)
        if not acquired:
            log.info("Refresh already in flight, skipping")
            if raise_errors:
                raise RefreshInProgressError(f"Refresh of {scope.key} already in progress")
            return RefreshResult(scope=scope, status=RefreshResult.IN_FLIGHT)

        try:
            result = await asyncio.wait_for(
                self._compute_and_publish(scope, lock),
                timeout=self.config.refresh_timeout_seconds,
            )
            result.duration_seconds = time.monotonic() - started
            log.info(
                "Chart refreshed",
                generation_id=result.generation_id,
                entries=result.entry_count,
                duration=round(result.duration_seconds, 3),
            )
            return result

        except asyncio.TimeoutError:
            log.error("Chart refresh timed out", budget=self.config.refresh_timeout_seconds)
            if raise_errors:
                raise ChartRefreshError(f"Refresh of {scope.key} timed out")
            return RefreshResult(
                scope=scope,
                status=RefreshResult.TIMED_OUT,
                duration_seconds=time.monotonic() - started,
            )

        except Exception as e:
            log.error("Chart refresh failed", error=str(e))
            if raise_errors:
                raise ChartRefreshError(f"Refresh of {scope.key} failed: {e}") from e
            return RefreshResult(
                scope=scope,
                status=RefreshResult.FAILED,
                duration_seconds=time.monotonic() - started,
                error=str(e),
            )

        finally:
            try:
                await lock.release()
            except LockError as e:
                log.warning("Failed to release refresh lock", error=str(e))

    async def _compute_and_publish(self, scope: ChartScope, lock: Lock) -> RefreshResult:
        now = self.clock()
        chart_day = now.date()

        candidates = await self.score_calculator.calculate(scope, chart_day)
        previous = await self.chart_cache.get_current_generation(scope)
        if previous is not None and previous.is_expired(now, self.chart_cache.entry_ttl):
            previous = None

        metadata = await self.catalog.get_tracks([c.track_id for c in candidates])
        best_ranks = await self.chart_cache.get_best_ranks(scope)

        generation = assemble_chart(
            scope=scope,
            chart_day=chart_day,
            candidates=candidates,
            generated_at=now,
            metadata=metadata,
            previous=previous,
            best_ranks=best_ranks,
            limit=self.config.chart_limit,
            threshold=self.config.trend_threshold,
            generation_id=uuid.uuid4().hex,
        )

        # Another refresh may own the scope once our lock has expired
        if not await lock.owned():
            raise ChartRefreshError(f"Lost refresh lock of {scope.key} before publishing")
        await self.chart_cache.publish_generation(generation)

        return RefreshResult(
            scope=scope,
            status=RefreshResult.PUBLISHED,
            generation_id=generation.generation_id,
            entry_count=len(generation.entries),
        )

    async def discover_scopes(self) -> List[ChartScope]:
        """The global scope plus every currently active country."""
        regions = await self.stats_store.active_regions(
            self.clock().date(),
            lookback_days=self.config.active_region_lookback_days,
            min_valid_listens=self.config.active_region_min_valid_listens,
            min_tracks=self.config.active_region_min_tracks,
            limit=self.config.max_active_regions,
        )
        return [ChartScope.for_region(None)] + [
            ChartScope(ChartType.COUNTRY, region) for region in regions
        ]

    async def refresh_all_scopes(self) -> List[RefreshResult]:
        """Refresh the global chart and every active country chart in parallel."""
        scopes = await self.discover_scopes()
        results = await asyncio.gather(*(self.refresh_chart(scope) for scope in scopes))

        published = sum(1 for r in results if r.status == RefreshResult.PUBLISHED)
        self.logger.info(
            "Chart refresh cycle complete",
            scopes=len(scopes),
            published=published,
            entries=sum(r.entry_count for r in results),
        )
        return list(results)

    async def force_refresh(self, scope: ChartScope) -> RefreshResult:
        """Administrative refresh; errors surface to the caller."""
        return await self.refresh_chart(scope, raise_errors=True)

    async def run_cleanup(self) -> Dict[str, int]:
        """Apply the retention tiers that Redis TTLs do not cover."""
        now = self.clock()
        purged_events = await self.event_log.purge_expired(now)
        pruned_generations = await self.chart_cache.prune_expired_generations(now)
        pruned_best_ranks = await self.chart_cache.prune_stale_best_ranks(now)
        self.logger.info(
            "Cleanup complete",
            purged_events=purged_events,
            pruned_generations=pruned_generations,
            pruned_best_ranks=pruned_best_ranks,
        )
        return {
            "purged_events": purged_events,
            "pruned_generations": pruned_generations,
            "pruned_best_ranks": pruned_best_ranks,
        }

    async def get_chart(
        self,
        chart_type: str = "global",
        region: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        if region is None and ChartType(chart_type) is ChartType.GLOBAL:
            scope = ChartScope.for_region(None)
        else:
            scope = ChartScope(ChartType(chart_type), region)
        return await self.chart_cache.get_chart(scope, limit)

    async def get_trending_tracks(self, region: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.chart_cache.get_trending_tracks(region, limit)

    async def get_top_movers(
        self,
        region: Optional[str] = None,
        limit: int = 20,
        direction: str = "up",
    ) -> List[Dict[str, Any]]:
        return await self.chart_cache.get_top_movers(region, limit, direction)

    async def get_track_history(
        self,
        track_id: str,
        region: Optional[str] = None,
        days: int = 30,
    ) -> List[Dict[str, Any]]:
        return await self.chart_cache.get_track_history(track_id, region, days)

    async def clear_cache(self, chart_type: Optional[str] = None, region: Optional[str] = None) -> int:
        return await self.chart_cache.clear_cache(chart_type, region)

    async def inspect_cache(
        self,
        chart_type: Optional[str] = None,
        region: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        return await self.chart_cache.inspect_cache(chart_type, region, limit)

    async def get_operational_stats(self) -> Dict[str, Any]:
        """Generation counts, active scopes, backlog size, freshness and health."""
        now = self.clock()
        cache_stats = await self.chart_cache.get_cache_stats()
        pending = await self.event_log.pending_count()
        daily_rows = await self.stats_store.count_rows(now.date())
        eligible_tracks = await self.stats_store.count_tracks(now.date())
        last_pass = self.aggregator.last_result

        stats = {
            **cache_stats,
            "pending_play_events": pending,
            "daily_stats_rows": daily_rows,
            "chart_eligible_tracks": eligible_tracks,
            "last_aggregation": last_pass.to_dict() if last_pass else None,
            "generated_at": now.isoformat(),
        }
        issues = self._health_issues(stats, now)
        stats["status"] = "degraded" if issues else "healthy"
        stats["health_issues"] = issues
        return stats

    def _health_issues(self, stats: Dict[str, Any], now: datetime) -> List[str]:
        issues = []

        pending = stats["pending_play_events"]
        if pending > self.config.max_pending_events:
            issues.append(
                f"High pending play event backlog: {pending} > {self.config.max_pending_events}"
            )

        last_update = stats.get("last_update")
        if last_update is None or datetime.fromisoformat(last_update).date() != now.date():
            issues.append("No chart generation published today")

        if stats["chart_eligible_tracks"] == 0:
            issues.append("No chart eligible tracks with plays today")

        return issues

    async def run_health_check(self) -> List[str]:
        """Evaluate operational health and log every issue found."""
        stats = await self.get_operational_stats()
        issues = stats["health_issues"]
        for issue in issues:
            self.logger.warning("Chart system health issue", issue=issue)
        if not issues:
            self.logger.info(
                "Chart system healthy",
                pending_play_events=stats["pending_play_events"],
                chart_eligible_tracks=stats["chart_eligible_tracks"],
            )
        return issues
