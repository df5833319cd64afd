"""Redis chart cache implementation for published chart generations.

This module provides the ChartCache class, the serving layer of the chart
pipeline. Each refresh writes a complete generation under a fresh id and then
atomically flips the scope's current-generation pointer, so readers always
see either the old or the new generation in full.

Redis keys used:
    charts:generation:{type}:{region}:{id}  -- JSON body of one generation (TTL)
    charts:current:{type}:{region}          -- id of the current generation
    charts:history:{type}:{region}          -- sorted set of generation ids by time
    charts:best:{type}:{region}             -- hash of best rank per track
    charts:best_seen:{type}:{region}        -- sorted set of tracks by last charted time
    charts:scopes                           -- set of scopes with a generation
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import ConnectionError, TimeoutError

from shared.collaborators import CatalogProvider, UrlSigner
from shared.models import (
    ChartEntry,
    ChartGeneration,
    ChartScope,
    ChartType,
    TrackMetadata,
    Trend,
    normalize_region,
)


logger = logging.getLogger(__name__)

MOVER_DIRECTIONS = ("up", "down")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChartCache:
    """Redis-based serving layer for ranked chart generations.

    Attributes:
        redis_client: Async Redis client instance
        entry_ttl: Lifetime in seconds of a chart entry after generation
        best_rank_ttl: Seconds a track keeps its best rank after last charting
        key_prefix: Prefix for chart-related cache keys
        catalog: Provider of live track metadata for display fields
        url_signer: Collaborator producing time-limited cover URLs
    """

    def __init__(
        self,
        redis_host: str = "localhost",
        redis_port: int = 6379,
        redis_db: int = 0,
        redis_password: Optional[str] = None,
        entry_ttl: int = 7 * 24 * 60 * 60,
        best_rank_ttl: int = 90 * 24 * 60 * 60,
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        redis_client: Optional[Redis] = None,
        catalog: Optional[CatalogProvider] = None,
        url_signer: Optional[UrlSigner] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the chart cache.

        Args:
            redis_host: Redis server hostname
            redis_port: Redis server port
            redis_db: Redis database number
            redis_password: Optional Redis password
            entry_ttl: Chart entry time-to-live in seconds
            best_rank_ttl: Best rank retention in seconds
            max_connections: Maximum number of Redis connections
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
            redis_client: Existing client to share instead of opening a new one
            catalog: Live metadata provider for presentation
            url_signer: Cover URL signer for presentation
            clock: Source of the current UTC time
        """
        if redis_client is None:
            redis_client = redis.Redis(
                host=redis_host,
                port=redis_port,
                db=redis_db,
                password=redis_password,
                max_connections=max_connections,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_connect_timeout,
                decode_responses=True,
            )
        self.redis_client: Redis = redis_client
        self.entry_ttl = entry_ttl
        self.best_rank_ttl = best_rank_ttl
        self.key_prefix = "charts"
        self.catalog = catalog
        self.url_signer = url_signer
        self.clock = clock

    def generation_key(self, scope: ChartScope, generation_id: str) -> str:
        return f"{self.key_prefix}:generation:{scope.key}:{generation_id}"

    def current_key(self, scope: ChartScope) -> str:
        return f"{self.key_prefix}:current:{scope.key}"

    def history_key(self, scope: ChartScope) -> str:
        return f"{self.key_prefix}:history:{scope.key}"

    def best_key(self, scope: ChartScope) -> str:
        return f"{self.key_prefix}:best:{scope.key}"

    def best_seen_key(self, scope: ChartScope) -> str:
        return f"{self.key_prefix}:best_seen:{scope.key}"

    @property
    def scopes_key(self) -> str:
        return f"{self.key_prefix}:scopes"

    async def close(self) -> None:
        """Close the Redis connection."""
        await self.redis_client.close()

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy.

        Returns:
            True if Redis is accessible, False otherwise
        """
        try:
            await self.redis_client.ping()
            return True
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def publish_generation(self, generation: ChartGeneration) -> None:
        """Publish a generation and make it current.

        The body is written first; the pointer flip, history index and best
        rank updates then run in one MULTI/EXEC transaction. If anything fails
        before the transaction commits, the previous generation stays current.

        Raises:
            ConnectionError: If Redis connection fails
        """
        scope = generation.scope
        generation_key = self.generation_key(scope, generation.generation_id)
        history_cutoff = (generation.generated_at - timedelta(seconds=self.entry_ttl)).timestamp()

        try:
            await self.redis_client.setex(
                generation_key,
                self.entry_ttl,
                json.dumps(generation.to_dict()),
            )

            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.set(self.current_key(scope), generation.generation_id)
                await pipe.zadd(
                    self.history_key(scope),
                    {generation.generation_id: generation.generated_at.timestamp()},
                )
                await pipe.zremrangebyscore(self.history_key(scope), "-inf", history_cutoff)
                await pipe.sadd(self.scopes_key, scope.key)
                if generation.entries:
                    await pipe.hset(self.best_key(scope), mapping={
                        entry.track_id: entry.best_rank for entry in generation.entries
                    })
                    await pipe.zadd(self.best_seen_key(scope), {
                        entry.track_id: generation.generated_at.timestamp() for entry in generation.entries
                    })
                    await pipe.expire(self.best_key(scope), self.best_rank_ttl)
                    await pipe.expire(self.best_seen_key(scope), self.best_rank_ttl)
                await pipe.execute()

            logger.info(
                f"Published generation {generation.generation_id} for {scope.key} "
                f"with {len(generation.entries)} entries"
            )

        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to publish generation for {scope.key}: {e}")
            raise

    async def get_current_generation(self, scope: ChartScope) -> Optional[ChartGeneration]:
        """Load the generation the scope's pointer currently targets.

        Returns:
            The generation, or None if the scope has no data
        """
        generation_id = await self.redis_client.get(self.current_key(scope))
        if not generation_id:
            return None

        cached_data = await self.redis_client.get(self.generation_key(scope, generation_id))
        if not cached_data:
            logger.info(f"Current generation for {scope.key} has expired")
            return None

        try:
            return ChartGeneration.from_dict(json.loads(cached_data))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Failed to decode generation {generation_id} for {scope.key}: {e}")
            return None

    async def get_live_entries(self, scope: ChartScope) -> List[ChartEntry]:
        """Entries of the current generation still within their TTL."""
        generation = await self.get_current_generation(scope)
        if generation is None:
            return []
        return generation.live_entries(self.clock(), self.entry_ttl)

    async def get_best_ranks(self, scope: ChartScope) -> Dict[str, int]:
        raw = await self.redis_client.hgetall(self.best_key(scope))
        return {track_id: int(rank) for track_id, rank in raw.items()}

    async def get_chart(self, scope: ChartScope, limit: int = 50) -> List[Dict[str, Any]]:
        """Retrieve the current chart of a scope, rank 1 first.

        Args:
            scope: Chart partition
            limit: Maximum number of entries to return

        Returns:
            List of presented chart entries
        """
        entries = await self.get_live_entries(scope)
        limited = entries[:limit] if limit > 0 else entries
        return await self._present(limited)

    async def get_trending_tracks(self, region: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Entries that are new or moving up, biggest gainers first."""
        scope = ChartScope.for_region(region)
        entries = [
            entry for entry in await self.get_live_entries(scope)
            if entry.trend in (Trend.UP, Trend.NEW)
        ]
        entries.sort(key=lambda e: (-e.rank_delta, -e.score, e.rank))
        return await self._present(entries[:limit])

    async def get_top_movers(
        self,
        region: Optional[str] = None,
        limit: int = 20,
        direction: str = "up",
    ) -> List[Dict[str, Any]]:
        """Entries with the largest rank change in one direction.

        Raises:
            ValueError: If direction is not "up" or "down"
        """
        if direction not in MOVER_DIRECTIONS:
            raise ValueError(f"Direction must be one of {MOVER_DIRECTIONS}, got {direction!r}")

        scope = ChartScope.for_region(region)
        entries = await self.get_live_entries(scope)
        if direction == "up":
            movers = [e for e in entries if e.rank_delta > 0]
            movers.sort(key=lambda e: (-e.rank_delta, e.rank))
        else:
            movers = [e for e in entries if e.rank_delta < 0]
            movers.sort(key=lambda e: (e.rank_delta, e.rank))
        return await self._present(movers[:limit])

    async def get_track_history(
        self,
        track_id: str,
        region: Optional[str] = None,
        days: int = 30,
    ) -> List[Dict[str, Any]]:
        """Rank, score and trend of a track across retained generations, oldest first."""
        scope = ChartScope.for_region(region)
        now = self.clock()
        since = (now - timedelta(days=days)).timestamp()

        generation_ids = await self.redis_client.zrangebyscore(self.history_key(scope), since, "+inf")
        if not generation_ids:
            return []

        bodies = await self.redis_client.mget(
            [self.generation_key(scope, gid) for gid in generation_ids]
        )

        history = []
        for body in bodies:
            if not body:
                continue
            try:
                generation = ChartGeneration.from_dict(json.loads(body))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping undecodable generation in {scope.key} history: {e}")
                continue
            for entry in generation.live_entries(now, self.entry_ttl):
                if entry.track_id == track_id:
                    history.append({
                        "rank": entry.rank,
                        "score": entry.score,
                        "trend": entry.trend.value,
                        "chart_day": entry.chart_day.isoformat(),
                        "generated_at": entry.generated_at.isoformat(),
                    })
                    break
        return history

    async def _present(self, entries: List[ChartEntry]) -> List[Dict[str, Any]]:
        """Render entries with live metadata and signed cover URLs.

        Catalog failures fall back to the stored snapshot; signer failures
        leave the cover URL empty. Neither fails the read.
        """
        if not entries:
            return []

        live: Dict[str, TrackMetadata] = {}
        if self.catalog is not None:
            try:
                live = await self.catalog.get_tracks([entry.track_id for entry in entries])
            except Exception as e:
                logger.warning(f"Catalog lookup failed, serving snapshots: {e}")

        display = []
        for entry in entries:
            track = live.get(entry.track_id)
            fields = track.snapshot() if track else dict(entry.track_snapshot)
            display.append(fields)

        cover_urls = await asyncio.gather(
            *(self._sign_cover(fields.get("cover_ref")) for fields in display)
        )

        return [
            {
                "rank": entry.rank,
                "track": {
                    "id": entry.track_id,
                    "name": fields.get("name"),
                    "owner": fields.get("owner"),
                    "genre": fields.get("genre"),
                    "duration": fields.get("duration"),
                    "cover_url": cover_url,
                },
                "score": entry.score,
                "trend": entry.trend.value,
                "previous_rank": entry.previous_rank,
                "rank_delta": entry.rank_delta,
                "days_in_chart": entry.days_in_chart,
                "best_rank": entry.best_rank,
                "chart_day": entry.chart_day.isoformat(),
                "last_updated": entry.generated_at.isoformat(),
            }
            for entry, fields, cover_url in zip(entries, display, cover_urls)
        ]

    async def _sign_cover(self, reference: Optional[str]) -> Optional[str]:
        if not reference or self.url_signer is None:
            return None
        try:
            return await self.url_signer.sign_url(reference)
        except Exception as e:
            logger.warning(f"Failed to sign cover URL {reference}: {e}")
            return None

    async def list_scopes(
        self,
        chart_type: Optional[str] = None,
        region: Optional[str] = None,
    ) -> List[ChartScope]:
        """Scopes with published data, optionally filtered."""
        keys = await self.redis_client.smembers(self.scopes_key)
        scopes = []
        for key in sorted(keys):
            scope = ChartScope.from_key(key)
            if chart_type and scope.chart_type != ChartType(chart_type):
                continue
            if region and scope.region != normalize_region(region):
                continue
            scopes.append(scope)
        return scopes

    async def clear_cache(
        self,
        chart_type: Optional[str] = None,
        region: Optional[str] = None,
    ) -> int:
        """Delete every generation of the matching scopes.

        Returns:
            Number of keys that were deleted
        """
        deleted = 0
        for scope in await self.list_scopes(chart_type, region):
            generation_ids = await self.redis_client.zrange(self.history_key(scope), 0, -1)
            keys = [self.generation_key(scope, gid) for gid in generation_ids]
            keys += [
                self.current_key(scope),
                self.history_key(scope),
                self.best_key(scope),
                self.best_seen_key(scope),
            ]

            deleted += await self.redis_client.delete(*keys)
            await self.redis_client.srem(self.scopes_key, scope.key)

        logger.info(f"Cleared {deleted} chart keys (type={chart_type}, region={region})")
        return deleted

    async def inspect_cache(
        self,
        chart_type: Optional[str] = None,
        region: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Describe the current generation of each matching scope."""
        now = self.clock()
        report = []
        for scope in await self.list_scopes(chart_type, region):
            generation = await self.get_current_generation(scope)
            generation_count = await self.redis_client.zcard(self.history_key(scope))
            if generation is None:
                report.append({
                    "scope": scope.key,
                    "generation_id": None,
                    "generation_count": generation_count,
                    "entries": [],
                })
                continue

            scores = [entry.score for entry in generation.entries]
            report.append({
                "scope": scope.key,
                "generation_id": generation.generation_id,
                "chart_day": generation.chart_day.isoformat(),
                "generated_at": generation.generated_at.isoformat(),
                "expired": generation.is_expired(now, self.entry_ttl),
                "entry_count": len(generation.entries),
                "average_score": sum(scores) / len(scores) if scores else 0.0,
                "generation_count": generation_count,
                "entries": [entry.to_dict() for entry in generation.entries[:limit]],
            })
        return report

    async def prune_expired_generations(self, now: Optional[datetime] = None) -> int:
        """Drop history index entries older than the entry TTL."""
        cutoff = ((now or self.clock()) - timedelta(seconds=self.entry_ttl)).timestamp()
        removed = 0
        for scope in await self.list_scopes():
            removed += await self.redis_client.zremrangebyscore(self.history_key(scope), "-inf", cutoff)
        if removed:
            logger.info(f"Pruned {removed} expired chart generations from history")
        return removed

    async def prune_stale_best_ranks(self, now: Optional[datetime] = None) -> int:
        """Forget best ranks of tracks that have not charted within the retention."""
        cutoff = ((now or self.clock()) - timedelta(seconds=self.best_rank_ttl)).timestamp()
        removed = 0
        for scope in await self.list_scopes():
            stale = await self.redis_client.zrangebyscore(self.best_seen_key(scope), "-inf", cutoff)
            if not stale:
                continue
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.hdel(self.best_key(scope), *stale)
                await pipe.zrem(self.best_seen_key(scope), *stale)
                await pipe.execute()
            removed += len(stale)
        if removed:
            logger.info(f"Pruned {removed} stale best ranks")
        return removed

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get generation counts, active scopes and freshness.

        Raises:
            ConnectionError: If Redis connection fails
        """
        try:
            now = self.clock()
            scopes = await self.list_scopes()
            generation_count = 0
            live_entries = 0
            last_update: Optional[datetime] = None

            for scope in scopes:
                generation_count += await self.redis_client.zcard(self.history_key(scope))
                generation = await self.get_current_generation(scope)
                if generation is None:
                    continue
                live_entries += len(generation.live_entries(now, self.entry_ttl))
                if last_update is None or generation.generated_at > last_update:
                    last_update = generation.generated_at

            return {
                "active_scopes": len(scopes),
                "active_countries": len([s for s in scopes if s.chart_type is ChartType.COUNTRY]),
                "generation_count": generation_count,
                "live_entries": live_entries,
                "last_update": last_update.isoformat() if last_update else None,
            }

        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to get cache stats: {e}")
            raise
