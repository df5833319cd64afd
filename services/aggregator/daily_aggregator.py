#!/usr/bin/env python3
"""
Daily Aggregator

This module folds pending play events into per-(track, day, region) summary
rows. Folding is a pure function over an event batch; the store applies the
resulting deltas to Redis with increments, so repeated passes accumulate.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from shared.collaborators import CatalogProvider
from shared.models import GLOBAL_REGION, DailyScopeStats, PlayEvent, TrackMetadata
from services.event_log.event_log import EventLog


logger = logging.getLogger(__name__)

StatsKey = Tuple[str, date, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StatsDelta:
    """Increment to apply to one DailyScopeStats row."""

    track_id: str
    day: date
    region: str
    listen_count: int = 0
    valid_listen_count: int = 0
    total_listen_duration: float = 0.0
    listener_keys: Set[str] = field(default_factory=set)
    event_ids: List[str] = field(default_factory=list)

    def add(self, event: PlayEvent) -> None:
        self.listen_count += 1
        if event.is_valid:
            self.valid_listen_count += 1
        self.total_listen_duration += event.listen_duration
        self.listener_keys.add(event.listener_key)
        self.event_ids.append(event.event_id)

    @property
    def average_listen_duration(self) -> float:
        if self.listen_count == 0:
            return 0.0
        return self.total_listen_duration / self.listen_count


@dataclass
class AggregationResult:
    """Outcome of one aggregation pass."""

    pass_id: str
    started_at: datetime
    events_read: int = 0
    events_folded: int = 0
    events_discarded: int = 0
    groups_folded: int = 0
    groups_failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass_id": self.pass_id,
            "started_at": self.started_at.isoformat(),
            "events_read": self.events_read,
            "events_folded": self.events_folded,
            "events_discarded": self.events_discarded,
            "groups_folded": self.groups_folded,
            "groups_failed": self.groups_failed,
        }


def fold_events(
    events: Iterable[PlayEvent],
    rollup_global: bool = True,
) -> Dict[StatsKey, StatsDelta]:
    """
    Group events by (track, day, region) and sum their counters.

    Args:
        events: Play events to fold
        rollup_global: Also fold regional events into the GLOBAL region

    Returns:
        Mapping of row identity to the delta for that row
    """
    deltas: Dict[StatsKey, StatsDelta] = {}

    for event in events:
        regions = [event.region]
        if rollup_global and event.region != GLOBAL_REGION:
            regions.append(GLOBAL_REGION)

        for region in regions:
            key = (event.track_id, event.day, region)
            if key not in deltas:
                deltas[key] = StatsDelta(track_id=event.track_id, day=event.day, region=region)
            deltas[key].add(event)

    return deltas


class DailyStatsStore:
    """
    Redis storage for DailyScopeStats rows.

    Keys:
        stats:daily:{day}:{region}:{track}  -- hash with the row counters
        stats:hll:{day}:{region}:{track}    -- HyperLogLog of listener keys
        stats:index:{day}:{region}          -- set of track ids with a row
        stats:regions:{day}                 -- set of regions with rows
    """

    def __init__(
        self,
        redis_client: Redis,
        retention_seconds: int = 90 * 24 * 60 * 60,
        key_prefix: str = "stats",
    ) -> None:
        self.redis_client = redis_client
        self.retention_seconds = retention_seconds
        self.key_prefix = key_prefix

    def row_key(self, day: date, region: str, track_id: str) -> str:
        return f"{self.key_prefix}:daily:{day.isoformat()}:{region}:{track_id}"

    def hll_key(self, day: date, region: str, track_id: str) -> str:
        return f"{self.key_prefix}:hll:{day.isoformat()}:{region}:{track_id}"

    def index_key(self, day: date, region: str) -> str:
        return f"{self.key_prefix}:index:{day.isoformat()}:{region}"

    def regions_key(self, day: date) -> str:
        return f"{self.key_prefix}:regions:{day.isoformat()}"

    async def apply_delta(self, delta: StatsDelta, track: TrackMetadata) -> None:
        """
        Upsert a row: counters by increment, snapshot by overwrite.

        Unique listeners are estimated with a HyperLogLog; its cardinality only
        grows, so the stored value behaves as a running maximum across passes.
        The derived fields are written after the counters commit. A failure
        there is logged, not raised; the next fold of the row rewrites them.
        """
        if delta.valid_listen_count > delta.listen_count:
            raise ValueError("Valid listen count cannot exceed listen count")

        row_key = self.row_key(delta.day, delta.region, delta.track_id)
        hll_key = self.hll_key(delta.day, delta.region, delta.track_id)
        index_key = self.index_key(delta.day, delta.region)
        regions_key = self.regions_key(delta.day)

        async with self.redis_client.pipeline(transaction=True) as pipe:
            await pipe.hincrby(row_key, "listen_count", delta.listen_count)
            await pipe.hincrby(row_key, "valid_listen_count", delta.valid_listen_count)
            await pipe.hincrbyfloat(row_key, "total_listen_duration", delta.total_listen_duration)
            await pipe.pfadd(hll_key, *sorted(delta.listener_keys))
            await pipe.pfcount(hll_key)
            await pipe.hset(row_key, mapping={
                "track_id": delta.track_id,
                "day": delta.day.isoformat(),
                "region": delta.region,
                "track_snapshot": json.dumps(track.snapshot()),
            })
            await pipe.sadd(index_key, delta.track_id)
            await pipe.sadd(regions_key, delta.region)
            for key in (row_key, hll_key, index_key, regions_key):
                await pipe.expire(key, self.retention_seconds)
            results = await pipe.execute()

        listen_count = int(results[0])
        total_duration = float(results[2])
        unique_listeners = int(results[4])

        try:
            await self.redis_client.hset(row_key, mapping={
                "unique_listeners": unique_listeners,
                "average_listen_duration": total_duration / listen_count if listen_count else 0.0,
            })
        except RedisError as e:
            logger.warning(f"Counters committed but derived fields not updated for {row_key}: {e}")

    def _parse_row(self, data: Dict[str, str]) -> DailyScopeStats:
        listen_count = int(data.get("listen_count", 0))
        total_duration = float(data.get("total_listen_duration", 0.0))
        if "average_listen_duration" in data:
            average = float(data["average_listen_duration"])
        else:
            average = total_duration / listen_count if listen_count else 0.0
        return DailyScopeStats(
            track_id=data["track_id"],
            day=date.fromisoformat(data["day"]),
            region=data["region"],
            listen_count=listen_count,
            valid_listen_count=int(data.get("valid_listen_count", 0)),
            unique_listeners=int(data.get("unique_listeners", 0)),
            total_listen_duration=total_duration,
            average_listen_duration=average,
            track_snapshot=json.loads(data.get("track_snapshot") or "{}"),
        )

    async def get_row(self, day: date, region: str, track_id: str) -> Optional[DailyScopeStats]:
        data = await self.redis_client.hgetall(self.row_key(day, region, track_id))
        if not data:
            return None
        return self._parse_row(data)

    async def get_rows_for_window(self, region: str, days: Iterable[date]) -> List[DailyScopeStats]:
        """Load every row of ``region`` for the given days; bad rows are skipped."""
        rows = []
        for day in days:
            track_ids = sorted(await self.redis_client.smembers(self.index_key(day, region)))
            if not track_ids:
                continue

            async with self.redis_client.pipeline(transaction=False) as pipe:
                for track_id in track_ids:
                    await pipe.hgetall(self.row_key(day, region, track_id))
                raw_rows = await pipe.execute()

            for track_id, data in zip(track_ids, raw_rows):
                if not data:
                    continue
                try:
                    rows.append(self._parse_row(data))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed stats row {track_id}/{day}/{region}: {e}")

        return rows

    async def count_rows(self, day: date) -> int:
        regions = sorted(await self.redis_client.smembers(self.regions_key(day)))
        if not regions:
            return 0

        async with self.redis_client.pipeline(transaction=False) as pipe:
            for region in regions:
                await pipe.scard(self.index_key(day, region))
            counts = await pipe.execute()

        return sum(int(count) for count in counts)

    async def count_tracks(self, day: date, region: str = GLOBAL_REGION) -> int:
        """Distinct chart-eligible tracks with a row for ``day`` in ``region``."""
        return int(await self.redis_client.scard(self.index_key(day, region)))

    async def active_regions(
        self,
        today: date,
        lookback_days: int = 7,
        min_valid_listens: int = 100,
        min_tracks: int = 10,
        limit: int = 20,
    ) -> List[str]:
        """
        Regions with enough recent activity to warrant a country chart.

        Returns:
            Region codes ordered by valid listens, busiest first
        """
        days = [today - timedelta(days=offset) for offset in range(lookback_days)]

        regions: Set[str] = set()
        for day in days:
            regions.update(await self.redis_client.smembers(self.regions_key(day)))
        regions.discard(GLOBAL_REGION)

        activity = []
        for region in sorted(regions):
            rows = await self.get_rows_for_window(region, days)
            valid_listens = sum(row.valid_listen_count for row in rows)
            tracks = {row.track_id for row in rows if row.valid_listen_count > 0}
            if valid_listens >= min_valid_listens and len(tracks) >= min_tracks:
                activity.append((valid_listens, region))

        activity.sort(key=lambda item: (-item[0], item[1]))
        return [region for _, region in activity[:limit]]


class DailyAggregator:
    """
    Folds the pending event backlog into daily statistics.

    The backlog is read in batches of ``batch_size`` events. A failure on one
    (track, day, region) group is logged and skipped; its events stay pending
    and are retried on the next pass.
    """

    def __init__(
        self,
        event_log: EventLog,
        stats_store: DailyStatsStore,
        catalog: CatalogProvider,
        rollup_global: bool = True,
        batch_size: int = 5000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if batch_size < 1:
            raise ValueError("Batch size must be at least 1")
        self.event_log = event_log
        self.stats_store = stats_store
        self.catalog = catalog
        self.rollup_global = rollup_global
        self.batch_size = batch_size
        self.clock = clock
        self.logger = structlog.get_logger(__name__)
        self.last_result: Optional[AggregationResult] = None

    async def run_aggregation_pass(self, now: Optional[datetime] = None) -> AggregationResult:
        """
        Fold every pending event recorded up to ``now``.

        Returns:
            Summary of the pass
        """
        now = now or self.clock()
        result = AggregationResult(pass_id=uuid.uuid4().hex[:12], started_at=now)
        log = self.logger.bind(pass_id=result.pass_id)

        # Failed events stay in the pending index ahead of later batches
        offset = 0
        batches = 0
        while True:
            events = await self.event_log.get_pending_events(
                until=now, limit=self.batch_size, offset=offset
            )
            if not events:
                break
            batches += 1
            offset += await self._fold_batch(events, result, log)
            if len(events) < self.batch_size:
                break

        self.last_result = result
        if result.events_read == 0:
            log.info("No pending play events to aggregate")
            return result

        log.info(
            "Aggregation pass complete",
            batches=batches,
            events_read=result.events_read,
            events_folded=result.events_folded,
            groups_folded=result.groups_folded,
            groups_failed=result.groups_failed,
        )
        return result

    async def _fold_batch(self, events: List[PlayEvent], result: AggregationResult, log) -> int:
        """Fold one batch into ``result``; returns how many events stay pending."""
        result.events_read += len(events)

        deltas = fold_events(events, rollup_global=self.rollup_global)
        tracks = await self.catalog.get_tracks({delta.track_id for delta in deltas.values()})

        discarded: Set[str] = set()
        failed: Set[str] = set()

        for delta in deltas.values():
            track = tracks.get(delta.track_id)
            if track is None or not track.chart_eligible:
                discarded.update(delta.event_ids)
                continue

            try:
                await self.stats_store.apply_delta(delta, track)
                result.groups_folded += 1
            except Exception as e:
                result.groups_failed += 1
                failed.update(delta.event_ids)
                log.error(
                    "Failed to aggregate stats group",
                    track_id=delta.track_id,
                    day=delta.day.isoformat(),
                    region=delta.region,
                    error=str(e),
                )

        all_ids = {event.event_id for event in events}
        folded_ids = all_ids - failed
        await self.event_log.mark_folded(sorted(folded_ids))

        batch_discarded = len(discarded - failed)
        result.events_discarded += batch_discarded
        result.events_folded += len(folded_ids) - batch_discarded
        return len(failed)
