"""Append-only play event log backed by Redis.

Each play attempt is stored as a JSON body with a retention TTL and indexed
in a sorted set of pending (not yet aggregated) events, scored by timestamp.
The aggregator reads the pending index and removes events once folded; event
bodies are left to expire on their own.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import ConnectionError, TimeoutError

from shared.models import PlayEvent, TrackMetadata, normalize_region


logger = logging.getLogger(__name__)

MIN_VALID_LISTEN_SECONDS = 30
VALID_LISTEN_TRACK_FRACTION = 0.25
MAX_LISTEN_SECONDS = 3600
DEDUP_WINDOW_SECONDS = 30


def minimum_listen_seconds(track_duration: float) -> float:
    """Seconds a play must last to count as a valid listen."""
    return max(MIN_VALID_LISTEN_SECONDS, VALID_LISTEN_TRACK_FRACTION * track_duration)


def is_valid_listen(listen_duration: float, track_duration: float) -> bool:
    """Classify a play; skips and previews fall below the threshold."""
    return listen_duration >= minimum_listen_seconds(track_duration)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventLog:
    """Redis-backed record of play attempts awaiting aggregation.

    Attributes:
        redis_client: Async Redis client instance
        retention_seconds: Lifetime of an event body, aggregated or not
        key_prefix: Prefix for event-related keys
        dedup_window_seconds: Repeat reports of the same (session, track)
            inside this window are dropped, 0 disables
    """

    def __init__(
        self,
        redis_client: Redis,
        retention_seconds: int = 24 * 60 * 60,
        key_prefix: str = "plays",
        dedup_window_seconds: int = DEDUP_WINDOW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.redis_client = redis_client
        self.retention_seconds = retention_seconds
        self.key_prefix = key_prefix
        self.dedup_window_seconds = dedup_window_seconds
        self.clock = clock

    @property
    def pending_key(self) -> str:
        return f"{self.key_prefix}:pending"

    def event_key(self, event_id: str) -> str:
        return f"{self.key_prefix}:event:{event_id}"

    def dedup_key(self, session_id: str, track_id: str) -> str:
        return f"{self.key_prefix}:dedup:{session_id}:{track_id}"

    async def record_play(
        self,
        track: TrackMetadata,
        listen_duration: float,
        session_id: str,
        region: Optional[str] = None,
        user_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[PlayEvent]:
        """Record a play attempt and classify its validity.

        Args:
            track: Catalog metadata of the played track
            listen_duration: Seconds listened, as reported by the client
            session_id: Playback session identifier
            region: Listener region code, GLOBAL when unknown
            user_id: Listener identity, None for anonymous plays
            occurred_at: Event time, defaults to now

        Returns:
            The stored event, or None when the track is not chart eligible or
            the play repeats one from the same session within the dedup window

        Raises:
            ValueError: If the listen duration is out of range
            ConnectionError: If Redis connection fails
        """
        if listen_duration < 0 or listen_duration > MAX_LISTEN_SECONDS:
            raise ValueError(f"Invalid listen duration: {listen_duration}")

        if not track.chart_eligible:
            logger.debug(f"Skipping play for non chart-eligible track {track.track_id}")
            return None

        if self.dedup_window_seconds and not await self.redis_client.set(
            self.dedup_key(session_id, track.track_id), 1, nx=True, ex=self.dedup_window_seconds
        ):
            logger.debug(f"Dropping repeated play of {track.track_id} in session {session_id}")
            return None

        event = PlayEvent(
            event_id=uuid.uuid4().hex,
            track_id=track.track_id,
            session_id=session_id,
            region=normalize_region(region),
            listen_duration=float(int(listen_duration)),
            is_valid=is_valid_listen(listen_duration, track.duration),
            timestamp=occurred_at or self.clock(),
            user_id=user_id,
        )

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.setex(
                    self.event_key(event.event_id),
                    self.retention_seconds,
                    json.dumps(event.to_dict()),
                )
                await pipe.zadd(self.pending_key, {event.event_id: event.timestamp.timestamp()})
                await pipe.execute()
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to record play for track {track.track_id}: {e}")
            raise

        return event

    async def get_pending_events(
        self,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[PlayEvent]:
        """Load pending events recorded at or before ``until``, oldest first.

        ``offset`` and ``limit`` page through the index. Index entries whose
        bodies have already expired are dropped.
        """
        max_score = until.timestamp() if until else "+inf"
        if limit:
            event_ids = await self.redis_client.zrangebyscore(
                self.pending_key, "-inf", max_score, start=offset, num=limit
            )
        else:
            event_ids = await self.redis_client.zrangebyscore(
                self.pending_key, "-inf", max_score
            )

        if not event_ids:
            return []

        bodies = await self.redis_client.mget([self.event_key(eid) for eid in event_ids])

        events = []
        stale_ids = []
        for event_id, body in zip(event_ids, bodies):
            if body is None:
                stale_ids.append(event_id)
                continue
            try:
                events.append(PlayEvent.from_dict(json.loads(body)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Dropping malformed play event {event_id}: {e}")
                stale_ids.append(event_id)

        if stale_ids:
            await self.redis_client.zrem(self.pending_key, *stale_ids)
            logger.info(f"Dropped {len(stale_ids)} expired or malformed pending events")

        return events

    async def mark_folded(self, event_ids: Iterable[str]) -> int:
        """Remove events from the pending index once aggregated."""
        ids = list(event_ids)
        if not ids:
            return 0
        return await self.redis_client.zrem(self.pending_key, *ids)

    async def pending_count(self) -> int:
        return await self.redis_client.zcard(self.pending_key)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop pending index entries older than the retention window."""
        cutoff = (now or self.clock()) - timedelta(seconds=self.retention_seconds)
        removed = await self.redis_client.zremrangebyscore(
            self.pending_key, "-inf", cutoff.timestamp()
        )
        if removed:
            logger.info(f"Purged {removed} play events past retention")
        return removed
