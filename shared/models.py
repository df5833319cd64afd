"""Shared data models for the chart ranking pipeline.

This module contains the core data structures used throughout the pipeline
for representing play events, daily statistics, and published chart entries.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import asdict, dataclass, field


GLOBAL_REGION = "GLOBAL"
MIN_CHART_ELIGIBLE_DURATION = 30


def normalize_region(region: Optional[str]) -> str:
    """Upper-case a region code, mapping empty values to GLOBAL."""
    if not region:
        return GLOBAL_REGION
    return region.strip().upper() or GLOBAL_REGION


class Trend(str, Enum):
    """Rank-over-rank movement of a chart entry."""

    NEW = "new"
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class ChartType(str, Enum):
    GLOBAL = "global"
    COUNTRY = "country"


@dataclass(frozen=True)
class ChartScope:
    """A (chart type, region) pair identifying one chart partition.

    Attributes:
        chart_type: Global or country chart
        region: Region code, GLOBAL for the worldwide chart
    """

    chart_type: ChartType
    region: str

    def __post_init__(self) -> None:
        """Validate and normalize scope data."""
        object.__setattr__(self, "chart_type", ChartType(self.chart_type))
        object.__setattr__(self, "region", normalize_region(self.region))
        if self.chart_type is ChartType.GLOBAL and self.region != GLOBAL_REGION:
            raise ValueError("Global charts must use the GLOBAL region")
        if self.chart_type is ChartType.COUNTRY and self.region == GLOBAL_REGION:
            raise ValueError("Country charts require a country code")

    @classmethod
    def for_region(cls, region: Optional[str]) -> "ChartScope":
        region = normalize_region(region)
        if region == GLOBAL_REGION:
            return cls(ChartType.GLOBAL, GLOBAL_REGION)
        return cls(ChartType.COUNTRY, region)

    @classmethod
    def from_key(cls, key: str) -> "ChartScope":
        chart_type, region = key.split(":", 1)
        return cls(ChartType(chart_type), region)

    @property
    def key(self) -> str:
        return f"{self.chart_type.value}:{self.region}"


@dataclass
class TrackMetadata:
    """Catalog view of a track, as served by the catalog provider.

    Attributes:
        track_id: Catalog identifier of the track
        name: Display name
        owner: Identifier of the owning artist
        genre: Genre label, if any
        duration: Track length in seconds
        is_public: Whether the track is publicly listed
        cover_ref: Storage reference for the cover art, signed on read
    """

    track_id: str
    name: str
    owner: Optional[str] = None
    genre: Optional[str] = None
    duration: float = 0.0
    is_public: bool = True
    cover_ref: Optional[str] = None

    @property
    def chart_eligible(self) -> bool:
        return self.is_public and self.duration > MIN_CHART_ELIGIBLE_DURATION

    def snapshot(self) -> Dict[str, Any]:
        """Denormalized fields stored alongside stats and chart entries."""
        return {
            "name": self.name,
            "owner": self.owner,
            "genre": self.genre,
            "duration": self.duration,
            "cover_ref": self.cover_ref,
        }


@dataclass
class PlayEvent:
    """Represents a single play attempt reported by playback.

    Attributes:
        event_id: Unique identifier of the event
        track_id: Track that was played
        session_id: Session identifier, the dedup key for anonymous listeners
        region: Region code of the listener or GLOBAL
        listen_duration: Seconds actually listened
        is_valid: Whether the play passed the minimum-duration rule
        timestamp: UTC time the play was recorded
        user_id: Listener identity, None for anonymous plays
    """

    event_id: str
    track_id: str
    session_id: str
    region: str
    listen_duration: float
    is_valid: bool
    timestamp: datetime
    user_id: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate play event data."""
        if self.listen_duration < 0:
            raise ValueError("Listen duration must be non-negative")
        if not self.session_id:
            raise ValueError("Session id is required")
        self.region = normalize_region(self.region)

    @property
    def listener_key(self) -> str:
        """Identity used for unique-listener estimation."""
        if self.user_id:
            return f"user:{self.user_id}"
        return f"session:{self.session_id}"

    @property
    def day(self) -> date:
        """UTC calendar day of the event; naive timestamps are taken as UTC."""
        if self.timestamp.tzinfo is None:
            return self.timestamp.date()
        return self.timestamp.astimezone(timezone.utc).date()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlayEvent":
        data = dict(data)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass
class DailyScopeStats:
    """Per-(track, day, region) summary of play events.

    Attributes:
        track_id: Track the row describes
        day: UTC calendar day
        region: Region code or GLOBAL
        listen_count: Number of play attempts
        valid_listen_count: Number of plays that passed the validity rule
        unique_listeners: Approximate distinct listeners
        total_listen_duration: Sum of listened seconds
        average_listen_duration: Mean listened seconds per play
        track_snapshot: Track metadata captured at aggregation time
    """

    track_id: str
    day: date
    region: str
    listen_count: int = 0
    valid_listen_count: int = 0
    unique_listeners: int = 0
    total_listen_duration: float = 0.0
    average_listen_duration: float = 0.0
    track_snapshot: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate daily stats data."""
        if self.listen_count < 0 or self.valid_listen_count < 0:
            raise ValueError("Listen counts must be non-negative")
        if self.valid_listen_count > self.listen_count:
            raise ValueError("Valid listen count cannot exceed listen count")


@dataclass
class ScoredCandidate:
    """A track with its decayed window score, ready for ranking."""

    track_id: str
    score: float
    total_valid_listens: int
    days_with_listens: int
    track_snapshot: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChartEntry:
    """Represents one ranked track within a published chart generation.

    Attributes:
        scope: Chart partition the entry belongs to
        rank: Dense rank, 1 is the top of the chart
        chart_day: UTC day the chart corresponds to
        track_id: Ranked track
        score: Decayed popularity score
        trend: Movement classification against the previous generation
        previous_rank: Rank in the previous generation, None if absent
        rank_delta: previous_rank - rank, 0 for new entries
        days_in_chart: Consecutive chart days the track has been present
        best_rank: Best rank the track has held in this scope
        generated_at: UTC time the generation was computed
        track_snapshot: Track metadata captured at generation time
    """

    scope: ChartScope
    rank: int
    chart_day: date
    track_id: str
    score: float
    trend: Trend
    generated_at: datetime
    previous_rank: Optional[int] = None
    rank_delta: int = 0
    days_in_chart: int = 1
    best_rank: Optional[int] = None
    track_snapshot: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate chart entry data."""
        self.trend = Trend(self.trend)
        if self.rank < 1:
            raise ValueError("Rank must be positive")
        if self.score < 0:
            raise ValueError("Score must be non-negative")
        if self.best_rank is None:
            self.best_rank = self.rank
        if self.best_rank > self.rank:
            raise ValueError("Best rank cannot be worse than the current rank")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "track_id": self.track_id,
            "score": self.score,
            "trend": self.trend.value,
            "previous_rank": self.previous_rank,
            "rank_delta": self.rank_delta,
            "days_in_chart": self.days_in_chart,
            "best_rank": self.best_rank,
            "track_snapshot": self.track_snapshot,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        scope: ChartScope,
        chart_day: date,
        generated_at: datetime,
    ) -> "ChartEntry":
        return cls(
            scope=scope,
            chart_day=chart_day,
            generated_at=generated_at,
            rank=data["rank"],
            track_id=data["track_id"],
            score=data["score"],
            trend=Trend(data["trend"]),
            previous_rank=data.get("previous_rank"),
            rank_delta=data.get("rank_delta", 0),
            days_in_chart=data.get("days_in_chart", 1),
            best_rank=data.get("best_rank"),
            track_snapshot=data.get("track_snapshot") or {},
        )


@dataclass
class ChartGeneration:
    """One complete, atomically published set of entries for a scope.

    Attributes:
        generation_id: Fresh identifier, the target of the current pointer
        scope: Chart partition
        chart_day: UTC day the chart corresponds to
        generated_at: UTC time the generation was computed
        entries: Ranked entries, rank 1 first
    """

    generation_id: str
    scope: ChartScope
    chart_day: date
    generated_at: datetime
    entries: List[ChartEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate dense ranks and monotonic scores."""
        ranks = [entry.rank for entry in self.entries]
        if ranks != list(range(1, len(self.entries) + 1)):
            raise ValueError("Ranks must form a dense sequence starting at 1")
        for higher, lower in zip(self.entries, self.entries[1:]):
            if lower.score > higher.score:
                raise ValueError("Score must not increase as rank increases")
        for entry in self.entries:
            if entry.scope != self.scope:
                raise ValueError("Entry scope does not match generation scope")

    def is_expired(self, now: datetime, ttl_seconds: int) -> bool:
        return (now - self.generated_at).total_seconds() >= ttl_seconds

    def live_entries(self, now: datetime, ttl_seconds: int) -> List[ChartEntry]:
        """Entries still inside their time-to-live at ``now``."""
        return [
            entry for entry in self.entries
            if (now - entry.generated_at).total_seconds() < ttl_seconds
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "scope": self.scope.key,
            "chart_day": self.chart_day.isoformat(),
            "generated_at": self.generated_at.isoformat(),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChartGeneration":
        scope = ChartScope.from_key(data["scope"])
        chart_day = date.fromisoformat(data["chart_day"])
        generated_at = datetime.fromisoformat(data["generated_at"])
        return cls(
            generation_id=data["generation_id"],
            scope=scope,
            chart_day=chart_day,
            generated_at=generated_at,
            entries=[
                ChartEntry.from_dict(item, scope, chart_day, generated_at)
                for item in data.get("entries", [])
            ],
        )
