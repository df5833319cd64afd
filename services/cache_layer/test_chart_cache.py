"""Unit tests for the Redis chart cache.

This module contains tests for the ChartCache class, including generation
publishing, TTL filtering, presentation fallbacks and cache administration.
"""

import json
import pytest
from datetime import datetime, timedelta, timezone
from typing import Dict
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError

from conftest import MockAsyncContextManager
from services.cache_layer.chart_cache import ChartCache
from shared.collaborators import StaticCatalogProvider, UrlSigner
from shared.models import (
    ChartEntry,
    ChartGeneration,
    ChartScope,
    TrackMetadata,
    Trend,
)


NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
GLOBAL = ChartScope.for_region(None)


def make_generation(
    scope: ChartScope = GLOBAL,
    generated_at: datetime = NOW,
    generation_id: str = "gen-1",
    moves=None,
) -> ChartGeneration:
    """Generation of four tracks; ``moves`` maps track id to (previous_rank, trend)."""
    moves = moves or {}
    entries = []
    for rank, track_id in enumerate(["t1", "t2", "t3", "t4"], 1):
        previous_rank, trend = moves.get(track_id, (None, Trend.NEW))
        entries.append(ChartEntry(
            scope=scope,
            rank=rank,
            chart_day=generated_at.date(),
            track_id=track_id,
            score=float(50 - rank * 10),
            trend=trend,
            generated_at=generated_at,
            previous_rank=previous_rank,
            rank_delta=(previous_rank - rank) if previous_rank else 0,
            best_rank=min(rank, previous_rank or rank),
            track_snapshot={"name": f"Stored {track_id}", "cover_ref": f"covers/{track_id}.jpg"},
        ))
    return ChartGeneration(
        generation_id=generation_id,
        scope=scope,
        chart_day=generated_at.date(),
        generated_at=generated_at,
        entries=entries,
    )


def serve(mock_redis: AsyncMock, values: Dict[str, str]) -> None:
    """Back GET calls with a dict of key -> value."""
    mock_redis.get.side_effect = lambda key: values.get(key)


class FakeSigner(UrlSigner):
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)

    async def sign_url(self, reference: str) -> str:
        if reference in self.fail_on:
            raise RuntimeError("signer unavailable")
        return f"https://cdn.example.com/{reference}?sig=abc"


@pytest.fixture
def catalog():
    return StaticCatalogProvider([
        TrackMetadata(track_id=f"t{i}", name=f"Live t{i}", owner="artist", duration=200,
                      cover_ref=f"covers/t{i}.jpg")
        for i in range(1, 5)
    ])


@pytest.fixture
async def chart_cache(catalog):
    """Create a ChartCache instance with mocked Redis client."""
    with patch("services.cache_layer.chart_cache.redis.Redis") as mock_redis_class:
        mock_redis = AsyncMock()
        mock_redis_class.return_value = mock_redis

        mock_pipeline = AsyncMock()
        mock_redis.pipeline = MagicMock(return_value=MockAsyncContextManager(mock_pipeline))

        cache = ChartCache(
            redis_host="localhost",
            redis_port=6379,
            catalog=catalog,
            url_signer=FakeSigner(),
            clock=lambda: NOW,
        )

        yield cache, mock_redis, mock_pipeline

        await cache.close()


class TestChartCacheInitialization:
    """Test ChartCache initialization and configuration."""

    def test_init_with_defaults(self):
        """Test initialization with default parameters."""
        with patch("services.cache_layer.chart_cache.redis.Redis") as mock_redis:
            cache = ChartCache()

            mock_redis.assert_called_once_with(
                host="localhost",
                port=6379,
                db=0,
                password=None,
                max_connections=20,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
                decode_responses=True,
            )
            assert cache.entry_ttl == 7 * 24 * 60 * 60
            assert cache.key_prefix == "charts"

    def test_shared_client_is_reused(self):
        """Test that an injected client skips opening a connection."""
        client = AsyncMock()
        with patch("services.cache_layer.chart_cache.redis.Redis") as mock_redis:
            cache = ChartCache(redis_client=client, entry_ttl=60)

            mock_redis.assert_not_called()
            assert cache.redis_client is client
            assert cache.entry_ttl == 60

    def test_key_layout(self):
        cache = ChartCache(redis_client=AsyncMock())
        scope = ChartScope.for_region("de")

        assert cache.generation_key(scope, "abc") == "charts:generation:country:DE:abc"
        assert cache.current_key(scope) == "charts:current:country:DE"
        assert cache.history_key(scope) == "charts:history:country:DE"
        assert cache.best_key(scope) == "charts:best:country:DE"


class TestHealthCheck:
    """Test Redis health check functionality."""

    @pytest.mark.asyncio
    async def test_health_check_success(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.ping.return_value = True

        assert await cache.health_check() is True
        mock_redis.ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_health_check_failure(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.ping.side_effect = ConnectionError("Connection failed")

        assert await cache.health_check() is False


class TestPublishGeneration:
    """Test atomic generation publishing."""

    @pytest.mark.asyncio
    async def test_publish_writes_body_then_flips_pointer(self, chart_cache):
        cache, mock_redis, mock_pipeline = chart_cache
        generation = make_generation()

        await cache.publish_generation(generation)

        mock_redis.setex.assert_called_once()
        key, ttl, body = mock_redis.setex.call_args.args
        assert key == "charts:generation:global:GLOBAL:gen-1"
        assert ttl == cache.entry_ttl
        assert json.loads(body)["generation_id"] == "gen-1"

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        mock_pipeline.set.assert_called_once_with("charts:current:global:GLOBAL", "gen-1")
        mock_pipeline.zadd.assert_any_call(
            "charts:history:global:GLOBAL", {"gen-1": NOW.timestamp()},
        )
        mock_pipeline.sadd.assert_called_once_with("charts:scopes", "global:GLOBAL")
        mock_pipeline.hset.assert_called_once_with(
            "charts:best:global:GLOBAL", mapping={"t1": 1, "t2": 2, "t3": 3, "t4": 4},
        )
        mock_pipeline.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_publish_refreshes_best_rank_expiry(self, chart_cache):
        cache, _, mock_pipeline = chart_cache

        await cache.publish_generation(make_generation())

        mock_pipeline.zadd.assert_any_call(
            "charts:best_seen:global:GLOBAL",
            {track_id: NOW.timestamp() for track_id in ("t1", "t2", "t3", "t4")},
        )
        mock_pipeline.expire.assert_any_call("charts:best:global:GLOBAL", cache.best_rank_ttl)
        mock_pipeline.expire.assert_any_call("charts:best_seen:global:GLOBAL", cache.best_rank_ttl)

    @pytest.mark.asyncio
    async def test_empty_generation_skips_best_ranks(self, chart_cache):
        cache, _, mock_pipeline = chart_cache
        generation = ChartGeneration(
            generation_id="empty", scope=GLOBAL, chart_day=NOW.date(), generated_at=NOW,
        )

        await cache.publish_generation(generation)

        mock_pipeline.set.assert_called_once_with("charts:current:global:GLOBAL", "empty")
        mock_pipeline.hset.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_body_write_leaves_pointer(self, chart_cache):
        cache, mock_redis, mock_pipeline = chart_cache
        mock_redis.setex.side_effect = ConnectionError("Connection failed")

        with pytest.raises(ConnectionError):
            await cache.publish_generation(make_generation())

        mock_pipeline.set.assert_not_called()
        mock_pipeline.execute.assert_not_called()


class TestReads:
    """Test chart reads against stored generations."""

    @pytest.mark.asyncio
    async def test_get_chart_presents_live_metadata(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(make_generation().to_dict()),
        })

        chart = await cache.get_chart(GLOBAL, limit=2)

        assert [item["rank"] for item in chart] == [1, 2]
        first = chart[0]
        assert first["track"]["id"] == "t1"
        assert first["track"]["name"] == "Live t1"
        assert first["track"]["cover_url"] == "https://cdn.example.com/covers/t1.jpg?sig=abc"
        assert first["trend"] == "new"
        assert first["chart_day"] == "2024-03-15"
        assert first["last_updated"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_missing_scope_returns_empty(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        serve(mock_redis, {})

        assert await cache.get_chart(ChartScope.for_region("JP")) == []

    @pytest.mark.asyncio
    async def test_expired_entries_not_served(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        stale = make_generation(generated_at=NOW - timedelta(days=8))
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(stale.to_dict()),
        })

        assert await cache.get_chart(GLOBAL) == []

    @pytest.mark.asyncio
    async def test_undecodable_generation_returns_none(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": "{not json",
        })

        assert await cache.get_current_generation(GLOBAL) is None

    @pytest.mark.asyncio
    async def test_trending_tracks(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        generation = make_generation(moves={
            "t1": (2, Trend.STABLE),
            "t2": (9, Trend.UP),
            "t3": (20, Trend.UP),
            "t4": (None, Trend.NEW),
        })
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(generation.to_dict()),
        })

        trending = await cache.get_trending_tracks()

        assert [item["track"]["id"] for item in trending] == ["t3", "t2", "t4"]

    @pytest.mark.asyncio
    async def test_top_movers_both_directions(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        generation = make_generation(moves={
            "t1": (2, Trend.STABLE),
            "t2": (1, Trend.STABLE),
            "t3": (12, Trend.UP),
        })
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(generation.to_dict()),
        })

        up = await cache.get_top_movers(direction="up")
        down = await cache.get_top_movers(direction="down")

        assert [item["track"]["id"] for item in up] == ["t3", "t1"]
        assert [item["track"]["id"] for item in down] == ["t2"]

    @pytest.mark.asyncio
    async def test_top_movers_rejects_bad_direction(self, chart_cache):
        cache, _, _ = chart_cache

        with pytest.raises(ValueError):
            await cache.get_top_movers(direction="sideways")

    @pytest.mark.asyncio
    async def test_best_ranks(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.hgetall.return_value = {"t1": "1", "t2": "4"}

        assert await cache.get_best_ranks(GLOBAL) == {"t1": 1, "t2": 4}

    @pytest.mark.asyncio
    async def test_track_history_oldest_first(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        older = make_generation(generated_at=NOW - timedelta(days=1), generation_id="g0")
        newer = make_generation(generation_id="g1")
        mock_redis.zrangebyscore.return_value = ["g0", "g1"]
        mock_redis.mget.return_value = [json.dumps(older.to_dict()), json.dumps(newer.to_dict())]

        history = await cache.get_track_history("t2")

        assert [item["chart_day"] for item in history] == ["2024-03-14", "2024-03-15"]
        assert all(item["rank"] == 2 for item in history)


class TestPresentationFallbacks:
    """Test degraded collaborators during reads."""

    @pytest.mark.asyncio
    async def test_signer_failure_leaves_cover_empty(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        cache.url_signer = FakeSigner(fail_on={"covers/t1.jpg"})
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(make_generation().to_dict()),
        })

        chart = await cache.get_chart(GLOBAL, limit=2)

        assert chart[0]["track"]["cover_url"] is None
        assert chart[1]["track"]["cover_url"].startswith("https://cdn.example.com/")

    @pytest.mark.asyncio
    async def test_catalog_failure_serves_snapshot(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        failing = AsyncMock()
        failing.get_tracks.side_effect = RuntimeError("catalog down")
        cache.catalog = failing
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(make_generation().to_dict()),
        })

        chart = await cache.get_chart(GLOBAL, limit=1)

        assert chart[0]["track"]["name"] == "Stored t1"


class TestCacheAdministration:
    """Test listing, clearing, inspecting and pruning."""

    @pytest.mark.asyncio
    async def test_list_scopes_filters(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.smembers.return_value = {"global:GLOBAL", "country:DE", "country:FR"}

        countries = await cache.list_scopes(chart_type="country")
        germany = await cache.list_scopes(region="de")

        assert [s.region for s in countries] == ["DE", "FR"]
        assert germany == [ChartScope.for_region("DE")]

    @pytest.mark.asyncio
    async def test_clear_cache_for_region(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.smembers.return_value = {"global:GLOBAL", "country:DE"}
        mock_redis.zrange.return_value = ["g1", "g2"]
        mock_redis.delete.return_value = 5

        deleted = await cache.clear_cache(region="DE")

        assert deleted == 5
        mock_redis.delete.assert_called_once_with(
            "charts:generation:country:DE:g1",
            "charts:generation:country:DE:g2",
            "charts:current:country:DE",
            "charts:history:country:DE",
            "charts:best:country:DE",
            "charts:best_seen:country:DE",
        )
        mock_redis.srem.assert_called_once_with("charts:scopes", "country:DE")

    @pytest.mark.asyncio
    async def test_inspect_cache(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.smembers.return_value = {"global:GLOBAL"}
        mock_redis.zcard.return_value = 3
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(make_generation().to_dict()),
        })

        report = await cache.inspect_cache(limit=2)

        assert len(report) == 1
        assert report[0]["generation_id"] == "gen-1"
        assert report[0]["entry_count"] == 4
        assert report[0]["generation_count"] == 3
        assert report[0]["average_score"] == 25.0
        assert report[0]["expired"] is False
        assert len(report[0]["entries"]) == 2

    @pytest.mark.asyncio
    async def test_prune_expired_generations(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.smembers.return_value = {"global:GLOBAL", "country:DE"}
        mock_redis.zremrangebyscore.return_value = 2

        removed = await cache.prune_expired_generations()

        assert removed == 4
        cutoff = (NOW - timedelta(seconds=cache.entry_ttl)).timestamp()
        mock_redis.zremrangebyscore.assert_any_call("charts:history:global:GLOBAL", "-inf", cutoff)

    @pytest.mark.asyncio
    async def test_prune_stale_best_ranks(self, chart_cache):
        cache, mock_redis, mock_pipeline = chart_cache
        mock_redis.smembers.return_value = {"global:GLOBAL", "country:DE"}

        async def stale_tracks(key, low, high):
            return ["old1", "old2"] if key == "charts:best_seen:global:GLOBAL" else []

        mock_redis.zrangebyscore.side_effect = stale_tracks

        removed = await cache.prune_stale_best_ranks()

        assert removed == 2
        cutoff = (NOW - timedelta(seconds=cache.best_rank_ttl)).timestamp()
        mock_redis.zrangebyscore.assert_any_call("charts:best_seen:global:GLOBAL", "-inf", cutoff)
        mock_pipeline.hdel.assert_called_once_with("charts:best:global:GLOBAL", "old1", "old2")
        mock_pipeline.zrem.assert_called_once_with("charts:best_seen:global:GLOBAL", "old1", "old2")
        mock_pipeline.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_cache_stats(self, chart_cache):
        cache, mock_redis, _ = chart_cache
        mock_redis.smembers.return_value = {"global:GLOBAL", "country:DE"}
        mock_redis.zcard.return_value = 2
        serve(mock_redis, {
            "charts:current:global:GLOBAL": "gen-1",
            "charts:generation:global:GLOBAL:gen-1": json.dumps(make_generation().to_dict()),
        })

        stats = await cache.get_cache_stats()

        assert stats["active_scopes"] == 2
        assert stats["active_countries"] == 1
        assert stats["generation_count"] == 4
        assert stats["live_entries"] == 4
        assert stats["last_update"] == NOW.isoformat()
