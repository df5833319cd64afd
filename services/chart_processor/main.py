#!/usr/bin/env python3
"""
Chart Processor Service

Runs the chart pipeline on a schedule: aggregation passes fold play events
into daily statistics, refresh cycles republish every active chart, and
cleanup applies the retention tiers, and a health loop logs operational
issues. Provides health checks, metrics, chart
reads and administrative endpoints.
"""

import asyncio
import signal
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel
from starlette.responses import Response
import uvicorn
import structlog

from shared.collaborators import CatalogServiceClient, MediaUrlSigner
from shared.config import load_config_from_env
from shared.logging_config import configure_logging
from shared.models import ChartScope, ChartType

from services.chart_processor.chart_engine import (
    AggregationInProgressError,
    ChartEngine,
    ChartRefreshError,
    RefreshInProgressError,
)

logger = structlog.get_logger(__name__)

# Prometheus metrics
AGGREGATION_PASSES = Counter('chart_aggregation_passes_total', 'Total aggregation passes')
EVENTS_FOLDED = Counter('chart_events_folded_total', 'Total play events folded into daily stats')
PLAYS_RECORDED = Counter('chart_plays_recorded_total', 'Total play events recorded', ['valid'])
REFRESH_OUTCOMES = Counter('chart_refresh_total', 'Chart refreshes by outcome', ['status'])
REFRESH_TIME = Histogram('chart_refresh_seconds', 'Time spent refreshing a chart scope')
AGGREGATION_TIME = Histogram('chart_aggregation_seconds', 'Time spent in an aggregation pass')
HEALTH_ISSUES = Gauge('chart_health_issues', 'Operational health issues found by the last check')

# Global engine instance
engine: Optional[ChartEngine] = None
shutdown_event = asyncio.Event()

# FastAPI app for health checks, metrics and chart reads
app = FastAPI(title="Chart Processor", version="1.0.0")


class PlayReport(BaseModel):
    track_id: str
    session_id: str
    listen_duration: float
    region: Optional[str] = None
    user_id: Optional[str] = None


def _require_engine() -> ChartEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Chart engine not initialized")
    return engine


def _scope_from_params(chart_type: Optional[str], region: Optional[str]) -> ChartScope:
    try:
        if chart_type is None:
            return ChartScope.for_region(region)
        return ChartScope(ChartType(chart_type), region)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _record_refresh(results) -> None:
    for result in results:
        REFRESH_OUTCOMES.labels(status=result.status).inc()
        REFRESH_TIME.observe(result.duration_seconds)


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint for Docker health checks."""
    if engine is None:
        return {"status": "starting", "service": "chart-processor"}

    redis_healthy = await engine.chart_cache.health_check()
    return {
        "status": "healthy" if redis_healthy else "unhealthy",
        "service": "chart-processor",
        "redis_connected": redis_healthy,
    }


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root() -> Dict[str, str]:
    """Root endpoint with service information."""
    return {
        "service": "chart-processor",
        "status": "running",
        "description": "Scheduled chart ranking and aggregation engine"
    }


@app.get("/stats")
async def get_stats() -> Dict[str, Any]:
    """Get generation counts, backlog size and freshness."""
    if engine is None:
        return {"error": "Chart engine not initialized"}
    return await engine.get_operational_stats()


@app.post("/plays")
async def record_play(report: PlayReport) -> Dict[str, Any]:
    """Record a play attempt reported by playback."""
    chart_engine = _require_engine()
    try:
        event = await chart_engine.record_play(
            report.track_id,
            report.listen_duration,
            report.session_id,
            region=report.region,
            user_id=report.user_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if event is None:
        return {"status": "ignored", "track_id": report.track_id}
    PLAYS_RECORDED.labels(valid=str(event.is_valid).lower()).inc()
    return {"status": "recorded", "event_id": event.event_id, "is_valid": event.is_valid}


@app.get("/charts")
async def get_chart(chart_type: str = "global", region: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """Current chart of a scope, rank 1 first."""
    chart_engine = _require_engine()
    try:
        return await chart_engine.get_chart(chart_type, region, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/charts/trending")
async def get_trending(region: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    return await _require_engine().get_trending_tracks(region, limit)


@app.get("/charts/movers")
async def get_movers(region: Optional[str] = None, limit: int = 20, direction: str = "up") -> List[Dict[str, Any]]:
    chart_engine = _require_engine()
    try:
        return await chart_engine.get_top_movers(region, limit, direction)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/charts/tracks/{track_id}/history")
async def get_track_history(track_id: str, region: Optional[str] = None, days: int = 30) -> List[Dict[str, Any]]:
    return await _require_engine().get_track_history(track_id, region, days)


@app.post("/admin/aggregate")
async def trigger_aggregation() -> Dict[str, Any]:
    """Run one aggregation pass immediately."""
    chart_engine = _require_engine()
    try:
        result = await chart_engine.run_aggregation_pass()
    except AggregationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error("Manual aggregation failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    AGGREGATION_PASSES.inc()
    EVENTS_FOLDED.inc(result.events_folded)
    return result.to_dict()


@app.post("/admin/refresh")
async def trigger_refresh(chart_type: Optional[str] = None, region: Optional[str] = None) -> Dict[str, Any]:
    """Refresh one scope, or every active scope when none is given."""
    chart_engine = _require_engine()

    if chart_type is None and region is None:
        results = await chart_engine.refresh_all_scopes()
        _record_refresh(results)
        return {"results": [result.to_dict() for result in results]}

    scope = _scope_from_params(chart_type, region)
    try:
        result = await chart_engine.force_refresh(scope)
    except RefreshInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ChartRefreshError as e:
        raise HTTPException(status_code=500, detail=str(e))

    _record_refresh([result])
    return result.to_dict()


@app.get("/admin/cache")
async def inspect_cache(chart_type: Optional[str] = None, region: Optional[str] = None, limit: int = 10) -> Dict[str, Any]:
    """Describe the current generation of each matching scope."""
    chart_engine = _require_engine()
    try:
        scopes = await chart_engine.inspect_cache(chart_type, region, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"scopes": scopes}


@app.delete("/admin/cache")
async def clear_cache(chart_type: Optional[str] = None, region: Optional[str] = None) -> Dict[str, Any]:
    """Delete the published generations of the matching scopes."""
    chart_engine = _require_engine()
    try:
        deleted = await chart_engine.clear_cache(chart_type, region)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "deleted_keys": deleted}


async def run_aggregation(chart_engine: ChartEngine) -> None:
    try:
        with AGGREGATION_TIME.time():
            result = await chart_engine.run_aggregation_pass()
    except AggregationInProgressError:
        logger.info("Previous aggregation pass still running, skipping this run")
        return
    AGGREGATION_PASSES.inc()
    EVENTS_FOLDED.inc(result.events_folded)


async def run_refresh(chart_engine: ChartEngine) -> None:
    _record_refresh(await chart_engine.refresh_all_scopes())


async def run_health_check(chart_engine: ChartEngine) -> None:
    HEALTH_ISSUES.set(len(await chart_engine.run_health_check()))


async def run_periodically(
    name: str,
    interval_seconds: float,
    job: Callable[[], Awaitable[Any]],
) -> None:
    """Run ``job`` every ``interval_seconds`` until shutdown."""
    log = logger.bind(component=name)
    log.info("Scheduler loop started", interval=interval_seconds)

    while not shutdown_event.is_set():
        started = time.monotonic()
        try:
            await job()
        except Exception as e:
            log.error("Scheduled job failed", error=str(e))

        remaining = max(0.0, interval_seconds - (time.monotonic() - started))
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            pass

    log.info("Scheduler loop stopped")


async def serve_api(server: uvicorn.Server) -> None:
    try:
        await server.serve()
    finally:
        shutdown_event.set()


async def shutdown_handler() -> None:
    """Handle graceful shutdown."""
    global engine

    logger.info("Shutting down Chart Processor service...")
    shutdown_event.set()

    if engine:
        try:
            await engine.close()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error("Error closing Redis connection", error=str(e))
        engine = None

    logger.info("Shutdown complete")


def signal_handler(signum: int, frame) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}, initiating shutdown...")
    shutdown_event.set()


async def main() -> None:
    """Main application entry point."""
    global engine

    config = load_config_from_env()
    configure_logging(config.log_level)
    logger.info("Starting Chart Processor service...")
    logger.info("Configuration loaded",
               redis_host=config.redis_host,
               redis_port=config.redis_port,
               catalog_service=config.catalog_service_url,
               prometheus_port=config.prometheus_port)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    catalog = CatalogServiceClient(config.catalog_service_url, timeout=config.collaborator_timeout)
    url_signer = MediaUrlSigner(config.url_signer_url, timeout=config.collaborator_timeout)
    engine = ChartEngine.from_config(config, catalog, url_signer)
    chart_engine = engine

    server = uvicorn.Server(uvicorn.Config(
        app,
        host="0.0.0.0",
        port=config.prometheus_port,
        log_level=config.log_level.lower()
    ))

    try:
        await asyncio.gather(
            serve_api(server),
            run_periodically(
                "aggregation", config.aggregation_interval_seconds,
                lambda: run_aggregation(chart_engine),
            ),
            run_periodically(
                "refresh", config.refresh_interval_seconds,
                lambda: run_refresh(chart_engine),
            ),
            run_periodically(
                "cleanup", config.cleanup_interval_seconds,
                chart_engine.run_cleanup,
            ),
            run_periodically(
                "health", config.health_check_interval_seconds,
                lambda: run_health_check(chart_engine),
            ),
            return_exceptions=True
        )
    except Exception as e:
        logger.error("Error in main loop", error=str(e))
    finally:
        await shutdown_handler()
        catalog.close()
        url_signer.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
