"""
FastAPI Backend for Connector Monitoring

Read-only API over the Bigtable `metrics`, `logs` and `processing` tables:
overview and connector dashboards, log search, transaction tracing and
derived analytics for the pi-gateway and pi-connector services.

Run Instructions:
-----------------
From the repository root, run:
    uvicorn monitoring_api.main:app --reload

Or with custom host/port:
    uvicorn monitoring_api.main:app --reload --host 0.0.0.0 --port 8000

Required environment:
---------------------
    BIGTABLE_PROJECT_ID, BIGTABLE_INSTANCE_ID (see monitoring_api/config.py)
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from monitoring_api.analytics_service import AnalyticsService
from monitoring_api.cache import ResponseCache
from monitoring_api.cells import utc_now
from monitoring_api.config import Config
from monitoring_api.log_service import LogService
from monitoring_api.metric_service import MetricService
from monitoring_api.models import (
    Anomaly,
    ConnectorBreakdown,
    ConnectorDetails,
    Heatmap,
    LogDetail,
    LogEntry,
    LogSearchParams,
    LogSearchResponse,
    OverviewMetrics,
    PeriodComparison,
    StatusDistribution,
    TopClient,
    TopEndpoints,
    Trace,
    Trends,
)
from monitoring_api.store_gateway import StoreGateway, create_bigtable_instance
from monitoring_api.trace_service import TraceService


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Upper bound for the `days` query parameter of analytics routes
MAX_DAYS = 366


# =============================================================================
# COMPOSITION
# =============================================================================

def wire_services(app: FastAPI, gateway: StoreGateway, cache: ResponseCache, clock: Callable[[], datetime]) -> None:
    """Attach the gateway and every service to `app.state`."""
    app.state.gateway = gateway
    app.state.log_service = LogService(gateway, cache, clock)
    app.state.metric_service = MetricService(gateway, cache, clock)
    app.state.trace_service = TraceService(gateway, cache)
    app.state.analytics_service = AnalyticsService(gateway, cache, clock)


def run_service_call(operation: str, call: Callable[[], Any], not_found: Optional[str] = None) -> Any:
    """
    Run a service call for a route.

    Unexpected exceptions become an empty 500 response. When `not_found` is
    given, a None result becomes a 404 with that message.
    """
    try:
        result = call()
    except Exception:
        logger.exception(f"Unexpected error in {operation}")
        return Response(status_code=500)

    if result is None and not_found is not None:
        raise HTTPException(status_code=404, detail=not_found)
    return result


def create_app(
    gateway: Optional[StoreGateway] = None,
    config: Optional[Config] = None,
    clock: Optional[Callable[[], datetime]] = None
) -> FastAPI:
    """
    Build the application.

    Parameters
    ----------
    gateway : StoreGateway, optional
        Pre-built gateway (tests). When omitted, a Bigtable client is opened
        during startup and any failure aborts startup.
    config : Config, optional
        Settings; read from the environment when omitted.
    clock : Callable[[], datetime], optional
        Source of "now" for every service.
    """
    config = config or Config()
    clock = clock or utc_now
    logging.getLogger().setLevel(config.LOG_LEVEL)

    cache = ResponseCache(ttl_seconds=config.CACHE_TTL_SECONDS, max_entries=config.CACHE_MAX_ENTRIES)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.gateway is None:
            logger.info(f"Starting with configuration:\n{config}")
            instance = create_bigtable_instance(config)
            wire_services(app, StoreGateway(instance, config, cache), cache, clock)
        yield
        cleared = cache.clear()
        logger.info(f"Shutting down, dropped {cleared} cached responses")

    app = FastAPI(
        title="Connector Monitoring API",
        description="Metrics, logs, traces and analytics for pi-gateway and pi-connector",
        version="1.0.0",
        lifespan=lifespan
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.cache = cache
    app.state.gateway = None
    if gateway is not None:
        wire_services(app, gateway, cache, clock)

    register_routes(app)
    return app


# =============================================================================
# API ENDPOINTS
# =============================================================================

def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns
        -------
        Dict[str, str]
            Status information
        """
        return {"status": "ok"}

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    @app.get("/api/metrics/overview", response_model=OverviewMetrics)
    def get_overview(
        request: Request,
        time_range: str = Query("1h", alias="timeRange", description="1h, 6h, 24h, 7d or 30d")
    ):
        """Status of both connectors, combined totals and a request timeline."""
        service: MetricService = request.app.state.metric_service
        return run_service_call("overview", lambda: service.get_overview_metrics(time_range))

    @app.get("/api/metrics/connector/{name}", response_model=ConnectorDetails)
    def get_connector_details(
        request: Request,
        name: str,
        time_range: str = Query("24h", alias="timeRange")
    ):
        service: MetricService = request.app.state.metric_service
        return run_service_call("connector details", lambda: service.get_connector_details(name, time_range))

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------

    @app.get("/api/logs/search", response_model=LogSearchResponse)
    def search_logs(
        request: Request,
        query: Optional[str] = Query(None, description="Substring of path, client IP or messageId"),
        connector: str = Query("all"),
        type: str = Query("all", description="API_IN, API_OUT, AUTH, PROCESSING or all"),
        status: Optional[str] = Query(None, description="Exact code (404) or class (5xx)"),
        success: Optional[bool] = Query(None),
        min_latency: Optional[float] = Query(None, alias="minLatency"),
        max_latency: Optional[float] = Query(None, alias="maxLatency"),
        client_ip: Optional[str] = Query(None, alias="clientIP"),
        service_name: Optional[str] = Query(None, alias="service"),
        start_time: Optional[datetime] = Query(None, alias="startTime"),
        end_time: Optional[datetime] = Query(None, alias="endTime"),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1),
        sort_by: str = Query("timestamp", alias="sortBy", description="timestamp or latency"),
        sort_order: str = Query("desc", alias="sortOrder", description="asc or desc")
    ):
        """
        Paged log search.

        `total` and `pages` count every log matching the filters; `logs`
        holds one page.
        """
        params = LogSearchParams(
            query=query,
            connector=connector,
            type=type,
            status=status,
            success=success,
            min_latency=min_latency,
            max_latency=max_latency,
            client_ip=client_ip,
            service=service_name,
            start_time=start_time,
            end_time=end_time,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        service: LogService = request.app.state.log_service
        return run_service_call("log search", lambda: service.search_logs(params))

    @app.get("/api/logs/errors", response_model=List[LogEntry])
    def get_error_logs(
        request: Request,
        connector: str = Query("all"),
        limit: int = Query(50, ge=1)
    ):
        service: LogService = request.app.state.log_service
        return run_service_call("error logs", lambda: service.get_error_logs(connector, limit))

    @app.get("/api/logs/{log_id}", response_model=LogDetail)
    def get_log_detail(request: Request, log_id: str):
        service: LogService = request.app.state.log_service
        return run_service_call(
            "log detail",
            lambda: service.get_log_detail(log_id),
            not_found=f"Log not found: {log_id}"
        )

    # -------------------------------------------------------------------------
    # Traces
    # -------------------------------------------------------------------------

    @app.get("/api/processing/trace/{message_id}", response_model=Trace)
    def trace_by_message_id(request: Request, message_id: str):
        service: TraceService = request.app.state.trace_service
        return run_service_call(
            "trace by messageId",
            lambda: service.trace_by_message_id(message_id),
            not_found=f"No trace for messageId: {message_id}"
        )

    @app.get("/api/processing/trace", response_model=Trace)
    def trace_by_end_to_end_id(
        request: Request,
        end_to_end_id: str = Query(..., alias="endToEndId")
    ):
        service: TraceService = request.app.state.trace_service
        return run_service_call(
            "trace by endToEndId",
            lambda: service.trace_by_end_to_end_id(end_to_end_id),
            not_found=f"No trace for endToEndId: {end_to_end_id}"
        )

    # -------------------------------------------------------------------------
    # Analytics
    # -------------------------------------------------------------------------

    @app.get("/api/analytics/comparison", response_model=PeriodComparison)
    def compare_periods(
        request: Request,
        period1: str = Query(..., description="current, thisWeek, previous, lastWeek, thisMonth or lastMonth"),
        period2: str = Query(...),
        connector: Optional[str] = Query(None)
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("comparison", lambda: service.compare_periods(period1, period2, connector))

    @app.get("/api/analytics/heatmap", response_model=Heatmap)
    def get_heatmap(
        request: Request,
        days: int = Query(7, ge=0, le=MAX_DAYS),
        connector: Optional[str] = Query(None)
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("heatmap", lambda: service.get_traffic_heatmap(days, connector))

    @app.get("/api/analytics/top-clients", response_model=List[TopClient])
    def get_top_clients(
        request: Request,
        limit: int = Query(10, ge=1),
        time_range: str = Query("7d", alias="timeRange"),
        connector: Optional[str] = Query(None)
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("top clients", lambda: service.get_top_clients(limit, time_range, connector))

    @app.get("/api/analytics/trends", response_model=Trends)
    def get_trends(
        request: Request,
        metric: str = Query(..., description="requests, latency or errorRate"),
        days: int = Query(30, ge=0, le=MAX_DAYS),
        connector: Optional[str] = Query(None)
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("trends", lambda: service.get_trends(metric, days, connector))

    @app.get("/api/analytics/connector-breakdown", response_model=ConnectorBreakdown)
    def get_connector_breakdown(
        request: Request,
        time_range: str = Query("24h", alias="timeRange")
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("connector breakdown", lambda: service.get_connector_breakdown(time_range))

    @app.get("/api/analytics/anomalies", response_model=List[Anomaly])
    def get_anomalies(
        request: Request,
        days: int = Query(7, ge=0, le=MAX_DAYS),
        connector: Optional[str] = Query(None)
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("anomalies", lambda: service.detect_anomalies(days, connector))

    @app.get("/api/analytics/top-endpoints", response_model=TopEndpoints)
    def get_top_endpoints(
        request: Request,
        type: str = Query("slowest", description="slowest or errors"),
        limit: int = Query(10, ge=1),
        time_range: str = Query("24h", alias="timeRange"),
        connector: Optional[str] = Query(None)
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("top endpoints", lambda: service.get_top_endpoints(type, limit, time_range, connector))

    @app.get("/api/analytics/status-distribution", response_model=Dict[str, StatusDistribution])
    def get_status_distribution(
        request: Request,
        time_range: str = Query("24h", alias="timeRange"),
        connector: Optional[str] = Query(None)
    ):
        service: AnalyticsService = request.app.state.analytics_service
        return run_service_call("status distribution", lambda: service.get_status_distribution(time_range, connector))


app = create_app()


# =============================================================================
# MAIN (for direct execution)
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
