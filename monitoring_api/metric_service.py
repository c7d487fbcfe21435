"""
Metric Service

Builds the overview dashboard and the per-connector detail view from the
pre-aggregated metric windows, with a secondary scan of raw `API_IN` logs for
distributions and top-N endpoint tables.

Totals average rates across windows without weighting by traffic; windows
with very different request counts therefore skew `successRate`,
`errorRate` and `avgLatencyMs`.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import pandas as pd

from monitoring_api.cache import ResponseCache, cached
from monitoring_api.cells import from_epoch_ms, number_or_zero, parse_float, parse_int, utc_now
from monitoring_api.models import (
    ConnectorDetails,
    EndpointError,
    EndpointMetrics,
    LatencyPercentiles,
    OverviewMetrics,
    ServiceStatus,
    TimelinePoint,
    TotalMetrics,
)
from monitoring_api.stats import logs_frame, percentile
from monitoring_api.store_gateway import StoreGateway


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

CONNECTORS = ["pi-gateway", "pi-connector"]

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_TIME_RANGE = "1h"

# Status thresholds
MIN_UPTIME_PERCENTAGE = 99.0
MAX_ERROR_RATE_PERCENTAGE = 5.0
MAX_AVG_LATENCY_MS = 200.0

DETAIL_LOG_LIMIT = 10000
TOP_ENDPOINTS = 10
DEFAULT_ERROR_STATUS = 500

# (label, upper bound exclusive)
LATENCY_BINS = [
    ("0-10ms", 10),
    ("10-20ms", 20),
    ("20-50ms", 50),
    ("50-100ms", 100),
    ("100-200ms", 200),
    (">200ms", None),
]


def time_range_start(end: datetime, time_range: str) -> datetime:
    """Start of a ``1h|6h|24h|7d|30d`` window ending at `end`; unknown tokens mean 1h."""
    return end - TIME_RANGES.get(time_range, TIME_RANGES[DEFAULT_TIME_RANGE])


# =============================================================================
# WINDOW HELPERS
# =============================================================================

def _window_ms(window: Dict[str, str]) -> int:
    return parse_int(window.get("window_timestamp")) or 0


def latest_window(windows: List[Dict[str, str]]) -> Dict[str, str]:
    """Window with the greatest `window_timestamp`; on ties the last one scanned."""
    return sorted(windows, key=_window_ms)[-1]


def _requests(window: Dict[str, str]) -> Optional[int]:
    value = parse_float(window.get("requests_per_minute"))
    return int(value) if value is not None else None


def service_status(connector: str, windows: List[Dict[str, str]]) -> ServiceStatus:
    """
    Health of a connector from its latest window.

    ``down`` below 99% uptime, ``degraded`` above 5% errors or 200 ms mean
    latency, ``healthy`` otherwise; ``unknown`` without any window. Missing
    values never trigger a rule.
    """
    if not windows:
        return ServiceStatus(name=connector, status="unknown")

    latest = latest_window(windows)
    uptime = parse_float(latest.get("uptime_percentage"))
    error_rate = parse_float(latest.get("error_rate_percentage"))
    latency = parse_float(latest.get("avg_response_time_ms"))

    status = "healthy"
    if uptime is not None and uptime < MIN_UPTIME_PERCENTAGE:
        status = "down"
    elif error_rate is not None and error_rate > MAX_ERROR_RATE_PERCENTAGE:
        status = "degraded"
    elif latency is not None and latency > MAX_AVG_LATENCY_MS:
        status = "degraded"

    return ServiceStatus(
        name=connector,
        status=status,
        uptime_percentage=uptime or 0.0,
        requests_per_minute=_requests(latest) or 0,
        avg_latency_ms=latency or 0.0,
        success_rate=number_or_zero(latest.get("success_rate_percentage")),
        error_rate=error_rate or 0.0,
    )


def totals(windows: List[Dict[str, str]]) -> TotalMetrics:
    if not windows:
        return TotalMetrics()

    def average(qualifier: str) -> float:
        return sum(number_or_zero(w.get(qualifier)) for w in windows) / len(windows)

    latest = latest_window(windows)
    return TotalMetrics(
        total_requests=int(sum(number_or_zero(w.get("requests_per_minute")) for w in windows)),
        success_rate=average("success_rate_percentage"),
        error_rate=average("error_rate_percentage"),
        avg_latency_ms=average("avg_response_time_ms"),
        p50_latency_ms=number_or_zero(latest.get("latency_p50")),
        p95_latency_ms=number_or_zero(latest.get("latency_p95")),
        p99_latency_ms=number_or_zero(latest.get("latency_p99")),
        timeout_rate=number_or_zero(latest.get("timeout_rate_percentage")),
    )


def timeline(gateway_windows: List[Dict[str, str]], connector_windows: List[Dict[str, str]]) -> List[TimelinePoint]:
    """Outer join of both connectors' windows on `window_timestamp`, ascending."""
    points: Dict[int, Dict[str, Optional[int]]] = {}
    for field, windows in (("pi_gateway_requests", gateway_windows),
                           ("pi_connector_requests", connector_windows)):
        for window in windows:
            window_ms = parse_int(window.get("window_timestamp"))
            if window_ms is None:
                continue
            points.setdefault(window_ms, {})[field] = _requests(window)

    return [
        TimelinePoint(timestamp=from_epoch_ms(window_ms), **values)
        for window_ms, values in sorted(points.items())
    ]


# =============================================================================
# RAW LOG AGGREGATIONS
# =============================================================================

def latency_distribution(df: pd.DataFrame) -> Dict[str, int]:
    distribution = {label: 0 for label, _ in LATENCY_BINS}
    for latency in df["response_time_ms"].dropna():
        for label, upper in LATENCY_BINS:
            if upper is None or latency < upper:
                distribution[label] += 1
                break
    return distribution


def status_breakdown(df: pd.DataFrame) -> Dict[str, int]:
    counts = df["status_code"].dropna().astype(int).value_counts().sort_index()
    return {str(code): int(count) for code, count in counts.items()}


def top_slow_endpoints(df: pd.DataFrame, limit: int = TOP_ENDPOINTS) -> List[EndpointMetrics]:
    timed = df.dropna(subset=["path", "response_time_ms"])
    if timed.empty:
        return []

    grouped = timed.groupby("path")["response_time_ms"].agg(
        avg_latency_ms="mean",
        p95_latency_ms=lambda x: percentile(list(x), 95),
        requests="count",
    ).reset_index()
    grouped = grouped.sort_values("avg_latency_ms", ascending=False, kind="stable").head(limit)

    return [
        EndpointMetrics(
            path=row.path,
            avg_latency_ms=float(row.avg_latency_ms),
            p95_latency_ms=float(row.p95_latency_ms),
            count=int(row.requests),
        )
        for row in grouped.itertuples(index=False)
    ]


def _modal_status(codes: pd.Series) -> int:
    counts = codes.dropna().astype(int).value_counts()
    if counts.empty:
        return DEFAULT_ERROR_STATUS
    # Ties resolve to the lowest code
    top = counts[counts == counts.max()]
    return int(min(top.index))


def top_error_endpoints(df: pd.DataFrame, limit: int = TOP_ENDPOINTS) -> List[EndpointError]:
    failed = df[(df["success"] == False) & df["path"].notna()]  # noqa: E712
    if failed.empty:
        return []

    rows = []
    for path, group in failed.groupby("path"):
        rows.append({
            "path": path,
            "status": _modal_status(group["status_code"]),
            "count": len(group),
            "last_seen": group["timestamp"].max().to_pydatetime(),
        })
    rows.sort(key=lambda r: r["count"], reverse=True)

    return [EndpointError(**row) for row in rows[:limit]]


# =============================================================================
# SERVICE
# =============================================================================

class MetricService:
    def __init__(
        self,
        gateway: StoreGateway,
        cache: Optional[ResponseCache] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.gateway = gateway
        self.cache = cache
        self.clock = clock

    @cached("overview", "{time_range}")
    def get_overview_metrics(self, time_range: str = DEFAULT_TIME_RANGE) -> OverviewMetrics:
        """
        Status of both connectors, combined totals and a request timeline.

        Parameters
        ----------
        time_range : str
            One of 1h, 6h, 24h, 7d, 30d. Unknown values fall back to 1h.
        """
        logger.info(f"Getting overview metrics for timeRange: {time_range}")

        end = self.clock()
        start = time_range_start(end, time_range)

        gateway_windows = self.gateway.get_connector_metrics("pi-gateway", start, end)
        connector_windows = self.gateway.get_connector_metrics("pi-connector", start, end)

        return OverviewMetrics(
            timestamp=end,
            time_range=time_range,
            services=[
                service_status("pi-gateway", gateway_windows),
                service_status("pi-connector", connector_windows),
            ],
            totals=totals(gateway_windows + connector_windows),
            timeline=timeline(gateway_windows, connector_windows),
        )

    @cached("connectorDetails", "{connector}|{time_range}")
    def get_connector_details(self, connector: str, time_range: str = "24h") -> ConnectorDetails:
        """
        Headline numbers of one connector plus raw-log breakdowns.

        Headline rates and percentiles come from the latest window and
        `totalRequests` sums every window. Distributions and endpoint tables
        are computed from at most 10 000 `API_IN` logs.
        """
        logger.info(f"Getting details for connector: {connector}, timeRange: {time_range}")

        end = self.clock()
        start = time_range_start(end, time_range)

        windows = self.gateway.get_connector_metrics(connector, start, end)
        if not windows:
            logger.info(f"No metric windows for {connector}, returning empty details")
            return ConnectorDetails(connector=connector)

        latest = latest_window(windows)
        percentiles = LatencyPercentiles(
            p50=number_or_zero(latest.get("latency_p50")),
            p75=number_or_zero(latest.get("latency_p75")),
            p90=number_or_zero(latest.get("latency_p90")),
            p95=number_or_zero(latest.get("latency_p95")),
            p99=number_or_zero(latest.get("latency_p99")),
        )

        logs = self.gateway.search_logs(connector, "API_IN", start, end, DETAIL_LOG_LIMIT)
        df = logs_frame(logs)

        return ConnectorDetails(
            connector=connector,
            uptime_percentage=number_or_zero(latest.get("uptime_percentage")),
            total_requests=int(sum(number_or_zero(w.get("requests_per_minute")) for w in windows)),
            success_rate=number_or_zero(latest.get("success_rate_percentage")),
            error_rate=number_or_zero(latest.get("error_rate_percentage")),
            avg_latency_ms=number_or_zero(latest.get("avg_response_time_ms")),
            latency_percentiles=percentiles,
            latency_distribution=latency_distribution(df),
            status_breakdown=status_breakdown(df),
            top_slow_endpoints=top_slow_endpoints(df),
            top_error_endpoints=top_error_endpoints(df),
        )
