"""
Analytics Service

Derived views over raw logs: period comparison, hourly traffic heatmap, top
clients and endpoints, daily trends with sigma-based anomaly flags, connector
breakdown, hourly anomaly detection and status-code distribution.

Logs are loaded once per call (at most 100 000 rows over the requested window)
into a pandas DataFrame and aggregated in memory. Day and hour buckets follow
the Europe/Paris calendar.

A log counts as an error when ``success`` is false; when ``success`` is
missing, a status code of 400 or more counts as an error.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import pandas as pd

from monitoring_api.cache import ResponseCache, cached
from monitoring_api.cells import utc_now
from monitoring_api.models import (
    Anomaly,
    ConnectorBreakdown,
    ConnectorComparison,
    ConnectorMetrics,
    DayHeatmap,
    EndpointStats,
    Heatmap,
    HourData,
    MetricChanges,
    PeriodComparison,
    PeriodMetrics,
    StatusCategory,
    StatusCodeDetail,
    StatusDistribution,
    TopClient,
    TopEndpoints,
    TrendDataPoint,
    TrendInsights,
    Trends,
)
from monitoring_api.stats import (
    logs_frame,
    percent_change,
    percent_difference,
    percentile,
    population_std,
    safe_rate,
    series_mean,
)
from monitoring_api.store_gateway import StoreGateway


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

PARIS_TZ = ZoneInfo("Europe/Paris")
ANALYTICS_LOG_LIMIT = 100000
ALL = "all"

DAY_NAMES = ["Lun", "Mar", "Mer", "Jeu", "Ven", "Sam", "Dim"]

# Period token -> (days back to start, days back to end)
PERIODS = {
    "current": (7, 0),
    "thisWeek": (7, 0),
    "previous": (14, 7),
    "lastWeek": (14, 7),
    "thisMonth": (30, 0),
    "lastMonth": (60, 30),
}
DEFAULT_PERIOD = (7, 0)

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(days=1),
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_TIME_RANGE = "1d"

# Heatmap level thresholds (requests per hour, upper bound exclusive)
TRAFFIC_LEVELS = [(100, "low"), (500, "medium"), (1000, "high")]
TOP_TRAFFIC_LEVEL = "very_high"
WEEKDAY_FACTOR = 1.5

# Hourly anomaly rules
ERROR_RATE_FLOOR = 5.0
ERROR_RATE_CRITICAL = 10.0
LATENCY_FLOOR_MS = 100.0
LATENCY_CRITICAL_MS = 200.0
BASELINE_FACTOR = 2.0

# Trend anomaly rules
TREND_MIN_POINTS = 3
TREND_WARNING_SIGMA = 2.0
TREND_CRITICAL_SIGMA = 3.0

TOP_STATUS_CODES = 5
BASE_CATEGORIES = ["2xx", "3xx", "4xx", "5xx"]

STATUS_DESCRIPTIONS = {
    200: "OK",
    201: "Created",
    204: "No Content",
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


# =============================================================================
# HELPERS
# =============================================================================

def connector_label(connector: Optional[str]) -> str:
    return connector if connector else ALL


def traffic_level(requests: int) -> str:
    for upper, level in TRAFFIC_LEVELS:
        if requests < upper:
            return level
    return TOP_TRAFFIC_LEVEL


def status_description(code: int) -> str:
    return STATUS_DESCRIPTIONS.get(code, "Unknown")


def anomaly_id(metric: str, timestamp: datetime, connector: str) -> str:
    """Stable id so that repeated reads report the same anomaly identically."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{metric}|{timestamp.isoformat()}|{connector}"))


def with_local_time(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add Europe/Paris `local`, `date` (YYYY-MM-DD) and `hour` columns, and
    `hour_key`, the UTC start of the hour (distinct across DST fall-back).
    """
    df = df.copy()
    df["local"] = df["timestamp"].dt.tz_convert(PARIS_TZ)
    df["date"] = df["local"].dt.strftime("%Y-%m-%d")
    df["hour"] = df["local"].dt.hour
    df["hour_key"] = df["timestamp"].dt.floor("h")
    return df


def metric_value(metric: str, df: pd.DataFrame) -> float:
    """Daily value of a trend metric: requests, latency or errorRate."""
    if metric == "requests":
        return float(len(df))
    if metric == "latency":
        return series_mean(df["response_time_ms"])
    if metric == "errorRate":
        return safe_rate(int(df["is_error"].sum()), len(df))
    return 0.0


def summarize_group(df: pd.DataFrame) -> Tuple[int, int, float, float]:
    """(requests, errors, errorRate, avgLatencyMs) of a group of logs."""
    requests = len(df)
    errors = int(df["is_error"].sum())
    return requests, errors, safe_rate(errors, requests), series_mean(df["response_time_ms"])


# =============================================================================
# SERVICE
# =============================================================================

class AnalyticsService:
    def __init__(
        self,
        gateway: StoreGateway,
        cache: Optional[ResponseCache] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.gateway = gateway
        self.cache = cache
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock().astimezone(PARIS_TZ)

    def _time_range(self, time_range: str) -> Tuple[datetime, datetime]:
        now = self._now()
        return now - TIME_RANGES.get(time_range, TIME_RANGES[DEFAULT_TIME_RANGE]), now

    def _logs(self, start: datetime, end: datetime, connector: Optional[str]) -> pd.DataFrame:
        effective = connector if connector and connector != ALL else ALL
        logger.debug(f"Querying logs from {start} to {end} for connector: {effective}")
        logs = self.gateway.search_logs(effective, ALL, start, end, ANALYTICS_LOG_LIMIT)
        return logs_frame(logs)

    # -------------------------------------------------------------------------
    # Period comparison
    # -------------------------------------------------------------------------

    def _period_dates(self, period: str) -> Tuple[datetime, datetime]:
        now = self._now()
        start_days, end_days = PERIODS.get(period, DEFAULT_PERIOD)
        return now - timedelta(days=start_days), now - timedelta(days=end_days)

    def _period_metrics(self, period: str, connector: Optional[str]) -> PeriodMetrics:
        start, end = self._period_dates(period)
        df = self._logs(start, end, connector)
        requests, _, error_rate, avg_latency = summarize_group(df)
        return PeriodMetrics(
            name=period,
            requests=requests,
            avg_latency_ms=avg_latency,
            error_rate=error_rate,
            success_rate=100.0 - error_rate if requests else 0.0,
            start_date=start,
            end_date=end,
        )

    @cached("comparison", "{period1}|{period2}|{connector}")
    def compare_periods(self, period1: str, period2: str, connector: Optional[str] = None) -> PeriodComparison:
        """
        Compare two periods; each change is ``(p2 - p1) / p1 * 100``.

        Period tokens: current/thisWeek, previous/lastWeek, thisMonth,
        lastMonth. Anything else means the last seven days.
        """
        logger.info(f"Comparing periods: {period1} vs {period2}, connector: {connector}")

        first = self._period_metrics(period1, connector)
        second = self._period_metrics(period2, connector)

        changes = MetricChanges(
            requests=percent_change(first.requests, second.requests),
            latency=percent_change(first.avg_latency_ms, second.avg_latency_ms),
            error_rate=percent_change(first.error_rate, second.error_rate),
            success_rate=percent_change(first.success_rate, second.success_rate),
        )
        return PeriodComparison(period1=first, period2=second, changes=changes)

    # -------------------------------------------------------------------------
    # Heatmap
    # -------------------------------------------------------------------------

    @cached("heatmap", "{days}|{connector}")
    def get_traffic_heatmap(self, days: int = 7, connector: Optional[str] = None) -> Heatmap:
        """
        Requests per (day, hour) for the last `days` Paris calendar days.

        Logs are read from midnight of ``now - days`` so insights may also
        count the partial day before the first displayed one.
        """
        logger.info(f"Getting heatmap for {days} days, connector: {connector}")

        now = self._now()
        start = (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
        df = with_local_time(self._logs(start, now, connector))

        cells: Dict[Tuple[str, int], Tuple[int, float]] = {}
        for (date, hour), group in df.groupby(["date", "hour"]):
            cells[(date, int(hour))] = (len(group), series_mean(group["response_time_ms"]))

        heatmap_days = []
        for offset in range(days - 1, -1, -1):
            day = now - timedelta(days=offset)
            date = day.strftime("%Y-%m-%d")
            hours = []
            for hour in range(24):
                requests, avg_latency = cells.get((date, hour), (0, 0.0))
                hours.append(HourData(
                    hour=hour,
                    requests=requests,
                    level=traffic_level(requests),
                    avg_latency_ms=avg_latency,
                ))
            heatmap_days.append(DayHeatmap(day=DAY_NAMES[day.weekday()], date=date, hours=hours))

        return Heatmap(days=heatmap_days, insights=self._heatmap_insights(df))

    @staticmethod
    def _heatmap_insights(df: pd.DataFrame) -> List[str]:
        insights: List[str] = []
        if df.empty:
            return insights

        hourly = df.groupby("hour").size()
        peak_hour = int(hourly[hourly == hourly.max()].index.min())
        insights.append(f"🔥 Pic de trafic détecté vers {peak_hour}h")

        daily = df.groupby("date").size()
        weekend = [
            pd.Timestamp(date).weekday() >= 5 for date in daily.index
        ]
        weekend_totals = daily[weekend]
        weekday_totals = daily[[not flag for flag in weekend]]

        if len(weekday_totals) > 0 and len(weekend_totals) > 0:
            weekday_avg = weekday_totals.mean()
            weekend_avg = weekend_totals.mean()
            if weekday_avg > weekend_avg * WEEKDAY_FACTOR:
                insights.append("📊 Trafic significativement plus élevé en semaine")
            elif weekend_avg > weekday_avg:
                insights.append("🎯 Trafic plus élevé le weekend")

        return insights

    # -------------------------------------------------------------------------
    # Top clients
    # -------------------------------------------------------------------------

    @cached("topClients", "{limit}|{time_range}|{connector}")
    def get_top_clients(self, limit: int = 10, time_range: str = "7d", connector: Optional[str] = None) -> List[TopClient]:
        logger.info(f"Getting top {limit} clients for {time_range}, connector: {connector}")

        start, end = self._time_range(time_range)
        df = self._logs(start, end, connector)
        if df.empty or limit <= 0:
            return []

        df["client"] = df["client_ip"].fillna("unknown")
        clients = []
        for client_ip, group in df.groupby("client"):
            requests, errors, error_rate, avg_latency = summarize_group(group)
            clients.append(TopClient(
                client_ip=client_ip,
                requests=requests,
                errors=errors,
                error_rate=error_rate,
                avg_latency_ms=avg_latency,
                connector=connector_label(connector),
            ))

        clients.sort(key=lambda c: c.requests, reverse=True)
        return clients[:limit]

    # -------------------------------------------------------------------------
    # Trends
    # -------------------------------------------------------------------------

    @cached("trends", "{metric}|{days}|{connector}")
    def get_trends(self, metric: str = "requests", days: int = 30, connector: Optional[str] = None) -> Trends:
        """
        One point per Paris day for the last `days` days.

        Points further than two standard deviations from the mean are
        reported as anomalies (critical beyond three).
        """
        logger.info(f"Getting trends for metric: {metric}, days: {days}, connector: {connector}")

        now = self._now()
        df = with_local_time(self._logs(now - timedelta(days=days), now, connector))
        by_date = {date: group for date, group in df.groupby("date")}
        empty = df.iloc[0:0]

        points = []
        for offset in range(days - 1, -1, -1):
            day = now - timedelta(days=offset)
            value = metric_value(metric, by_date.get(day.strftime("%Y-%m-%d"), empty))
            points.append(TrendDataPoint(timestamp=day, value=value, label=day.strftime("%d %b")))

        return Trends(
            metric=metric,
            data=points,
            anomalies=self._trend_anomalies(metric, points, connector_label(connector)),
            insights=self._trend_insights(points),
        )

    @staticmethod
    def _trend_insights(points: List[TrendDataPoint]) -> TrendInsights:
        if not points:
            return TrendInsights(average=0.0, min=0.0, max=0.0, trend=0.0, summary="Pas de données")

        values = [p.value for p in points]
        trend = percent_change(values[0], values[-1])
        direction = "à la hausse" if trend > 0 else "à la baisse"
        return TrendInsights(
            average=sum(values) / len(values),
            min=min(values),
            max=max(values),
            trend=trend,
            summary=f"Tendance {direction} de {abs(trend):.1f}%",
        )

    @staticmethod
    def _trend_anomalies(metric: str, points: List[TrendDataPoint], connector: str) -> List[Anomaly]:
        if len(points) < TREND_MIN_POINTS:
            return []

        values = [p.value for p in points]
        average = sum(values) / len(values)
        sigma = population_std(values)
        if sigma <= 0:
            return []

        anomalies = []
        for point in points:
            deviation = abs(point.value - average)
            if deviation <= TREND_WARNING_SIGMA * sigma:
                continue
            anomalies.append(Anomaly(
                id=anomaly_id(metric, point.timestamp, connector),
                metric=metric,
                value=point.value,
                threshold=average + TREND_WARNING_SIGMA * sigma,
                severity="critical" if deviation > TREND_CRITICAL_SIGMA * sigma else "warning",
                timestamp=point.timestamp,
                description=f"Valeur anormale détectée : {point.value:.1f}",
                root_cause="Écart significatif par rapport à la moyenne",
                connector=connector,
            ))
        return anomalies

    # -------------------------------------------------------------------------
    # Connector breakdown
    # -------------------------------------------------------------------------

    def _connector_metrics(self, connector: str, start: datetime, end: datetime) -> ConnectorMetrics:
        df = self._logs(start, end, connector)
        requests, _, error_rate, avg_latency = summarize_group(df)
        return ConnectorMetrics(
            name=connector,
            requests=requests,
            requests_percentage=0.0,
            avg_latency_ms=avg_latency,
            error_rate=error_rate,
            success_rate=100.0 - error_rate if requests else 0.0,
        )

    @cached("connectorBreakdown", "{time_range}")
    def get_connector_breakdown(self, time_range: str = "24h") -> ConnectorBreakdown:
        """Side-by-side metrics of both connectors and which one performs better."""
        logger.info(f"Getting connector breakdown for {time_range}")

        start, end = self._time_range(time_range)
        gateway = self._connector_metrics("pi-gateway", start, end)
        connector = self._connector_metrics("pi-connector", start, end)

        total = gateway.requests + connector.requests
        gateway.requests_percentage = safe_rate(gateway.requests, total)
        connector.requests_percentage = safe_rate(connector.requests, total)

        if gateway.success_rate > connector.success_rate:
            winner, reason = "pi-gateway", "Meilleur taux de succès"
        elif connector.success_rate > gateway.success_rate:
            winner, reason = "pi-connector", "Meilleur taux de succès"
        elif gateway.avg_latency_ms < connector.avg_latency_ms:
            winner, reason = "pi-gateway", "Latence plus faible"
        else:
            winner, reason = "pi-connector", "Latence plus faible"

        comparison = ConnectorComparison(
            winner=winner,
            reason=reason,
            differences={
                "latency": percent_difference(gateway.avg_latency_ms, connector.avg_latency_ms),
                "errorRate": percent_difference(gateway.error_rate, connector.error_rate),
                "volume": percent_difference(gateway.requests, connector.requests),
            },
        )
        return ConnectorBreakdown(pi_gateway=gateway, pi_connector=connector, comparison=comparison)

    # -------------------------------------------------------------------------
    # Hourly anomalies
    # -------------------------------------------------------------------------

    @cached("anomalies", "{days}|{connector}")
    def detect_anomalies(self, days: int = 7, connector: Optional[str] = None) -> List[Anomaly]:
        """
        Flag Paris hours whose error rate or mean latency exceeds twice the
        baseline of the whole window. Newest first.
        """
        logger.info(f"Detecting anomalies for {days} days, connector: {connector}")

        now = self._now()
        df = with_local_time(self._logs(now - timedelta(days=days), now, connector))
        if df.empty:
            return []

        label = connector_label(connector)
        hours = []
        for hour_start, group in df.groupby("hour_key"):
            hour = hour_start.tz_convert(PARIS_TZ).to_pydatetime()
            _, _, error_rate, latency = summarize_group(group)
            hours.append((hour, error_rate, latency))

        baseline_error_rate = sum(rate for _, rate, _ in hours) / len(hours)
        baseline_latency = series_mean(df["response_time_ms"])
        error_threshold = baseline_error_rate * BASELINE_FACTOR
        latency_threshold = baseline_latency * BASELINE_FACTOR

        anomalies = []
        for hour, error_rate, latency in hours:
            if error_rate > error_threshold and error_rate > ERROR_RATE_FLOOR:
                anomalies.append(Anomaly(
                    id=anomaly_id("error_rate", hour, label),
                    metric="error_rate",
                    value=error_rate,
                    threshold=error_threshold,
                    severity="critical" if error_rate > ERROR_RATE_CRITICAL else "warning",
                    timestamp=hour,
                    description=f"Taux d'erreur élevé : {error_rate:.1f}%",
                    root_cause="Pic d'erreurs détecté, vérifier les logs",
                    connector=label,
                ))
            if latency > latency_threshold and latency > LATENCY_FLOOR_MS:
                anomalies.append(Anomaly(
                    id=anomaly_id("latency", hour, label),
                    metric="latency",
                    value=latency,
                    threshold=latency_threshold,
                    severity="critical" if latency > LATENCY_CRITICAL_MS else "warning",
                    timestamp=hour,
                    description=f"Latence élevée : {latency:.1f}ms",
                    root_cause="Augmentation du trafic ou problème de performance",
                    connector=label,
                ))

        anomalies.sort(key=lambda a: a.timestamp, reverse=True)
        return anomalies

    # -------------------------------------------------------------------------
    # Top endpoints
    # -------------------------------------------------------------------------

    @cached("topEndpoints", "{type}|{limit}|{time_range}|{connector}")
    def get_top_endpoints(
        self,
        type: str = "slowest",
        limit: int = 10,
        time_range: str = "24h",
        connector: Optional[str] = None
    ) -> TopEndpoints:
        """`slowest` ranks by mean latency; any other type ranks by error count."""
        logger.info(f"Getting top {limit} endpoints, type: {type}, timeRange: {time_range}, connector: {connector}")

        start, end = self._time_range(time_range)
        df = self._logs(start, end, connector)
        if df.empty or limit <= 0:
            return TopEndpoints(type=type, endpoints=[])

        df["method"] = df["method"].fillna("GET")
        df["path"] = df["path"].fillna("/unknown")

        endpoints = []
        for (method, path), group in df.groupby(["method", "path"]):
            requests, errors, error_rate, avg_latency = summarize_group(group)
            latencies = group["response_time_ms"].dropna().tolist()
            endpoints.append(EndpointStats(
                path=path,
                method=method,
                connector=connector_label(connector),
                requests=requests,
                avg_latency_ms=avg_latency,
                errors=errors,
                error_rate=error_rate,
                p95_latency_ms=percentile(latencies, 95),
                p99_latency_ms=percentile(latencies, 99),
            ))

        if type == "slowest":
            endpoints.sort(key=lambda e: e.avg_latency_ms, reverse=True)
        else:
            endpoints.sort(key=lambda e: e.errors, reverse=True)
        return TopEndpoints(type=type, endpoints=endpoints[:limit])

    # -------------------------------------------------------------------------
    # Status distribution
    # -------------------------------------------------------------------------

    @cached("statusDistribution", "{time_range}|{connector}")
    def get_status_distribution(self, time_range: str = "24h", connector: Optional[str] = None) -> Dict[str, StatusDistribution]:
        """
        Status classes and the five most frequent codes, keyed by connector
        label. Logs without a status code fall in class ``0xx``.
        """
        logger.info(f"Getting status distribution for {time_range}, connector: {connector}")

        start, end = self._time_range(time_range)
        df = self._logs(start, end, connector)
        total = len(df)

        codes = df["status_code"].fillna(0).astype(int)
        code_counts = codes.value_counts()
        class_counts = (codes // 100).astype(str).add("xx").value_counts()

        names = sorted(set(BASE_CATEGORIES) | set(class_counts.index))
        categories = {
            name: StatusCategory(
                category=name,
                count=int(class_counts.get(name, 0)),
                percentage=safe_rate(int(class_counts.get(name, 0)), total),
            )
            for name in names
        }

        ranked = sorted(code_counts.items(), key=lambda item: (-item[1], item[0]))
        top_codes = [
            StatusCodeDetail(
                status_code=int(code),
                count=int(count),
                percentage=safe_rate(int(count), total),
                description=status_description(int(code)),
            )
            for code, count in ranked[:TOP_STATUS_CODES]
        ]

        return {connector_label(connector): StatusDistribution(categories=categories, top_codes=top_codes)}
