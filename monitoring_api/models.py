"""
Response Models

Pydantic models for every payload the API returns. Field names are snake_case
in Python and camelCase on the wire (`response_time_ms` -> `responseTimeMs`).

Timestamps typed `datetime` are emitted as ISO-8601: UTC instants end in `Z`,
Europe/Paris values carry their offset.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialising field names as camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# LOGS
# =============================================================================

class LogEntry(CamelModel):
    """One raw request/response record from the `logs` table."""
    id: str = Field(..., description="Row key")
    timestamp: datetime
    type: Optional[str] = Field(None, description="API_IN, API_OUT, AUTH or PROCESSING")
    connector: Optional[str] = Field(None, description="pi-gateway or pi-connector")
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    success: Optional[bool] = None
    response_time_ms: Optional[float] = None
    client_ip: Optional[str] = None
    timeout: Optional[bool] = None
    service_status: Optional[str] = None
    error: Optional[str] = None
    message_id: Optional[str] = None
    end_to_end_id: Optional[str] = None
    service: Optional[str] = None


class LogSearchParams(CamelModel):
    query: Optional[str] = None
    connector: str = "all"
    type: str = "all"
    status: Optional[str] = None
    success: Optional[bool] = None
    min_latency: Optional[float] = None
    max_latency: Optional[float] = None
    client_ip: Optional[str] = None
    service: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1)
    sort_by: str = "timestamp"
    sort_order: str = "desc"


class LogSummary(CamelModel):
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    error_count: int = 0


class LogSearchResponse(CamelModel):
    total: int
    page: int
    limit: int
    pages: int
    logs: List[LogEntry]
    summary: LogSummary


class LogDetail(CamelModel):
    log_id: str
    timestamp: datetime
    type: Optional[str] = None
    connector: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    success: Optional[bool] = None
    duration_ms: Optional[float] = None
    client_ip: Optional[str] = None
    timeout: Optional[bool] = None
    service_status: Optional[str] = None
    raw_log: Optional[str] = None
    error: Optional[str] = None
    message_id: Optional[str] = None
    end_to_end_id: Optional[str] = None
    service: Optional[str] = None
    message: Optional[str] = None


# =============================================================================
# METRICS
# =============================================================================

class ServiceStatus(CamelModel):
    name: str
    status: str = Field(..., description="healthy, degraded, down or unknown")
    uptime_percentage: float = 0.0
    requests_per_minute: int = 0
    avg_latency_ms: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0


class TotalMetrics(CamelModel):
    total_requests: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    timeout_rate: float = 0.0


class TimelinePoint(CamelModel):
    timestamp: datetime
    pi_gateway_requests: Optional[int] = None
    pi_connector_requests: Optional[int] = None


class OverviewMetrics(CamelModel):
    timestamp: datetime
    time_range: str
    services: List[ServiceStatus]
    totals: TotalMetrics
    timeline: List[TimelinePoint]


class LatencyPercentiles(CamelModel):
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


class EndpointMetrics(CamelModel):
    path: str
    avg_latency_ms: float
    p95_latency_ms: float
    count: int


class EndpointError(CamelModel):
    path: str
    status: int
    count: int
    last_seen: datetime


class ConnectorDetails(CamelModel):
    connector: str
    uptime_percentage: float = 0.0
    total_requests: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    latency_percentiles: LatencyPercentiles = Field(default_factory=LatencyPercentiles)
    latency_distribution: Dict[str, int] = Field(default_factory=dict)
    status_breakdown: Dict[str, int] = Field(default_factory=dict)
    top_slow_endpoints: List[EndpointMetrics] = Field(default_factory=list)
    top_error_endpoints: List[EndpointError] = Field(default_factory=list)


# =============================================================================
# TRACES
# =============================================================================

class TraceStep(CamelModel):
    sequence: int
    timestamp: datetime
    type: Optional[str] = None
    service: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    status: Optional[int] = None
    duration_ms: Optional[int] = None
    client_ip: Optional[str] = None
    message: Optional[str] = None


class Bottleneck(CamelModel):
    step: int
    service: Optional[str] = None
    duration_ms: int
    percentage: float
    suggestion: str


class Trace(CamelModel):
    transaction_id: Optional[str] = None
    message_id: Optional[str] = None
    end_to_end_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    total_duration_ms: int
    status: str = Field(..., description="success or failure")
    steps: List[TraceStep]
    bottlenecks: List[Bottleneck]


# =============================================================================
# ANALYTICS
# =============================================================================

class PeriodMetrics(CamelModel):
    name: str
    requests: int
    avg_latency_ms: float
    error_rate: float
    success_rate: float
    start_date: datetime
    end_date: datetime


class MetricChanges(CamelModel):
    requests: float
    latency: float
    error_rate: float
    success_rate: float


class PeriodComparison(CamelModel):
    period1: PeriodMetrics
    period2: PeriodMetrics
    changes: MetricChanges


class HourData(CamelModel):
    hour: int
    requests: int
    level: str = Field(..., description="low, medium, high or very_high")
    avg_latency_ms: float


class DayHeatmap(CamelModel):
    day: str = Field(..., description="Short French day name, e.g. Lun")
    date: str = Field(..., description="Calendar date, e.g. 2025-10-27")
    hours: List[HourData]


class Heatmap(CamelModel):
    days: List[DayHeatmap]
    insights: List[str]


class TopClient(CamelModel):
    client_ip: str
    requests: int
    errors: int
    error_rate: float
    avg_latency_ms: float
    connector: str


class Anomaly(CamelModel):
    id: str
    metric: str
    value: float
    threshold: float
    severity: str = Field(..., description="critical or warning")
    timestamp: datetime
    description: str
    root_cause: str
    connector: str


class TrendDataPoint(CamelModel):
    timestamp: datetime
    value: float
    label: str


class TrendInsights(CamelModel):
    average: float
    min: float
    max: float
    trend: float
    summary: str


class Trends(CamelModel):
    metric: str
    data: List[TrendDataPoint]
    anomalies: List[Anomaly]
    insights: TrendInsights


class ConnectorMetrics(CamelModel):
    name: str
    requests: int
    requests_percentage: float
    avg_latency_ms: float
    error_rate: float
    success_rate: float


class ConnectorComparison(CamelModel):
    winner: str
    reason: str
    differences: Dict[str, float]


class ConnectorBreakdown(CamelModel):
    pi_gateway: ConnectorMetrics
    pi_connector: ConnectorMetrics
    comparison: ConnectorComparison


class EndpointStats(CamelModel):
    path: str
    method: str
    connector: str
    requests: int
    avg_latency_ms: float
    errors: int
    error_rate: float
    p95_latency_ms: float
    p99_latency_ms: float


class TopEndpoints(CamelModel):
    type: str
    endpoints: List[EndpointStats]


class StatusCategory(CamelModel):
    category: str
    count: int
    percentage: float


class StatusCodeDetail(CamelModel):
    status_code: int
    count: int
    percentage: float
    description: str


class StatusDistribution(CamelModel):
    categories: Dict[str, StatusCategory]
    top_codes: List[StatusCodeDetail]
