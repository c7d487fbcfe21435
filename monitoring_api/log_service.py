"""
Log Service

Paged, filtered log search over the `logs` table plus single-log detail.

The gateway only filters by connector and type; every other filter is applied
in memory on an over-fetched batch (three times the page size), so very
restrictive filters can return fewer rows than actually exist in the range.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from monitoring_api.cache import ResponseCache, cached
from monitoring_api.cells import parse_bool, parse_float, parse_int, parse_row_key, utc_now
from monitoring_api.models import LogDetail, LogEntry, LogSearchParams, LogSearchResponse, LogSummary
from monitoring_api.stats import mean, safe_rate
from monitoring_api.store_gateway import StoreGateway


logger = logging.getLogger(__name__)


SEARCH_OVERFETCH = 3
DEFAULT_SEARCH_WINDOW = timedelta(hours=24)


# =============================================================================
# FILTERS
# =============================================================================

def _contains(haystack: Optional[str], needle: str) -> bool:
    return haystack is not None and needle in haystack.lower()


def matches_filters(entry: LogEntry, params: LogSearchParams) -> bool:
    """True when `entry` passes every in-memory filter set on `params`."""
    if params.query:
        needle = params.query.lower()
        if not (
            _contains(entry.path, needle)
            or _contains(entry.client_ip, needle)
            or _contains(entry.message_id, needle)
        ):
            return False

    if params.status:
        if entry.status_code is None:
            return False
        status = params.status.strip().lower()
        if status.endswith("xx"):
            if not str(entry.status_code).startswith(status[:1]):
                return False
        elif str(entry.status_code) != status:
            return False

    if params.success is not None and entry.success != params.success:
        return False

    if params.min_latency is not None or params.max_latency is not None:
        latency = entry.response_time_ms
        if latency is None:
            return False
        if params.min_latency is not None and latency < params.min_latency:
            return False
        if params.max_latency is not None and latency > params.max_latency:
            return False

    if params.client_ip and entry.client_ip != params.client_ip:
        return False

    if params.service and entry.service != params.service:
        return False

    return True


def summarize(logs: List[LogEntry]) -> LogSummary:
    if not logs:
        return LogSummary()
    successes = sum(1 for entry in logs if entry.success is True)
    return LogSummary(
        success_rate=safe_rate(successes, len(logs)),
        avg_latency_ms=mean(entry.response_time_ms for entry in logs),
        error_count=sum(1 for entry in logs if entry.success is False),
    )


# =============================================================================
# SERVICE
# =============================================================================

class LogService:
    def __init__(
        self,
        gateway: StoreGateway,
        cache: Optional[ResponseCache] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.gateway = gateway
        self.cache = cache
        self.clock = clock

    def search_logs(self, params: LogSearchParams) -> LogSearchResponse:
        """
        Search logs in ``[startTime, endTime)``, newest first by default.

        `total` counts every log that passed the filters; `logs` holds the
        requested page only.
        """
        logger.info(f"Searching logs with params: {params.model_dump(exclude_none=True)}")

        end = params.end_time or self.clock()
        start = params.start_time or end - DEFAULT_SEARCH_WINDOW

        fetched = self.gateway.search_logs(
            params.connector, params.type, start, end, params.limit * SEARCH_OVERFETCH
        )
        filtered = [entry for entry in fetched if matches_filters(entry, params)]

        descending = params.sort_order == "desc"
        if params.sort_by == "latency":
            filtered.sort(key=lambda entry: entry.response_time_ms or 0.0, reverse=descending)
        else:
            filtered.sort(key=lambda entry: entry.timestamp, reverse=descending)

        total = len(filtered)
        first = min((params.page - 1) * params.limit, total)
        last = min(first + params.limit, total)

        return LogSearchResponse(
            total=total,
            page=params.page,
            limit=params.limit,
            pages=math.ceil(total / params.limit),
            logs=filtered[first:last],
            summary=summarize(filtered),
        )

    @cached("errorLogs", "{connector}|{limit}")
    def get_error_logs(self, connector: str = "all", limit: int = 50) -> List[LogEntry]:
        logger.info(f"Getting error logs for connector: {connector}, limit: {limit}")
        return self.gateway.get_error_logs(connector, limit)

    def get_log_detail(self, log_id: str) -> Optional[LogDetail]:
        """Single log by row key; None when it does not exist or the key is malformed."""
        logger.info(f"Getting log detail for ID: {log_id}")

        key = parse_row_key(log_id)
        if key is None:
            logger.warning(f"Rejecting malformed log ID: {log_id!r}")
            return None

        data = self.gateway.get_log_by_id(log_id)
        if data is None:
            return None

        return LogDetail(
            log_id=log_id,
            timestamp=key.timestamp,
            type=key.type or data.get("type"),
            connector=key.connector or data.get("connector"),
            method=data.get("method"),
            path=data.get("path"),
            status_code=parse_int(data.get("status_code")),
            success=parse_bool(data.get("success")),
            duration_ms=parse_float(data.get("response_time_ms")),
            client_ip=data.get("client_ip"),
            timeout=parse_bool(data.get("timeout")),
            service_status=data.get("service_status"),
            raw_log=data.get("raw_log"),
            error=data.get("error"),
            message_id=data.get("messageId"),
            end_to_end_id=data.get("endToEndId"),
            service=data.get("service"),
            message=data.get("message"),
        )
