"""
Store Gateway Module

The only component that talks to Bigtable. Every public read catches store
errors, logs them with a traceback and returns an empty result so dashboards
degrade instead of failing.

Tables and column families (names come from `Config`):
    metrics     metrics                                  pre-aggregated windows
    logs        logs                                     raw request/response logs
    processing  processing_log, processing_message       business-message hops

Usage:
------
    from monitoring_api.config import Config
    from monitoring_api.store_gateway import StoreGateway, create_bigtable_instance

    config = Config()
    gateway = StoreGateway(create_bigtable_instance(config), config)
    windows = gateway.get_connector_metrics("pi-gateway", start, end)
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from google.cloud import bigtable
from google.cloud.bigtable import row_filters
from google.cloud.bigtable.row_data import DEFAULT_RETRY_READ_ROWS

from monitoring_api.cache import ResponseCache, cached
from monitoring_api.cells import (
    format_instant,
    key_prefix,
    parse_bool,
    parse_float,
    parse_instant,
    parse_int,
    parse_row_key,
)
from monitoring_api.config import Config
from monitoring_api.models import LogEntry


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

METRICS_SCAN_LIMIT = 10000
TRACE_SCAN_LIMIT = 1000
SEARCH_OVERFETCH = 2
ERROR_LOGS_OVERFETCH = 10

MESSAGE_PREFIX = "message_"
ROW_KEY_FIELD = "row_key"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def create_bigtable_instance(config: Config):
    """
    Open a data-only Bigtable client and return the configured instance.

    Raises
    ------
    ConfigError
        If the project or instance id is missing.
    """
    config.require_store()
    client = bigtable.Client(project=config.BIGTABLE_PROJECT_ID, admin=False)
    logger.info(
        f"Bigtable client ready: project={config.BIGTABLE_PROJECT_ID}, "
        f"instance={config.BIGTABLE_INSTANCE_ID}"
    )
    return client.instance(config.BIGTABLE_INSTANCE_ID)


# =============================================================================
# ROW DECODING
# =============================================================================

def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def family_cells(row, family: str) -> Dict[str, str]:
    """Latest value of every qualifier in one column family, as strings."""
    cells = {}
    for qualifier, versions in row.cells.get(family, {}).items():
        if versions:
            cells[_decode(qualifier)] = _decode(versions[0].value)
    return cells


def row_to_map(row, family: str) -> Dict[str, str]:
    data = family_cells(row, family)
    data[ROW_KEY_FIELD] = _decode(row.row_key)
    return data


def _step_sort_key(step: Dict[str, str]):
    # Unparseable timestamps sort first and are dropped by the trace builder
    parsed = parse_instant(step.get("timestamp"))
    return (parsed is not None, parsed or _EPOCH)


# =============================================================================
# GATEWAY
# =============================================================================

class StoreGateway:
    """
    Typed read primitives over the three Bigtable tables.

    Parameters
    ----------
    instance : google.cloud.bigtable.instance.Instance
        Anything exposing ``table(name)`` with ``read_rows``/``read_row``.
    config : Config
        Table and column family names, scan deadline.
    cache : ResponseCache, optional
        Shared response cache; None disables caching of metric windows.
    """

    def __init__(self, instance, config: Config, cache: Optional[ResponseCache] = None):
        self.config = config
        self.cache = cache
        self.metrics_table = instance.table(config.TABLE_METRICS)
        self.logs_table = instance.table(config.TABLE_LOGS)
        self.processing_table = instance.table(config.TABLE_PROCESSING)
        self._retry = DEFAULT_RETRY_READ_ROWS.with_deadline(config.STORE_DEADLINE_SECONDS)

    def _scan(self, table, start_key=None, end_key=None, limit=None, key_regex=None) -> Iterable:
        filter_ = None
        if key_regex is not None:
            filter_ = row_filters.RowKeyRegexFilter(key_regex.encode("utf-8"))
        return table.read_rows(
            start_key=start_key.encode("utf-8") if start_key is not None else None,
            end_key=end_key.encode("utf-8") if end_key is not None else None,
            limit=limit,
            filter_=filter_,
            retry=self._retry,
        )

    # -------------------------------------------------------------------------
    # logs
    # -------------------------------------------------------------------------

    def row_to_log_entry(self, row) -> Optional[LogEntry]:
        """
        Build a LogEntry from a `logs` row.

        Key components (`ts#type#connector#uuid`) override same-named cells.
        Returns None for rows whose key does not start with a 13-digit timestamp.
        """
        row_key = _decode(row.row_key)
        key = parse_row_key(row_key)
        if key is None:
            logger.warning(f"Skipping log row with malformed key: {row_key!r}")
            return None

        data = family_cells(row, self.config.CF_LOGS)
        return LogEntry(
            id=row_key,
            timestamp=key.timestamp,
            type=key.type or data.get("type"),
            connector=key.connector or data.get("connector"),
            method=data.get("method"),
            path=data.get("path"),
            status_code=parse_int(data.get("status_code")),
            success=parse_bool(data.get("success")),
            response_time_ms=parse_float(data.get("response_time_ms")),
            client_ip=data.get("client_ip"),
            timeout=parse_bool(data.get("timeout")),
            service_status=data.get("service_status"),
            error=data.get("error"),
            message_id=data.get("messageId"),
            end_to_end_id=data.get("endToEndId"),
            service=data.get("service"),
        )

    def search_logs(
        self,
        connector: Optional[str],
        log_type: Optional[str],
        start: datetime,
        end: datetime,
        limit: int
    ) -> List[LogEntry]:
        """
        Time-range scan of `logs` over ``[start, end)``.

        Connector and type filters are applied after the scan ("all" or None
        disables them); the scan asks the store for twice `limit` rows.
        """
        logger.info(
            f"Searching logs: connector={connector}, type={log_type}, "
            f"from={format_instant(start)}, to={format_instant(end)}, limit={limit}"
        )
        logs: List[LogEntry] = []
        if limit <= 0:
            return logs

        try:
            rows = self._scan(
                self.logs_table,
                start_key=key_prefix(start),
                end_key=key_prefix(end),
                limit=limit * SEARCH_OVERFETCH,
            )
            for row in rows:
                entry = self.row_to_log_entry(row)
                if entry is None:
                    continue
                if connector and connector != "all" and entry.connector != connector:
                    continue
                if log_type and log_type != "all" and entry.type != log_type:
                    continue
                logs.append(entry)
                if len(logs) >= limit:
                    break
            logger.info(f"Retrieved {len(logs)} logs")
        except Exception:
            logger.exception("Error searching logs")
            return []

        return logs

    def get_error_logs(self, connector: Optional[str], limit: int) -> List[LogEntry]:
        """Rows with ``success == false`` for `connector`, from a scan of ten times `limit`."""
        logger.info(f"Fetching error logs for connector: {connector}, limit: {limit}")
        errors: List[LogEntry] = []
        if limit <= 0:
            return errors

        try:
            for row in self._scan(self.logs_table, limit=limit * ERROR_LOGS_OVERFETCH):
                entry = self.row_to_log_entry(row)
                if entry is None or entry.success is not False:
                    continue
                if connector and connector != "all" and entry.connector != connector:
                    continue
                errors.append(entry)
                if len(errors) >= limit:
                    break
            logger.info(f"Retrieved {len(errors)} error logs")
        except Exception:
            logger.exception("Error fetching error logs")
            return []

        return errors

    def get_log_by_id(self, row_key: str) -> Optional[Dict[str, str]]:
        """Point lookup on `logs`; the cell map carries the key under ``row_key``."""
        logger.info(f"Fetching log by ID: {row_key}")
        try:
            row = self.logs_table.read_row(row_key.encode("utf-8"))
        except Exception:
            logger.exception(f"Error fetching log by ID: {row_key}")
            return None
        if row is None:
            return None
        return row_to_map(row, self.config.CF_LOGS)

    # -------------------------------------------------------------------------
    # metrics
    # -------------------------------------------------------------------------

    @cached("connectorMetrics", "{connector}|{start}|{end}")
    def get_connector_metrics(self, connector: str, start: datetime, end: datetime) -> List[Dict[str, str]]:
        """
        Metric windows of `connector` whose ``window_timestamp`` is strictly
        between `start` and `end`.
        """
        logger.info(
            f"Fetching metrics for connector: {connector} "
            f"from {format_instant(start)} to {format_instant(end)}"
        )
        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)
        windows: List[Dict[str, str]] = []

        try:
            rows = self._scan(
                self.metrics_table,
                limit=METRICS_SCAN_LIMIT,
                key_regex=f".*#metrics#{re.escape(connector)}#.*",
            )
            for row in rows:
                window = row_to_map(row, self.config.CF_METRICS)
                window_ms = parse_int(window.get("window_timestamp"))
                if window_ms is None:
                    logger.warning(f"Skipping metric window without timestamp: {window[ROW_KEY_FIELD]!r}")
                    continue
                if start_ms < window_ms < end_ms:
                    windows.append(window)
            logger.info(f"Retrieved {len(windows)} metrics for {connector}")
        except Exception:
            logger.exception(f"Error fetching metrics for connector: {connector}")
            return []

        return windows

    # -------------------------------------------------------------------------
    # processing
    # -------------------------------------------------------------------------

    def _processing_step(self, row) -> Dict[str, str]:
        step = family_cells(row, self.config.CF_PROCESSING_LOG)
        for qualifier, value in family_cells(row, self.config.CF_PROCESSING_MESSAGE).items():
            step[MESSAGE_PREFIX + qualifier] = value
        return step

    def trace_by_message_id(self, message_id: str) -> List[Dict[str, str]]:
        """Processing steps whose ``messageId`` cell equals `message_id`, oldest first."""
        logger.info(f"Tracing transaction by messageId: {message_id}")
        steps: List[Dict[str, str]] = []

        try:
            for row in self._scan(self.processing_table, limit=TRACE_SCAN_LIMIT):
                step = self._processing_step(row)
                if step.get("messageId") == message_id:
                    steps.append(step)
        except Exception:
            logger.exception(f"Error tracing by messageId: {message_id}")
            return []

        steps.sort(key=_step_sort_key)
        logger.info(f"Retrieved {len(steps)} steps for messageId: {message_id}")
        return steps

    def trace_by_end_to_end_id(self, end_to_end_id: str) -> List[Dict[str, str]]:
        """
        Processing rows whose key contains ``#<end_to_end_id>#``, plus `logs`
        rows carrying the same ``endToEndId`` projected into the step shape.
        """
        logger.info(f"Tracing transaction by endToEndId: {end_to_end_id}")
        steps: List[Dict[str, str]] = []

        try:
            rows = self._scan(
                self.processing_table,
                limit=TRACE_SCAN_LIMIT,
                key_regex=f".*#{re.escape(end_to_end_id)}#.*",
            )
            for row in rows:
                steps.append(self._processing_step(row))

            for row in self._scan(self.logs_table, limit=TRACE_SCAN_LIMIT):
                entry = self.row_to_log_entry(row)
                if entry is not None and entry.end_to_end_id == end_to_end_id:
                    steps.append(self._log_as_step(entry))
        except Exception:
            logger.exception(f"Error tracing by endToEndId: {end_to_end_id}")
            return []

        steps.sort(key=_step_sort_key)
        logger.info(f"Retrieved {len(steps)} steps for endToEndId: {end_to_end_id}")
        return steps

    @staticmethod
    def _log_as_step(entry: LogEntry) -> Dict[str, str]:
        step = {
            "timestamp": format_instant(entry.timestamp),
            "type": entry.type,
            "service": entry.connector,
            "method": entry.method,
            "path": entry.path,
            "status": str(entry.status_code) if entry.status_code is not None else None,
            "duration_ms": str(entry.response_time_ms) if entry.response_time_ms is not None else None,
            "client_ip": entry.client_ip,
            "endToEndId": entry.end_to_end_id,
            "messageId": entry.message_id,
        }
        return {k: v for k, v in step.items() if v is not None}
