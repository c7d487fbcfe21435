"""
Small numeric helpers shared by the metric and analytics services, and the
conversion of log entries into a pandas DataFrame for grouped aggregation.
"""

import math
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd


LOG_COLUMNS = [
    "timestamp", "type", "connector", "method", "path", "status_code",
    "success", "response_time_ms", "client_ip", "is_error"
]


def is_error(success: Optional[bool], status_code: Optional[int]) -> bool:
    """`success` decides when present; otherwise a status of 400 or more is an error."""
    if success is not None:
        return not success
    return status_code is not None and status_code >= 400


def logs_frame(logs) -> pd.DataFrame:
    """
    One row per log entry, with a boolean `is_error` column.

    `status_code` and `response_time_ms` are float columns so that missing
    values are NaN; `timestamp` is a UTC datetime column.
    """
    records = [
        {
            "timestamp": entry.timestamp,
            "type": entry.type,
            "connector": entry.connector,
            "method": entry.method,
            "path": entry.path,
            "status_code": entry.status_code,
            "success": entry.success,
            "response_time_ms": entry.response_time_ms,
            "client_ip": entry.client_ip,
            "is_error": is_error(entry.success, entry.status_code),
        }
        for entry in logs
    ]
    df = pd.DataFrame(records, columns=LOG_COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df["status_code"] = pd.to_numeric(df["status_code"], errors="coerce").astype("float64")
    df["response_time_ms"] = pd.to_numeric(df["response_time_ms"], errors="coerce").astype("float64")
    df["is_error"] = df["is_error"].astype(bool)
    return df


def percentile(values: Sequence[float], p: float) -> float:
    """
    Nearest-rank percentile: sort ascending, take index ``ceil(p/100 * n) - 1``
    clamped to ``[0, n-1]``. Returns 0.0 for an empty input.
    """
    if len(values) == 0:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(p / 100.0 * len(ordered)) - 1
    index = max(0, min(index, len(ordered) - 1))
    return float(ordered[index])


def mean(values: Iterable[Optional[float]]) -> float:
    """Mean of the non-null values, 0.0 when there are none."""
    present: List[float] = [v for v in values if v is not None]
    if not present:
        return 0.0
    return float(np.mean(present))


def series_mean(series: pd.Series) -> float:
    """Mean ignoring NaN, 0.0 for an empty or all-missing series."""
    present = series.dropna()
    if present.empty:
        return 0.0
    return float(present.mean())


def percent_change(old: float, new: float) -> float:
    """``(new - old) / old * 100``; from zero it is 100 when `new` grew, else 0."""
    if old == 0:
        return 100.0 if new > 0 else 0.0
    return (new - old) / old * 100.0


def percent_difference(a: float, b: float) -> float:
    """Symmetric difference ``(a - b) / ((a + b) / 2) * 100``; 0 when both are 0."""
    average = (a + b) / 2.0
    if average == 0:
        return 0.0
    return (a - b) / average * 100.0


def population_std(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.std(values))


def safe_rate(part: float, total: float) -> float:
    """``part / total * 100``, 0.0 when `total` is 0."""
    if total == 0:
        return 0.0
    return part / total * 100.0
