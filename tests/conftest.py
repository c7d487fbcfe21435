import re
import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from monitoring_api.config import Config
from monitoring_api.main import create_app
from monitoring_api.store_gateway import StoreGateway


NOW = datetime(2025, 10, 29, 18, 30, tzinfo=timezone.utc)  # Wednesday, 19:30 in Paris


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def cell_value(value) -> bytes:
    if isinstance(value, bool):
        value = "true" if value else "false"
    elif isinstance(value, datetime):
        value = str(epoch_ms(value))
    return str(value).encode("utf-8")


# =============================================================================
# IN-MEMORY BIGTABLE
# =============================================================================

class FakeCell:
    def __init__(self, value: bytes):
        self.value = value


class FakeRow:
    def __init__(self, row_key: bytes):
        self.row_key = row_key
        self.cells = {}

    def set_cell(self, family: str, qualifier: str, value):
        self.cells.setdefault(family, {})[qualifier.encode("utf-8")] = [FakeCell(cell_value(value))]


class FakeTable:
    """Rows sorted by key; supports key ranges, row limits and key-regex filters."""

    def __init__(self, name: str):
        self.name = name
        self.rows = {}
        self.calls = []
        self.error = None

    def put(self, row_key: str, family: str, **cells) -> FakeRow:
        key = row_key.encode("utf-8")
        row = self.rows.setdefault(key, FakeRow(key))
        for qualifier, value in cells.items():
            if value is not None:
                row.set_cell(family, qualifier, value)
        return row

    def read_rows(self, start_key=None, end_key=None, limit=None, filter_=None, retry=None):
        self.calls.append({
            "start_key": start_key,
            "end_key": end_key,
            "limit": limit,
            "regex": filter_.regex if filter_ is not None else None,
        })
        if self.error is not None:
            raise self.error

        pattern = re.compile(filter_.regex.decode("utf-8"), re.DOTALL) if filter_ is not None else None
        matched = []
        for key in sorted(self.rows):
            if start_key is not None and key < start_key:
                continue
            if end_key is not None and key >= end_key:
                break
            if pattern is not None and not pattern.fullmatch(key.decode("utf-8")):
                continue
            matched.append(self.rows[key])
            if limit and len(matched) >= limit:
                break
        return iter(matched)

    def read_row(self, row_key):
        if self.error is not None:
            raise self.error
        return self.rows.get(row_key)


class FakeInstance:
    def __init__(self):
        self.tables = {}
        self._counter = 0

    def table(self, name: str) -> FakeTable:
        return self.tables.setdefault(name, FakeTable(name))

    def _uid(self) -> str:
        self._counter += 1
        return f"{self._counter:06d}-{uuid.uuid4().hex[:8]}"

    # Writers used by tests

    def put_log(self, timestamp: datetime, type="API_IN", connector="pi-gateway", uid=None, **cells) -> str:
        row_key = f"{epoch_ms(timestamp):013d}#{type}#{connector}#{uid or self._uid()}"
        self.table("logs").put(row_key, "logs", **cells)
        return row_key

    def put_raw_log(self, row_key: str, **cells) -> str:
        self.table("logs").put(row_key, "logs", **cells)
        return row_key

    def put_metric_window(self, connector: str, window: datetime, **cells) -> str:
        row_key = f"{epoch_ms(window):013d}#metrics#{connector}#{self._uid()}"
        self.table("metrics").put(row_key, "metrics", window_timestamp=epoch_ms(window), **cells)
        return row_key

    def put_processing(self, row_key: str, log_cells: dict, message_cells: dict = None) -> str:
        table = self.table("processing")
        table.put(row_key, "processing_log", **log_cells)
        if message_cells:
            table.put(row_key, "processing_message", **message_cells)
        return row_key


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def store():
    return FakeInstance()


@pytest.fixture
def config(monkeypatch):
    for name in ("CACHE_TTL_SECONDS", "STORE_DEADLINE_SECONDS", "CORS_ORIGINS", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return Config()


@pytest.fixture
def gateway(store, config):
    return StoreGateway(store, config)


@pytest.fixture
def app(gateway, config, clock):
    return create_app(gateway=gateway, config=config, clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)
