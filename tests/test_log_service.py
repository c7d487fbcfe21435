from datetime import timedelta

import pytest

from monitoring_api.log_service import LogService, matches_filters, summarize
from monitoring_api.models import LogEntry, LogSearchParams


@pytest.fixture
def service(gateway, clock):
    return LogService(gateway, clock=clock)


def entry(**fields):
    fields.setdefault("id", "1761762600000#API_IN#pi-gateway#1")
    fields.setdefault("timestamp", "2025-10-29T18:30:00Z")
    return LogEntry(**fields)


class TestMatchesFilters:
    def test_query_is_case_insensitive_on_three_fields(self):
        params = LogSearchParams(query="PAY")
        assert matches_filters(entry(path="/api/payments"), params)
        assert matches_filters(entry(message_id="msg-payout-1"), params)
        assert not matches_filters(entry(path="/api/health", client_ip="10.0.0.1"), params)

    def test_status_exact_and_class(self):
        assert matches_filters(entry(status_code=503), LogSearchParams(status="5xx"))
        assert not matches_filters(entry(status_code=404), LogSearchParams(status="5xx"))
        assert matches_filters(entry(status_code=404), LogSearchParams(status="404"))
        assert not matches_filters(entry(), LogSearchParams(status="404"))

    def test_latency_bounds_require_a_latency(self):
        params = LogSearchParams(min_latency=10, max_latency=100)
        assert matches_filters(entry(response_time_ms=10), params)
        assert matches_filters(entry(response_time_ms=100), params)
        assert not matches_filters(entry(response_time_ms=100.5), params)
        assert not matches_filters(entry(), params)

    def test_inverted_latency_bounds_match_nothing(self):
        params = LogSearchParams(min_latency=100, max_latency=10)
        assert not matches_filters(entry(response_time_ms=50), params)

    def test_success_client_and_service(self):
        assert not matches_filters(entry(success=True), LogSearchParams(success=False))
        assert not matches_filters(entry(), LogSearchParams(success=True))
        assert matches_filters(entry(client_ip="10.0.0.1"), LogSearchParams(client_ip="10.0.0.1"))
        assert not matches_filters(entry(client_ip="10.0.0.10"), LogSearchParams(client_ip="10.0.0.1"))
        assert matches_filters(entry(service="auth"), LogSearchParams(service="auth"))


class TestSummary:
    def test_empty(self):
        summary = summarize([])
        assert summary.success_rate == 0.0
        assert summary.error_count == 0

    def test_counts_and_non_null_latency_mean(self):
        summary = summarize([
            entry(success=True, response_time_ms=10),
            entry(success=False, response_time_ms=30),
            entry(success=None),
            entry(success=True),
        ])
        assert summary.success_rate == 50.0
        assert summary.avg_latency_ms == 20.0
        assert summary.error_count == 1


class TestSearchLogs:
    def test_status_class_filter_counts_matches(self, store, service, now):
        for i in range(7):
            store.put_log(now - timedelta(minutes=10 + i), status_code=500, success=False)
        for i in range(3):
            store.put_log(now - timedelta(minutes=30 + i), status_code=404, success=False)

        result = service.search_logs(LogSearchParams(status="5xx", limit=10))

        assert result.total == 7
        assert result.pages == 1
        assert result.summary.error_count == 7
        assert result.summary.success_rate == 0.0
        assert all(log.status_code == 500 for log in result.logs)

    def test_defaults_to_last_24_hours_newest_first(self, store, service, now):
        store.put_log(now - timedelta(hours=25))
        store.put_log(now - timedelta(hours=2))
        store.put_log(now - timedelta(hours=1))

        result = service.search_logs(LogSearchParams())

        assert result.total == 2
        assert [log.timestamp for log in result.logs] == [now - timedelta(hours=1), now - timedelta(hours=2)]

    def test_overfetches_three_pages(self, store, service):
        service.search_logs(LogSearchParams(limit=20))
        assert store.table("logs").calls[-1]["limit"] == 20 * 3 * 2

    def test_paging(self, store, service, now):
        for i in range(5):
            store.put_log(now - timedelta(minutes=i + 1))

        second = service.search_logs(LogSearchParams(page=2, limit=2))
        beyond = service.search_logs(LogSearchParams(page=9, limit=2))

        assert second.total == 5
        assert second.pages == 3
        assert [log.timestamp for log in second.logs] == [now - timedelta(minutes=3), now - timedelta(minutes=4)]
        assert beyond.logs == []
        assert beyond.total == 5

    def test_sort_by_latency(self, store, service, now):
        store.put_log(now - timedelta(minutes=1), response_time_ms=30)
        store.put_log(now - timedelta(minutes=2))
        store.put_log(now - timedelta(minutes=3), response_time_ms=90)

        result = service.search_logs(LogSearchParams(sort_by="latency", sort_order="asc"))

        assert [log.response_time_ms for log in result.logs] == [None, 30.0, 90.0]

    def test_connector_filter_and_explicit_range(self, store, service, now):
        store.put_log(now - timedelta(days=3), connector="pi-connector")
        store.put_log(now - timedelta(days=3), connector="pi-gateway")

        result = service.search_logs(LogSearchParams(
            connector="pi-connector",
            start_time=now - timedelta(days=4),
            end_time=now - timedelta(days=2),
        ))

        assert result.total == 1
        assert result.logs[0].connector == "pi-connector"

    def test_no_matches(self, service):
        result = service.search_logs(LogSearchParams())
        assert result.total == 0
        assert result.pages == 0
        assert result.summary.avg_latency_ms == 0.0


class TestErrorLogs:
    def test_delegates_to_gateway(self, store, service, now):
        store.put_log(now - timedelta(minutes=1), success=False, status_code=500)
        store.put_log(now - timedelta(minutes=2), success=True, status_code=200)

        errors = service.get_error_logs()

        assert len(errors) == 1
        assert errors[0].status_code == 500


class TestLogDetail:
    def test_found(self, store, service, now):
        row_key = store.put_log(
            now,
            type="API_OUT",
            connector="pi-connector",
            status_code=201,
            success=True,
            response_time_ms=42.5,
            raw_log='{"ok": true}',
            messageId="MSG-1",
        )

        detail = service.get_log_detail(row_key)

        assert detail.log_id == row_key
        assert detail.timestamp == now
        assert detail.type == "API_OUT"
        assert detail.connector == "pi-connector"
        assert detail.duration_ms == 42.5
        assert detail.raw_log == '{"ok": true}'
        assert detail.message_id == "MSG-1"

    def test_missing(self, service):
        assert service.get_log_detail("1761762600000#API_IN#pi-gateway#missing") is None

    def test_malformed_id_skips_the_store(self, store, service):
        assert service.get_log_detail("not-a-key") is None
        assert store.table("logs").calls == []
