from datetime import timedelta

from conftest import epoch_ms


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestMetricsRoutes:
    def test_overview_is_camel_case(self, store, client, now):
        store.put_metric_window("pi-gateway", now - timedelta(minutes=5), requests_per_minute=60, error_rate_percentage=1)

        response = client.get("/api/metrics/overview", params={"timeRange": "1h"})

        assert response.status_code == 200
        body = response.json()
        assert body["timeRange"] == "1h"
        assert body["timestamp"] == "2025-10-29T18:30:00Z"
        assert body["services"][0]["requestsPerMinute"] == 60
        assert body["services"][1]["status"] == "unknown"
        assert body["totals"]["totalRequests"] == 60
        assert body["timeline"][0]["piGatewayRequests"] == 60
        assert body["timeline"][0]["piConnectorRequests"] is None

    def test_overview_defaults_to_one_hour(self, client):
        assert client.get("/api/metrics/overview").json()["timeRange"] == "1h"

    def test_connector_details(self, client):
        response = client.get("/api/metrics/connector/pi-connector")
        assert response.status_code == 200
        assert response.json()["connector"] == "pi-connector"
        assert response.json()["latencyPercentiles"]["p99"] == 0.0

    def test_repeated_requests_are_identical(self, store, client, now):
        store.put_metric_window("pi-gateway", now - timedelta(minutes=5), requests_per_minute=60)
        first = client.get("/api/metrics/overview").json()
        store.put_metric_window("pi-gateway", now - timedelta(minutes=4), requests_per_minute=60)
        second = client.get("/api/metrics/overview").json()
        assert first == second

    def test_unexpected_error_is_empty_500(self, app, client, monkeypatch):
        def boom(time_range="1h"):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(app.state.metric_service, "get_overview_metrics", boom)

        response = client.get("/api/metrics/overview")

        assert response.status_code == 500
        assert response.content == b""


class TestLogRoutes:
    def test_search(self, store, client, now):
        for i in range(7):
            store.put_log(now - timedelta(minutes=i + 1), status_code=500, success=False, client_ip="10.0.0.9")
        for i in range(3):
            store.put_log(now - timedelta(minutes=i + 20), status_code=404, success=False)

        response = client.get("/api/logs/search", params={"status": "5xx", "limit": 10, "clientIP": "10.0.0.9"})

        body = response.json()
        assert body["total"] == 7
        assert body["summary"]["errorCount"] == 7
        assert body["logs"][0]["statusCode"] == 500
        assert body["logs"][0]["clientIp"] == "10.0.0.9"

    def test_search_with_time_range(self, store, client, now):
        store.put_log(now - timedelta(days=2))
        response = client.get("/api/logs/search", params={
            "startTime": "2025-10-27T00:00:00Z",
            "endTime": "2025-10-28T00:00:00Z",
        })
        assert response.json()["total"] == 1

    def test_invalid_page(self, client):
        assert client.get("/api/logs/search", params={"page": 0}).status_code == 422
        assert client.get("/api/logs/search", params={"limit": 0}).status_code == 422

    def test_errors(self, store, client, now):
        store.put_log(now - timedelta(minutes=1), success=False, status_code=503)
        store.put_log(now - timedelta(minutes=2), success=True, status_code=200)

        body = client.get("/api/logs/errors").json()

        assert [log["statusCode"] for log in body] == [503]

    def test_detail(self, store, client, now):
        row_key = store.put_log(now, status_code=200, response_time_ms=12)

        response = client.get("/api/logs/" + row_key.replace("#", "%23"))

        assert response.status_code == 200
        assert response.json()["logId"] == row_key
        assert response.json()["durationMs"] == 12.0

    def test_detail_not_found(self, client):
        assert client.get("/api/logs/1761762600000#API_IN#pi-gateway#missing".replace("#", "%23")).status_code == 404
        assert client.get("/api/logs/garbage").status_code == 404


class TestTraceRoutes:
    def test_trace_by_message_id(self, store, client, now):
        store.put_processing("a", {"messageId": "MSG-1", "timestamp": epoch_ms(now), "status": "200"})

        response = client.get("/api/processing/trace/MSG-1")

        assert response.status_code == 200
        body = response.json()
        assert body["transactionId"] == "MSG-1"
        assert body["steps"][0]["sequence"] == 1
        assert body["totalDurationMs"] == 0

    def test_unknown_trace(self, client):
        assert client.get("/api/processing/trace/MSG-404").status_code == 404
        assert client.get("/api/processing/trace", params={"endToEndId": "E2E-404"}).status_code == 404

    def test_end_to_end_id_is_required(self, client):
        assert client.get("/api/processing/trace").status_code == 422

    def test_malformed_cells_do_not_fail_the_request(self, store, client, now):
        store.put_processing("a", {"messageId": "M1", "timestamp": epoch_ms(now), "duration_ms": "NaN"})
        store.put_processing("b", {"messageId": "M1", "timestamp": "99999999999999999"})
        store.put_metric_window("pi-gateway", now - timedelta(minutes=5), requests_per_minute="Infinity")

        trace = client.get("/api/processing/trace/M1")
        overview = client.get("/api/metrics/overview")

        assert trace.status_code == 200
        assert len(trace.json()["steps"]) == 1
        assert trace.json()["steps"][0]["durationMs"] is None
        assert overview.status_code == 200
        assert overview.json()["totals"]["totalRequests"] == 0


class TestAnalyticsRoutes:
    def test_days_is_bounded(self, client):
        for path in ("/api/analytics/heatmap", "/api/analytics/anomalies"):
            assert client.get(path, params={"days": 1000000}).status_code == 422
            assert client.get(path, params={"days": 366}).status_code == 200
        assert client.get("/api/analytics/trends", params={"metric": "requests", "days": 367}).status_code == 422

    def test_comparison_requires_both_periods(self, client):
        assert client.get("/api/analytics/comparison", params={"period1": "current"}).status_code == 422
        response = client.get("/api/analytics/comparison", params={"period1": "current", "period2": "previous"})
        assert response.json()["changes"] == {"requests": 0.0, "latency": 0.0, "errorRate": 0.0, "successRate": 0.0}

    def test_heatmap(self, client):
        body = client.get("/api/analytics/heatmap", params={"days": 2}).json()
        assert len(body["days"]) == 2
        assert body["days"][0]["hours"][0]["avgLatencyMs"] == 0.0

    def test_trends_requires_metric(self, client):
        assert client.get("/api/analytics/trends").status_code == 422
        assert len(client.get("/api/analytics/trends", params={"metric": "requests", "days": 3}).json()["data"]) == 3

    def test_status_distribution_keyed_by_all(self, store, client, now):
        store.put_log(now - timedelta(minutes=1), status_code=200)

        body = client.get("/api/analytics/status-distribution").json()

        assert list(body) == ["all"]
        assert body["all"]["categories"]["2xx"]["count"] == 1
        assert body["all"]["topCodes"][0]["statusCode"] == 200

    def test_other_analytics_routes(self, client):
        assert client.get("/api/analytics/top-clients").json() == []
        assert client.get("/api/analytics/anomalies").json() == []
        assert client.get("/api/analytics/top-endpoints", params={"type": "errors"}).json() == {
            "type": "errors", "endpoints": [],
        }
        assert client.get("/api/analytics/connector-breakdown").json()["piGateway"]["requests"] == 0


class TestCors:
    def test_allows_any_origin_by_default(self, client):
        response = client.get("/health", headers={"Origin": "http://dashboard.local"})
        assert response.headers["access-control-allow-origin"] == "*"
