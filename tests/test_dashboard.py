import pytest
import requests

from dashboard import app as dashboard


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


class TestApiGet:
    def test_drops_empty_params(self, monkeypatch):
        seen = {}

        def fake_get(url, params=None, timeout=None):
            seen.update(url=url, params=params)
            return FakeResponse(200, {"total": 0})

        monkeypatch.setattr(dashboard.requests, "get", fake_get)

        assert dashboard.api_get("/api/logs/search", {"query": "", "status": None, "page": 1}) == {"total": 0}
        assert seen["url"].endswith("/api/logs/search")
        assert seen["params"] == {"page": 1}

    def test_not_found_is_none(self, monkeypatch):
        monkeypatch.setattr(dashboard.requests, "get", lambda *a, **kw: FakeResponse(404))
        assert dashboard.api_get("/api/logs/missing") is None

    def test_server_error_raises(self, monkeypatch):
        monkeypatch.setattr(dashboard.requests, "get", lambda *a, **kw: FakeResponse(500))
        with pytest.raises(dashboard.ApiError):
            dashboard.api_get("/api/metrics/overview")

    def test_connection_error_raises(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr(dashboard.requests, "get", refuse)
        with pytest.raises(dashboard.ApiError, match="Cannot reach"):
            dashboard.api_get("/health")


class TestFrames:
    def test_timeline_frame(self):
        df = dashboard.timeline_frame([
            {"timestamp": "2025-10-29T18:00:00Z", "piGatewayRequests": 60, "piConnectorRequests": None},
            {"timestamp": "2025-10-29T18:01:00Z", "piGatewayRequests": None, "piConnectorRequests": 12},
        ])
        assert list(df.columns) == ["pi-gateway", "pi-connector"]
        assert len(df) == 2
        assert df["pi-connector"].iloc[1] == 12

    def test_heatmap_frame(self):
        heatmap = {
            "days": [
                {"day": "Mer", "date": "2025-10-29", "hours": [{"hour": h, "requests": h * 2} for h in range(24)]},
            ],
            "insights": [],
        }
        df = dashboard.heatmap_frame(heatmap)
        assert df.shape == (1, 24)
        assert df.loc["Mer 2025-10-29", 14] == 28
