"""
Connector Monitoring Dashboard

A Streamlit dashboard over the monitoring API: service overview, connector
details, log explorer, transaction tracer and analytics.

Run Instructions:
-----------------
Start the API first (uvicorn monitoring_api.main:app), then from the
repository root run:
    streamlit run dashboard/app.py

Set API_BASE_URL when the API is not on http://localhost:8000.
"""

import os
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import streamlit as st


# =============================================================================
# CONFIGURATION
# =============================================================================

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
REQUEST_TIMEOUT_SECONDS = 30

CONNECTORS = ["pi-gateway", "pi-connector"]
TIME_RANGES = ["1h", "6h", "24h", "7d", "30d"]
STATUS_ICONS = {"healthy": "🟢", "degraded": "🟠", "down": "🔴", "unknown": "⚪"}


# =============================================================================
# API CLIENT
# =============================================================================

class ApiError(Exception):
    """Raised when the API is unreachable or answers with an error status."""


def api_get(path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
    """
    GET a JSON document from the API.

    Returns None on 404; raises ApiError for connection problems, timeouts
    and any other error status.
    """
    clean = {k: v for k, v in (params or {}).items() if v not in (None, "")}
    try:
        response = requests.get(f"{API_BASE_URL}{path}", params=clean, timeout=REQUEST_TIMEOUT_SECONDS)
    except requests.exceptions.ConnectionError:
        raise ApiError(f"Cannot reach the API at {API_BASE_URL}")
    except requests.exceptions.Timeout:
        raise ApiError("Request timeout")

    if response.status_code == 404:
        return None
    if response.status_code >= 400:
        raise ApiError(f"API error {response.status_code} on {path}")
    return response.json()


@st.cache_data(ttl=30)
def fetch(path: str, **params) -> Optional[Any]:
    return api_get(path, params)


def timeline_frame(timeline: List[Dict[str, Any]]) -> pd.DataFrame:
    """Overview timeline as a DataFrame indexed by timestamp, one column per connector."""
    df = pd.DataFrame(timeline, columns=["timestamp", "piGatewayRequests", "piConnectorRequests"])
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df = df.rename(columns={"piGatewayRequests": "pi-gateway", "piConnectorRequests": "pi-connector"})
    return df.set_index("timestamp")


def heatmap_frame(heatmap: Dict[str, Any]) -> pd.DataFrame:
    """Heatmap days as rows ("Lun 2025-10-27") and hours 0-23 as columns."""
    rows = {
        f"{day['day']} {day['date']}": {hour["hour"]: hour["requests"] for hour in day["hours"]}
        for day in heatmap.get("days", [])
    }
    return pd.DataFrame.from_dict(rows, orient="index", columns=list(range(24))).fillna(0).astype(int)


# =============================================================================
# PAGES
# =============================================================================

def overview_page():
    st.header("📊 Overview")
    time_range = st.sidebar.selectbox("Time range", TIME_RANGES, index=0)
    overview = fetch("/api/metrics/overview", timeRange=time_range)

    columns = st.columns(len(overview["services"]))
    for column, service in zip(columns, overview["services"]):
        with column:
            st.subheader(f"{STATUS_ICONS.get(service['status'], '⚪')} {service['name']}")
            st.metric("Uptime", f"{service['uptimePercentage']:.2f}%")
            st.metric("Requests / min", f"{service['requestsPerMinute']:,}")
            st.metric("Avg latency", f"{service['avgLatencyMs']:.1f} ms")
            st.metric("Error rate", f"{service['errorRate']:.2f}%")

    totals = overview["totals"]
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Total Requests", f"{totals['totalRequests']:,}")
    with col2:
        st.metric("Success Rate", f"{totals['successRate']:.2f}%")
    with col3:
        st.metric("P95 Latency", f"{totals['p95LatencyMs']:.1f} ms")
    with col4:
        st.metric("Timeout Rate", f"{totals['timeoutRate']:.2f}%")

    st.subheader("📈 Requests per minute")
    if overview["timeline"]:
        st.line_chart(timeline_frame(overview["timeline"]), height=350)
    else:
        st.info("No metric windows in this time range.")


def connector_page():
    connector = st.sidebar.selectbox("Connector", CONNECTORS)
    time_range = st.sidebar.selectbox("Time range", TIME_RANGES, index=2)
    st.header(f"🔌 {connector}")

    details = fetch(f"/api/metrics/connector/{connector}", timeRange=time_range)

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Uptime", f"{details['uptimePercentage']:.2f}%")
    with col2:
        st.metric("Total Requests", f"{details['totalRequests']:,}")
    with col3:
        st.metric("Success Rate", f"{details['successRate']:.2f}%")
    with col4:
        st.metric("Avg Latency", f"{details['avgLatencyMs']:.1f} ms")

    st.subheader("Latency percentiles")
    st.bar_chart(pd.Series(details["latencyPercentiles"]))

    left, right = st.columns(2)
    with left:
        st.subheader("Latency distribution")
        if details["latencyDistribution"]:
            st.bar_chart(pd.Series(details["latencyDistribution"]))
    with right:
        st.subheader("Status codes")
        if details["statusBreakdown"]:
            st.bar_chart(pd.Series(details["statusBreakdown"]))

    st.subheader("🐢 Slowest endpoints")
    st.dataframe(pd.DataFrame(details["topSlowEndpoints"]), use_container_width=True, hide_index=True)
    st.subheader("🚨 Error endpoints")
    st.dataframe(pd.DataFrame(details["topErrorEndpoints"]), use_container_width=True, hide_index=True)


def logs_page():
    st.header("🔍 Logs Explorer")

    st.sidebar.header("Filters")
    query = st.sidebar.text_input("Search (path, IP, messageId)")
    connector = st.sidebar.selectbox("Connector", ["all"] + CONNECTORS)
    log_type = st.sidebar.selectbox("Type", ["all", "API_IN", "API_OUT", "AUTH", "PROCESSING"])
    status = st.sidebar.text_input("Status (e.g. 500 or 5xx)")
    page = st.sidebar.number_input("Page", min_value=1, value=1, step=1)
    limit = st.sidebar.selectbox("Page size", [25, 50, 100], index=1)
    sort_by = st.sidebar.selectbox("Sort by", ["timestamp", "latency"])

    result = fetch(
        "/api/logs/search",
        query=query, connector=connector, type=log_type, status=status,
        page=int(page), limit=limit, sortBy=sort_by, sortOrder="desc"
    )

    summary = result["summary"]
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Matching logs", f"{result['total']:,}")
    with col2:
        st.metric("Success Rate", f"{summary['successRate']:.1f}%")
    with col3:
        st.metric("Errors", f"{summary['errorCount']:,}")

    if result["logs"]:
        st.dataframe(pd.DataFrame(result["logs"]), use_container_width=True, hide_index=True)
        st.info(f"Page {result['page']} of {result['pages']}")
    else:
        st.success("✓ No logs match the current filters")

    log_id = st.text_input("Log ID for details")
    if log_id:
        detail = fetch(f"/api/logs/{requests.utils.quote(log_id, safe='')}")
        if detail is None:
            st.warning("Log not found")
        else:
            st.json(detail)


def trace_page():
    st.header("🧭 Processing Tracer")
    mode = st.radio("Search by", ["messageId", "endToEndId"], horizontal=True)
    identifier = st.text_input(mode)
    if not identifier:
        return

    if mode == "messageId":
        trace = fetch(f"/api/processing/trace/{requests.utils.quote(identifier, safe='')}")
    else:
        trace = fetch("/api/processing/trace", endToEndId=identifier)

    if trace is None:
        st.warning("No trace found")
        return

    icon = "✅" if trace["status"] == "success" else "❌"
    st.subheader(f"{icon} {trace['transactionId']} ({trace['totalDurationMs']} ms)")
    st.dataframe(pd.DataFrame(trace["steps"]), use_container_width=True, hide_index=True)

    if trace["bottlenecks"]:
        st.subheader("⏱️ Bottlenecks")
        for bottleneck in trace["bottlenecks"]:
            st.markdown(
                f"**Step {bottleneck['step']}** ({bottleneck['service']}): "
                f"{bottleneck['durationMs']} ms, {bottleneck['percentage']:.1f}% - {bottleneck['suggestion']}"
            )


def analytics_page():
    st.header("📈 Analytics")
    connector = st.sidebar.selectbox("Connector", ["all"] + CONNECTORS)
    connector_param = None if connector == "all" else connector

    comparison = fetch("/api/analytics/comparison", period1="previous", period2="current", connector=connector_param)
    changes = comparison["changes"]
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Requests (7d)", f"{comparison['period2']['requests']:,}", f"{changes['requests']:+.1f}%")
    with col2:
        st.metric("Avg Latency", f"{comparison['period2']['avgLatencyMs']:.1f} ms", f"{changes['latency']:+.1f}%",
                  delta_color="inverse")
    with col3:
        st.metric("Error Rate", f"{comparison['period2']['errorRate']:.2f}%", f"{changes['errorRate']:+.1f}%",
                  delta_color="inverse")

    st.subheader("🗓️ Traffic heatmap")
    heatmap = fetch("/api/analytics/heatmap", days=7, connector=connector_param)
    st.dataframe(heatmap_frame(heatmap), use_container_width=True)
    for insight in heatmap["insights"]:
        st.info(insight)

    st.subheader("📉 Trends")
    metric = st.selectbox("Metric", ["requests", "latency", "errorRate"])
    trends = fetch("/api/analytics/trends", metric=metric, days=30, connector=connector_param)
    if trends["data"]:
        st.line_chart(pd.DataFrame(trends["data"]).set_index("label")["value"])
    st.caption(trends["insights"]["summary"])

    st.subheader("🚨 Anomalies")
    anomalies = fetch("/api/analytics/anomalies", days=7, connector=connector_param)
    if anomalies:
        st.dataframe(pd.DataFrame(anomalies), use_container_width=True, hide_index=True)
    else:
        st.success("✓ No anomalies detected")

    left, right = st.columns(2)
    with left:
        st.subheader("Top clients")
        clients = fetch("/api/analytics/top-clients", limit=10, timeRange="7d", connector=connector_param)
        st.dataframe(pd.DataFrame(clients), use_container_width=True, hide_index=True)
    with right:
        st.subheader("Slowest endpoints")
        endpoints = fetch("/api/analytics/top-endpoints", type="slowest", limit=10, connector=connector_param)
        st.dataframe(pd.DataFrame(endpoints["endpoints"]), use_container_width=True, hide_index=True)

    breakdown = fetch("/api/analytics/connector-breakdown", timeRange="24h")
    comparison = breakdown["comparison"]
    st.subheader("⚖️ Connector breakdown")
    st.markdown(f"**Winner:** {comparison['winner']} ({comparison['reason']})")
    st.dataframe(
        pd.DataFrame([breakdown["piGateway"], breakdown["piConnector"]]),
        use_container_width=True,
        hide_index=True
    )


PAGES = {
    "Overview": overview_page,
    "Connector details": connector_page,
    "Logs explorer": logs_page,
    "Processing tracer": trace_page,
    "Analytics": analytics_page,
}


# =============================================================================
# STREAMLIT APP
# =============================================================================

def main():
    """Main Streamlit application."""
    st.set_page_config(
        page_title="Connector Monitoring",
        page_icon="📊",
        layout="wide"
    )
    st.title("📊 Connector Monitoring Dashboard")

    page = st.sidebar.radio("Page", list(PAGES.keys()))
    try:
        PAGES[page]()
    except ApiError as e:
        st.error(f"❌ {e}")

    st.markdown("---")
    st.caption(f"Data from {API_BASE_URL} | Times in UTC unless noted")


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    main()
