"""
Connector Monitoring API Package

Provides FastAPI endpoints for metrics, logs, traces and analytics of the
pi-gateway and pi-connector services, backed by Bigtable.
"""

from monitoring_api import cache
from monitoring_api import cells

__all__ = ["cache", "cells"]
