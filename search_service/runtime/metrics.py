"""Metrics collection facade for the search engine.

Re-exports shared metrics helpers so callers can import from a consistent
local path within the service.
"""

from libs.common.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
