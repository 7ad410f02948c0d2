"""Matching quality metrics."""

from .aggregator import MetricsAggregator

__all__ = ["MetricsAggregator"]
