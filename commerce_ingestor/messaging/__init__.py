"""Messaging utilities for Kafka publication."""

from .publisher import MetricsUpdatedPublisher, get_metrics_publisher

__all__ = ["MetricsUpdatedPublisher", "get_metrics_publisher"]
