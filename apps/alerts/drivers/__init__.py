"""
Monitoring source drivers polled by the triage scheduler.
"""

from apps.alerts.drivers.base import BaseMonitorSource
from apps.alerts.drivers.datadog import DatadogMonitorSource

__all__ = [
    "BaseMonitorSource",
    "DatadogMonitorSource",
    "SOURCE_REGISTRY",
    "get_source",
]

SOURCE_REGISTRY: dict[str, type[BaseMonitorSource]] = {
    "datadog": DatadogMonitorSource,
}


def get_source(name: str = "datadog", **kwargs) -> BaseMonitorSource:
    """
    Get a monitoring source instance by name.

    Raises:
        ValueError: If source name is not found.
    """
    if name not in SOURCE_REGISTRY:
        raise ValueError(f"Unknown source: {name}. Available: {', '.join(SOURCE_REGISTRY.keys())}")
    return SOURCE_REGISTRY[name](**kwargs)
