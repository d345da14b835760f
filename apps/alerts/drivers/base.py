"""Base driver for polling monitoring sources.

A monitoring source returns its raw monitor definitions; the driver knows how
to read state, timestamps and tags out of them and how to turn one into an
AlertContext.

Public API:
- BaseMonitorSource
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from apps.alerts.dtos import AlertContext


class BaseMonitorSource(ABC):
    """Abstract base class for monitoring source drivers."""

    name: str = "base"

    @abstractmethod
    def is_configured(self) -> bool:
        """Return True when credentials for this source are present."""

    @abstractmethod
    def fetch_monitors(self) -> list[dict[str, Any]]:
        """Fetch raw monitors from the source. Raises on transport errors."""

    @abstractmethod
    def monitor_state(self, monitor: dict[str, Any]) -> str:
        """Lowercased overall state of a raw monitor."""

    @abstractmethod
    def modified_at(self, monitor: dict[str, Any]) -> datetime | None:
        """When the monitor last changed state, or None if unparseable."""

    @abstractmethod
    def build_context(
        self,
        monitor: dict[str, Any],
        modified: datetime,
        *,
        repo_root: str,
        repo_map: dict[str, str],
        default_org: str = "",
    ) -> AlertContext:
        """Turn a raw monitor into an AlertContext with resolved repository hints."""
