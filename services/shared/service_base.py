"""
Solace-AI Service Base Module.
Lifecycle contract shared by the alert service and the CDS orchestrator.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ServiceBase(ABC):
    """Start, stop and inspect a long-lived CDS service."""

    @abstractmethod
    async def initialize(self) -> None:
        """Load reference data and start background tasks."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Drain pending work and cancel background tasks."""
        ...

    @abstractmethod
    async def get_status(self) -> dict[str, Any]:
        """Status ("operational", "initializing" or "degraded"), initialized flag and statistics."""
        ...

    @property
    @abstractmethod
    def stats(self) -> dict[str, int]:
        ...

    @property
    def is_initialized(self) -> bool:
        return getattr(self, "_initialized", False)
